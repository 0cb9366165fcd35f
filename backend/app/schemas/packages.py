"""API schemas for package and payment endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from ..packages import (
    ActivePackageView,
    Currency,
    ExpiryAnomaly,
    ExpiryCheckResult,
    ExpirySweepReport,
    GiftCardApplication,
    Package,
    PackageType,
    PaymentMethod,
    PrescriptionResult,
    ProvisioningResult,
    RenewalEligibilityView,
    RenewalHistoryEntry,
    RenewalHistoryView,
    RenewalRefreshSummary,
    RenewalResult,
    UserAccount,
    UserPackage,
    UserPackageListing,
    package_period_label,
)

DataT = TypeVar("DataT")


class ApiResponse(BaseModel, Generic[DataT]):
    success: bool = True
    message: Optional[str] = None
    data: Optional[DataT] = None


class PackageOut(BaseModel):
    id: str
    name: str
    type: PackageType
    price: float
    duration_days: int = Field(alias="durationDays")
    description: str
    features: List[str]
    max_prescriptions: int = Field(alias="maxPrescriptions")
    is_active: bool = Field(alias="isActive")
    period_label: str = Field(alias="periodLabel")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_package(cls, package: Package) -> "PackageOut":
        return cls(
            id=package.package_id,
            name=package.name,
            type=package.package_type,
            price=package.price,
            duration_days=package.duration_days,
            description=package.description,
            features=list(package.features),
            max_prescriptions=package.max_prescriptions,
            is_active=package.is_active,
            period_label=package_period_label(package),
        )


def _package_out(package: Optional[Package]) -> Optional[PackageOut]:
    return PackageOut.from_package(package) if package is not None else None


class UserPackageOut(BaseModel):
    id: str
    user_id: Optional[str] = Field(alias="userId", default=None)
    package_id: str = Field(alias="packageId")
    package_type: PackageType = Field(alias="packageType")
    purchase_date: datetime = Field(alias="purchaseDate")
    expiry_date: datetime = Field(alias="expiryDate")
    price: float
    currency: Currency
    payment_method: PaymentMethod = Field(alias="paymentMethod")
    payment_id: Optional[str] = Field(alias="paymentId", default=None)
    payment_status: str = Field(alias="paymentStatus")
    is_active: bool = Field(alias="isActive")
    is_gift: bool = Field(alias="isGift")
    gift_code: Optional[str] = Field(alias="giftCode", default=None)
    is_renewal_eligible: bool = Field(alias="isRenewalEligible")
    renewal_eligible_date: Optional[datetime] = Field(alias="renewalEligibleDate", default=None)
    renewed_from_package_id: Optional[str] = Field(alias="renewedFromPackageId", default=None)
    renewed_to_package_id: Optional[str] = Field(alias="renewedToPackageId", default=None)
    gift_card_code: Optional[str] = Field(alias="giftCardCode", default=None)
    gift_card_amount_used: Optional[float] = Field(alias="giftCardAmountUsed", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_user_package(cls, user_package: UserPackage) -> "UserPackageOut":
        return cls(
            id=user_package.user_package_id,
            user_id=user_package.user_id,
            package_id=user_package.package_id,
            package_type=user_package.package_type,
            purchase_date=user_package.purchase_date,
            expiry_date=user_package.expiry_date,
            price=user_package.price,
            currency=user_package.currency,
            payment_method=user_package.payment_method,
            payment_id=user_package.payment_id,
            payment_status=user_package.payment_status.value,
            is_active=user_package.is_active,
            is_gift=user_package.is_gift,
            gift_code=user_package.gift_code,
            is_renewal_eligible=user_package.is_renewal_eligible,
            renewal_eligible_date=user_package.renewal_eligible_date,
            renewed_from_package_id=user_package.renewed_from_package_id,
            renewed_to_package_id=user_package.renewed_to_package_id,
            gift_card_code=user_package.gift_card_code,
            gift_card_amount_used=user_package.gift_card_amount_used,
        )


def _user_package_out(user_package: Optional[UserPackage]) -> Optional[UserPackageOut]:
    return UserPackageOut.from_user_package(user_package) if user_package is not None else None


class UserSummaryOut(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    package_type: str = Field(alias="packageType")
    active_package_id: Optional[str] = Field(alias="activePackageId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_user(cls, user: UserAccount) -> "UserSummaryOut":
        return cls(
            id=user.user_id,
            name=user.name,
            email=user.email,
            package_type=user.package_type,
            active_package_id=user.active_package_id,
        )


class UserPackagesData(BaseModel):
    active: List[UserPackageOut]
    expired: List[UserPackageOut]
    all: List[UserPackageOut]

    @classmethod
    def from_listing(cls, listing: UserPackageListing) -> "UserPackagesData":
        return cls(
            active=[UserPackageOut.from_user_package(item) for item in listing.active],
            expired=[UserPackageOut.from_user_package(item) for item in listing.expired],
            all=[UserPackageOut.from_user_package(item) for item in listing.all],
        )


class ActivePackageData(BaseModel):
    package: Optional[PackageOut] = None
    user_package: Optional[UserPackageOut] = Field(alias="userPackage", default=None)
    user: UserSummaryOut
    expired: bool
    is_renewal_eligible: bool = Field(alias="isRenewalEligible")
    renewal_eligible_date: Optional[datetime] = Field(alias="renewalEligibleDate", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_view(cls, view: ActivePackageView) -> "ActivePackageData":
        return cls(
            package=_package_out(view.package),
            user_package=_user_package_out(view.user_package),
            user=UserSummaryOut.from_user(view.user),
            expired=view.expired,
            is_renewal_eligible=view.is_renewal_eligible,
            renewal_eligible_date=view.renewal_eligible_date,
        )


class ExpiryCheckData(BaseModel):
    updated: bool
    package: Optional[PackageOut] = None
    user_package: Optional[UserPackageOut] = Field(alias="userPackage", default=None)
    user: UserSummaryOut

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ExpiryCheckResult) -> "ExpiryCheckData":
        return cls(
            updated=result.updated,
            package=_package_out(result.package),
            user_package=_user_package_out(result.user_package),
            user=UserSummaryOut.from_user(result.user),
        )


class RenewalEligibilityData(BaseModel):
    is_eligible: bool = Field(alias="isEligible")
    user_package: Optional[UserPackageOut] = Field(alias="userPackage", default=None)
    package: Optional[PackageOut] = None
    days_remaining: Optional[int] = Field(alias="daysRemaining", default=None)
    renewal_options: List[PackageOut] = Field(alias="renewalOptions", default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_view(cls, view: RenewalEligibilityView) -> "RenewalEligibilityData":
        return cls(
            is_eligible=view.is_eligible,
            user_package=_user_package_out(view.user_package),
            package=_package_out(view.package),
            days_remaining=view.days_remaining,
            renewal_options=[PackageOut.from_package(option) for option in view.renewal_options],
        )


class PrescriptionOut(BaseModel):
    success: bool
    prescription_id: Optional[str] = Field(alias="prescriptionId", default=None)
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: Optional[PrescriptionResult]) -> Optional["PrescriptionOut"]:
        if result is None:
            return None
        return cls(success=result.success, prescription_id=result.prescription_id, message=result.message)


class RenewalData(BaseModel):
    previous_package: UserPackageOut = Field(alias="previousPackage")
    new_package: UserPackageOut = Field(alias="newPackage")
    package: PackageOut
    user: UserSummaryOut
    package_type_changed: bool = Field(alias="packageTypeChanged")
    prescription_regenerated: bool = Field(alias="prescriptionRegenerated")
    prescription: Optional[PrescriptionOut] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: RenewalResult) -> "RenewalData":
        return cls(
            previous_package=UserPackageOut.from_user_package(result.previous),
            new_package=UserPackageOut.from_user_package(result.renewed),
            package=PackageOut.from_package(result.package),
            user=UserSummaryOut.from_user(result.user),
            package_type_changed=result.package_type_changed,
            prescription_regenerated=result.prescription_regenerated,
            prescription=PrescriptionOut.from_result(result.prescription),
        )


class RenewalHistoryEntryOut(BaseModel):
    id: str
    previous_package: dict = Field(alias="previousPackage")
    new_package: dict = Field(alias="newPackage")
    renewal_date: datetime = Field(alias="renewalDate")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_entry(cls, entry: RenewalHistoryEntry) -> "RenewalHistoryEntryOut":
        return cls(
            id=entry.history_id,
            previous_package=entry.previous_package.model_dump(mode="json"),
            new_package=entry.new_package.model_dump(mode="json"),
            renewal_date=entry.renewal_date,
        )


class RenewalHistoryData(BaseModel):
    chains: List[List[UserPackageOut]]
    history: List[RenewalHistoryEntryOut]

    @classmethod
    def from_view(cls, view: RenewalHistoryView) -> "RenewalHistoryData":
        return cls(
            chains=[[UserPackageOut.from_user_package(item) for item in chain] for chain in view.chains],
            history=[RenewalHistoryEntryOut.from_entry(entry) for entry in view.entries],
        )


class GiftCardApplicationOut(BaseModel):
    code: str
    applied: bool
    amount_requested: float = Field(alias="amountRequested")
    amount_used: float = Field(alias="amountUsed")
    remaining_balance: Optional[float] = Field(alias="remainingBalance", default=None)
    reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_application(cls, application: Optional[GiftCardApplication]) -> Optional["GiftCardApplicationOut"]:
        if application is None:
            return None
        return cls(
            code=application.code,
            applied=application.applied,
            amount_requested=application.requested_amount,
            amount_used=application.amount_used,
            remaining_balance=application.remaining_balance,
            reason=application.reason,
        )


class ProvisioningData(BaseModel):
    package: Optional[PackageOut] = None
    user_package: UserPackageOut = Field(alias="userPackage")
    user: UserSummaryOut
    duplicate: bool = False
    superseded_ids: List[str] = Field(alias="supersededIds", default_factory=list)
    gift_card: Optional[GiftCardApplicationOut] = Field(alias="giftCard", default=None)
    prescription: Optional[PrescriptionOut] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ProvisioningResult) -> "ProvisioningData":
        return cls(
            package=_package_out(result.package),
            user_package=UserPackageOut.from_user_package(result.user_package),
            user=UserSummaryOut.from_user(result.user),
            duplicate=result.duplicate,
            superseded_ids=list(result.superseded_ids),
            gift_card=GiftCardApplicationOut.from_application(result.gift_card),
            prescription=PrescriptionOut.from_result(result.prescription),
        )


class GiftCodeData(BaseModel):
    gift_code: str = Field(alias="giftCode")
    user_package: UserPackageOut = Field(alias="userPackage")
    package: Optional[PackageOut] = None

    model_config = ConfigDict(populate_by_name=True)


class ExpiryAnomalyOut(BaseModel):
    user_package_id: str = Field(alias="userPackageId")
    user_id: Optional[str] = Field(alias="userId", default=None)
    package_type: PackageType = Field(alias="packageType")
    expiry_date: Optional[datetime] = Field(alias="expiryDate", default=None)
    hours_expired: Optional[int] = Field(alias="hoursExpired", default=None)
    issue: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_anomaly(cls, anomaly: ExpiryAnomaly) -> "ExpiryAnomalyOut":
        return cls(
            user_package_id=anomaly.user_package_id,
            user_id=anomaly.user_id,
            package_type=anomaly.package_type,
            expiry_date=anomaly.expiry_date,
            hours_expired=anomaly.hours_expired,
            issue=anomaly.issue,
        )


class ExpirySweepData(BaseModel):
    checked_at: datetime = Field(alias="checkedAt")
    total_packages: int = Field(alias="totalPackages")
    active_count: int = Field(alias="activeCount")
    inactive_count: int = Field(alias="inactiveCount")
    should_be_expired: int = Field(alias="shouldBeExpired")
    actually_expired: int = Field(alias="actuallyExpired")
    anomalies: List[ExpiryAnomalyOut]
    cleanup_ran: bool = Field(alias="cleanupRan")
    deactivated_ids: List[str] = Field(alias="deactivatedIds")
    error_count: int = Field(alias="errorCount")
    residual_anomalies: List[ExpiryAnomalyOut] = Field(alias="residualAnomalies")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_report(cls, report: ExpirySweepReport) -> "ExpirySweepData":
        return cls(
            checked_at=report.checked_at,
            total_packages=report.total_packages,
            active_count=report.active_count,
            inactive_count=report.inactive_count,
            should_be_expired=report.should_be_expired,
            actually_expired=report.actually_expired,
            anomalies=[ExpiryAnomalyOut.from_anomaly(item) for item in report.anomalies],
            cleanup_ran=report.cleanup_ran,
            deactivated_ids=list(report.deactivated_ids),
            error_count=report.error_count,
            residual_anomalies=[ExpiryAnomalyOut.from_anomaly(item) for item in report.residual_anomalies],
        )


class RenewalRefreshData(BaseModel):
    total_processed: int = Field(alias="totalProcessed")
    eligible_count: int = Field(alias="eligibleCount")
    not_eligible_count: int = Field(alias="notEligibleCount")
    error_count: int = Field(alias="errorCount")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: RenewalRefreshSummary) -> "RenewalRefreshData":
        return cls(
            total_processed=summary.total_processed,
            eligible_count=summary.eligible_count,
            not_eligible_count=summary.not_eligible_count,
            error_count=summary.error_count,
        )


class PackageCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    type: PackageType
    price: float = Field(ge=0)
    duration_days: int = Field(alias="durationDays", ge=1)
    description: str = ""
    features: List[str] = Field(default_factory=list)
    max_prescriptions: int = Field(alias="maxPrescriptions", default=0, ge=0)

    model_config = ConfigDict(populate_by_name=True)


class RenewRequest(BaseModel):
    package_id: str = Field(alias="packageId")
    payment_id: Optional[str] = Field(alias="paymentId", default=None)
    payment_method: PaymentMethod = Field(alias="paymentMethod", default=PaymentMethod.CREDIT_CARD)
    price: Optional[float] = Field(default=None, ge=0)
    currency: Optional[Currency] = None

    model_config = ConfigDict(populate_by_name=True)


class PurchaseRequest(BaseModel):
    user_id: str = Field(alias="userId", min_length=1)
    package_id: str = Field(alias="packageId")
    payment_method: str = Field(alias="paymentMethod")
    payment_id: Optional[str] = Field(alias="paymentId", default=None)
    price: Optional[float] = Field(default=None, ge=0)
    currency: Optional[Currency] = None

    model_config = ConfigDict(populate_by_name=True)


class GiftCodeCreateRequest(BaseModel):
    package_id: str = Field(alias="packageId")
    expiry_days: Optional[int] = Field(alias="expiryDays", default=None, ge=1)

    model_config = ConfigDict(populate_by_name=True)


class GiftCodeRedeemRequest(BaseModel):
    gift_code: str = Field(alias="giftCode", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class ExpirySweepRequest(BaseModel):
    run_cleanup: bool = Field(alias="runCleanup", default=True)

    model_config = ConfigDict(populate_by_name=True)


class GiftCardDetails(BaseModel):
    code: str = Field(min_length=1)
    amount_to_use: float = Field(alias="amountToUse", gt=0)

    model_config = ConfigDict(populate_by_name=True)


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str = Field(alias="paymentIntentId", min_length=1)
    package_id: str = Field(alias="packageId", min_length=1)
    gift_card_details: Optional[GiftCardDetails] = Field(alias="giftCardDetails", default=None)

    model_config = ConfigDict(populate_by_name=True)
