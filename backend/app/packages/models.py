"""Domain models for the package catalog and user entitlements."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

NO_PACKAGE = "none"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class PackageType(str, Enum):
    """Tiers a package can be sold as."""

    SINGLE = "single"
    BASIC = "basic"
    ENHANCED = "enhanced"
    PREMIUM = "premium"


class Currency(str, Enum):
    """Currencies accepted at checkout."""

    GBP = "GBP"
    USD = "USD"
    EUR = "EUR"
    CAD = "CAD"
    AUD = "AUD"
    JPY = "JPY"
    INR = "INR"


class PaymentMethod(str, Enum):
    """How an entitlement was paid for."""

    CREDIT_CARD = "credit_card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    GIFT_CODE = "gift_code"
    OTHER = "other"


class PaymentStatus(str, Enum):
    """Settlement state recorded alongside an entitlement."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Package(BaseModel):
    """Catalog row describing a purchasable package."""

    package_id: str
    name: str = Field(min_length=1)
    package_type: PackageType
    price: float = Field(ge=0)
    duration_days: int = Field(ge=1)
    description: str = ""
    features: Tuple[str, ...] = Field(default_factory=tuple)
    max_prescriptions: int = Field(default=0, ge=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class UserPackage(BaseModel):
    """A purchased, gifted or renewed instance of a package."""

    user_package_id: str
    user_id: Optional[str] = None
    package_id: str
    package_type: PackageType
    purchase_date: datetime = Field(default_factory=_utcnow)
    expiry_date: datetime
    price: float = Field(ge=0)
    currency: Currency = Currency.GBP
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    payment_id: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.COMPLETED
    is_active: bool = True
    is_gift: bool = False
    gift_code: Optional[str] = None
    is_renewal_eligible: bool = False
    renewal_eligible_date: Optional[datetime] = None
    renewed_from_package_id: Optional[str] = None
    renewed_to_package_id: Optional[str] = None
    gift_card_code: Optional[str] = None
    gift_card_amount_used: Optional[float] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("purchase_date", "expiry_date", "renewal_eligible_date", "created_at", "updated_at")
    @classmethod
    def _utc_datetimes(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)

    @model_validator(mode="after")
    def _check_links(self) -> "UserPackage":
        if self.user_id is None and self.is_active:
            raise ValueError("an unclaimed gift package cannot be active")
        if self.is_gift and not self.gift_code:
            raise ValueError("gift packages require a gift code")
        own_id = self.user_package_id
        if own_id in {self.renewed_from_package_id, self.renewed_to_package_id}:
            raise ValueError("a package cannot be renewed from or into itself")
        return self

    @property
    def is_unclaimed_gift(self) -> bool:
        return self.is_gift and self.user_id is None


class UserAccount(BaseModel):
    """Subset of the user record that the entitlement engine reads and writes."""

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    is_admin: bool = False
    package_type: str = NO_PACKAGE
    active_package_id: Optional[str] = None
    has_health_questionnaire: bool = False
    preferred_currency: Optional[Currency] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("package_type")
    @classmethod
    def _known_package_type(cls, value: str) -> str:
        if value != NO_PACKAGE:
            PackageType(value)
        return value


class PackageSnapshot(BaseModel):
    """Point-in-time view of an entitlement stored in the renewal history."""

    package_id: str
    user_package_id: str
    package_type: PackageType
    expiry_date: datetime

    model_config = ConfigDict(frozen=True)

    @classmethod
    def of(cls, user_package: UserPackage) -> "PackageSnapshot":
        return cls(
            package_id=user_package.package_id,
            user_package_id=user_package.user_package_id,
            package_type=user_package.package_type,
            expiry_date=user_package.expiry_date,
        )


class RenewalHistoryEntry(BaseModel):
    """Append-only audit record of a renewal transition."""

    history_id: str
    user_id: str
    previous_package: PackageSnapshot
    new_package: PackageSnapshot
    renewal_date: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class GiftCard(BaseModel):
    """Monetary gift card owned by the gift card store."""

    code: str
    amount: float = Field(gt=0)
    amount_used: float = Field(default=0, ge=0)
    currency: Currency = Currency.GBP
    is_redeemed: bool = False
    redeemed_at: Optional[datetime] = None
    redeemed_by: Optional[str] = None
    expiry_date: datetime

    model_config = ConfigDict(frozen=True)

    @field_validator("expiry_date", "redeemed_at")
    @classmethod
    def _utc_datetimes(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)

    @property
    def remaining_balance(self) -> float:
        return self.amount - self.amount_used

    def is_expired(self, now: datetime) -> bool:
        return now > self.expiry_date


class PaymentVerification(BaseModel):
    """Payment state as reported by the payment collaborator."""

    reference: str
    status: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class PrescriptionResult(BaseModel):
    """Outcome reported by the prescription generator."""

    success: bool
    prescription_id: Optional[str] = None
    message: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class GiftCardDeduction(BaseModel):
    """Gift card balance a buyer asked to apply to a purchase."""

    code: str = Field(min_length=1)
    amount_to_use: float = Field(gt=0)

    model_config = ConfigDict(frozen=True)


class GiftCardApplication(BaseModel):
    """Result of applying a gift card deduction after payment succeeded."""

    code: str
    requested_amount: float
    applied: bool
    amount_used: float = 0
    remaining_balance: Optional[float] = None
    reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ActivationOutcome(BaseModel):
    """Persisted state after an entitlement became the user's active package."""

    user_package: UserPackage
    user: UserAccount
    superseded_ids: Tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)


class ProvisioningResult(BaseModel):
    """Return value of purchase, payment confirmation and gift redemption."""

    user_package: UserPackage
    user: UserAccount
    package: Optional[Package] = None
    duplicate: bool = False
    superseded_ids: Tuple[str, ...] = ()
    gift_card: Optional[GiftCardApplication] = None
    prescription: Optional[PrescriptionResult] = None

    model_config = ConfigDict(frozen=True)


class ActivePackageView(BaseModel):
    """The user's current entitlement after lazy expiry has been applied."""

    user: UserAccount
    user_package: Optional[UserPackage] = None
    package: Optional[Package] = None
    expired: bool = False
    is_renewal_eligible: bool = False
    renewal_eligible_date: Optional[datetime] = None
    message: str = ""

    model_config = ConfigDict(frozen=True)

    @property
    def is_active(self) -> bool:
        return self.user_package is not None and not self.expired


class ExpiryCheckResult(BaseModel):
    """Outcome of checking a single user's active package for expiry."""

    user: UserAccount
    user_package: Optional[UserPackage] = None
    package: Optional[Package] = None
    updated: bool = False
    message: str = ""

    model_config = ConfigDict(frozen=True)


class ExpiryAnomaly(BaseModel):
    """An entitlement that is active although it should not be."""

    user_package_id: str
    user_id: Optional[str] = None
    package_type: PackageType
    expiry_date: Optional[datetime] = None
    hours_expired: Optional[int] = None
    issue: str

    model_config = ConfigDict(frozen=True)


class ExpirySweepReport(BaseModel):
    """Summary of a bulk expiry sweep."""

    checked_at: datetime
    total_packages: int = 0
    active_count: int = 0
    inactive_count: int = 0
    should_be_expired: int = 0
    actually_expired: int = 0
    anomalies: Tuple[ExpiryAnomaly, ...] = ()
    cleanup_ran: bool = False
    deactivated_ids: Tuple[str, ...] = ()
    error_count: int = 0
    residual_anomalies: Tuple[ExpiryAnomaly, ...] = ()

    model_config = ConfigDict(frozen=True)


class RenewalEligibilityView(BaseModel):
    """Freshly computed renewal eligibility for a user's active package."""

    is_eligible: bool
    message: str
    user_package: Optional[UserPackage] = None
    package: Optional[Package] = None
    days_remaining: Optional[int] = None
    renewal_options: Tuple[Package, ...] = ()

    model_config = ConfigDict(frozen=True)


class RenewalRefreshSummary(BaseModel):
    """Counters produced when recomputing cached eligibility for all active packages."""

    total_processed: int = 0
    eligible_count: int = 0
    not_eligible_count: int = 0
    error_count: int = 0

    model_config = ConfigDict(frozen=True)


class RenewalResult(BaseModel):
    """Entitlements and history written by a renewal."""

    previous: UserPackage
    renewed: UserPackage
    history: RenewalHistoryEntry
    user: UserAccount
    package: Package
    package_type_changed: bool
    prescription_regenerated: bool = False
    prescription: Optional[PrescriptionResult] = None

    model_config = ConfigDict(frozen=True)


class UserPackageListing(BaseModel):
    """All of a user's entitlements split by state, newest first."""

    active: Tuple[UserPackage, ...] = ()
    expired: Tuple[UserPackage, ...] = ()
    all: Tuple[UserPackage, ...] = ()

    model_config = ConfigDict(frozen=True)


class RenewalHistoryView(BaseModel):
    """A user's renewal chains alongside the recorded history entries."""

    chains: Tuple[Tuple[UserPackage, ...], ...] = ()
    entries: Tuple[RenewalHistoryEntry, ...] = ()

    model_config = ConfigDict(frozen=True)
