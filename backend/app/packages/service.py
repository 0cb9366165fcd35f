"""Core service governing the package catalog and user entitlement lifecycle."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, NamedTuple, Optional, Protocol, Sequence
from uuid import uuid4

from .catalog import default_packages
from .exceptions import (
    ConcurrentActivationError,
    ExternalServiceError,
    InvalidPackageStateError,
    PackageError,
    PackageNotFoundError,
)
from .expiry import find_expiry_anomalies, is_expired, log_residual_anomalies, summarize_packages
from .models import (
    ActivationOutcome,
    ActivePackageView,
    Currency,
    ExpiryCheckResult,
    ExpirySweepReport,
    GiftCard,
    Package,
    PackageSnapshot,
    PackageType,
    PaymentMethod,
    PaymentStatus,
    PaymentVerification,
    PrescriptionResult,
    RenewalEligibilityView,
    RenewalHistoryEntry,
    RenewalHistoryView,
    RenewalRefreshSummary,
    RenewalResult,
    UserAccount,
    UserPackage,
    UserPackageListing,
)
from .renewal import (
    build_renewal_chains,
    compute_renewal_expiry,
    days_remaining,
    evaluate_renewal_eligibility,
    renewal_eligible_date,
    should_regenerate_prescription,
    with_renewal_eligibility,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PackageRepository(Protocol):
    """Persistence operations required by the package services."""

    def list_packages(self, *, include_inactive: bool = False) -> Sequence[Package]:
        ...

    def get_package(self, package_id: str) -> Optional[Package]:
        ...

    def save_package(self, package: Package) -> Package:
        ...

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        ...

    def get_user_package(self, user_package_id: str) -> Optional[UserPackage]:
        ...

    def list_user_packages(self, user_id: str) -> Sequence[UserPackage]:
        """Return the user's entitlements ordered newest first."""

    def list_all_user_packages(self) -> Sequence[UserPackage]:
        ...

    def list_active_user_packages(self) -> Sequence[UserPackage]:
        ...

    def find_user_package_by_payment(self, user_id: str, payment_id: str) -> Optional[UserPackage]:
        ...

    def find_user_package_by_gift_code(self, gift_code: str) -> Optional[UserPackage]:
        ...

    def save_user_package(self, user_package: UserPackage) -> UserPackage:
        """Insert or update an entitlement without touching the owner's pointer."""

    def activate_user_package(
        self,
        user_package: UserPackage,
        *,
        expected_active_package_id: Optional[str],
        now: datetime,
    ) -> Optional[ActivationOutcome]:
        """Supersede, store and point the owner at ``user_package`` atomically.

        Returns ``None`` without writing anything when the owner's pointer no
        longer equals ``expected_active_package_id``, when the payment id is
        already recorded, or when a gift has been claimed by someone else.
        """

    def deactivate_expired_package(self, user_package_id: str, *, now: datetime) -> Optional[UserPackage]:
        """Deactivate an expired entitlement and clear the owner pointer if it still targets it."""

    def reset_user_package_pointer(self, user_id: str, *, expected_active_package_id: str) -> Optional[UserAccount]:
        ...

    def commit_renewal(
        self,
        *,
        previous: UserPackage,
        renewed: UserPackage,
        history: RenewalHistoryEntry,
    ) -> Optional[UserAccount]:
        """Write a renewal atomically. Returns ``None`` when the pointer CAS fails."""

    def list_renewal_history(self, user_id: str) -> Sequence[RenewalHistoryEntry]:
        ...

    def latest_questionnaire_update(self, user_id: str) -> Optional[datetime]:
        ...

    def latest_prescription_created(self, user_id: str) -> Optional[datetime]:
        ...


class GiftCardStore(Protocol):
    """Monetary gift cards owned by the gift card subsystem."""

    def find_by_code(self, code: str) -> Optional[GiftCard]:
        ...

    def apply_deduction(self, code: str, amount: float, *, user_id: str, now: datetime) -> Optional[GiftCard]:
        """Decrement the balance if at least ``amount`` remains. Returns ``None`` otherwise."""


class PaymentVerifier(Protocol):
    """Looks up the settlement state of a payment reference."""

    def verify_payment(self, reference: str) -> PaymentVerification:
        ...


class PrescriptionGenerator(Protocol):
    """Produces a personalised prescription for a user."""

    def generate(self, user_id: str) -> PrescriptionResult:
        ...


class PackageNotifier(Protocol):
    """Sends purchase confirmations."""

    def notify_purchase(self, user: UserAccount, user_package: UserPackage, package: Package) -> None:
        ...

    def notify_admin_purchase(self, user: UserAccount, user_package: UserPackage, package: Package) -> None:
        ...


def generate_prescription_safely(generator: PrescriptionGenerator, user_id: str) -> PrescriptionResult:
    """Run the generator, turning any failure into an unsuccessful result."""

    try:
        result = generator.generate(user_id)
    except Exception as exc:
        logger.exception("Prescription generation failed", extra={"user_id": user_id})
        return PrescriptionResult(success=False, message=str(exc))
    if not result.success:
        logger.warning(
            "Prescription generator reported failure",
            extra={"user_id": user_id, "reason": result.message},
        )
    return result


class _LazyExpiry(NamedTuple):
    user: UserAccount
    user_package: Optional[UserPackage]
    expired: bool
    updated: bool


@dataclass(slots=True)
class PackageService:
    """Reads and transitions catalog packages and user entitlements."""

    repository: PackageRepository
    prescription_generator: PrescriptionGenerator
    clock: Callable[[], datetime] = _utcnow
    payment_verifier: Optional[PaymentVerifier] = None

    def _now(self) -> datetime:
        return self.clock()

    # Catalog -----------------------------------------------------------------

    def list_packages(self, *, include_inactive: bool = False) -> List[Package]:
        return list(self.repository.list_packages(include_inactive=include_inactive))

    def get_package(self, package_id: str) -> Package:
        package = self.repository.get_package(package_id)
        if package is None:
            raise PackageNotFoundError("Package not found", detail={"packageId": package_id})
        return package

    def create_package(
        self,
        *,
        name: str,
        package_type: PackageType,
        price: float,
        duration_days: int,
        description: str = "",
        features: Sequence[str] = (),
        max_prescriptions: int = 0,
    ) -> Package:
        now = self._now()
        package = Package(
            package_id=f"pkg_{uuid4().hex}",
            name=name,
            package_type=package_type,
            price=price,
            duration_days=duration_days,
            description=description,
            features=tuple(features),
            max_prescriptions=max_prescriptions,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        stored = self.repository.save_package(package)
        logger.info("Package created", extra={"package_id": stored.package_id, "package_type": stored.package_type.value})
        return stored

    def deactivate_package(self, package_id: str) -> Package:
        package = self.get_package(package_id)
        if not package.is_active:
            return package
        return self.repository.save_package(package.model_copy(update={"is_active": False, "updated_at": self._now()}))

    def seed_default_catalog(self) -> List[Package]:
        """Store the default tiers that are not in the catalog yet."""

        seeded: List[Package] = []
        for package in default_packages():
            if self.repository.get_package(package.package_id) is None:
                seeded.append(self.repository.save_package(package))
        if seeded:
            logger.info("Seeded default packages", extra={"count": len(seeded)})
        return seeded

    # Entitlements ------------------------------------------------------------

    def _require_user(self, user_id: str) -> UserAccount:
        user = self.repository.get_user(user_id)
        if user is None:
            raise PackageNotFoundError("User not found", detail={"userId": user_id})
        return user

    def list_user_packages(self, user_id: str) -> UserPackageListing:
        self._require_user(user_id)
        now = self._now()
        packages = tuple(self.repository.list_user_packages(user_id))
        active = tuple(item for item in packages if item.is_active and not is_expired(item, now))
        expired = tuple(item for item in packages if not item.is_active or is_expired(item, now))
        return UserPackageListing(active=active, expired=expired, all=packages)

    def _apply_lazy_expiry(self, user: UserAccount, now: datetime) -> _LazyExpiry:
        if not user.active_package_id:
            return _LazyExpiry(user, None, False, False)

        pointer = user.active_package_id
        user_package = self.repository.get_user_package(pointer)
        if user_package is None:
            logger.warning(
                "User points at a missing package; resetting",
                extra={"user_id": user.user_id, "user_package_id": pointer},
            )
            reset = self.repository.reset_user_package_pointer(user.user_id, expected_active_package_id=pointer)
            return _LazyExpiry(reset or self._require_user(user.user_id), None, False, reset is not None)

        if user_package.is_active and not is_expired(user_package, now):
            return _LazyExpiry(user, user_package, False, False)

        if user_package.is_active:
            deactivated = self.repository.deactivate_expired_package(user_package.user_package_id, now=now)
            if deactivated is not None:
                logger.info(
                    "Package expired",
                    extra={
                        "user_id": user.user_id,
                        "user_package_id": user_package.user_package_id,
                        "expiry_date": user_package.expiry_date.isoformat(),
                    },
                )
                return _LazyExpiry(self._require_user(user.user_id), deactivated, True, True)
            return _LazyExpiry(self._require_user(user.user_id), user_package, True, False)

        # Pointer references an entitlement that is already inactive.
        reset = self.repository.reset_user_package_pointer(user.user_id, expected_active_package_id=pointer)
        current = reset or self._require_user(user.user_id)
        if is_expired(user_package, now):
            return _LazyExpiry(current, user_package, True, reset is not None)
        return _LazyExpiry(current, None, False, reset is not None)

    def get_active_package(self, user_id: str) -> ActivePackageView:
        """Return the user's current entitlement, expiring it first if it lapsed.

        Renewal eligibility is computed for display but not written back.
        """

        now = self._now()
        state = self._apply_lazy_expiry(self._require_user(user_id), now)
        if state.user_package is None:
            return ActivePackageView(user=state.user, message="No active package found")

        package = self.repository.get_package(state.user_package.package_id)
        if state.expired:
            return ActivePackageView(
                user=state.user,
                user_package=state.user_package,
                package=package,
                expired=True,
                message="Your package has expired",
            )
        return ActivePackageView(
            user=state.user,
            user_package=state.user_package,
            package=package,
            is_renewal_eligible=evaluate_renewal_eligibility(state.user_package, now),
            renewal_eligible_date=renewal_eligible_date(state.user_package.expiry_date),
            message="Active package found",
        )

    def check_expiry(self, user_id: str) -> ExpiryCheckResult:
        now = self._now()
        state = self._apply_lazy_expiry(self._require_user(user_id), now)
        package = self.repository.get_package(state.user_package.package_id) if state.user_package else None
        if state.user_package is None and state.updated:
            message = "Stale package reference has been cleared"
        elif state.user_package is None:
            message = "No active package found"
        elif state.expired:
            message = "Package has expired and has been deactivated"
        else:
            message = "Package is still active"
        return ExpiryCheckResult(
            user=state.user,
            user_package=state.user_package,
            package=package,
            updated=state.updated,
            message=message,
        )

    def sweep_expired_packages(self, *, run_cleanup: bool = True) -> ExpirySweepReport:
        """Analyse every entitlement and optionally deactivate expired active ones.

        Anomalies are counted before cleanup. Anything still expired and active
        afterwards is logged and reported rather than retried.
        """

        now = self._now()
        report = summarize_packages(self.repository.list_all_user_packages(), now)
        if not run_cleanup or not report.anomalies:
            logger.info(
                "Expiry sweep analysed packages",
                extra={"total": report.total_packages, "anomalies": len(report.anomalies)},
            )
            return report

        deactivated: List[str] = []
        errors = 0
        for anomaly in report.anomalies:
            try:
                result = self.repository.deactivate_expired_package(anomaly.user_package_id, now=now)
            except Exception:
                errors += 1
                logger.exception(
                    "Failed to deactivate expired package",
                    extra={"user_package_id": anomaly.user_package_id, "user_id": anomaly.user_id},
                )
                continue
            if result is not None:
                deactivated.append(anomaly.user_package_id)

        residual = tuple(find_expiry_anomalies(self.repository.list_all_user_packages(), now))
        log_residual_anomalies(residual, checked_at=now)
        logger.info(
            "Expiry sweep finished",
            extra={
                "total": report.total_packages,
                "anomalies": len(report.anomalies),
                "deactivated": len(deactivated),
                "errors": errors,
                "residual": len(residual),
            },
        )
        return report.model_copy(
            update={
                "cleanup_ran": True,
                "deactivated_ids": tuple(deactivated),
                "error_count": errors,
                "residual_anomalies": residual,
            }
        )

    # Renewal -----------------------------------------------------------------

    def check_renewal_eligibility(self, user_id: str) -> RenewalEligibilityView:
        now = self._now()
        state = self._apply_lazy_expiry(self._require_user(user_id), now)
        if state.user_package is None:
            return RenewalEligibilityView(is_eligible=False, message="No active package found")
        if state.expired:
            return RenewalEligibilityView(
                is_eligible=False,
                message="Your package has expired. Please purchase a new package.",
                user_package=state.user_package,
            )

        refreshed = with_renewal_eligibility(state.user_package, now)
        if (
            refreshed.is_renewal_eligible != state.user_package.is_renewal_eligible
            or refreshed.renewal_eligible_date != state.user_package.renewal_eligible_date
        ):
            refreshed = self.repository.save_user_package(refreshed.model_copy(update={"updated_at": now}))

        if refreshed.is_renewal_eligible:
            message = "Your package is eligible for renewal"
        else:
            message = f"Renewal opens on {refreshed.renewal_eligible_date.isoformat()}"
        return RenewalEligibilityView(
            is_eligible=refreshed.is_renewal_eligible,
            message=message,
            user_package=refreshed,
            package=self.repository.get_package(refreshed.package_id),
            days_remaining=days_remaining(refreshed.expiry_date, now),
            renewal_options=tuple(self.repository.list_packages()) if refreshed.is_renewal_eligible else (),
        )

    def refresh_renewal_eligibility(self) -> RenewalRefreshSummary:
        """Recompute the cached eligibility fields of every active entitlement."""

        now = self._now()
        total = eligible = not_eligible = errors = 0
        for user_package in self.repository.list_active_user_packages():
            total += 1
            try:
                refreshed = with_renewal_eligibility(user_package, now)
                if (
                    refreshed.is_renewal_eligible != user_package.is_renewal_eligible
                    or refreshed.renewal_eligible_date != user_package.renewal_eligible_date
                ):
                    self.repository.save_user_package(refreshed.model_copy(update={"updated_at": now}))
            except Exception:
                errors += 1
                logger.exception(
                    "Failed to refresh renewal eligibility",
                    extra={"user_package_id": user_package.user_package_id},
                )
                continue
            if refreshed.is_renewal_eligible:
                eligible += 1
            else:
                not_eligible += 1
        return RenewalRefreshSummary(
            total_processed=total,
            eligible_count=eligible,
            not_eligible_count=not_eligible,
            error_count=errors,
        )

    def _verify_renewal_payment(self, user_id: str, payment_id: str) -> None:
        if self.payment_verifier is None:
            return
        try:
            verification = self.payment_verifier.verify_payment(payment_id)
        except PackageError:
            raise
        except Exception as exc:
            logger.exception("Renewal payment verification failed", extra={"payment_id": payment_id})
            raise ExternalServiceError("Unable to verify payment", detail={"paymentId": payment_id}) from exc
        if not verification.succeeded:
            raise InvalidPackageStateError(
                "Payment has not been completed",
                detail={"paymentStatus": verification.status},
            )
        owner = verification.metadata.get("userId")
        if owner and owner != user_id:
            raise InvalidPackageStateError("Payment belongs to a different user", detail={"paymentId": payment_id})

    def renew_package(
        self,
        user_id: str,
        package_id: str,
        *,
        payment_id: Optional[str] = None,
        payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD,
        price: Optional[float] = None,
        currency: Optional[Currency] = None,
    ) -> RenewalResult:
        """Renew the user's active entitlement into ``package_id``.

        The new expiry extends the current one so unused time carries over.
        The history entry, the superseded entitlement, the new entitlement and the
        user pointer are written in one repository call.
        A card payment reference is checked with ``payment_verifier`` when one
        is configured.
        """

        now = self._now()
        user = self._require_user(user_id)
        if not user.active_package_id:
            raise InvalidPackageStateError("No active package to renew")
        current = self.repository.get_user_package(user.active_package_id)
        if current is None:
            raise PackageNotFoundError("Active package not found", detail={"userPackageId": user.active_package_id})
        if not evaluate_renewal_eligibility(current, now):
            raise InvalidPackageStateError(
                "Package is not eligible for renewal",
                detail={"renewalEligibleDate": renewal_eligible_date(current.expiry_date).isoformat()},
            )

        target = self.get_package(package_id)
        if not target.is_active:
            raise InvalidPackageStateError("Package is not available", detail={"packageId": package_id})

        reference = payment_id or f"renewal_{uuid4().hex}"
        if self.repository.find_user_package_by_payment(user_id, reference) is not None:
            raise InvalidPackageStateError("Payment has already been applied", detail={"paymentId": reference})
        if payment_id and payment_method == PaymentMethod.CREDIT_CARD:
            self._verify_renewal_payment(user_id, payment_id)

        new_expiry = compute_renewal_expiry(current.expiry_date, target.duration_days, now)
        renewed = with_renewal_eligibility(
            UserPackage(
                user_package_id=f"up_{uuid4().hex}",
                user_id=user_id,
                package_id=target.package_id,
                package_type=target.package_type,
                purchase_date=now,
                expiry_date=new_expiry,
                price=target.price if price is None else price,
                currency=currency or user.preferred_currency or Currency.GBP,
                payment_method=payment_method,
                payment_id=reference,
                payment_status=PaymentStatus.COMPLETED,
                is_active=True,
                renewed_from_package_id=current.user_package_id,
                created_at=now,
                updated_at=now,
            ),
            now,
        )
        previous = current.model_copy(
            update={
                "is_active": False,
                "is_renewal_eligible": False,
                "renewed_to_package_id": renewed.user_package_id,
                "updated_at": now,
            }
        )
        history = RenewalHistoryEntry(
            history_id=f"rh_{uuid4().hex}",
            user_id=user_id,
            previous_package=PackageSnapshot.of(current),
            new_package=PackageSnapshot.of(renewed),
            renewal_date=now,
        )

        updated_user = self.repository.commit_renewal(previous=previous, renewed=renewed, history=history)
        if updated_user is None:
            raise ConcurrentActivationError("The active package changed while renewing; please retry")

        type_changed = current.package_type != renewed.package_type
        logger.info(
            "Package renewed",
            extra={
                "user_id": user_id,
                "previous_user_package_id": current.user_package_id,
                "user_package_id": renewed.user_package_id,
                "expiry_date": new_expiry.isoformat(),
                "package_type_changed": type_changed,
            },
        )

        prescription: Optional[PrescriptionResult] = None
        if updated_user.has_health_questionnaire and should_regenerate_prescription(
            previous_type=current.package_type,
            new_type=renewed.package_type,
            questionnaire_updated_at=self.repository.latest_questionnaire_update(user_id),
            last_prescription_at=self.repository.latest_prescription_created(user_id),
        ):
            prescription = generate_prescription_safely(self.prescription_generator, user_id)

        return RenewalResult(
            previous=previous,
            renewed=renewed,
            history=history,
            user=updated_user,
            package=target,
            package_type_changed=type_changed,
            prescription_regenerated=prescription is not None and prescription.success,
            prescription=prescription,
        )

    def get_renewal_history(self, user_id: str) -> RenewalHistoryView:
        self._require_user(user_id)
        packages = self.repository.list_user_packages(user_id)
        return RenewalHistoryView(
            chains=tuple(build_renewal_chains(packages)),
            entries=tuple(self.repository.list_renewal_history(user_id)),
        )


__all__ = [
    "GiftCardStore",
    "PackageNotifier",
    "PackageRepository",
    "PackageService",
    "PaymentVerifier",
    "PrescriptionGenerator",
    "generate_prescription_safely",
]
