"""Purchase, payment confirmation and gift code flows that create entitlements."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional, Tuple
from uuid import uuid4

from .catalog import generate_gift_code
from .exceptions import (
    ConcurrentActivationError,
    ExternalServiceError,
    InvalidPackageStateError,
    PackageError,
    PackageNotFoundError,
)
from .expiry import is_expired
from .models import (
    ActivationOutcome,
    Currency,
    GiftCardApplication,
    GiftCardDeduction,
    Package,
    PaymentMethod,
    PaymentStatus,
    PaymentVerification,
    PrescriptionResult,
    ProvisioningResult,
    UserAccount,
    UserPackage,
)
from .renewal import renewal_eligible_date
from .service import (
    GiftCardStore,
    PackageNotifier,
    PackageRepository,
    PaymentVerifier,
    PrescriptionGenerator,
    generate_prescription_safely,
)

logger = logging.getLogger(__name__)

GIFT_CARD_PURCHASE_TYPE = "gift_card_purchase"
_GIFT_CODE_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def price_from_metadata(metadata: Mapping[str, str], package: Package) -> Tuple[float, Currency]:
    """Charged amount and currency recorded on the payment, else the catalog price in GBP."""

    price = package.price
    raw_price = metadata.get("convertedPrice")
    if raw_price not in (None, ""):
        try:
            price = float(raw_price)
        except (TypeError, ValueError):
            logger.warning("Ignoring unparseable converted price", extra={"converted_price": raw_price})

    currency = Currency.GBP
    raw_currency = metadata.get("currencyUsed")
    if raw_currency:
        try:
            currency = Currency(raw_currency.upper())
        except ValueError:
            logger.warning("Ignoring unsupported payment currency", extra={"currency": raw_currency})
    return price, currency


@dataclass(slots=True)
class ProvisioningService:
    """Turns verified payments and gift codes into active entitlements."""

    repository: PackageRepository
    gift_cards: GiftCardStore
    verifier: PaymentVerifier
    prescription_generator: PrescriptionGenerator
    notifier: PackageNotifier
    clock: Callable[[], datetime] = _utcnow

    def _now(self) -> datetime:
        return self.clock()

    def _require_user(self, user_id: str) -> UserAccount:
        user = self.repository.get_user(user_id)
        if user is None:
            raise PackageNotFoundError("User not found", detail={"userId": user_id})
        return user

    def _require_package(self, package_id: str) -> Package:
        package = self.repository.get_package(package_id)
        if package is None:
            raise PackageNotFoundError("Package not found", detail={"packageId": package_id})
        if not package.is_active:
            raise InvalidPackageStateError("Package is not available", detail={"packageId": package_id})
        return package

    def _duplicate_result(self, existing: UserPackage) -> ProvisioningResult:
        logger.info(
            "Payment already provisioned",
            extra={"user_id": existing.user_id, "payment_id": existing.payment_id},
        )
        return ProvisioningResult(
            user_package=existing,
            user=self._require_user(existing.user_id),
            package=self.repository.get_package(existing.package_id),
            duplicate=True,
        )

    def _new_user_package(
        self,
        *,
        user: UserAccount,
        package: Package,
        payment_id: str,
        payment_method: PaymentMethod,
        price: float,
        currency: Currency,
        now: datetime,
    ) -> UserPackage:
        expiry = now + timedelta(days=package.duration_days)
        return UserPackage(
            user_package_id=f"up_{uuid4().hex}",
            user_id=user.user_id,
            package_id=package.package_id,
            package_type=package.package_type,
            purchase_date=now,
            expiry_date=expiry,
            price=price,
            currency=currency,
            payment_method=payment_method,
            payment_id=payment_id,
            payment_status=PaymentStatus.COMPLETED,
            is_active=True,
            renewal_eligible_date=renewal_eligible_date(expiry),
            created_at=now,
            updated_at=now,
        )

    def _activate(
        self, user: UserAccount, user_package: UserPackage, now: datetime
    ) -> Tuple[Optional[ActivationOutcome], Optional[ProvisioningResult]]:
        """Activate ``user_package``; a lost race resolves to the stored duplicate when there is one."""

        outcome = self.repository.activate_user_package(
            user_package,
            expected_active_package_id=user.active_package_id,
            now=now,
        )
        if outcome is not None:
            if outcome.superseded_ids:
                logger.info(
                    "Superseded previous packages",
                    extra={"user_id": user.user_id, "superseded_ids": list(outcome.superseded_ids)},
                )
            return outcome, None

        if user_package.payment_id:
            existing = self.repository.find_user_package_by_payment(user.user_id, user_package.payment_id)
            if existing is not None:
                return None, self._duplicate_result(existing)
        raise ConcurrentActivationError(
            "The active package changed while processing this request; please retry",
            detail={"userId": user.user_id},
        )

    def _apply_gift_card(
        self,
        deduction: GiftCardDeduction,
        *,
        user_id: str,
        user_package: UserPackage,
        now: datetime,
    ) -> Tuple[GiftCardApplication, UserPackage]:
        code = deduction.code.strip().upper()

        def rejected(reason: str, remaining: Optional[float] = None) -> GiftCardApplication:
            logger.warning(
                "Gift card deduction not applied",
                extra={"user_id": user_id, "gift_card_code": code, "reason": reason},
            )
            return GiftCardApplication(
                code=code,
                requested_amount=deduction.amount_to_use,
                applied=False,
                remaining_balance=remaining,
                reason=reason,
            )

        try:
            card = self.gift_cards.find_by_code(code)
            if card is None:
                return rejected("Gift card not found"), user_package
            if card.is_expired(now):
                return rejected("Gift card has expired", card.remaining_balance), user_package
            if card.remaining_balance < deduction.amount_to_use:
                return rejected("Insufficient gift card balance", card.remaining_balance), user_package

            updated = self.gift_cards.apply_deduction(code, deduction.amount_to_use, user_id=user_id, now=now)
            if updated is None:
                return rejected("Insufficient gift card balance"), user_package

            stored = self.repository.save_user_package(
                user_package.model_copy(
                    update={
                        "gift_card_code": code,
                        "gift_card_amount_used": deduction.amount_to_use,
                        "updated_at": now,
                    }
                )
            )
        except Exception:
            logger.exception("Gift card deduction failed", extra={"user_id": user_id, "gift_card_code": code})
            return (
                GiftCardApplication(
                    code=code,
                    requested_amount=deduction.amount_to_use,
                    applied=False,
                    reason="Gift card deduction failed",
                ),
                user_package,
            )

        logger.info(
            "Gift card deduction applied",
            extra={"user_id": user_id, "gift_card_code": code, "amount": deduction.amount_to_use},
        )
        return (
            GiftCardApplication(
                code=code,
                requested_amount=deduction.amount_to_use,
                applied=True,
                amount_used=deduction.amount_to_use,
                remaining_balance=updated.remaining_balance,
            ),
            stored,
        )

    def _maybe_generate_prescription(self, user: UserAccount) -> Optional[PrescriptionResult]:
        if not user.has_health_questionnaire:
            return None
        return generate_prescription_safely(self.prescription_generator, user.user_id)

    def _notify(self, user: UserAccount, user_package: UserPackage, package: Package) -> None:
        try:
            self.notifier.notify_purchase(user, user_package, package)
        except Exception:
            logger.exception("Failed to send purchase confirmation", extra={"user_id": user.user_id})
        try:
            self.notifier.notify_admin_purchase(user, user_package, package)
        except Exception:
            logger.exception("Failed to send admin purchase notification", extra={"user_id": user.user_id})

    def _provision(
        self,
        *,
        user: UserAccount,
        package: Package,
        payment_id: str,
        payment_method: PaymentMethod,
        price: float,
        currency: Currency,
        gift_card: Optional[GiftCardDeduction] = None,
    ) -> ProvisioningResult:
        now = self._now()
        candidate = self._new_user_package(
            user=user,
            package=package,
            payment_id=payment_id,
            payment_method=payment_method,
            price=price,
            currency=currency,
            now=now,
        )
        outcome, duplicate = self._activate(user, candidate, now)
        if duplicate is not None:
            return duplicate

        user_package = outcome.user_package
        logger.info(
            "Package activated",
            extra={
                "user_id": user.user_id,
                "user_package_id": user_package.user_package_id,
                "package_type": user_package.package_type.value,
                "payment_id": payment_id,
            },
        )

        application: Optional[GiftCardApplication] = None
        if gift_card is not None:
            application, user_package = self._apply_gift_card(
                gift_card, user_id=user.user_id, user_package=user_package, now=now
            )

        prescription = self._maybe_generate_prescription(outcome.user)
        self._notify(outcome.user, user_package, package)
        return ProvisioningResult(
            user_package=user_package,
            user=outcome.user,
            package=package,
            superseded_ids=outcome.superseded_ids,
            gift_card=application,
            prescription=prescription,
        )

    def confirm_payment(
        self,
        *,
        user_id: str,
        payment_reference: str,
        package_id: str,
        gift_card: Optional[GiftCardDeduction] = None,
    ) -> ProvisioningResult:
        """Provision ``package_id`` for a verified card payment.

        Confirming the same payment again returns the entitlement created the
        first time with ``duplicate`` set.
        """

        try:
            verification = self.verifier.verify_payment(payment_reference)
        except PackageError:
            raise
        except Exception as exc:
            logger.exception("Payment verification failed", extra={"payment_id": payment_reference})
            raise ExternalServiceError(
                "Unable to verify payment",
                detail={"paymentIntentId": payment_reference},
            ) from exc

        if not verification.succeeded:
            raise InvalidPackageStateError(
                "Payment has not been completed",
                detail={"paymentStatus": verification.status},
            )
        self._check_metadata(verification, user_id=user_id, package_id=package_id)

        existing = self.repository.find_user_package_by_payment(user_id, payment_reference)
        if existing is not None:
            return self._duplicate_result(existing)

        package = self._require_package(package_id)
        user = self._require_user(user_id)
        price, currency = price_from_metadata(verification.metadata, package)
        return self._provision(
            user=user,
            package=package,
            payment_id=payment_reference,
            payment_method=PaymentMethod.CREDIT_CARD,
            price=price,
            currency=currency,
            gift_card=gift_card,
        )

    @staticmethod
    def _check_metadata(verification: PaymentVerification, *, user_id: str, package_id: str) -> None:
        metadata = verification.metadata
        if metadata.get("packageId") and metadata["packageId"] != package_id:
            raise InvalidPackageStateError(
                "Payment was made for a different package",
                detail={"paymentIntentId": verification.reference},
            )
        if metadata.get("userId") and metadata["userId"] != user_id:
            raise InvalidPackageStateError(
                "Payment belongs to a different user",
                detail={"paymentIntentId": verification.reference},
            )

    def provision_from_payment_event(self, verification: PaymentVerification) -> Optional[ProvisioningResult]:
        """Provision from a webhook delivered payment. Returns ``None`` for payments it does not handle."""

        metadata = verification.metadata
        if metadata.get("type") == GIFT_CARD_PURCHASE_TYPE:
            logger.info("Skipping gift card purchase payment", extra={"payment_id": verification.reference})
            return None
        user_id = metadata.get("userId")
        package_id = metadata.get("packageId")
        if not user_id or not package_id:
            logger.info("Payment event carries no package metadata", extra={"payment_id": verification.reference})
            return None
        if not verification.succeeded:
            raise InvalidPackageStateError(
                "Payment has not been completed",
                detail={"paymentStatus": verification.status},
            )

        existing = self.repository.find_user_package_by_payment(user_id, verification.reference)
        if existing is not None:
            return self._duplicate_result(existing)

        package = self._require_package(package_id)
        user = self._require_user(user_id)
        price, currency = price_from_metadata(metadata, package)
        return self._provision(
            user=user,
            package=package,
            payment_id=verification.reference,
            payment_method=PaymentMethod.CREDIT_CARD,
            price=price,
            currency=currency,
        )

    def purchase_package(
        self,
        *,
        user_id: str,
        package_id: str,
        payment_method: str,
        payment_id: Optional[str] = None,
        price: Optional[float] = None,
        currency: Optional[Currency] = None,
    ) -> ProvisioningResult:
        """Record a purchase settled outside the card flow."""

        if payment_method == "stripe":
            raise InvalidPackageStateError("Card payments must be confirmed through /api/stripe/confirm-payment")
        try:
            method = PaymentMethod(payment_method)
        except ValueError as exc:
            raise InvalidPackageStateError(
                "Unsupported payment method", detail={"paymentMethod": payment_method}
            ) from exc

        reference = payment_id or f"manual_{uuid4().hex}"
        existing = self.repository.find_user_package_by_payment(user_id, reference)
        if existing is not None:
            return self._duplicate_result(existing)

        package = self._require_package(package_id)
        user = self._require_user(user_id)
        return self._provision(
            user=user,
            package=package,
            payment_id=reference,
            payment_method=method,
            price=package.price if price is None else price,
            currency=currency or user.preferred_currency or Currency.GBP,
        )

    def create_gift_code(self, *, package_id: str, expiry_days: Optional[int] = None) -> UserPackage:
        """Create an unclaimed, inactive gift entitlement with a fresh code."""

        if expiry_days is not None and expiry_days < 1:
            raise InvalidPackageStateError("expiryDays must be at least 1")
        package = self._require_package(package_id)
        now = self._now()

        code = generate_gift_code()
        attempts = 1
        while self.repository.find_user_package_by_gift_code(code) is not None:
            if attempts >= _GIFT_CODE_ATTEMPTS:
                raise InvalidPackageStateError("Unable to allocate a unique gift code")
            code = generate_gift_code()
            attempts += 1

        expiry = now + timedelta(days=expiry_days or package.duration_days)
        gift = UserPackage(
            user_package_id=f"up_{uuid4().hex}",
            user_id=None,
            package_id=package.package_id,
            package_type=package.package_type,
            purchase_date=now,
            expiry_date=expiry,
            price=package.price,
            payment_method=PaymentMethod.GIFT_CODE,
            payment_status=PaymentStatus.COMPLETED,
            is_active=False,
            is_gift=True,
            gift_code=code,
            renewal_eligible_date=renewal_eligible_date(expiry),
            created_at=now,
            updated_at=now,
        )
        stored = self.repository.save_user_package(gift)
        logger.info("Gift code created", extra={"user_package_id": stored.user_package_id, "package_id": package_id})
        return stored

    def redeem_gift_code(self, *, user_id: str, code: str) -> ProvisioningResult:
        """Bind an unclaimed gift to ``user_id`` and make it the active package."""

        normalized = code.strip().upper()
        if not normalized:
            raise InvalidPackageStateError("Gift code is required")
        gift = self.repository.find_user_package_by_gift_code(normalized)
        if gift is None:
            raise PackageNotFoundError("Invalid gift code")
        if not gift.is_unclaimed_gift:
            raise InvalidPackageStateError("Gift code has already been redeemed")

        now = self._now()
        if is_expired(gift, now):
            raise InvalidPackageStateError("Gift code has expired")
        user = self._require_user(user_id)

        claimed = gift.model_copy(update={"user_id": user.user_id, "is_active": True, "updated_at": now})
        outcome = self.repository.activate_user_package(
            claimed,
            expected_active_package_id=user.active_package_id,
            now=now,
        )
        if outcome is None:
            raise ConcurrentActivationError("Gift code could not be redeemed; please retry")

        logger.info(
            "Gift code redeemed",
            extra={"user_id": user.user_id, "user_package_id": claimed.user_package_id},
        )
        package = self.repository.get_package(gift.package_id)
        prescription = self._maybe_generate_prescription(outcome.user)
        return ProvisioningResult(
            user_package=outcome.user_package,
            user=outcome.user,
            package=package,
            superseded_ids=outcome.superseded_ids,
            prescription=prescription,
        )


__all__ = ["GIFT_CARD_PURCHASE_TYPE", "ProvisioningService", "price_from_metadata"]
