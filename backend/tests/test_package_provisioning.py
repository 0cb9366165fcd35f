from __future__ import annotations

import re
from datetime import timedelta

import pytest

from backend.app.packages import (
    GIFT_CARD_PURCHASE_TYPE,
    ConcurrentActivationError,
    Currency,
    ExternalServiceError,
    GiftCardDeduction,
    InvalidPackageStateError,
    PackageNotFoundError,
    PaymentMethod,
    PaymentVerification,
)
from backend.app.packages import provisioning as provisioning_module


def _active_ids(repository, user_id="user-1"):
    return [item.user_package_id for item in repository.user_packages.values() if item.user_id == user_id and item.is_active]


def test_confirm_payment_activates_package(provisioning_service, verifier, repository, notifier, prescriptions, clock):
    verifier.succeed("pi_1", packageId="pkg_basic", userId="user-1", convertedPrice="30.50", currencyUsed="usd")

    result = provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_1", package_id="pkg_basic")

    user_package = result.user_package
    assert result.duplicate is False
    assert user_package.is_active is True
    assert user_package.payment_id == "pi_1"
    assert user_package.payment_method == PaymentMethod.CREDIT_CARD
    assert user_package.price == pytest.approx(30.5)
    assert user_package.currency == Currency.USD
    assert user_package.expiry_date == clock() + timedelta(days=15)
    assert repository.users["user-1"].active_package_id == user_package.user_package_id
    assert repository.users["user-1"].package_type == "basic"
    assert notifier.purchases == [user_package.user_package_id]
    assert notifier.admin_purchases == [user_package.user_package_id]
    assert result.prescription is None
    assert prescriptions.calls == []


def test_confirm_payment_falls_back_to_catalog_price(provisioning_service, verifier):
    verifier.succeed("pi_1")

    result = provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_1", package_id="pkg_premium")

    assert result.user_package.price == 75
    assert result.user_package.currency == Currency.GBP


def test_confirming_same_payment_twice_is_idempotent(provisioning_service, verifier, repository, notifier):
    verifier.succeed("pi_1", packageId="pkg_basic", userId="user-1")

    first = provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_1", package_id="pkg_basic")
    second = provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_1", package_id="pkg_basic")

    assert second.duplicate is True
    assert second.user_package.user_package_id == first.user_package.user_package_id
    assert len(repository.user_packages) == 1
    assert notifier.purchases == [first.user_package.user_package_id]


def test_new_purchase_supersedes_previous_package(provisioning_service, verifier, repository, make_user_package):
    previous = make_user_package(package_id="pkg_single", expires_in=timedelta(days=2))
    verifier.succeed("pi_2")

    result = provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_2", package_id="pkg_enhanced")

    assert result.superseded_ids == (previous.user_package_id,)
    assert repository.user_packages[previous.user_package_id].is_active is False
    assert _active_ids(repository) == [result.user_package.user_package_id]
    assert repository.users["user-1"].package_type == "enhanced"


def test_unsettled_payment_is_rejected(provisioning_service, repository):
    with pytest.raises(InvalidPackageStateError) as exc_info:
        provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_pending", package_id="pkg_basic")

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "Payment has not been completed"
    assert repository.user_packages == {}


def test_verifier_failure_maps_to_external_error(provisioning_service, verifier, repository):
    verifier.error = ConnectionError("stripe unreachable")

    with pytest.raises(ExternalServiceError) as exc_info:
        provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_1", package_id="pkg_basic")

    assert exc_info.value.status_code == 502
    assert repository.user_packages == {}


def test_payment_for_other_package_is_rejected(provisioning_service, verifier):
    verifier.succeed("pi_1", packageId="pkg_premium", userId="user-1")

    with pytest.raises(InvalidPackageStateError):
        provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_1", package_id="pkg_single")


def test_payment_for_other_user_is_rejected(provisioning_service, verifier):
    verifier.succeed("pi_1", packageId="pkg_basic", userId="user-9")

    with pytest.raises(InvalidPackageStateError):
        provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_1", package_id="pkg_basic")


def test_unknown_or_retired_package_is_rejected(provisioning_service, verifier, repository):
    verifier.succeed("pi_1")
    verifier.succeed("pi_2")
    repository.packages["pkg_basic"] = repository.packages["pkg_basic"].model_copy(update={"is_active": False})

    with pytest.raises(PackageNotFoundError):
        provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_1", package_id="pkg_missing")
    with pytest.raises(InvalidPackageStateError):
        provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_2", package_id="pkg_basic")


def test_gift_card_deduction_is_applied(provisioning_service, verifier, gift_cards, repository, clock):
    gift_cards.add("GIFT-25", 25, expiry_date=clock() + timedelta(days=30))
    verifier.succeed("pi_1")

    result = provisioning_service.confirm_payment(
        user_id="user-1",
        payment_reference="pi_1",
        package_id="pkg_basic",
        gift_card=GiftCardDeduction(code="gift-25", amount_to_use=20),
    )

    assert result.gift_card.applied is True
    assert result.gift_card.amount_used == 20
    assert result.gift_card.remaining_balance == pytest.approx(5)
    stored = repository.user_packages[result.user_package.user_package_id]
    assert stored.gift_card_code == "GIFT-25"
    assert stored.gift_card_amount_used == 20
    assert gift_cards.cards["GIFT-25"].amount_used == 20


def test_insufficient_gift_card_balance_keeps_package(provisioning_service, verifier, gift_cards, repository, clock):
    gift_cards.add("GIFT-20", 20, expiry_date=clock() + timedelta(days=30))
    verifier.succeed("pi_1")

    result = provisioning_service.confirm_payment(
        user_id="user-1",
        payment_reference="pi_1",
        package_id="pkg_basic",
        gift_card=GiftCardDeduction(code="GIFT-20", amount_to_use=25),
    )

    assert result.gift_card.applied is False
    assert result.gift_card.reason == "Insufficient gift card balance"
    assert result.gift_card.remaining_balance == 20
    assert result.user_package.is_active is True
    assert gift_cards.cards["GIFT-20"].amount_used == 0
    assert repository.user_packages[result.user_package.user_package_id].gift_card_code is None


def test_expired_gift_card_is_not_applied(provisioning_service, verifier, gift_cards, clock):
    gift_cards.add("GIFT-OLD", 50, expiry_date=clock() - timedelta(days=1))
    verifier.succeed("pi_1")

    result = provisioning_service.confirm_payment(
        user_id="user-1",
        payment_reference="pi_1",
        package_id="pkg_basic",
        gift_card=GiftCardDeduction(code="GIFT-OLD", amount_to_use=10),
    )

    assert result.gift_card.applied is False
    assert result.gift_card.reason == "Gift card has expired"


def test_gift_card_store_failure_keeps_package(provisioning_service, verifier, gift_cards, clock):
    gift_cards.add("GIFT-25", 25, expiry_date=clock() + timedelta(days=30))
    gift_cards.error = RuntimeError("deadlock detected")
    verifier.succeed("pi_1")

    result = provisioning_service.confirm_payment(
        user_id="user-1",
        payment_reference="pi_1",
        package_id="pkg_basic",
        gift_card=GiftCardDeduction(code="GIFT-25", amount_to_use=10),
    )

    assert result.gift_card.applied is False
    assert result.gift_card.reason == "Gift card deduction failed"
    assert result.user_package.is_active is True


def test_prescription_and_email_failures_are_not_fatal(
    provisioning_service, verifier, repository, prescriptions, notifier
):
    repository.users["user-1"] = repository.users["user-1"].model_copy(update={"has_health_questionnaire": True})
    prescriptions.error = RuntimeError("prescription service down")
    notifier.error = RuntimeError("smtp down")
    verifier.succeed("pi_1")

    result = provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_1", package_id="pkg_basic")

    assert result.prescription.success is False
    assert prescriptions.calls == ["user-1"]
    assert repository.users["user-1"].active_package_id == result.user_package.user_package_id


def test_prescription_is_generated_for_users_with_questionnaire(provisioning_service, verifier, repository, prescriptions):
    repository.users["user-1"] = repository.users["user-1"].model_copy(update={"has_health_questionnaire": True})
    verifier.succeed("pi_1")

    result = provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_1", package_id="pkg_basic")

    assert result.prescription.success is True
    assert result.prescription.prescription_id == "rx_1"


def test_lost_activation_race_without_duplicate_raises_conflict(provisioning_service, verifier, repository, monkeypatch):
    verifier.succeed("pi_1")
    monkeypatch.setattr(repository, "activate_user_package", lambda *args, **kwargs: None)

    with pytest.raises(ConcurrentActivationError):
        provisioning_service.confirm_payment(user_id="user-1", payment_reference="pi_1", package_id="pkg_basic")


def test_payment_event_provisions_once(provisioning_service, repository):
    verification = PaymentVerification(
        reference="pi_hook",
        status="succeeded",
        metadata={"userId": "user-1", "packageId": "pkg_enhanced"},
    )

    first = provisioning_service.provision_from_payment_event(verification)
    second = provisioning_service.provision_from_payment_event(verification)

    assert first.user_package.package_id == "pkg_enhanced"
    assert second.duplicate is True
    assert len(repository.user_packages) == 1


def test_payment_event_skips_unrelated_payments(provisioning_service, repository):
    gift_purchase = PaymentVerification(
        reference="pi_gift",
        status="succeeded",
        metadata={"type": GIFT_CARD_PURCHASE_TYPE, "userId": "user-1", "packageId": "pkg_basic"},
    )
    anonymous = PaymentVerification(reference="pi_anon", status="succeeded")

    assert provisioning_service.provision_from_payment_event(gift_purchase) is None
    assert provisioning_service.provision_from_payment_event(anonymous) is None
    assert repository.user_packages == {}


def test_purchase_rejects_card_and_unknown_methods(provisioning_service):
    with pytest.raises(InvalidPackageStateError):
        provisioning_service.purchase_package(user_id="user-1", package_id="pkg_basic", payment_method="stripe")
    with pytest.raises(InvalidPackageStateError):
        provisioning_service.purchase_package(user_id="user-1", package_id="pkg_basic", payment_method="barter")


def test_manual_purchase_is_recorded_once(provisioning_service, repository):
    first = provisioning_service.purchase_package(
        user_id="user-1", package_id="pkg_basic", payment_method="paypal", payment_id="PAYPAL-1"
    )
    second = provisioning_service.purchase_package(
        user_id="user-1", package_id="pkg_basic", payment_method="paypal", payment_id="PAYPAL-1"
    )

    assert first.user_package.payment_method == PaymentMethod.PAYPAL
    assert second.duplicate is True
    assert len(repository.user_packages) == 1


def test_manual_purchase_generates_reference(provisioning_service):
    result = provisioning_service.purchase_package(
        user_id="user-1", package_id="pkg_single", payment_method="bank_transfer", price=12.5
    )

    assert result.user_package.payment_id.startswith("manual_")
    assert result.user_package.price == 12.5


def test_create_gift_code(provisioning_service, clock):
    gift = provisioning_service.create_gift_code(package_id="pkg_premium")

    assert re.fullmatch(r"[A-Z2-9]{4}-[A-Z2-9]{4}", gift.gift_code)
    assert gift.user_id is None
    assert gift.is_active is False
    assert gift.is_gift is True
    assert gift.payment_method == PaymentMethod.GIFT_CODE
    assert gift.expiry_date == clock() + timedelta(days=30)


def test_create_gift_code_retries_collisions(provisioning_service, repository, monkeypatch):
    existing = provisioning_service.create_gift_code(package_id="pkg_basic", expiry_days=7)
    codes = iter([existing.gift_code, "NEWC-ODE2"])
    monkeypatch.setattr(provisioning_module, "generate_gift_code", lambda: next(codes))

    gift = provisioning_service.create_gift_code(package_id="pkg_basic")

    assert gift.gift_code == "NEWC-ODE2"
    assert existing.expiry_date - existing.purchase_date == timedelta(days=7)


def test_redeem_gift_code_activates_for_user(provisioning_service, repository, make_user_package):
    previous = make_user_package(package_id="pkg_single")
    gift = provisioning_service.create_gift_code(package_id="pkg_enhanced")

    result = provisioning_service.redeem_gift_code(user_id="user-1", code=f"  {gift.gift_code.lower()} ")

    assert result.user_package.user_package_id == gift.user_package_id
    assert result.user_package.user_id == "user-1"
    assert result.user_package.is_active is True
    assert result.superseded_ids == (previous.user_package_id,)
    assert repository.users["user-1"].active_package_id == gift.user_package_id


def test_gift_code_cannot_be_redeemed_twice(provisioning_service, repository):
    repository.add_user("user-2")
    gift = provisioning_service.create_gift_code(package_id="pkg_basic")
    provisioning_service.redeem_gift_code(user_id="user-1", code=gift.gift_code)

    with pytest.raises(InvalidPackageStateError) as exc_info:
        provisioning_service.redeem_gift_code(user_id="user-2", code=gift.gift_code)

    assert exc_info.value.message == "Gift code has already been redeemed"
    assert repository.users["user-2"].active_package_id is None


def test_invalid_or_expired_gift_code(provisioning_service, clock):
    gift = provisioning_service.create_gift_code(package_id="pkg_basic")

    with pytest.raises(PackageNotFoundError):
        provisioning_service.redeem_gift_code(user_id="user-1", code="NOPE-NOPE")

    clock.advance(days=16)
    with pytest.raises(InvalidPackageStateError) as exc_info:
        provisioning_service.redeem_gift_code(user_id="user-1", code=gift.gift_code)
    assert exc_info.value.message == "Gift code has expired"
