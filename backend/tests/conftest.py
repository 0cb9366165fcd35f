"""In-memory collaborators shared by the package tests."""
from __future__ import annotations

import itertools
import pathlib
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Set

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app.packages import (  # noqa: E402
    NO_PACKAGE,
    ActivationOutcome,
    GiftCard,
    GiftCardStore,
    Package,
    PackageNotifier,
    PackageRepository,
    PackageService,
    PaymentVerification,
    PaymentVerifier,
    PrescriptionGenerator,
    PrescriptionResult,
    ProvisioningService,
    RenewalHistoryEntry,
    UserAccount,
    UserPackage,
    default_packages,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryPackageRepository(PackageRepository):
    def __init__(self) -> None:
        self.packages: Dict[str, Package] = {}
        self.users: Dict[str, UserAccount] = {}
        self.user_packages: Dict[str, UserPackage] = {}
        self.history: List[RenewalHistoryEntry] = []
        self.questionnaire_updates: Dict[str, datetime] = {}
        self.prescriptions_created: Dict[str, datetime] = {}
        self.failing_deactivations: Set[str] = set()
        self.stuck_deactivations: Set[str] = set()

    def add_user(self, user_id: str, **fields) -> UserAccount:
        user = UserAccount(user_id=user_id, **fields)
        self.users[user_id] = user
        return user

    def list_packages(self, *, include_inactive: bool = False) -> Sequence[Package]:
        return sorted(
            (package for package in self.packages.values() if include_inactive or package.is_active),
            key=lambda package: package.price,
        )

    def get_package(self, package_id: str) -> Optional[Package]:
        return self.packages.get(package_id)

    def save_package(self, package: Package) -> Package:
        self.packages[package.package_id] = package
        return package

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        return self.users.get(user_id)

    def get_user_package(self, user_package_id: str) -> Optional[UserPackage]:
        return self.user_packages.get(user_package_id)

    def list_user_packages(self, user_id: str) -> Sequence[UserPackage]:
        return sorted(
            (item for item in self.user_packages.values() if item.user_id == user_id),
            key=lambda item: item.created_at,
            reverse=True,
        )

    def list_all_user_packages(self) -> Sequence[UserPackage]:
        return sorted(
            (item for item in self.user_packages.values() if item.user_id is not None),
            key=lambda item: item.expiry_date,
        )

    def list_active_user_packages(self) -> Sequence[UserPackage]:
        return sorted(
            (item for item in self.user_packages.values() if item.is_active),
            key=lambda item: item.expiry_date,
        )

    def find_user_package_by_payment(self, user_id: str, payment_id: str) -> Optional[UserPackage]:
        return next(
            (
                item
                for item in self.user_packages.values()
                if item.user_id == user_id and item.payment_id == payment_id
            ),
            None,
        )

    def find_user_package_by_gift_code(self, gift_code: str) -> Optional[UserPackage]:
        return next(
            (item for item in self.user_packages.values() if item.is_gift and item.gift_code == gift_code),
            None,
        )

    def save_user_package(self, user_package: UserPackage) -> UserPackage:
        self.user_packages[user_package.user_package_id] = user_package
        return user_package

    def _payment_taken(self, user_package: UserPackage) -> bool:
        return user_package.payment_id is not None and any(
            other.payment_id == user_package.payment_id and other.user_package_id != user_package.user_package_id
            for other in self.user_packages.values()
        )

    def activate_user_package(
        self,
        user_package: UserPackage,
        *,
        expected_active_package_id: Optional[str],
        now: datetime,
    ) -> Optional[ActivationOutcome]:
        user = self.users.get(user_package.user_id)
        if user is None or user.active_package_id != expected_active_package_id:
            return None
        existing = self.user_packages.get(user_package.user_package_id)
        if existing is not None and existing.user_id is not None:
            return None
        if self._payment_taken(user_package):
            return None

        superseded: List[str] = []
        for other in list(self.user_packages.values()):
            if (
                other.user_id == user_package.user_id
                and other.is_active
                and other.user_package_id != user_package.user_package_id
            ):
                self.user_packages[other.user_package_id] = other.model_copy(
                    update={"is_active": False, "is_renewal_eligible": False, "updated_at": now}
                )
                superseded.append(other.user_package_id)

        stored = user_package.model_copy(update={"is_active": True})
        self.user_packages[stored.user_package_id] = stored
        updated_user = user.model_copy(
            update={"package_type": stored.package_type.value, "active_package_id": stored.user_package_id}
        )
        self.users[user.user_id] = updated_user
        return ActivationOutcome(user_package=stored, user=updated_user, superseded_ids=tuple(superseded))

    def deactivate_expired_package(self, user_package_id: str, *, now: datetime) -> Optional[UserPackage]:
        if user_package_id in self.failing_deactivations:
            raise RuntimeError("database unavailable")
        if user_package_id in self.stuck_deactivations:
            return None
        user_package = self.user_packages.get(user_package_id)
        if user_package is None or not user_package.is_active or not now > user_package.expiry_date:
            return None
        updated = user_package.model_copy(update={"is_active": False, "is_renewal_eligible": False, "updated_at": now})
        self.user_packages[user_package_id] = updated
        user = self.users.get(user_package.user_id)
        if user is not None and user.active_package_id == user_package_id:
            self.users[user.user_id] = user.model_copy(update={"package_type": NO_PACKAGE, "active_package_id": None})
        return updated

    def reset_user_package_pointer(self, user_id: str, *, expected_active_package_id: str) -> Optional[UserAccount]:
        user = self.users.get(user_id)
        if user is None or user.active_package_id != expected_active_package_id:
            return None
        updated = user.model_copy(update={"package_type": NO_PACKAGE, "active_package_id": None})
        self.users[user_id] = updated
        return updated

    def commit_renewal(
        self,
        *,
        previous: UserPackage,
        renewed: UserPackage,
        history: RenewalHistoryEntry,
    ) -> Optional[UserAccount]:
        user = self.users.get(renewed.user_id)
        if user is None or user.active_package_id != previous.user_package_id:
            return None
        current = self.user_packages.get(previous.user_package_id)
        if current is None or not current.is_active or current.renewed_to_package_id:
            return None
        if self._payment_taken(renewed):
            return None

        self.user_packages[previous.user_package_id] = previous
        self.user_packages[renewed.user_package_id] = renewed
        self.history.append(history)
        updated = user.model_copy(
            update={"package_type": renewed.package_type.value, "active_package_id": renewed.user_package_id}
        )
        self.users[user.user_id] = updated
        return updated

    def list_renewal_history(self, user_id: str) -> Sequence[RenewalHistoryEntry]:
        return sorted(
            (entry for entry in self.history if entry.user_id == user_id),
            key=lambda entry: entry.renewal_date,
            reverse=True,
        )

    def latest_questionnaire_update(self, user_id: str) -> Optional[datetime]:
        return self.questionnaire_updates.get(user_id)

    def latest_prescription_created(self, user_id: str) -> Optional[datetime]:
        return self.prescriptions_created.get(user_id)


class InMemoryGiftCardStore(GiftCardStore):
    def __init__(self) -> None:
        self.cards: Dict[str, GiftCard] = {}
        self.error: Optional[Exception] = None

    def add(self, code: str, amount: float, *, expiry_date: datetime, amount_used: float = 0) -> GiftCard:
        card = GiftCard(code=code, amount=amount, amount_used=amount_used, expiry_date=expiry_date)
        self.cards[code] = card
        return card

    def find_by_code(self, code: str) -> Optional[GiftCard]:
        return self.cards.get(code)

    def apply_deduction(self, code: str, amount: float, *, user_id: str, now: datetime) -> Optional[GiftCard]:
        if self.error is not None:
            raise self.error
        card = self.cards.get(code)
        if card is None or card.is_expired(now) or card.remaining_balance < amount:
            return None
        used = card.amount_used + amount
        exhausted = used >= card.amount
        updated = card.model_copy(
            update={
                "amount_used": used,
                "is_redeemed": exhausted,
                "redeemed_at": now if exhausted else card.redeemed_at,
                "redeemed_by": user_id,
            }
        )
        self.cards[code] = updated
        return updated


class StubPaymentVerifier(PaymentVerifier):
    def __init__(self) -> None:
        self.payments: Dict[str, PaymentVerification] = {}
        self.calls: List[str] = []
        self.error: Optional[Exception] = None

    def succeed(self, reference: str, **metadata: str) -> PaymentVerification:
        verification = PaymentVerification(reference=reference, status="succeeded", metadata=metadata)
        self.payments[reference] = verification
        return verification

    def verify_payment(self, reference: str) -> PaymentVerification:
        self.calls.append(reference)
        if self.error is not None:
            raise self.error
        return self.payments.get(reference) or PaymentVerification(reference=reference, status="requires_payment_method")


class RecordingPrescriptionGenerator(PrescriptionGenerator):
    def __init__(self) -> None:
        self.calls: List[str] = []
        self.error: Optional[Exception] = None
        self.result = PrescriptionResult(success=True, prescription_id="rx_1")

    def generate(self, user_id: str) -> PrescriptionResult:
        self.calls.append(user_id)
        if self.error is not None:
            raise self.error
        return self.result


class RecordingNotifier(PackageNotifier):
    def __init__(self) -> None:
        self.purchases: List[str] = []
        self.admin_purchases: List[str] = []
        self.error: Optional[Exception] = None

    def notify_purchase(self, user: UserAccount, user_package: UserPackage, package: Package) -> None:
        if self.error is not None:
            raise self.error
        self.purchases.append(user_package.user_package_id)

    def notify_admin_purchase(self, user: UserAccount, user_package: UserPackage, package: Package) -> None:
        if self.error is not None:
            raise self.error
        self.admin_purchases.append(user_package.user_package_id)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def repository() -> InMemoryPackageRepository:
    repo = InMemoryPackageRepository()
    for package in default_packages():
        repo.save_package(package)
    repo.add_user("user-1", email="ada@example.com", name="Ada")
    return repo


@pytest.fixture
def gift_cards() -> InMemoryGiftCardStore:
    return InMemoryGiftCardStore()


@pytest.fixture
def verifier() -> StubPaymentVerifier:
    return StubPaymentVerifier()


@pytest.fixture
def prescriptions() -> RecordingPrescriptionGenerator:
    return RecordingPrescriptionGenerator()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def package_service(repository, prescriptions, verifier, clock) -> PackageService:
    return PackageService(
        repository=repository,
        prescription_generator=prescriptions,
        clock=clock,
        payment_verifier=verifier,
    )


@pytest.fixture
def provisioning_service(repository, gift_cards, verifier, prescriptions, notifier, clock) -> ProvisioningService:
    return ProvisioningService(
        repository=repository,
        gift_cards=gift_cards,
        verifier=verifier,
        prescription_generator=prescriptions,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def make_user_package(repository, clock):
    """Store an entitlement for a user and, when active, point the user at it."""

    counter = itertools.count(1)

    def factory(
        *,
        user_id: str = "user-1",
        package_id: str = "pkg_basic",
        expires_in: timedelta = timedelta(days=10),
        is_active: bool = True,
        point_user: bool = True,
        **fields,
    ) -> UserPackage:
        package = repository.packages[package_id]
        number = next(counter)
        now = clock()
        values = dict(
            user_package_id=f"up_{number}",
            user_id=user_id,
            package_id=package.package_id,
            package_type=package.package_type,
            purchase_date=now - timedelta(days=1),
            expiry_date=now + expires_in,
            price=package.price,
            payment_id=f"pay_{number}",
            is_active=is_active,
            created_at=now - timedelta(days=1),
            updated_at=now - timedelta(days=1),
        )
        values.update(fields)
        user_package = repository.save_user_package(UserPackage(**values))
        if point_user and is_active:
            user = repository.users[user_id]
            repository.users[user_id] = user.model_copy(
                update={
                    "package_type": user_package.package_type.value,
                    "active_package_id": user_package.user_package_id,
                }
            )
        return user_package

    return factory
