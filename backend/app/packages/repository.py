"""PostgreSQL persistence for packages, entitlements, renewal history and gift cards."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .models import (
    NO_PACKAGE,
    ActivationOutcome,
    Currency,
    GiftCard,
    Package,
    PackageSnapshot,
    PackageType,
    PaymentMethod,
    PaymentStatus,
    RenewalHistoryEntry,
    UserAccount,
    UserPackage,
)

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]

logger = logging.getLogger(__name__)


class _ActivationConflict(Exception):
    """Raised inside a transaction to roll back a lost compare-and-swap."""


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def _row_to_package(row: dict) -> Package:
    return Package(
        package_id=row["package_id"],
        name=row["name"],
        package_type=PackageType(row["package_type"]),
        price=float(row["price"]),
        duration_days=int(row["duration_days"]),
        description=row.get("description") or "",
        features=tuple(row.get("features") or ()),
        max_prescriptions=int(row.get("max_prescriptions") or 0),
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_user_package(row: dict) -> UserPackage:
    return UserPackage(
        user_package_id=row["user_package_id"],
        user_id=row.get("user_id"),
        package_id=row["package_id"],
        package_type=PackageType(row["package_type"]),
        purchase_date=row["purchase_date"],
        expiry_date=row["expiry_date"],
        price=float(row["price"]),
        currency=Currency(row["currency"]),
        payment_method=PaymentMethod(row["payment_method"]),
        payment_id=row.get("payment_id"),
        payment_status=PaymentStatus(row["payment_status"]),
        is_active=bool(row["is_active"]),
        is_gift=bool(row["is_gift"]),
        gift_code=row.get("gift_code"),
        is_renewal_eligible=bool(row["is_renewal_eligible"]),
        renewal_eligible_date=row.get("renewal_eligible_date"),
        renewed_from_package_id=row.get("renewed_from_package_id"),
        renewed_to_package_id=row.get("renewed_to_package_id"),
        gift_card_code=row.get("gift_card_code"),
        gift_card_amount_used=_optional_float(row.get("gift_card_amount_used")),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_user(row: dict) -> UserAccount:
    currency = row.get("preferred_currency")
    return UserAccount(
        user_id=str(row["id"]),
        email=row.get("email"),
        name=row.get("name"),
        is_admin=bool(row.get("is_admin")),
        package_type=row.get("package_type") or NO_PACKAGE,
        active_package_id=row.get("active_package_id"),
        has_health_questionnaire=bool(row.get("has_health_questionnaire")),
        preferred_currency=Currency(currency) if currency else None,
    )


def _row_to_history(row: dict) -> RenewalHistoryEntry:
    return RenewalHistoryEntry(
        history_id=row["history_id"],
        user_id=row["user_id"],
        previous_package=PackageSnapshot.model_validate(row["previous_package"]),
        new_package=PackageSnapshot.model_validate(row["new_package"]),
        renewal_date=row["renewal_date"],
    )


def _row_to_gift_card(row: dict) -> GiftCard:
    return GiftCard(
        code=row["code"],
        amount=float(row["amount"]),
        amount_used=float(row["amount_used"]),
        currency=Currency(row["currency"]),
        is_redeemed=bool(row["is_redeemed"]),
        redeemed_at=row.get("redeemed_at"),
        redeemed_by=row.get("redeemed_by"),
        expiry_date=row["expiry_date"],
    )


def _user_package_params(user_package: UserPackage) -> Dict[str, Any]:
    return {
        "user_package_id": user_package.user_package_id,
        "user_id": user_package.user_id,
        "package_id": user_package.package_id,
        "package_type": user_package.package_type.value,
        "purchase_date": user_package.purchase_date,
        "expiry_date": user_package.expiry_date,
        "price": user_package.price,
        "currency": user_package.currency.value,
        "payment_method": user_package.payment_method.value,
        "payment_id": user_package.payment_id,
        "payment_status": user_package.payment_status.value,
        "is_active": user_package.is_active,
        "is_gift": user_package.is_gift,
        "gift_code": user_package.gift_code,
        "is_renewal_eligible": user_package.is_renewal_eligible,
        "renewal_eligible_date": user_package.renewal_eligible_date,
        "renewed_from_package_id": user_package.renewed_from_package_id,
        "renewed_to_package_id": user_package.renewed_to_package_id,
        "gift_card_code": user_package.gift_card_code,
        "gift_card_amount_used": user_package.gift_card_amount_used,
        "created_at": user_package.created_at,
        "updated_at": user_package.updated_at,
    }


_INSERT_USER_PACKAGE = """
    INSERT INTO user_packages (
        user_package_id,
        user_id,
        package_id,
        package_type,
        purchase_date,
        expiry_date,
        price,
        currency,
        payment_method,
        payment_id,
        payment_status,
        is_active,
        is_gift,
        gift_code,
        is_renewal_eligible,
        renewal_eligible_date,
        renewed_from_package_id,
        renewed_to_package_id,
        gift_card_code,
        gift_card_amount_used,
        created_at,
        updated_at
    )
    VALUES (%(user_package_id)s, %(user_id)s, %(package_id)s, %(package_type)s,
            %(purchase_date)s, %(expiry_date)s, %(price)s, %(currency)s,
            %(payment_method)s, %(payment_id)s, %(payment_status)s, %(is_active)s,
            %(is_gift)s, %(gift_code)s, %(is_renewal_eligible)s, %(renewal_eligible_date)s,
            %(renewed_from_package_id)s, %(renewed_to_package_id)s, %(gift_card_code)s,
            %(gift_card_amount_used)s, %(created_at)s, %(updated_at)s)
"""

_UPDATE_USER_POINTER = """
    UPDATE users
    SET package_type = %(package_type)s,
        active_package_id = %(active_package_id)s,
        updated_at = NOW()
    WHERE id = %(user_id)s
      AND active_package_id IS NOT DISTINCT FROM %(expected_active_package_id)s
    RETURNING *
"""


class PostgresPackageRepository:
    """Concrete repository persisting catalog packages and entitlements in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    # Catalog -----------------------------------------------------------------

    def list_packages(self, *, include_inactive: bool = False) -> List[Package]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM packages
                WHERE is_active OR %s
                ORDER BY price ASC, name ASC
                """,
                (include_inactive,),
            )
            return [_row_to_package(row) for row in cursor.fetchall()]

    def get_package(self, package_id: str) -> Optional[Package]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM packages WHERE package_id = %s LIMIT 1", (package_id,))
            row = cursor.fetchone()
            return _row_to_package(row) if row else None

    def save_package(self, package: Package) -> Package:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO packages (
                    package_id,
                    name,
                    package_type,
                    price,
                    duration_days,
                    description,
                    features,
                    max_prescriptions,
                    is_active,
                    created_at,
                    updated_at
                )
                VALUES (%(package_id)s, %(name)s, %(package_type)s, %(price)s, %(duration_days)s,
                        %(description)s, %(features)s, %(max_prescriptions)s, %(is_active)s,
                        %(created_at)s, %(updated_at)s)
                ON CONFLICT (package_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    price = EXCLUDED.price,
                    duration_days = EXCLUDED.duration_days,
                    description = EXCLUDED.description,
                    features = EXCLUDED.features,
                    max_prescriptions = EXCLUDED.max_prescriptions,
                    is_active = EXCLUDED.is_active,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                {
                    "package_id": package.package_id,
                    "name": package.name,
                    "package_type": package.package_type.value,
                    "price": package.price,
                    "duration_days": package.duration_days,
                    "description": package.description,
                    "features": psycopg2.extras.Json(list(package.features)),
                    "max_prescriptions": package.max_prescriptions,
                    "is_active": package.is_active,
                    "created_at": package.created_at,
                    "updated_at": package.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist package")
            return _row_to_package(row)

    # Users and entitlements --------------------------------------------------

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM users WHERE id = %s LIMIT 1", (user_id,))
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def get_user_package(self, user_package_id: str) -> Optional[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM user_packages WHERE user_package_id = %s LIMIT 1",
                (user_package_id,),
            )
            row = cursor.fetchone()
            return _row_to_user_package(row) if row else None

    def list_user_packages(self, user_id: str) -> List[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM user_packages
                WHERE user_id = %s
                ORDER BY purchase_date DESC, created_at DESC
                """,
                (user_id,),
            )
            return [_row_to_user_package(row) for row in cursor.fetchall()]

    def list_all_user_packages(self) -> List[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM user_packages WHERE user_id IS NOT NULL ORDER BY expiry_date ASC")
            return [_row_to_user_package(row) for row in cursor.fetchall()]

    def list_active_user_packages(self) -> List[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM user_packages WHERE is_active ORDER BY expiry_date ASC")
            return [_row_to_user_package(row) for row in cursor.fetchall()]

    def find_user_package_by_payment(self, user_id: str, payment_id: str) -> Optional[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM user_packages
                WHERE user_id = %s AND payment_id = %s
                LIMIT 1
                """,
                (user_id, payment_id),
            )
            row = cursor.fetchone()
            return _row_to_user_package(row) if row else None

    def find_user_package_by_gift_code(self, gift_code: str) -> Optional[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM user_packages WHERE gift_code = %s AND is_gift LIMIT 1",
                (gift_code,),
            )
            row = cursor.fetchone()
            return _row_to_user_package(row) if row else None

    def save_user_package(self, user_package: UserPackage) -> UserPackage:
        with self._cursor() as cursor:
            cursor.execute(
                _INSERT_USER_PACKAGE
                + """
                ON CONFLICT (user_package_id) DO UPDATE SET
                    is_renewal_eligible = EXCLUDED.is_renewal_eligible,
                    renewal_eligible_date = EXCLUDED.renewal_eligible_date,
                    gift_card_code = EXCLUDED.gift_card_code,
                    gift_card_amount_used = EXCLUDED.gift_card_amount_used,
                    payment_status = EXCLUDED.payment_status,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                _user_package_params(user_package),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist user package")
            return _row_to_user_package(row)

    def activate_user_package(
        self,
        user_package: UserPackage,
        *,
        expected_active_package_id: Optional[str],
        now: datetime,
    ) -> Optional[ActivationOutcome]:
        if user_package.user_id is None:
            raise ValueError("Only packages bound to a user can be activated")
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    _UPDATE_USER_POINTER,
                    {
                        "package_type": user_package.package_type.value,
                        "active_package_id": user_package.user_package_id,
                        "user_id": user_package.user_id,
                        "expected_active_package_id": expected_active_package_id,
                    },
                )
                user_row = cursor.fetchone()
                if not user_row:
                    raise _ActivationConflict()

                cursor.execute(
                    """
                    UPDATE user_packages
                    SET is_active = FALSE, is_renewal_eligible = FALSE, updated_at = %s
                    WHERE user_id = %s AND is_active AND user_package_id <> %s
                    RETURNING user_package_id
                    """,
                    (now, user_package.user_id, user_package.user_package_id),
                )
                superseded = tuple(row["user_package_id"] for row in cursor.fetchall())

                # An existing row is only an unclaimed gift being bound to its first owner.
                cursor.execute(
                    _INSERT_USER_PACKAGE
                    + """
                    ON CONFLICT (user_package_id) DO UPDATE SET
                        user_id = EXCLUDED.user_id,
                        is_active = TRUE,
                        updated_at = EXCLUDED.updated_at
                    WHERE user_packages.user_id IS NULL
                    RETURNING *
                    """,
                    _user_package_params(user_package),
                )
                package_row = cursor.fetchone()
                if not package_row:
                    raise _ActivationConflict()
        except _ActivationConflict:
            logger.info(
                "Package activation lost a concurrent update",
                extra={"user_id": user_package.user_id, "user_package_id": user_package.user_package_id},
            )
            return None
        except psycopg2.errors.UniqueViolation:
            logger.info(
                "Package activation hit a unique constraint",
                extra={"user_id": user_package.user_id, "payment_id": user_package.payment_id},
            )
            return None

        return ActivationOutcome(
            user_package=_row_to_user_package(package_row),
            user=_row_to_user(user_row),
            superseded_ids=superseded,
        )

    def deactivate_expired_package(self, user_package_id: str, *, now: datetime) -> Optional[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE user_packages
                SET is_active = FALSE, is_renewal_eligible = FALSE, updated_at = %(now)s
                WHERE user_package_id = %(user_package_id)s
                  AND is_active
                  AND expiry_date < %(now)s
                RETURNING *
                """,
                {"user_package_id": user_package_id, "now": now},
            )
            row = cursor.fetchone()
            if not row:
                return None
            cursor.execute(
                """
                UPDATE users
                SET package_type = %s, active_package_id = NULL, updated_at = NOW()
                WHERE id = %s AND active_package_id = %s
                """,
                (NO_PACKAGE, row["user_id"], user_package_id),
            )
            return _row_to_user_package(row)

    def reset_user_package_pointer(self, user_id: str, *, expected_active_package_id: str) -> Optional[UserAccount]:
        with self._cursor() as cursor:
            cursor.execute(
                _UPDATE_USER_POINTER,
                {
                    "package_type": NO_PACKAGE,
                    "active_package_id": None,
                    "user_id": user_id,
                    "expected_active_package_id": expected_active_package_id,
                },
            )
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def commit_renewal(
        self,
        *,
        previous: UserPackage,
        renewed: UserPackage,
        history: RenewalHistoryEntry,
    ) -> Optional[UserAccount]:
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    _UPDATE_USER_POINTER,
                    {
                        "package_type": renewed.package_type.value,
                        "active_package_id": renewed.user_package_id,
                        "user_id": renewed.user_id,
                        "expected_active_package_id": previous.user_package_id,
                    },
                )
                user_row = cursor.fetchone()
                if not user_row:
                    raise _ActivationConflict()

                cursor.execute(
                    """
                    UPDATE user_packages
                    SET is_active = FALSE,
                        is_renewal_eligible = FALSE,
                        renewed_to_package_id = %(renewed_to)s,
                        updated_at = %(updated_at)s
                    WHERE user_package_id = %(user_package_id)s
                      AND is_active
                      AND renewed_to_package_id IS NULL
                    """,
                    {
                        "renewed_to": renewed.user_package_id,
                        "updated_at": previous.updated_at,
                        "user_package_id": previous.user_package_id,
                    },
                )
                if cursor.rowcount != 1:
                    raise _ActivationConflict()

                cursor.execute(_INSERT_USER_PACKAGE, _user_package_params(renewed))
                cursor.execute(
                    """
                    INSERT INTO renewal_history (history_id, user_id, previous_package, new_package, renewal_date)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        history.history_id,
                        history.user_id,
                        psycopg2.extras.Json(history.previous_package.model_dump(mode="json")),
                        psycopg2.extras.Json(history.new_package.model_dump(mode="json")),
                        history.renewal_date,
                    ),
                )
        except (_ActivationConflict, psycopg2.errors.UniqueViolation):
            logger.info(
                "Renewal lost a concurrent update",
                extra={"user_id": renewed.user_id, "previous_user_package_id": previous.user_package_id},
            )
            return None
        return _row_to_user(user_row)

    def list_renewal_history(self, user_id: str) -> List[RenewalHistoryEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM renewal_history
                WHERE user_id = %s
                ORDER BY renewal_date DESC
                """,
                (user_id,),
            )
            return [_row_to_history(row) for row in cursor.fetchall()]

    def latest_questionnaire_update(self, user_id: str) -> Optional[datetime]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT MAX(updated_at) AS latest FROM health_questionnaires WHERE user_id = %s",
                (user_id,),
            )
            row = cursor.fetchone()
            return row["latest"] if row else None

    def latest_prescription_created(self, user_id: str) -> Optional[datetime]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT MAX(created_at) AS latest FROM prescriptions WHERE user_id = %s",
                (user_id,),
            )
            row = cursor.fetchone()
            return row["latest"] if row else None


class PostgresGiftCardStore:
    """Reads gift cards and applies conditional balance deductions."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def find_by_code(self, code: str) -> Optional[GiftCard]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM gift_cards WHERE code = %s LIMIT 1", (code,))
            row = cursor.fetchone()
            return _row_to_gift_card(row) if row else None

    def apply_deduction(self, code: str, amount: float, *, user_id: str, now: datetime) -> Optional[GiftCard]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE gift_cards
                SET amount_used = amount_used + %(amount)s,
                    is_redeemed = (amount - amount_used - %(amount)s) <= 0,
                    redeemed_at = CASE
                        WHEN (amount - amount_used - %(amount)s) <= 0 THEN %(now)s
                        ELSE redeemed_at
                    END,
                    redeemed_by = %(user_id)s
                WHERE code = %(code)s
                  AND NOT is_redeemed
                  AND expiry_date >= %(now)s
                  AND amount - amount_used >= %(amount)s
                RETURNING *
                """,
                {"amount": amount, "now": now, "user_id": user_id, "code": code},
            )
            row = cursor.fetchone()
            return _row_to_gift_card(row) if row else None


__all__ = ["PostgresGiftCardStore", "PostgresPackageRepository", "managed_connection"]
