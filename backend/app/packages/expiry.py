"""Expiry rules for user entitlements."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from .models import ExpiryAnomaly, ExpirySweepReport, UserPackage

logger = logging.getLogger(__name__)


def is_expired(user_package: UserPackage, now: datetime) -> bool:
    """An entitlement lapses strictly after its expiry instant."""

    return now > user_package.expiry_date


def hours_expired(user_package: UserPackage, now: datetime) -> int:
    return round((now - user_package.expiry_date).total_seconds() / 3600)


def find_expiry_anomalies(packages: Iterable[UserPackage], now: datetime) -> List[ExpiryAnomaly]:
    """Return active entitlements whose expiry instant has already passed."""

    anomalies: List[ExpiryAnomaly] = []
    for user_package in packages:
        if user_package.is_active and is_expired(user_package, now):
            anomalies.append(
                ExpiryAnomaly(
                    user_package_id=user_package.user_package_id,
                    user_id=user_package.user_id,
                    package_type=user_package.package_type,
                    expiry_date=user_package.expiry_date,
                    hours_expired=hours_expired(user_package, now),
                    issue="expired but still active",
                )
            )
    return anomalies


def summarize_packages(packages: Iterable[UserPackage], now: datetime) -> ExpirySweepReport:
    """Count entitlement states before any cleanup has been attempted."""

    snapshot = list(packages)
    active_count = sum(1 for item in snapshot if item.is_active)
    expired = [item for item in snapshot if is_expired(item, now)]
    return ExpirySweepReport(
        checked_at=now,
        total_packages=len(snapshot),
        active_count=active_count,
        inactive_count=len(snapshot) - active_count,
        should_be_expired=len(expired),
        actually_expired=sum(1 for item in expired if not item.is_active),
        anomalies=tuple(find_expiry_anomalies(snapshot, now)),
    )


def log_residual_anomalies(anomalies: Iterable[ExpiryAnomaly], *, checked_at: Optional[datetime] = None) -> None:
    for anomaly in anomalies:
        logger.error(
            "Expiry sweep left an expired package active",
            extra={
                "user_package_id": anomaly.user_package_id,
                "user_id": anomaly.user_id,
                "expiry_date": anomaly.expiry_date.isoformat() if anomaly.expiry_date else None,
                "checked_at": checked_at.isoformat() if checked_at else None,
            },
        )
