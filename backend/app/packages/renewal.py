"""Renewal window, expiry extension and renewal chain helpers."""
from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .expiry import is_expired
from .models import PackageType, UserPackage

RENEWAL_WINDOW = timedelta(hours=36)


def renewal_eligible_date(expiry_date: datetime) -> datetime:
    return expiry_date - RENEWAL_WINDOW


def evaluate_renewal_eligibility(user_package: UserPackage, now: datetime) -> bool:
    """Whether an entitlement may be renewed at ``now``.

    Only active, unexpired entitlements within ``RENEWAL_WINDOW`` of their expiry
    qualify. A lapsed entitlement has to go through a new purchase instead.
    """

    if not user_package.is_active or is_expired(user_package, now):
        return False
    return user_package.expiry_date - now <= RENEWAL_WINDOW


def with_renewal_eligibility(user_package: UserPackage, now: datetime) -> UserPackage:
    """Return a copy carrying freshly computed cached eligibility fields."""

    return user_package.model_copy(
        update={
            "is_renewal_eligible": evaluate_renewal_eligibility(user_package, now),
            "renewal_eligible_date": renewal_eligible_date(user_package.expiry_date),
        }
    )


def compute_renewal_expiry(current_expiry: datetime, duration_days: int, now: datetime) -> datetime:
    """Extend from the current expiry so remaining time is kept.

    A current expiry already in the past restarts the period from ``now``.
    """

    base = now if current_expiry < now else current_expiry
    return base + timedelta(days=duration_days)


def should_regenerate_prescription(
    *,
    previous_type: PackageType,
    new_type: PackageType,
    questionnaire_updated_at: Optional[datetime],
    last_prescription_at: Optional[datetime],
) -> bool:
    """Decide whether a renewal warrants a fresh prescription.

    A tier change always does. Otherwise the latest questionnaire update has to
    be newer than the latest prescription; a user without any prescription yet
    counts as outdated as soon as a questionnaire exists.
    """

    if previous_type != new_type:
        return True
    if questionnaire_updated_at is None:
        return False
    if last_prescription_at is None:
        return True
    return questionnaire_updated_at > last_prescription_at


def days_remaining(expiry_date: datetime, now: datetime) -> int:
    return max(0, math.ceil((expiry_date - now).total_seconds() / 86400))


def walk_renewal_chain(start: UserPackage, arena: Mapping[str, UserPackage]) -> Tuple[UserPackage, ...]:
    """Return the chain containing ``start`` ordered from oldest to newest.

    Links are followed through ``arena`` by id. Each id is visited at most once,
    so a corrupted link can never loop.
    """

    seen: Set[str] = {start.user_package_id}
    backward: List[UserPackage] = []
    current = start
    while current.renewed_from_package_id:
        previous = arena.get(current.renewed_from_package_id)
        if previous is None or previous.user_package_id in seen:
            break
        seen.add(previous.user_package_id)
        backward.append(previous)
        current = previous

    forward: List[UserPackage] = []
    current = start
    while current.renewed_to_package_id:
        following = arena.get(current.renewed_to_package_id)
        if following is None or following.user_package_id in seen:
            break
        seen.add(following.user_package_id)
        forward.append(following)
        current = following

    return tuple(reversed(backward)) + (start,) + tuple(forward)


def build_renewal_chains(packages: Sequence[UserPackage]) -> List[Tuple[UserPackage, ...]]:
    """Group a user's entitlements into renewal chains, newest chain first.

    ``packages`` is expected newest first. Every entitlement appears in exactly
    one chain.
    """

    arena: Dict[str, UserPackage] = {item.user_package_id: item for item in packages}
    processed: Set[str] = set()
    chains: List[Tuple[UserPackage, ...]] = []
    for user_package in packages:
        if user_package.user_package_id in processed:
            continue
        chain = tuple(
            item
            for item in walk_renewal_chain(user_package, arena)
            if item.user_package_id not in processed
        )
        processed.update(item.user_package_id for item in chain)
        chains.append(chain)
    return chains
