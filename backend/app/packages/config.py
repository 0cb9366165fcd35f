"""Configuration for payment, prescription and scheduled package jobs."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from ...mail.config import _to_bool, _to_float, _to_int


@dataclass(frozen=True)
class PackageConfig:
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    stripe_timeout_seconds: float
    payment_sandbox_enabled: bool
    prescription_service_url: Optional[str]
    prescription_timeout_seconds: float
    seed_default_catalog: bool
    expiry_sweep_enabled: bool
    expiry_sweep_interval_seconds: int
    expiry_sweep_run_cleanup: bool
    renewal_refresh_enabled: bool
    renewal_refresh_interval_seconds: int


def load_package_config(env: Optional[Mapping[str, str]] = None) -> PackageConfig:
    """Load :class:`PackageConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    return PackageConfig(
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        stripe_timeout_seconds=max(1.0, _to_float(env_mapping.get("STRIPE_TIMEOUT_SECONDS"), default=10.0)),
        payment_sandbox_enabled=_to_bool(env_mapping.get("PAYMENT_SANDBOX_ENABLED"), default=False),
        prescription_service_url=(env_mapping.get("PRESCRIPTION_SERVICE_URL") or "").rstrip("/") or None,
        prescription_timeout_seconds=max(
            1.0, _to_float(env_mapping.get("PRESCRIPTION_TIMEOUT_SECONDS"), default=15.0)
        ),
        seed_default_catalog=_to_bool(env_mapping.get("PACKAGE_SEED_CATALOG"), default=True),
        expiry_sweep_enabled=_to_bool(env_mapping.get("PACKAGE_EXPIRY_SWEEP_ENABLED"), default=True),
        expiry_sweep_interval_seconds=max(
            60, _to_int(env_mapping.get("PACKAGE_EXPIRY_SWEEP_INTERVAL_SECONDS"), default=3600)
        ),
        expiry_sweep_run_cleanup=_to_bool(env_mapping.get("PACKAGE_EXPIRY_SWEEP_CLEANUP"), default=True),
        renewal_refresh_enabled=_to_bool(env_mapping.get("PACKAGE_RENEWAL_REFRESH_ENABLED"), default=True),
        renewal_refresh_interval_seconds=max(
            60, _to_int(env_mapping.get("PACKAGE_RENEWAL_REFRESH_INTERVAL_SECONDS"), default=6 * 3600)
        ),
    )
