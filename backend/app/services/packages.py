"""Application wiring for the package services and their external collaborators."""
from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Mapping, Optional, Sequence
from urllib import error as urllib_error, request as urllib_request

import stripe

from ...mail import EmailProvider, create_email_provider, load_email_config
from ..packages import (
    Package,
    PackageNotifier,
    PackageService,
    PaymentVerification,
    PaymentVerifier,
    PrescriptionGenerator,
    PrescriptionResult,
    ProvisioningService,
    UserAccount,
    UserPackage,
)
from ..packages.config import PackageConfig, load_package_config
from ..packages.repository import PostgresGiftCardStore, PostgresPackageRepository

logger = logging.getLogger("packages")

SANDBOX_FAILED_PREFIX = "sandbox_failed_"


def verification_from_payment_intent(intent: Mapping[str, Any]) -> PaymentVerification:
    """Map a Stripe PaymentIntent object onto :class:`PaymentVerification`."""

    metadata = intent.get("metadata") or {}
    return PaymentVerification(
        reference=str(intent["id"]),
        status=str(intent.get("status") or "unknown"),
        amount=intent.get("amount"),
        currency=(intent.get("currency") or "").upper() or None,
        metadata={str(key): str(value) for key, value in metadata.items()},
    )


class StripePaymentVerifier(PaymentVerifier):
    """Retrieves PaymentIntents from Stripe without client side retries."""

    def __init__(self, *, api_key: str, timeout_seconds: float) -> None:
        stripe.api_key = api_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    def verify_payment(self, reference: str) -> PaymentVerification:
        intent = stripe.PaymentIntent.retrieve(reference)
        return verification_from_payment_intent(intent)


class SandboxPaymentVerifier(PaymentVerifier):
    """Local development verifier; every reference succeeds unless marked as failed."""

    def verify_payment(self, reference: str) -> PaymentVerification:
        if reference.startswith(SANDBOX_FAILED_PREFIX):
            return PaymentVerification(reference=reference, status="requires_payment_method")
        return PaymentVerification(reference=reference, status="succeeded")


class UnconfiguredPaymentVerifier(PaymentVerifier):
    def verify_payment(self, reference: str) -> PaymentVerification:
        raise RuntimeError("Payment verification is not configured")


def create_payment_verifier(config: PackageConfig) -> PaymentVerifier:
    if config.stripe_secret_key:
        return StripePaymentVerifier(
            api_key=config.stripe_secret_key,
            timeout_seconds=config.stripe_timeout_seconds,
        )
    if config.payment_sandbox_enabled:
        logger.warning("Using sandbox payment verification; payments are not checked")
        return SandboxPaymentVerifier()
    logger.warning("No payment verifier configured; payment confirmation will fail")
    return UnconfiguredPaymentVerifier()


class HttpPrescriptionGenerator(PrescriptionGenerator):
    """Calls the prescription service over HTTP."""

    def __init__(self, *, base_url: str, timeout_seconds: float) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def generate(self, user_id: str) -> PrescriptionResult:
        body = json.dumps({"userId": user_id}).encode("utf-8")
        req = urllib_request.Request(
            f"{self.base_url}/prescriptions/generate",
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib_request.urlopen(req, timeout=self.timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except (urllib_error.URLError, urllib_error.HTTPError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning(
                "Prescription service call failed",
                extra={"user_id": user_id, "error": str(exc)},
            )
            return PrescriptionResult(success=False, message=str(exc))

        data = payload.get("data") or {}
        return PrescriptionResult(
            success=bool(payload.get("success")),
            prescription_id=data.get("prescriptionId") or payload.get("prescriptionId"),
            message=payload.get("message"),
        )


class LoggingPrescriptionGenerator(PrescriptionGenerator):
    """Stand-in used when no prescription service is configured."""

    def generate(self, user_id: str) -> PrescriptionResult:
        logger.info("Prescription generation requested without a configured service", extra={"user_id": user_id})
        return PrescriptionResult(success=False, message="Prescription service is not configured")


def create_prescription_generator(config: PackageConfig) -> PrescriptionGenerator:
    if config.prescription_service_url:
        return HttpPrescriptionGenerator(
            base_url=config.prescription_service_url,
            timeout_seconds=config.prescription_timeout_seconds,
        )
    return LoggingPrescriptionGenerator()


def _format_price(user_package: UserPackage) -> str:
    return f"{user_package.price:.2f} {user_package.currency.value}"


class EmailPackageNotifier(PackageNotifier):
    """Sends plain purchase confirmations through the configured email provider."""

    def __init__(self, *, provider: EmailProvider, admin_emails: Sequence[str], app_base_url: str) -> None:
        self.provider = provider
        self.admin_emails = tuple(admin_emails)
        self.app_base_url = app_base_url

    def notify_purchase(self, user: UserAccount, user_package: UserPackage, package: Package) -> None:
        if not user.email:
            logger.info("Skipping purchase confirmation; user has no email", extra={"user_id": user.user_id})
            return
        greeting = f"Hi {user.name}," if user.name else "Hi,"
        expiry = user_package.expiry_date.strftime("%d %B %Y")
        dashboard = f"{self.app_base_url}/dashboard"
        text_body = (
            f"{greeting}\n\n"
            f"Thank you for purchasing the {package.name}.\n"
            f"Amount paid: {_format_price(user_package)}\n"
            f"Your access is valid until {expiry}.\n\n"
            f"Visit {dashboard} to get started."
        )
        html_body = (
            f"<p>{greeting}</p>"
            f"<p>Thank you for purchasing the <strong>{package.name}</strong>.</p>"
            f"<p>Amount paid: {_format_price(user_package)}<br>Your access is valid until {expiry}.</p>"
            f'<p><a href="{dashboard}">Go to your dashboard</a></p>'
        )
        self.provider.send_email(user.email, f"Your {package.name} is active", html_body, text_body)

    def notify_admin_purchase(self, user: UserAccount, user_package: UserPackage, package: Package) -> None:
        if not self.admin_emails:
            return
        subject = f"New package purchase: {package.name}"
        text_body = (
            f"User: {user.name or '-'} <{user.email or '-'}> ({user.user_id})\n"
            f"Package: {package.name} ({package.package_type.value})\n"
            f"Amount: {_format_price(user_package)}\n"
            f"Payment: {user_package.payment_method.value} {user_package.payment_id or '-'}"
        )
        html_body = "<br>".join(text_body.splitlines())
        for recipient in self.admin_emails:
            self.provider.send_email(recipient, subject, html_body, text_body)


@lru_cache(maxsize=1)
def get_package_config() -> PackageConfig:
    return load_package_config()


@lru_cache(maxsize=1)
def get_package_repository() -> PostgresPackageRepository:
    return PostgresPackageRepository()


@lru_cache(maxsize=1)
def get_prescription_generator() -> PrescriptionGenerator:
    return create_prescription_generator(get_package_config())


@lru_cache(maxsize=1)
def get_package_service() -> PackageService:
    return PackageService(
        repository=get_package_repository(),
        prescription_generator=get_prescription_generator(),
        payment_verifier=create_payment_verifier(get_package_config()),
    )


@lru_cache(maxsize=1)
def get_provisioning_service() -> ProvisioningService:
    config = get_package_config()
    email_config = load_email_config()
    notifier = EmailPackageNotifier(
        provider=create_email_provider(email_config),
        admin_emails=email_config.admin_emails,
        app_base_url=email_config.app_base_url,
    )
    return ProvisioningService(
        repository=get_package_repository(),
        gift_cards=PostgresGiftCardStore(),
        verifier=create_payment_verifier(config),
        prescription_generator=get_prescription_generator(),
        notifier=notifier,
    )


def get_stripe_webhook_secret() -> Optional[str]:
    return get_package_config().stripe_webhook_secret


__all__ = [
    "EmailPackageNotifier",
    "HttpPrescriptionGenerator",
    "LoggingPrescriptionGenerator",
    "SandboxPaymentVerifier",
    "StripePaymentVerifier",
    "UnconfiguredPaymentVerifier",
    "create_payment_verifier",
    "create_prescription_generator",
    "get_package_config",
    "get_package_service",
    "get_provisioning_service",
    "get_stripe_webhook_secret",
    "verification_from_payment_intent",
]
