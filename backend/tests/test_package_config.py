import json

import pytest

from backend.app.packages.config import load_package_config
from backend.app.services import packages as packages_services
from backend.app.services.packages import (
    HttpPrescriptionGenerator,
    LoggingPrescriptionGenerator,
    SandboxPaymentVerifier,
    StripePaymentVerifier,
    UnconfiguredPaymentVerifier,
    create_payment_verifier,
    create_prescription_generator,
    verification_from_payment_intent,
)


def test_defaults():
    config = load_package_config(env={})

    assert config.stripe_secret_key is None
    assert config.stripe_timeout_seconds == 10.0
    assert config.payment_sandbox_enabled is False
    assert config.prescription_service_url is None
    assert config.seed_default_catalog is True
    assert config.expiry_sweep_enabled is True
    assert config.expiry_sweep_interval_seconds == 3600
    assert config.expiry_sweep_run_cleanup is True
    assert config.renewal_refresh_interval_seconds == 6 * 3600


def test_intervals_have_a_floor():
    config = load_package_config(
        env={
            "PACKAGE_EXPIRY_SWEEP_INTERVAL_SECONDS": "5",
            "PACKAGE_RENEWAL_REFRESH_INTERVAL_SECONDS": "10",
        }
    )

    assert config.expiry_sweep_interval_seconds == 60
    assert config.renewal_refresh_interval_seconds == 60


def test_invalid_numbers_are_rejected():
    with pytest.raises(ValueError):
        load_package_config(env={"STRIPE_TIMEOUT_SECONDS": "soon"})


def test_verifier_selection():
    assert isinstance(create_payment_verifier(load_package_config(env={})), UnconfiguredPaymentVerifier)
    sandbox = create_payment_verifier(load_package_config(env={"PAYMENT_SANDBOX_ENABLED": "true"}))
    assert isinstance(sandbox, SandboxPaymentVerifier)
    stripe_verifier = create_payment_verifier(load_package_config(env={"STRIPE_SECRET_KEY": "sk_test_123"}))
    assert isinstance(stripe_verifier, StripePaymentVerifier)


def test_sandbox_verifier_fails_marked_references():
    verifier = SandboxPaymentVerifier()

    assert verifier.verify_payment("pi_ok").succeeded is True
    assert verifier.verify_payment("sandbox_failed_1").succeeded is False


def test_unconfigured_verifier_raises():
    with pytest.raises(RuntimeError):
        UnconfiguredPaymentVerifier().verify_payment("pi_1")


def test_payment_intent_mapping():
    verification = verification_from_payment_intent(
        {
            "id": "pi_1",
            "status": "succeeded",
            "amount": 2500,
            "currency": "gbp",
            "metadata": {"userId": "user-1", "packageId": "pkg_basic", "convertedPrice": 25},
        }
    )

    assert verification.reference == "pi_1"
    assert verification.currency == "GBP"
    assert verification.metadata["convertedPrice"] == "25"


def test_prescription_generator_selection():
    assert isinstance(create_prescription_generator(load_package_config(env={})), LoggingPrescriptionGenerator)
    generator = create_prescription_generator(
        load_package_config(env={"PRESCRIPTION_SERVICE_URL": "http://rx.local/api/"})
    )
    assert isinstance(generator, HttpPrescriptionGenerator)
    assert generator.base_url == "http://rx.local/api"


class _Response:
    def __init__(self, payload):
        self._body = json.dumps(payload).encode("utf-8")

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


def test_http_prescription_generator_parses_response(monkeypatch):
    captured = {}

    def fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["timeout"] = timeout
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return _Response({"success": True, "data": {"prescriptionId": "rx_9"}})

    monkeypatch.setattr(packages_services.urllib_request, "urlopen", fake_urlopen)
    generator = HttpPrescriptionGenerator(base_url="http://rx.local", timeout_seconds=3)

    result = generator.generate("user-1")

    assert result.success is True
    assert result.prescription_id == "rx_9"
    assert captured == {"url": "http://rx.local/prescriptions/generate", "timeout": 3, "body": {"userId": "user-1"}}


def test_http_prescription_generator_reports_network_errors(monkeypatch):
    def fake_urlopen(req, timeout):
        raise packages_services.urllib_error.URLError("connection refused")

    monkeypatch.setattr(packages_services.urllib_request, "urlopen", fake_urlopen)

    result = HttpPrescriptionGenerator(base_url="http://rx.local", timeout_seconds=3).generate("user-1")

    assert result.success is False
