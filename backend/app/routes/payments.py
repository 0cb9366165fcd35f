"""Payment confirmation and Stripe webhook routes."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Callable, Optional

import stripe
from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from ..packages import ExternalServiceError, GiftCardDeduction, PackageError
from ..schemas.packages import ApiResponse, ConfirmPaymentRequest, ProvisioningData
from ..services.packages import (
    get_provisioning_service,
    get_stripe_webhook_secret,
    verification_from_payment_intent,
)

logger = logging.getLogger("packages")

PAYMENT_SUCCEEDED_EVENT = "payment_intent.succeeded"


def _resolve_get_current_user() -> Callable[..., Any]:  # pragma: no cover
    try:
        from backend.main import get_current_user as resolved
    except ModuleNotFoundError as exc:
        if exc.name != "backend":
            raise
        from ...main import get_current_user as resolved  # type: ignore[no-redef]
    return resolved


@lru_cache(maxsize=1)
def _get_current_user_callable() -> Callable[..., Any]:
    return _resolve_get_current_user()


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    resolved = _get_current_user_callable()
    return resolved(session_token=session_token)


router = APIRouter(prefix="/api/stripe", tags=["payments"])


@router.post("/confirm-payment", response_model=ApiResponse[ProvisioningData])
def confirm_payment(
    payload: ConfirmPaymentRequest,
    *,
    current_user=Depends(_get_current_user),
) -> ApiResponse[ProvisioningData]:
    deduction = None
    if payload.gift_card_details is not None:
        deduction = GiftCardDeduction(
            code=payload.gift_card_details.code,
            amount_to_use=payload.gift_card_details.amount_to_use,
        )
    try:
        result = get_provisioning_service().confirm_payment(
            user_id=str(current_user.id),
            payment_reference=payload.payment_intent_id,
            package_id=payload.package_id,
            gift_card=deduction,
        )
    except PackageError as exc:
        raise exc.to_http_exception() from exc
    message = "Payment already processed" if result.duplicate else "Payment confirmed and package activated"
    return ApiResponse(message=message, data=ProvisioningData.from_result(result))


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
) -> dict:
    secret = get_stripe_webhook_secret()
    if not secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook secret is not configured")

    payload = await request.body()
    try:
        event = stripe.Webhook.construct_event(payload, stripe_signature, secret)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload") from exc
    except stripe.SignatureVerificationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature") from exc

    event_type = event["type"]
    if event_type != PAYMENT_SUCCEEDED_EVENT:
        logger.debug("Ignoring Stripe event", extra={"stripe_event_type": event_type})
        return {"received": True}

    verification = verification_from_payment_intent(event["data"]["object"])
    try:
        result = await run_in_threadpool(get_provisioning_service().provision_from_payment_event, verification)
    except ExternalServiceError as exc:
        raise exc.to_http_exception() from exc
    except PackageError as exc:
        logger.warning(
            "Webhook payment could not be provisioned",
            extra={"payment_id": verification.reference, "reason": exc.message},
        )
        return {"received": True, "provisioned": False}

    return {"received": True, "provisioned": result is not None}
