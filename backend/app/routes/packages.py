"""API routes for the package catalog and user entitlements."""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Callable, List, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Query, status

from ..packages import PackageError
from ..schemas.packages import (
    ActivePackageData,
    ApiResponse,
    ExpiryCheckData,
    ExpirySweepData,
    ExpirySweepRequest,
    GiftCodeCreateRequest,
    GiftCodeData,
    GiftCodeRedeemRequest,
    PackageCreateRequest,
    PackageOut,
    ProvisioningData,
    PurchaseRequest,
    RenewalData,
    RenewalEligibilityData,
    RenewalHistoryData,
    RenewalRefreshData,
    RenewRequest,
    UserPackageOut,
    UserPackagesData,
)
from ..services.packages import get_package_service, get_provisioning_service


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


def _require_admin(current_user: Any) -> None:
    if not getattr(current_user, "is_admin", False):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator access required")


router = APIRouter(prefix="/api/packages", tags=["packages"])


@router.get("", response_model=ApiResponse[List[PackageOut]])
def list_packages(
    include_inactive: bool = Query(False, alias="includeInactive"),
) -> ApiResponse[List[PackageOut]]:
    packages = get_package_service().list_packages(include_inactive=include_inactive)
    return ApiResponse(data=[PackageOut.from_package(package) for package in packages])


@router.post("", response_model=ApiResponse[PackageOut], status_code=status.HTTP_201_CREATED)
def create_package(
    payload: PackageCreateRequest,
    *,
    current_user=Depends(_get_current_user),
) -> ApiResponse[PackageOut]:
    _require_admin(current_user)
    package = get_package_service().create_package(
        name=payload.name,
        package_type=payload.type,
        price=payload.price,
        duration_days=payload.duration_days,
        description=payload.description,
        features=payload.features,
        max_prescriptions=payload.max_prescriptions,
    )
    return ApiResponse(message="Package created", data=PackageOut.from_package(package))


@router.get("/user/packages", response_model=ApiResponse[UserPackagesData])
def get_user_packages(*, current_user=Depends(_get_current_user)) -> ApiResponse[UserPackagesData]:
    try:
        listing = get_package_service().list_user_packages(str(current_user.id))
    except PackageError as exc:
        raise exc.to_http_exception() from exc
    return ApiResponse(data=UserPackagesData.from_listing(listing))


@router.get("/user/active", response_model=ApiResponse[ActivePackageData])
def get_active_package(*, current_user=Depends(_get_current_user)) -> ApiResponse[ActivePackageData]:
    try:
        view = get_package_service().get_active_package(str(current_user.id))
    except PackageError as exc:
        raise exc.to_http_exception() from exc
    return ApiResponse(success=view.is_active, message=view.message, data=ActivePackageData.from_view(view))


@router.post("/user/check-expiry", response_model=ApiResponse[ExpiryCheckData])
def check_expiry(*, current_user=Depends(_get_current_user)) -> ApiResponse[ExpiryCheckData]:
    try:
        result = get_package_service().check_expiry(str(current_user.id))
    except PackageError as exc:
        raise exc.to_http_exception() from exc
    return ApiResponse(message=result.message, data=ExpiryCheckData.from_result(result))


@router.get("/user/renewal-eligibility", response_model=ApiResponse[RenewalEligibilityData])
def get_renewal_eligibility(*, current_user=Depends(_get_current_user)) -> ApiResponse[RenewalEligibilityData]:
    try:
        view = get_package_service().check_renewal_eligibility(str(current_user.id))
    except PackageError as exc:
        raise exc.to_http_exception() from exc
    return ApiResponse(message=view.message, data=RenewalEligibilityData.from_view(view))


@router.post("/user/renew", response_model=ApiResponse[RenewalData])
def renew_package(
    payload: RenewRequest,
    *,
    current_user=Depends(_get_current_user),
) -> ApiResponse[RenewalData]:
    try:
        result = get_package_service().renew_package(
            str(current_user.id),
            payload.package_id,
            payment_id=payload.payment_id,
            payment_method=payload.payment_method,
            price=payload.price,
            currency=payload.currency,
        )
    except PackageError as exc:
        raise exc.to_http_exception() from exc
    return ApiResponse(message="Package renewed successfully", data=RenewalData.from_result(result))


@router.get("/user/renewal-history", response_model=ApiResponse[RenewalHistoryData])
def get_renewal_history(*, current_user=Depends(_get_current_user)) -> ApiResponse[RenewalHistoryData]:
    try:
        view = get_package_service().get_renewal_history(str(current_user.id))
    except PackageError as exc:
        raise exc.to_http_exception() from exc
    return ApiResponse(data=RenewalHistoryData.from_view(view))


@router.post("/purchase", response_model=ApiResponse[ProvisioningData])
def purchase_package(
    payload: PurchaseRequest,
    *,
    current_user=Depends(_get_current_user),
) -> ApiResponse[ProvisioningData]:
    _require_admin(current_user)
    try:
        result = get_provisioning_service().purchase_package(
            user_id=payload.user_id,
            package_id=payload.package_id,
            payment_method=payload.payment_method,
            payment_id=payload.payment_id,
            price=payload.price,
            currency=payload.currency,
        )
    except PackageError as exc:
        raise exc.to_http_exception() from exc
    message = "Purchase already recorded" if result.duplicate else "Package purchased successfully"
    return ApiResponse(message=message, data=ProvisioningData.from_result(result))


@router.post("/gift-codes", response_model=ApiResponse[GiftCodeData], status_code=status.HTTP_201_CREATED)
def create_gift_code(
    payload: GiftCodeCreateRequest,
    *,
    current_user=Depends(_get_current_user),
) -> ApiResponse[GiftCodeData]:
    _require_admin(current_user)
    try:
        gift = get_provisioning_service().create_gift_code(
            package_id=payload.package_id,
            expiry_days=payload.expiry_days,
        )
        package = get_package_service().get_package(gift.package_id)
    except PackageError as exc:
        raise exc.to_http_exception() from exc
    return ApiResponse(
        message="Gift code created successfully",
        data=GiftCodeData(
            gift_code=gift.gift_code,
            user_package=UserPackageOut.from_user_package(gift),
            package=PackageOut.from_package(package),
        ),
    )


@router.post("/gift-codes/redeem", response_model=ApiResponse[ProvisioningData])
def redeem_gift_code(
    payload: GiftCodeRedeemRequest,
    *,
    current_user=Depends(_get_current_user),
) -> ApiResponse[ProvisioningData]:
    try:
        result = get_provisioning_service().redeem_gift_code(user_id=str(current_user.id), code=payload.gift_code)
    except PackageError as exc:
        raise exc.to_http_exception() from exc
    return ApiResponse(message="Gift code redeemed successfully", data=ProvisioningData.from_result(result))


@router.post("/admin/expiry-sweep", response_model=ApiResponse[ExpirySweepData])
def run_expiry_sweep(
    payload: Optional[ExpirySweepRequest] = None,
    *,
    current_user=Depends(_get_current_user),
) -> ApiResponse[ExpirySweepData]:
    _require_admin(current_user)
    run_cleanup = payload.run_cleanup if payload is not None else True
    report = get_package_service().sweep_expired_packages(run_cleanup=run_cleanup)
    if report.residual_anomalies:
        message = f"{len(report.residual_anomalies)} expired packages are still active after cleanup"
    elif report.cleanup_ran:
        message = f"Deactivated {len(report.deactivated_ids)} expired packages"
    else:
        message = f"Found {len(report.anomalies)} expired packages that are still active"
    return ApiResponse(message=message, data=ExpirySweepData.from_report(report))


@router.post("/admin/renewal-refresh", response_model=ApiResponse[RenewalRefreshData])
def refresh_renewal_eligibility(*, current_user=Depends(_get_current_user)) -> ApiResponse[RenewalRefreshData]:
    _require_admin(current_user)
    summary = get_package_service().refresh_renewal_eligibility()
    return ApiResponse(message="Renewal eligibility refreshed", data=RenewalRefreshData.from_summary(summary))


@router.get("/{package_id}", response_model=ApiResponse[PackageOut])
def get_package(package_id: str) -> ApiResponse[PackageOut]:
    try:
        package = get_package_service().get_package(package_id)
    except PackageError as exc:
        raise exc.to_http_exception() from exc
    return ApiResponse(data=PackageOut.from_package(package))


@router.post("/{package_id}/deactivate", response_model=ApiResponse[PackageOut])
def deactivate_package(
    package_id: str,
    *,
    current_user=Depends(_get_current_user),
) -> ApiResponse[PackageOut]:
    _require_admin(current_user)
    try:
        package = get_package_service().deactivate_package(package_id)
    except PackageError as exc:
        raise exc.to_http_exception() from exc
    return ApiResponse(message="Package deactivated", data=PackageOut.from_package(package))
