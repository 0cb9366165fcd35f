"""Errors raised by the package entitlement engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class PackageError(Exception):
    """Base class for failures surfaced to API callers."""

    message: str
    code: str = "package_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"success": False, "error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class PackageNotFoundError(PackageError):
    """A user, package or entitlement does not exist."""

    code: str = "not_found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass
class InvalidPackageStateError(PackageError):
    """The requested transition is not allowed from the current state."""

    code: str = "invalid_state"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class ConcurrentActivationError(InvalidPackageStateError):
    """Another request changed the user's active package first."""

    code: str = "concurrent_update"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class ExternalServiceError(PackageError):
    """A collaborator the request depends on failed."""

    code: str = "external_failure"
    status_code: int = status.HTTP_502_BAD_GATEWAY


__all__ = [
    "ConcurrentActivationError",
    "ExternalServiceError",
    "InvalidPackageStateError",
    "PackageError",
    "PackageNotFoundError",
]
