from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - gone (410)
    - validation_error (400)
    - bad_gateway (502)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class GoneError(ServiceError):
    """Resource existed but is no longer usable, e.g. an expired OTP (410)."""
    status_code = 410
    error_code = "gone"


class DeliveryError(ServiceError):
    """Notifier could not hand the message to its transport (502)."""
    status_code = 502
    error_code = "bad_gateway"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    OTP_INVALID = "OTP_INVALID"
    OTP_EXPIRED = "OTP_EXPIRED"
    OTP_NOT_FOUND = "OTP_NOT_FOUND"
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    SESSION_CONFLICT = "SESSION_CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION = "VALIDATION"
    DELIVERY_FAILURE = "DELIVERY_FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_KIND_TO_ERROR: Dict[AuthErrorKind, type[ServiceError]] = {
    AuthErrorKind.INVALID_CREDENTIALS: AuthenticationError,
    AuthErrorKind.TOKEN_INVALID: AuthenticationError,
    AuthErrorKind.TOKEN_EXPIRED: AuthenticationError,
    AuthErrorKind.TOKEN_REVOKED: AuthenticationError,
    AuthErrorKind.ACCOUNT_LOCKED: ForbiddenError,
    AuthErrorKind.FORBIDDEN: ForbiddenError,
    AuthErrorKind.OTP_INVALID: ValidationError,
    AuthErrorKind.VALIDATION: ValidationError,
    AuthErrorKind.OTP_EXPIRED: GoneError,
    AuthErrorKind.OTP_NOT_FOUND: NotFoundError,
    AuthErrorKind.NOT_FOUND: NotFoundError,
    AuthErrorKind.SESSION_CONFLICT: ConflictError,
    AuthErrorKind.DELIVERY_FAILURE: DeliveryError,
    AuthErrorKind.INTERNAL_ERROR: ServerError,
}


_STATUS_TO_ERROR: Dict[int, type[ServiceError]] = {
    400: ValidationError,
    401: AuthenticationError,
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictError,
    410: GoneError,
    500: ServerError,
    502: DeliveryError,
}


@dataclass(frozen=True)
class AuthError:
    """Expected failure of an auth operation, returned inside ``Err``."""

    kind: AuthErrorKind
    message: str
    status_code: Optional[int] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        if self.status_code is not None:
            return self.status_code
        return _KIND_TO_ERROR[self.kind].status_code

    def to_service_error(self) -> ServiceError:
        if self.status_code is not None:
            error_cls = _STATUS_TO_ERROR.get(self.status_code, _KIND_TO_ERROR[self.kind])
        else:
            error_cls = _KIND_TO_ERROR[self.kind]
        return error_cls(
            self.message,
            status_code=self.status_code,
            detail={"reason": self.kind.value, **self.detail},
        )


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "GoneError",
    "DeliveryError",
    "ServerError",
    "AuthErrorKind",
    "AuthError",
]
