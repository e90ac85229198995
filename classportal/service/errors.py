from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP status_code and a stable error_code.
    The provisioning functions answer every failure with 400 and an
    ``{error}`` body, so ``status_code`` only matters on the rpc and profile
    routes.
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


class InvalidCredentials(ServiceError):
    """Login rejected; unknown email and wrong password look the same (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidOrExpired(ServiceError):
    """Token is unknown, already used, or past its expiry (400)."""
    status_code = 400
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ProfileNotFound(ServiceError):
    """No profile row for the requested id (404)."""
    status_code = 404
    error_code = "not_found"

    def __init__(self, message: str = "Profile not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailDeliveryFailed(ServiceError):
    """Email provider rejected the message or could not be reached (502)."""
    status_code = 502
    error_code = "email_delivery_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentials",
    "TokenInvalidOrExpired",
    "ProfileNotFound",
    "EmailDeliveryFailed",
]
