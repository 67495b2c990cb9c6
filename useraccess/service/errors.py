from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - gone (410)
    - rate_limited (429)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class WrongCredentialsError(AuthenticationError):
    """Password does not match the stored hash."""
    pass


class InvalidTokenError(AuthenticationError):
    """Bearer token cannot be trusted."""
    pass


class MalformedTokenError(InvalidTokenError):
    """Token structure, header or claims are unusable."""
    pass


class TokenSignatureError(InvalidTokenError):
    """Token signature does not match the signing key."""
    pass


class TokenExpiredError(AuthenticationError):
    """Token is past its expiry instant."""
    pass


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountNotActiveError(ForbiddenError):
    """Account status does not allow sign-in."""
    pass


class AccountBlockedError(ForbiddenError):
    pass


class EmailNotVerifiedError(ForbiddenError):
    pass


class AccessDeniedError(ForbiddenError):
    """Federated identity verification failed."""
    pass


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyExistsError(ConflictError):
    pass


class AlreadyActivatedError(ConflictError):
    pass


class OtpAlreadySentError(ConflictError):
    """An OTP session is already open for this email."""
    pass


class GoneError(ServiceError):
    """Resource existed but is no longer usable (410)."""
    status_code = 410
    error_code = "gone"


class OtpSessionExpiredError(GoneError):
    """No OTP session to resend into."""
    pass


class OtpExpiredError(GoneError):
    """Passcode is unknown or has expired."""
    pass


class InvalidOtpError(GoneError):
    """Passcode was issued for a different email."""
    pass


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class TooManyRequestsError(RateLimitedError):
    """Resend ceiling reached for the current attempts window."""
    pass


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "WrongCredentialsError",
    "InvalidTokenError",
    "MalformedTokenError",
    "TokenSignatureError",
    "TokenExpiredError",
    "ForbiddenError",
    "AccountNotActiveError",
    "AccountBlockedError",
    "EmailNotVerifiedError",
    "AccessDeniedError",
    "NotFoundError",
    "ConflictError",
    "AlreadyExistsError",
    "AlreadyActivatedError",
    "OtpAlreadySentError",
    "GoneError",
    "OtpSessionExpiredError",
    "OtpExpiredError",
    "InvalidOtpError",
    "RateLimitedError",
    "TooManyRequestsError",
    "ServerError",
]
