"""
Shared error handling for the admission-control service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import get_request_id


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AdmissionError(Exception):
    """Base exception for admission-control errors."""

    status_code: int = 400

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=get_request_id(),
            code=self.code,
            message=self.message,
            details=self.details
        )

    def headers(self) -> Dict[str, str]:
        """Extra HTTP headers for the error response."""
        return {}


class AuthenticationError(AdmissionError):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class RateLimitError(AdmissionError):
    """Rate limiting errors. Details carry the limiter's retry metadata."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMIT_EXCEEDED", message, details)

    def headers(self) -> Dict[str, str]:
        retry_after_ms = self.details.get("retry_after_ms")
        if retry_after_ms is None:
            return {}
        return {"Retry-After": str(max(1, -(-int(retry_after_ms) // 1000)))}


class QuotaExceededError(AdmissionError):
    """Quota rejection; the code is the ledger's reject reason."""

    _STATUS_BY_REASON = {
        "NO_USER": 403,
        "QUOTA_UNAVAILABLE": 503,
    }

    def __init__(self, reason: str, message: str = "Quota exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__(reason, message, details, status_code=self._STATUS_BY_REASON.get(reason, 429))


class AccountLockedError(AdmissionError):
    """Raised while an identifier is locked out.

    Only the remaining lock time is reported, never whether the
    identifier belongs to an existing account.
    """

    status_code = 423

    def __init__(self, retry_after: int):
        super().__init__(
            "ACCOUNT_LOCKED",
            "Too many failed attempts. Try again later.",
            {"retry_after": retry_after}
        )

    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.details["retry_after"])}


class TokenRevokedError(AdmissionError):
    """Raised when a cryptographically valid session token was revoked."""

    status_code = 401

    def __init__(self, message: str = "Session has been revoked"):
        super().__init__("TOKEN_REVOKED", message)


class InvalidCsrfTokenError(AdmissionError):
    """CSRF verification failure. Deliberately carries no diagnostics."""

    status_code = 403

    def __init__(self):
        super().__init__("INVALID_CSRF_TOKEN", "Forbidden")


class UserNotFoundError(AdmissionError):
    """Usage was recorded against an unknown user."""

    status_code = 404

    def __init__(self, user_id: str):
        super().__init__("NO_USER", "User not found", {"user_id": user_id})


class LedgerUnavailableError(AdmissionError):
    """The usage ledger could not commit; nothing was applied."""

    status_code = 503

    def __init__(self, message: str = "Usage ledger unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("LEDGER_UNAVAILABLE", message, details)


class StoreUnavailableError(AdmissionError):
    """The shared bucket store could not be reached.

    Raised by store implementations; each gate converts it into its own
    fail-open or fail-closed result.
    """

    status_code = 503

    def __init__(self, message: str = "Bucket store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)
