"""
Exception types shared by the LMS client, the sync engine and the routes.

    SyncError
    ├── ConfigurationError   raised before a run reaches "running"
    ├── SyncConflictError    lock held by a live run
    └── SyncCancelledError   run stopped after force_clear()

    LmsApiError              non-2xx / transport failure from the LMS API
    └── RateLimitedError     HTTP 429
"""
from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for sync engine failures."""


class ConfigurationError(SyncError):
    """Missing credentials, unknown entity type or unsupported mode."""


class SyncConflictError(SyncError):
    """Raised when another sync holds the lock and is not stale."""

    hint = "POST /sync/reset to force clear the lock"

    def __init__(self, current: Optional[Dict[str, Any]]):
        super().__init__("Sync already in progress")
        self.current = current


class SyncCancelledError(SyncError):
    """Raised inside a run whose lock slot was force-cleared."""


_STATUS_MESSAGES = {
    401: "LMS API authentication failed - check API key",
    403: "LMS API access forbidden - check permissions",
    429: "LMS API rate limit exceeded",
    500: "LMS API internal server error - API may be down",
}


class LmsApiError(Exception):
    """A failed request against the LMS API.

    status_code is 0 for transport failures (timeouts, refused connections).
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        endpoint: str,
        detail: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint
        self.detail = detail
        self.retryable = retryable

    @classmethod
    def from_status(
        cls, status_code: int, endpoint: str, detail: Optional[str] = None
    ) -> "LmsApiError":
        if status_code == 429:
            return RateLimitedError(_STATUS_MESSAGES[429], 429, endpoint, detail, retryable=True)
        if status_code in _STATUS_MESSAGES:
            message = _STATUS_MESSAGES[status_code]
        elif status_code == 404:
            message = f"LMS API endpoint not found: {endpoint}"
        elif status_code in (502, 503, 504):
            message = f"LMS API unavailable ({status_code}) - API may be down"
        else:
            message = f"LMS API error ({status_code}): {detail or 'Unknown error'}"
        return cls(message, status_code, endpoint, detail)


class RateLimitedError(LmsApiError):
    """HTTP 429 from the LMS API."""
