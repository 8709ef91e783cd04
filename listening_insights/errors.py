"""Error taxonomy for the sync pipeline"""
from typing import Optional

RATE_LIMIT = "RATE_LIMIT"
AUTH_ERROR = "AUTH_ERROR"
API_ERROR = "API_ERROR"
UNKNOWN = "UNKNOWN"

class SyncError(Exception):
    """Base class for errors surfaced to sync callers with a machine-readable code"""
    code = UNKNOWN

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after

class RateLimitError(SyncError):
    """
    Sync rejected by the local interval policy or by upstream backpressure (429).
    Always recoverable by waiting retry_after seconds.
    """
    code = RATE_LIMIT

    def __init__(self, message: str, retry_after: int):
        super().__init__(message, retry_after=max(1, int(retry_after)))

class AuthError(SyncError):
    """Upstream credential invalid or expired. Never retried locally."""
    code = AUTH_ERROR

class UpstreamApiError(SyncError):
    """Network failure, 5xx or unusable response from the upstream service"""
    code = API_ERROR

class SyncCancelledError(SyncError):
    """The sync was cancelled between steps"""
    code = UNKNOWN

class ValidationError(Exception):
    """A single malformed record from upstream. Callers skip and count it."""

    def __init__(self, message: str, record=None):
        super().__init__(message)
        self.record = record
