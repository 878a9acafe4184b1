from typing import Optional


class SyncError(Exception):
    """Base class for all synchronization errors."""


class AuthError(SyncError):
    """Credential missing, invalid, or could not be refreshed. Fatal for a run."""


class InvalidTokenError(AuthError):
    """Provider rejected the access token (HTTP 401)."""


class TransientNetworkError(SyncError):
    """Timeout, connection failure, or 5xx. Retrying may succeed."""


class RateLimited(TransientNetworkError):
    """Operation was rate limited by provider. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int = 1000, message: str = "Rate limited") -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class ApiError(SyncError):
    """Provider answered with a non-retriable error status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ApiError):
    """Requested resource does not exist (HTTP 404, or an empty lookup result).

    A search with no results is not an error; the resolver reports it as a
    NotFound resolution instead.
    """

    def __init__(self, message: str, status_code: Optional[int] = 404) -> None:
        super().__init__(message, status_code=status_code)


class DataError(SyncError):
    """Provider response did not have the expected shape."""


class FetchError(SyncError):
    """Source collection could not be fetched completely."""


class LedgerError(SyncError):
    """Progress ledger file could not be read or written."""
