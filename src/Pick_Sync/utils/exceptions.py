"""Custom exception hierarchy for the Pick Sync application.

All domain-specific exceptions inherit from PickSyncError. Run-level errors
(source fetch, persistence) abort a scan; batch-level errors are absorbed by
the batch analyzer and only degrade the pick count.
"""


class PickSyncError(Exception):
    """Base exception for all Pick Sync failures."""


class SourceFetchError(PickSyncError):
    """Raised when the content source is unreachable or returns unusable data.

    Attributes:
        source: The source that failed (e.g., "reddit").
        http_status: The HTTP status code, if the failure was HTTP-related.
    """

    def __init__(
        self,
        message: str,
        *,
        source: str,
        http_status: int | None = None,
    ) -> None:
        self.source = source
        self.http_status = http_status
        super().__init__(message)


class AnalysisBatchError(PickSyncError):
    """Raised when a single analysis batch fails (bad status, bad payload).

    Attributes:
        batch_number: 1-based index of the failed batch, if known.
        http_status: The HTTP status code, if the failure was HTTP-related.
    """

    def __init__(
        self,
        message: str,
        *,
        batch_number: int | None = None,
        http_status: int | None = None,
    ) -> None:
        self.batch_number = batch_number
        self.http_status = http_status
        super().__init__(message)


class PersistenceError(PickSyncError):
    """Raised when the storage engine rejects a write during a scan."""


class ScanInProgressError(PickSyncError):
    """Raised when a scan is requested while another one holds the guard."""


class RateLimitExceededError(SourceFetchError):
    """Raised when the content source answers HTTP 429.

    Attributes:
        retry_after: Seconds the server asked us to wait, if it said so.
    """

    def __init__(
        self,
        message: str,
        *,
        source: str,
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, source=source, http_status=429)
