"""Error taxonomy for the sync pipeline.

Only `AuthorizationError` and `FatalConfigError` abort a run before any side
effect. Fetch and record errors are caught by the orchestrator, counted and
reported in the run summary.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for sync pipeline errors."""


class FetchError(SyncError):
    def __init__(self, message: str, *, url: str | None = None, status: int | None = None):
        super().__init__(message)
        self.url = url
        self.status = status


class TransientFetchError(FetchError):
    """Remote index unreachable right now (network, 5xx, throttled). Retried next run."""


class QuarterNotYetPublished(FetchError):
    """The quarter's index does not exist yet. Expected; the quarter is skipped."""


class RecordInsertError(SyncError):
    def __init__(self, message: str, *, accession_number: str | None = None):
        super().__init__(message)
        self.accession_number = accession_number


class AuthorizationError(SyncError):
    """Caller lacks valid credentials for a sync trigger."""


class FatalConfigError(SyncError):
    """Required configuration is missing or invalid; nothing was done."""


class SyncAlreadyRunning(SyncError):
    def __init__(self, family: str):
        super().__init__(f"sync already running for {family}")
        self.family = family


class SubmissionUnavailable(FetchError):
    """A filing's submission document is missing or its header is unusable.

    Permanent for that filing: it is counted as failed and not retried.
    """
