"""Custom exceptions for lorekeep."""

from typing import Optional


class LorekeepError(Exception):
    """Base class for all lorekeep errors."""


class SyncError(LorekeepError):
    """Base class for failures raised while syncing a source."""


class TransientError(SyncError):
    """
    Retryable failure: network timeout, 5xx, rate limit, lock contention.

    Attributes:
        retry_after: Seconds the source asked us to wait, if it said so
    """

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class PermanentError(SyncError):
    """Non-retryable failure: malformed payload, schema mismatch, client error."""


class SessionExpiredError(SyncError):
    """Raised when a web source rejects our session and needs re-authentication."""

    def __init__(self, provider: str, message: str | None = None):
        self.provider = provider
        super().__init__(message or f"Session expired for {provider}; re-authenticate")


class PartialBatchFailure(LorekeepError):
    """Raised when some items of a batch failed while the rest succeeded."""

    def __init__(self, failures: list[tuple[str, str]]):
        self.failures = failures
        super().__init__(f"{len(failures)} item(s) failed")


class StoreUnavailableError(LorekeepError):
    """Raised when the canonical store cannot be reached. Aborts the current pass."""


class InvalidTransitionError(LorekeepError):
    """Raised on an illegal learning or workflow lifecycle transition."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} from {current} to {target}")


class AnalyzerError(LorekeepError):
    """Raised when an analyzer fails on a single conversation."""

    def __init__(self, analyzer: str, message: str):
        self.analyzer = analyzer
        super().__init__(f"{analyzer}: {message}")


class ConsentRequiredError(LorekeepError):
    """Raised when a cloud-hosted backend is requested without cloud consent."""


class NotFoundError(LorekeepError):
    """Raised when a reviewer action names a row that does not exist."""

    def __init__(self, entity: str, id: object):
        self.entity = entity
        self.id = id
        super().__init__(f"{entity} {id} not found")
