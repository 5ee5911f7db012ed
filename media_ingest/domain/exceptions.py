"""Exception hierarchy for the ingest service.

Errors split into retryable (network, timeouts, rate limits, database
contention) and non-retryable (validation, data integrity, expired file
references).
"""


class MediaIngestError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(MediaIngestError):
    """Errors that can be retried (network issues, temporary failures)."""

    pass


class NonRetryableError(MediaIngestError):
    """Errors that should not be retried (validation, auth, logic errors)."""

    pass


class ValidationError(NonRetryableError):
    """Missing or malformed input."""

    pass


class InvalidStateTransitionError(ValidationError):
    """Requested processing state change is not allowed."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move message from {current} to {target}")


class DataIntegrityError(NonRetryableError):
    """An expected related row is absent or inconsistent."""

    pass


class DuplicateRecordError(NonRetryableError):
    """Insert collided with a uniqueness constraint."""

    pass


class FileReferenceExpiredError(NonRetryableError):
    """The platform no longer serves the given file reference."""

    def __init__(self, file_id: str, description: str = "") -> None:
        self.file_id = file_id
        self.description = description
        super().__init__(f"File reference expired: {description or file_id}")


class RateLimitError(RetryableError):
    """API rate limit exceeded."""

    def __init__(self, retry_after: int | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Retry after: {retry_after}s")


class TelegramAPIError(RetryableError):
    """Telegram Bot API communication errors."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ObjectStoreError(RetryableError):
    """Object storage communication errors."""

    pass


class LLMAPIError(RetryableError):
    """LLM API communication errors."""

    pass


class RepositoryError(RetryableError):
    """Database/storage errors."""

    pass


class AcquisitionError(MediaIngestError):
    """Media could not be downloaded and stored."""

    def __init__(self, reason: str, *, retryable: bool = True) -> None:
        self.reason = reason
        self.retryable = retryable
        super().__init__(reason)
