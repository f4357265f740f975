"""Custom exception hierarchy for the Sales Celebration Bot.

Following error taxonomy: retryable, non-retryable, configuration.
Persistence conflicts are not exceptions: they surface as tagged results
(``ClaimResult.ALREADY_CLAIMED`` or ``insert_estimate(...) is False``).
"""


class CelebrationBotError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(CelebrationBotError):
    """Errors that can be retried (network issues, temporary failures)."""

    pass


class NonRetryableError(CelebrationBotError):
    """Errors that should not be retried (validation, auth, logic errors)."""

    pass


class ConfigurationError(NonRetryableError):
    """Malformed or missing configuration."""

    pass


class UpstreamFetchError(RetryableError):
    """Sales feed communication errors (auth, transport, malformed payload)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """Initialize with optional HTTP status code."""
        self.status_code = status_code
        super().__init__(message)


class RepositoryError(RetryableError):
    """Database/storage errors."""

    pass


class StoreUnavailableError(RepositoryError):
    """The persistent store cannot be reached; aborts the current run."""

    pass


class DispatchError(RetryableError):
    """Outbound chat webhook delivery errors."""

    pass
