class MediaProviderError(Exception):
    """Base class for failures reported by a media server adapter."""


class RateLimited(MediaProviderError):
    """Operation was rate limited by the server. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int, message: str = "Rate limited") -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class TemporaryFailure(MediaProviderError):
    """Transient server or network failure. Retrying may succeed."""


class PermanentFailure(MediaProviderError):
    """Non-retriable failure due to invalid input or authorization issues."""


class NotFound(MediaProviderError):
    """Requested resource was not found."""
