from __future__ import annotations


class EventValidationError(ValueError):
    """Raw tab activity that can never become an Event."""


class BatchValidationError(ValueError):
    """An ingestion batch that the endpoint refuses as a whole."""


class ConfigError(RuntimeError):
    """Required configuration is missing or unusable."""


class SyncError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientSyncError(SyncError):
    """Network or server failure; the batch stays pending."""


class AuthRequiredError(SyncError):
    """The credential is missing, expired or refused."""


class ApiRequestError(SyncError):
    """The endpoint refused the request (4xx other than auth)."""


class BatchRejectedError(ApiRequestError):
    """The endpoint refused the batch as malformed."""


class ProviderError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        provider: str,
        operation: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(f"{provider} {operation}: {message}")
        self.provider = provider
        self.operation = operation
        self.cause = cause


class RateLimitError(ProviderError):
    def __init__(self, provider: str, operation: str, retry_after: float | None = None) -> None:
        message = "rate limit exceeded"
        if retry_after:
            message = f"{message}, retry after {retry_after}s"
        super().__init__(message, provider=provider, operation=operation)
        self.retry_after = retry_after


class QuotaExceededError(ProviderError):
    def __init__(self, provider: str, operation: str) -> None:
        super().__init__("api quota exceeded", provider=provider, operation=operation)
