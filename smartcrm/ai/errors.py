"""Exception taxonomy for the AI orchestration layer.

Only validation, exhausted transports and fatal configuration problems raise.
The rate limiter and cache report expected conditions through return values,
and a degraded parse is a flag on an otherwise successful response.
"""

from __future__ import annotations

from smartcrm.ai.types import FailureKind


class AIServiceError(Exception):
    """Base class for errors surfaced to callers of the orchestrator."""

    kind: FailureKind = FailureKind.PROVIDER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RequestValidationError(AIServiceError):
    """Malformed or missing request fields. Raised before any I/O."""

    kind = FailureKind.VALIDATION_ERROR


class RateLimitedError(AIServiceError):
    """Every eligible provider window is exhausted. Retry after ``retry_after`` seconds."""

    kind = FailureKind.RATE_LIMITED

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class TransportError(AIServiceError):
    """A single outbound call failed (network, timeout, HTTP status, bad envelope)."""

    kind = FailureKind.PROVIDER_ERROR

    def __init__(self, message: str, status_code: int = 0, error_code: str = "", retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.retryable = retryable
        self.attempts = 0  # set by the orchestrator when retries give up


class ProviderError(AIServiceError):
    """Retries and the fallback transport were exhausted."""

    kind = FailureKind.PROVIDER_ERROR

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class NoProviderAvailableError(AIServiceError):
    """No provider has credentials configured. Fatal, not retried."""

    kind = FailureKind.NO_PROVIDER_AVAILABLE

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = missing or []
