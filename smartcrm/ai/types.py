"""Core types and DTOs for the AI orchestration layer."""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class OperationType(str, Enum):
    """Categories of AI work, each with its own prompt and result schema."""

    SCORING = "scoring"
    ENRICHMENT = "enrichment"
    EMAIL_GENERATION = "email_generation"
    EMAIL_ANALYSIS = "email_analysis"
    INSIGHTS = "insights"
    COMMUNICATION_ANALYSIS = "communication_analysis"
    AUTOMATION_SUGGESTIONS = "automation_suggestions"
    PREDICTIVE_ANALYTICS = "predictive_analytics"
    RELATIONSHIP_MAPPING = "relationship_mapping"


class RequestPriority(str, Enum):
    """Caller-assigned priority. The queue serves urgent work first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Heap rank (lower = served earlier)."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    RequestPriority.URGENT: 0,
    RequestPriority.HIGH: 1,
    RequestPriority.MEDIUM: 2,
    RequestPriority.LOW: 3,
}


class ProviderName(str, Enum):
    """Supported AI providers."""

    OPENAI = "openai"
    GEMINI = "gemini"
    ANTHROPIC = "anthropic"
    PROXY = "proxy"  # server-side proxy with its own credentials


class TransportType(str, Enum):
    """How a provider is reached."""

    DIRECT = "direct"  # vendor API called from this process
    PROXY = "proxy"  # routed through the serverless proxy


class FallbackMode(str, Enum):
    """Ordering between the direct and proxied transports."""

    DIRECT_FIRST = "direct_first"
    PROXY_FIRST = "proxy_first"
    OPTIMAL = "optimal"


class FailureKind(str, Enum):
    """Failure taxonomy surfaced to callers."""

    RATE_LIMITED = "RATE_LIMITED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PARSE_DEGRADED = "PARSE_DEGRADED"
    NO_PROVIDER_AVAILABLE = "NO_PROVIDER_AVAILABLE"
    VALIDATION_ERROR = "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# AI Request — input to the orchestrator
# ---------------------------------------------------------------------------


def new_request_id() -> str:
    return f"ai_{uuid.uuid4().hex[:16]}"


@dataclass(frozen=True)
class RequestContext:
    """Who/what the request is about. Passed through to prompts and logs."""

    subject_id: str = ""  # e.g. contact id
    session_id: str = ""
    user_id: str = ""
    business_context: str = ""


@dataclass(frozen=True)
class RequestOptions:
    use_cache: bool = True
    preferred_provider: ProviderName | None = None
    preferred_model: str | None = None
    timeout_seconds: float | None = None  # falls back to the configured default


@dataclass(frozen=True)
class AIRequest:
    """One desired unit of AI work. Immutable once built."""

    operation: OperationType
    payload: Mapping[str, Any]
    priority: RequestPriority = RequestPriority.MEDIUM
    context: RequestContext = field(default_factory=RequestContext)
    options: RequestOptions = field(default_factory=RequestOptions)
    request_id: str = field(default_factory=new_request_id)

    def __post_init__(self) -> None:
        # Freeze the top level of the payload so callers can't mutate a submitted request
        if isinstance(self.payload, Mapping) and not isinstance(self.payload, MappingProxyType):
            object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    def cache_params(self) -> dict[str, Any]:
        """Parameters that identify semantically identical requests."""
        return {
            "operation": self.operation.value,
            "payload": dict(self.payload),
            "provider": self.options.preferred_provider.value if self.options.preferred_provider else "auto",
            "model": self.options.preferred_model or "",
        }


# ---------------------------------------------------------------------------
# AI Response — unified DTO (output of the orchestrator)
# ---------------------------------------------------------------------------


@dataclass
class ResponseMetadata:
    provider: str = ""
    model: str = ""
    transport: str = ""
    processing_time_ms: int = 0
    confidence: int = 0  # 0-100
    cached: bool = False
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    cost_estimate: float | None = None
    attempts: int = 0
    degraded: bool = False  # result came from a fallback default, not the model
    note: str = ""


@dataclass
class AIResponse:
    """Normalized response — same structure regardless of provider.

    ``result`` and ``error`` are mutually exclusive.
    """

    request_id: str
    operation: OperationType
    result: dict[str, Any] | None = None
    metadata: ResponseMetadata = field(default_factory=ResponseMetadata)
    error: str | None = None
    error_kind: FailureKind | None = None

    def __post_init__(self) -> None:
        if self.error is not None and self.result is not None:
            raise ValueError("AIResponse cannot carry both a result and an error")

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, request: AIRequest, message: str, kind: FailureKind) -> AIResponse:
        return cls(
            request_id=request.request_id,
            operation=request.operation,
            error=message,
            error_kind=kind,
        )

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict for caching/snapshots.

        The result is deep-copied both ways so a caller mutating its response
        never touches a cached entry.
        """
        meta = self.metadata
        return {
            "request_id": self.request_id,
            "operation": self.operation.value,
            "result": copy.deepcopy(self.result),
            "metadata": {
                "provider": meta.provider,
                "model": meta.model,
                "transport": meta.transport,
                "processing_time_ms": meta.processing_time_ms,
                "confidence": meta.confidence,
                "cached": meta.cached,
                "timestamp": meta.timestamp,
                "cost_estimate": meta.cost_estimate,
                "attempts": meta.attempts,
                "degraded": meta.degraded,
                "note": meta.note,
            },
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AIResponse:
        error_kind = data.get("error_kind")
        return cls(
            request_id=data.get("request_id", ""),
            operation=OperationType(data["operation"]),
            result=copy.deepcopy(data.get("result")),
            metadata=ResponseMetadata(**data.get("metadata", {})),
            error=data.get("error"),
            error_kind=FailureKind(error_kind) if error_kind else None,
        )


# ---------------------------------------------------------------------------
# Rate limit config/result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitConfig:
    """Requests allowed per window for one limiter key."""

    max_requests: int = 50
    window_seconds: float = 60.0


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    reset_at: float  # limiter clock time when the current window ends
    remaining: int = 0
    retry_after: float = 0.0  # seconds until reset_at, 0 when allowed
