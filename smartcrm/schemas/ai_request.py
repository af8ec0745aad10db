"""Input schemas for the AI orchestration API."""

from typing import Any

from pydantic import BaseModel, Field, field_validator

from smartcrm.ai.types import (
    AIRequest,
    OperationType,
    ProviderName,
    RequestContext,
    RequestOptions,
    RequestPriority,
)


class RequestContextIn(BaseModel):
    subject_id: str = ""
    session_id: str = ""
    user_id: str = ""
    business_context: str = ""


class RequestOptionsIn(BaseModel):
    use_cache: bool = True
    preferred_provider: ProviderName | None = None
    preferred_model: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0, le=300)


class AIRequestIn(BaseModel):
    """A request submitted as a plain mapping (e.g. from an HTTP handler)."""

    operation: OperationType
    payload: dict[str, Any]
    priority: RequestPriority = RequestPriority.MEDIUM
    context: RequestContextIn = Field(default_factory=RequestContextIn)
    options: RequestOptionsIn = Field(default_factory=RequestOptionsIn)

    def to_request(self) -> AIRequest:
        return AIRequest(
            operation=self.operation,
            payload=self.payload,
            priority=self.priority,
            context=RequestContext(**self.context.model_dump()),
            options=RequestOptions(**self.options.model_dump()),
        )


class BulkAnalysisIn(BaseModel):
    contact_ids: list[str] = Field(..., min_length=1, max_length=50)

    @field_validator("contact_ids")
    @classmethod
    def no_blank_ids(cls, v: list[str]) -> list[str]:
        cleaned = [cid.strip() for cid in v]
        if any(not cid for cid in cleaned):
            raise ValueError("contact ids must be non-empty")
        return cleaned
