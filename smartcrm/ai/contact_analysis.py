"""Contact Analysis — typed wrappers over the orchestrator for CRM contacts.

  - analyze_contact: score + insights + recommendations for one contact
  - score_contact / enrich_contact / generate_insights: one operation each
  - analyze_bulk: up to 50 contacts, fanned out in small concurrent batches

Contact data comes from an injected async loader; this module never talks to
the CRM store directly.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from pydantic import ValidationError

from smartcrm.ai.errors import AIServiceError, RequestValidationError
from smartcrm.ai.orchestrator import AIOrchestrator
from smartcrm.ai.types import (
    AIRequest,
    AIResponse,
    OperationType,
    RequestContext,
    RequestPriority,
)
from smartcrm.schemas.ai_request import BulkAnalysisIn

logger = logging.getLogger(__name__)

ContactLoader = Callable[[str], Awaitable[Mapping[str, Any]]]

# Fields forwarded to the model; anything else on the contact stays local
CONTACT_FIELDS = (
    "name",
    "firstName",
    "lastName",
    "email",
    "title",
    "company",
    "industry",
    "sources",
    "interestLevel",
    "status",
    "notes",
    "tags",
    "socialProfiles",
)


@dataclass
class ContactAnalysis:
    contact_id: str
    score: float | None
    confidence: int
    insights: list = field(default_factory=list)
    recommendations: list = field(default_factory=list)
    categories: list = field(default_factory=list)
    tags: list = field(default_factory=list)
    provider: str = ""
    model: str = ""
    degraded: bool = False
    cached: bool = False
    processing_time_ms: int = 0

    @classmethod
    def from_response(cls, contact_id: str, response: AIResponse) -> ContactAnalysis:
        result = response.result or {}
        meta = response.metadata
        score = result.get("score")
        return cls(
            contact_id=contact_id,
            score=score if isinstance(score, (int, float)) and not isinstance(score, bool) else None,
            confidence=meta.confidence,
            insights=_as_list(result.get("insights")),
            recommendations=_as_list(result.get("recommendations")),
            categories=_as_list(result.get("categories")),
            tags=_as_list(result.get("tags")),
            provider=meta.provider,
            model=meta.model,
            degraded=meta.degraded,
            cached=meta.cached,
            processing_time_ms=meta.processing_time_ms,
        )


@dataclass
class BulkFailure:
    contact_id: str
    error: str


@dataclass
class BulkSummary:
    total: int
    successful: int
    failed: int
    average_score: int
    processing_time_ms: int


@dataclass
class BulkAnalysisResult:
    results: list[ContactAnalysis]
    failed: list[BulkFailure]
    summary: BulkSummary


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, (list, tuple)) else []


def contact_payload(contact: Mapping[str, Any]) -> dict[str, Any]:
    return {"contact": {k: contact[k] for k in CONTACT_FIELDS if contact.get(k) not in (None, "", [], {})}}


class ContactAnalysisService:
    """Contact-level AI operations.

    Usage:
        service = ContactAnalysisService(orchestrator, contact_loader=contacts_repo.get)

        analysis = await service.analyze_contact("c_123")
        bulk = await service.analyze_bulk(["c_1", "c_2", "c_3"])
    """

    def __init__(
        self,
        orchestrator: AIOrchestrator,
        contact_loader: ContactLoader,
        max_items: int = 50,
        batch_size: int = 5,
        batch_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.contact_loader = contact_loader
        self.max_items = max_items
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._sleep = sleep

    async def _contact(self, contact_id: str, contact: Mapping[str, Any] | None) -> Mapping[str, Any]:
        if not contact_id:
            raise RequestValidationError("contact_id is required")
        if contact is not None:
            return contact
        return await self.contact_loader(contact_id)

    async def _run(
        self,
        operation: OperationType,
        contact_id: str,
        contact: Mapping[str, Any] | None,
        priority: RequestPriority,
        extra: Mapping[str, Any] | None = None,
    ) -> AIResponse:
        data = await self._contact(contact_id, contact)
        payload = contact_payload(data)
        if extra:
            payload.update(extra)
        request = AIRequest(
            operation=operation,
            payload=payload,
            priority=priority,
            context=RequestContext(subject_id=contact_id),
        )
        return await self.orchestrator.execute_immediate(request)

    async def analyze_contact(
        self,
        contact_id: str,
        contact: Mapping[str, Any] | None = None,
        priority: RequestPriority = RequestPriority.MEDIUM,
    ) -> ContactAnalysis:
        response = await self._run(OperationType.SCORING, contact_id, contact, priority)
        return ContactAnalysis.from_response(contact_id, response)

    async def score_contact(
        self,
        contact_id: str,
        contact: Mapping[str, Any] | None = None,
        priority: RequestPriority = RequestPriority.MEDIUM,
    ) -> AIResponse:
        return await self._run(OperationType.SCORING, contact_id, contact, priority)

    async def enrich_contact(
        self,
        contact_id: str,
        contact: Mapping[str, Any] | None = None,
        priority: RequestPriority = RequestPriority.MEDIUM,
    ) -> AIResponse:
        return await self._run(OperationType.ENRICHMENT, contact_id, contact, priority)

    async def generate_insights(
        self,
        contact_id: str,
        contact: Mapping[str, Any] | None = None,
        insight_types: list[str] | None = None,
        priority: RequestPriority = RequestPriority.MEDIUM,
    ) -> AIResponse:
        extra = {"insightTypes": insight_types} if insight_types else None
        return await self._run(OperationType.INSIGHTS, contact_id, contact, priority, extra)

    async def analyze_bulk(
        self,
        contact_ids: list[str],
        priority: RequestPriority = RequestPriority.LOW,
    ) -> BulkAnalysisResult:
        """Analyze up to ``max_items`` contacts; one failure doesn't abort the rest.

        Raises:
            RequestValidationError: empty id list or more than ``max_items`` ids.
        """
        try:
            ids = BulkAnalysisIn(contact_ids=contact_ids).contact_ids
        except ValidationError as e:
            raise RequestValidationError(f"Invalid bulk analysis request: {e}") from e
        if len(ids) > self.max_items:
            raise RequestValidationError(f"Bulk analysis is limited to {self.max_items} contacts at a time")

        start = time.monotonic()
        logger.info("Starting bulk AI analysis of %d contacts", len(ids))

        results: list[ContactAnalysis] = []
        failed: list[BulkFailure] = []
        batches = [ids[i : i + self.batch_size] for i in range(0, len(ids), self.batch_size)]

        for idx, batch in enumerate(batches):
            outcomes = await asyncio.gather(
                *(self.analyze_contact(cid, priority=priority) for cid in batch),
                return_exceptions=True,
            )
            for cid, outcome in zip(batch, outcomes):
                if isinstance(outcome, ContactAnalysis):
                    results.append(outcome)
                    continue
                if not isinstance(outcome, Exception):
                    # CancelledError and friends are not per-item failures
                    raise outcome
                message = outcome.message if isinstance(outcome, AIServiceError) else str(outcome) or "Unknown error"
                failed.append(BulkFailure(contact_id=cid, error=message))
                logger.error("Bulk analysis failed for contact %s: %s", cid, message)

            # Pause between batches only
            if idx < len(batches) - 1:
                await self._sleep(self.batch_delay)

        scores = [r.score for r in results if r.score is not None]
        summary = BulkSummary(
            total=len(ids),
            successful=len(results),
            failed=len(failed),
            average_score=round(sum(scores) / len(scores)) if scores else 0,
            processing_time_ms=int((time.monotonic() - start) * 1000),
        )
        logger.info(
            "Bulk AI analysis completed: %d/%d successful, average score %d",
            summary.successful,
            summary.total,
            summary.average_score,
        )
        return BulkAnalysisResult(results=results, failed=failed, summary=summary)
