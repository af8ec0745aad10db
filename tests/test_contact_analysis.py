"""Tests for contact-level analysis and bulk fan-out."""

from __future__ import annotations

import pytest
from helpers import FakeTransport, openai_text_reply, openai_tool_reply, proxy_reply

from smartcrm.ai.contact_analysis import ContactAnalysisService, contact_payload
from smartcrm.ai.errors import RequestValidationError
from smartcrm.ai.types import OperationType, ProviderName


def _contacts(n: int) -> dict[str, dict]:
    return {f"c-{i}": {"name": f"Contact {i}", "company": "Acme", "email": f"c{i}@acme.test"} for i in range(n)}


def _service(orchestrator, contacts: dict[str, dict], missing: set[str] = frozenset()) -> ContactAnalysisService:
    async def load(contact_id: str) -> dict:
        if contact_id in missing:
            raise LookupError(f"contact {contact_id} not found")
        return contacts[contact_id]

    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    service = ContactAnalysisService(orchestrator, contact_loader=load, sleep=fake_sleep)
    service.sleeps = sleeps
    return service


# ==========================================================================
# Test: Payload shaping
# ==========================================================================


class TestContactPayload:
    def test_only_known_non_empty_fields(self):
        contact = {"name": "Ada", "email": "", "company": "AE", "internal_notes": "vip", "tags": []}
        assert contact_payload(contact) == {"contact": {"name": "Ada", "company": "AE"}}


# ==========================================================================
# Test: Single contact
# ==========================================================================


class TestSingleContact:
    @pytest.mark.asyncio
    async def test_analyze_contact(self, make_orchestrator):
        reply = openai_tool_reply(
            {
                "score": 78,
                "confidence": 88,
                "insights": ["Recently promoted"],
                "recommendations": ["Schedule a demo"],
                "categories": ["enterprise"],
                "tags": ["decision-maker"],
            }
        )
        openai = FakeTransport(ProviderName.OPENAI, [reply])
        service = _service(make_orchestrator({ProviderName.OPENAI: openai}), _contacts(1))

        analysis = await service.analyze_contact("c-0")

        assert analysis.contact_id == "c-0"
        assert analysis.score == 78
        assert analysis.confidence == 88
        assert analysis.insights == ["Recently promoted"]
        assert analysis.recommendations == ["Schedule a demo"]
        assert analysis.categories == ["enterprise"]
        assert analysis.tags == ["decision-maker"]
        assert analysis.provider == "openai"
        assert openai.calls[0]["operation"] == OperationType.SCORING

    @pytest.mark.asyncio
    async def test_inline_contact_skips_loader(self, make_orchestrator):
        openai = FakeTransport(ProviderName.OPENAI, [openai_tool_reply({"score": 50})])
        service = _service(make_orchestrator({ProviderName.OPENAI: openai}), {})

        analysis = await service.analyze_contact("c-x", contact={"name": "Inline"})

        assert analysis.score == 50

    @pytest.mark.asyncio
    async def test_degraded_analysis_has_no_score(self, make_orchestrator):
        openai = FakeTransport(ProviderName.OPENAI, [openai_text_reply("Strong lead overall.")])
        service = _service(make_orchestrator({ProviderName.OPENAI: openai}), _contacts(1))

        analysis = await service.analyze_contact("c-0")

        assert analysis.score is None
        assert analysis.degraded is True
        assert analysis.confidence == 0

    @pytest.mark.asyncio
    async def test_enrich_contact(self, make_orchestrator):
        openai = FakeTransport(ProviderName.OPENAI, [openai_tool_reply({"industry": "Software"})])
        service = _service(make_orchestrator({ProviderName.OPENAI: openai}), _contacts(1))

        resp = await service.enrich_contact("c-0")

        assert resp.operation == OperationType.ENRICHMENT
        assert resp.result["industry"] == "Software"
        assert openai.calls[0]["operation"] == OperationType.ENRICHMENT

    @pytest.mark.asyncio
    async def test_generate_insights_forwards_types(self, make_orchestrator):
        proxy = FakeTransport(ProviderName.PROXY, [proxy_reply({"insights": []})])
        orch = make_orchestrator({ProviderName.PROXY: proxy}, openai_api_key="")
        service = _service(orch, _contacts(1))

        resp = await service.generate_insights("c-0", insight_types=["opportunity", "risk"])

        body = proxy.calls[0]["body"]
        assert body["operation"] == "insights"
        assert body["payload"]["insightTypes"] == ["opportunity", "risk"]
        assert body["context"]["contactId"] == "c-0"
        assert resp.metadata.confidence == 60

    @pytest.mark.asyncio
    async def test_score_contact_returns_response(self, make_orchestrator):
        openai = FakeTransport(ProviderName.OPENAI, [openai_tool_reply({"score": 64})])
        service = _service(make_orchestrator({ProviderName.OPENAI: openai}), _contacts(1))

        resp = await service.score_contact("c-0")

        assert resp.ok
        assert resp.result["score"] == 64

    @pytest.mark.asyncio
    async def test_blank_contact_id(self, make_orchestrator):
        service = _service(make_orchestrator({}), {})
        with pytest.raises(RequestValidationError):
            await service.analyze_contact("")


# ==========================================================================
# Test: Bulk
# ==========================================================================


class TestAnalyzeBulk:
    @pytest.mark.asyncio
    async def test_partial_failure(self, make_orchestrator):
        openai = FakeTransport(ProviderName.OPENAI, [openai_tool_reply({"score": 70})])
        contacts = _contacts(10)
        service = _service(make_orchestrator({ProviderName.OPENAI: openai}), contacts, missing={"c-3"})

        bulk = await service.analyze_bulk(list(contacts))

        assert bulk.summary.total == 10
        assert bulk.summary.successful == 9
        assert bulk.summary.failed == 1
        assert bulk.summary.average_score == 70
        assert [f.contact_id for f in bulk.failed] == ["c-3"]
        assert "not found" in bulk.failed[0].error
        assert len(openai.calls) == 9

    @pytest.mark.asyncio
    async def test_delay_between_batches_only(self, make_orchestrator):
        openai = FakeTransport(ProviderName.OPENAI, [openai_tool_reply({"score": 70})])
        contacts = _contacts(11)
        service = _service(make_orchestrator({ProviderName.OPENAI: openai}), contacts)

        await service.analyze_bulk(list(contacts))

        # 3 batches of at most 5
        assert service.sleeps == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_single_batch_never_sleeps(self, make_orchestrator):
        openai = FakeTransport(ProviderName.OPENAI, [openai_tool_reply({"score": 70})])
        contacts = _contacts(5)
        service = _service(make_orchestrator({ProviderName.OPENAI: openai}), contacts)

        await service.analyze_bulk(list(contacts))

        assert service.sleeps == []

    @pytest.mark.asyncio
    async def test_average_excludes_degraded(self, make_orchestrator):
        openai = FakeTransport(
            ProviderName.OPENAI,
            [
                openai_tool_reply({"score": 80}),
                openai_text_reply("No structured answer"),
                openai_tool_reply({"score": 90}),
                openai_tool_reply({"score": 95}),
            ],
        )
        contacts = _contacts(4)
        service = _service(make_orchestrator({ProviderName.OPENAI: openai}), contacts)

        bulk = await service.analyze_bulk(list(contacts))

        assert bulk.summary.successful == 4
        assert bulk.summary.average_score == 88  # (80 + 90 + 95) / 3
        assert sum(1 for r in bulk.results if r.degraded) == 1

    @pytest.mark.asyncio
    async def test_all_degraded_average_is_zero(self, make_orchestrator):
        openai = FakeTransport(ProviderName.OPENAI, [openai_text_reply("nothing useful")])
        contacts = _contacts(2)
        service = _service(make_orchestrator({ProviderName.OPENAI: openai}), contacts)

        bulk = await service.analyze_bulk(list(contacts))

        assert bulk.summary.average_score == 0

    @pytest.mark.asyncio
    async def test_empty_list_rejected(self, make_orchestrator):
        service = _service(make_orchestrator({}), {})
        with pytest.raises(RequestValidationError):
            await service.analyze_bulk([])

    @pytest.mark.asyncio
    async def test_more_than_fifty_rejected(self, make_orchestrator):
        service = _service(make_orchestrator({}), {})
        with pytest.raises(RequestValidationError):
            await service.analyze_bulk([f"c-{i}" for i in range(51)])

    @pytest.mark.asyncio
    async def test_blank_id_rejected(self, make_orchestrator):
        service = _service(make_orchestrator({}), {})
        with pytest.raises(RequestValidationError):
            await service.analyze_bulk(["c-1", "  "])

    @pytest.mark.asyncio
    async def test_service_limit_below_schema_limit(self, make_orchestrator):
        service = _service(make_orchestrator({}), {})
        service.max_items = 3
        with pytest.raises(RequestValidationError):
            await service.analyze_bulk(["a", "b", "c", "d"])
