"""Tests for the Response Normalizer."""

from __future__ import annotations

import json

import pytest
from helpers import openai_text_reply, openai_tool_reply, proxy_reply

from smartcrm.ai.errors import TransportError
from smartcrm.ai.normalizer import (
    DEGRADED_NOTE,
    FUNCTION_CALL_CONFIDENCE,
    TEXT_JSON_CONFIDENCE,
    ReplyKind,
    default_result,
    extract_json_object,
    extract_reply,
    parse_response,
)
from smartcrm.ai.types import OperationType, ProviderName


def _gemini(text: str = "", **extra) -> dict:
    raw = {
        "candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": "STOP"}],
        "usageMetadata": {"promptTokenCount": 40, "candidatesTokenCount": 12},
        "modelVersion": "gemini-2.0-flash",
    }
    raw.update(extra)
    return raw


def _anthropic(blocks: list[dict]) -> dict:
    return {
        "model": "claude-3-5-haiku-latest",
        "content": blocks,
        "usage": {"input_tokens": 30, "output_tokens": 10},
    }


# ==========================================================================
# Test: JSON extraction
# ==========================================================================


class TestExtractJsonObject:
    def test_surrounding_prose(self):
        assert extract_json_object('Sure! Here it is: {"score": 80} Hope that helps.') == {"score": 80}

    def test_markdown_fence(self):
        assert extract_json_object('```json\n{"score": 80}\n```') == {"score": 80}

    def test_nested_object(self):
        text = '{"score": 80, "breakdown": {"fit": 30}}'
        assert extract_json_object(text) == {"score": 80, "breakdown": {"fit": 30}}

    def test_no_object(self):
        assert extract_json_object("I cannot help with that.") is None

    def test_malformed(self):
        assert extract_json_object("{score: eighty}") is None

    def test_array_is_not_an_object(self):
        assert extract_json_object("[1, 2, 3]") is None


# ==========================================================================
# Test: Reply extraction
# ==========================================================================


class TestExtractReply:
    def test_openai_tool_call(self):
        reply = extract_reply(ProviderName.OPENAI, openai_tool_reply({"score": 80}))
        assert reply.kind == ReplyKind.FUNCTION_CALL
        assert json.loads(reply.args) == {"score": 80}
        assert (reply.input_tokens, reply.output_tokens) == (120, 80)

    def test_openai_legacy_function_call(self):
        raw = {"choices": [{"message": {"function_call": {"name": "f", "arguments": '{"score": 5}'}}}]}
        assert extract_reply(ProviderName.OPENAI, raw).kind == ReplyKind.FUNCTION_CALL

    def test_openai_text(self):
        assert extract_reply(ProviderName.OPENAI, openai_text_reply('{"a": 1}')).kind == ReplyKind.TEXT_JSON
        assert extract_reply(ProviderName.OPENAI, openai_text_reply("hello")).kind == ReplyKind.TEXT_PLAIN

    def test_openai_no_choices(self):
        with pytest.raises(TransportError) as exc_info:
            extract_reply(ProviderName.OPENAI, {"choices": []})
        assert exc_info.value.error_code == "EMPTY"

    def test_openai_empty_content(self):
        with pytest.raises(TransportError):
            extract_reply(ProviderName.OPENAI, openai_text_reply("   "))

    def test_gemini_text(self):
        reply = extract_reply(ProviderName.GEMINI, _gemini('{"score": 1}'))
        assert reply.kind == ReplyKind.TEXT_JSON
        assert reply.model == "gemini-2.0-flash"
        assert reply.input_tokens == 40

    def test_gemini_function_call(self):
        raw = _gemini()
        raw["candidates"][0]["content"]["parts"] = [{"functionCall": {"name": "f", "args": {"score": 3}}}]
        reply = extract_reply(ProviderName.GEMINI, raw)
        assert reply.kind == ReplyKind.FUNCTION_CALL
        assert reply.args == {"score": 3}

    def test_gemini_safety_block_is_not_retryable(self):
        raw = _gemini("x")
        raw["candidates"][0]["finishReason"] = "SAFETY"
        with pytest.raises(TransportError) as exc_info:
            extract_reply(ProviderName.GEMINI, raw)
        assert exc_info.value.retryable is False

    def test_gemini_prompt_blocked(self):
        raw = {"candidates": [], "promptFeedback": {"blockReason": "OTHER"}}
        with pytest.raises(TransportError) as exc_info:
            extract_reply(ProviderName.GEMINI, raw)
        assert exc_info.value.error_code == "BLOCKED_OTHER"
        assert exc_info.value.retryable is False

    def test_anthropic_text_blocks_joined(self):
        raw = _anthropic([{"type": "text", "text": '{"score": '}, {"type": "text", "text": "9}"}])
        reply = extract_reply(ProviderName.ANTHROPIC, raw)
        assert reply.text == '{"score": 9}'
        assert reply.output_tokens == 10

    def test_anthropic_tool_use(self):
        raw = _anthropic([{"type": "tool_use", "name": "f", "input": {"score": 9}}])
        assert extract_reply(ProviderName.ANTHROPIC, raw).args == {"score": 9}

    def test_proxy_error_envelope(self):
        with pytest.raises(TransportError) as exc_info:
            extract_reply(ProviderName.PROXY, {"success": False, "error": "upstream down"})
        assert "upstream down" in str(exc_info.value)
        assert exc_info.value.error_code == "PROXY_ERROR"

    def test_openai_content_parts_joined(self):
        raw = openai_text_reply("")
        raw["choices"][0]["message"]["content"] = [
            {"type": "text", "text": '{"score": '},
            {"type": "text", "text": "61}"},
        ]

        reply = extract_reply(ProviderName.OPENAI, raw)

        assert reply.kind == ReplyKind.TEXT_JSON
        assert reply.text == '{"score": 61}'

    @pytest.mark.parametrize(
        "provider, raw",
        [
            (ProviderName.OPENAI, {"choices": ["not-a-message"]}),
            (ProviderName.OPENAI, {"choices": [{"message": {"content": 42}}]}),
            (ProviderName.GEMINI, {"candidates": ["oops"]}),
            (ProviderName.ANTHROPIC, {"content": "plain string"}),
            (ProviderName.PROXY, ["success"]),
        ],
    )
    def test_unexpected_shape_is_transport_error(self, provider, raw):
        with pytest.raises(TransportError) as exc_info:
            extract_reply(provider, raw)
        assert exc_info.value.error_code == "BAD_SHAPE"
        assert exc_info.value.retryable is False

    def test_proxy_envelope_without_data(self):
        reply = extract_reply(ProviderName.PROXY, {"success": True, "model": "gpt-4o", "score": 70})

        assert reply.args == {"score": 70}
        assert reply.model == "gpt-4o"


# ==========================================================================
# Test: parse_response
# ==========================================================================


class TestParseResponse:
    def test_function_call_confidence_from_reply(self):
        parsed = parse_response(
            ProviderName.OPENAI, OperationType.SCORING, openai_tool_reply({"score": 82, "confidence": 91})
        )
        assert parsed.result["score"] == 82
        assert parsed.confidence == 91
        assert parsed.degraded is False
        assert parsed.model == "gpt-4o-mini"

    def test_function_call_default_confidence(self):
        parsed = parse_response(ProviderName.OPENAI, OperationType.SCORING, openai_tool_reply({"score": 82}))
        assert parsed.confidence == FUNCTION_CALL_CONFIDENCE

    def test_text_json_default_confidence(self):
        parsed = parse_response(ProviderName.OPENAI, OperationType.INSIGHTS, openai_text_reply('{"insights": []}'))
        assert parsed.confidence == TEXT_JSON_CONFIDENCE

    def test_confidence_clamped(self):
        parsed = parse_response(
            ProviderName.OPENAI, OperationType.SCORING, openai_tool_reply({"score": 1, "confidence": 250})
        )
        assert parsed.confidence == 100
        parsed = parse_response(
            ProviderName.OPENAI, OperationType.SCORING, openai_tool_reply({"score": 1, "confidence": -5})
        )
        assert parsed.confidence == 0

    def test_non_numeric_confidence_ignored(self):
        parsed = parse_response(
            ProviderName.OPENAI, OperationType.SCORING, openai_tool_reply({"score": 1, "confidence": "high"})
        )
        assert parsed.confidence == FUNCTION_CALL_CONFIDENCE

    def test_fenced_text_reply(self):
        raw = openai_text_reply('```json\n{"subject": "Hi", "body": "Hello"}\n```')
        parsed = parse_response(ProviderName.OPENAI, OperationType.EMAIL_GENERATION, raw)
        assert parsed.result == {"subject": "Hi", "body": "Hello"}
        assert parsed.degraded is False

    def test_plain_text_degrades(self):
        parsed = parse_response(ProviderName.OPENAI, OperationType.SCORING, openai_text_reply("Looks promising."))
        assert parsed.degraded is True
        assert parsed.confidence == 0
        assert parsed.note == DEGRADED_NOTE
        assert parsed.result["rawText"] == "Looks promising."
        assert parsed.result["score"] is None
        assert parsed.result["insights"] == []

    def test_malformed_tool_arguments_degrade(self):
        raw = openai_tool_reply({})
        raw["choices"][0]["message"]["tool_calls"][0]["function"]["arguments"] = '{"score": 8'
        parsed = parse_response(ProviderName.OPENAI, OperationType.SCORING, raw)
        assert parsed.degraded is True
        assert parsed.result["rawText"] == '{"score": 8'

    def test_gemini_reply(self):
        parsed = parse_response(ProviderName.GEMINI, OperationType.ENRICHMENT, _gemini('{"company": "Acme"}'))
        assert parsed.result == {"company": "Acme"}
        assert parsed.output_tokens == 12

    def test_proxy_scoring_confidence(self):
        parsed = parse_response(ProviderName.PROXY, OperationType.SCORING, proxy_reply({"score": 75}))
        assert parsed.confidence == 70
        assert parsed.model == "proxy-edge-function"

    def test_proxy_enrichment_and_other_confidence(self):
        assert parse_response(ProviderName.PROXY, OperationType.ENRICHMENT, proxy_reply({"company": "A"})).confidence == 65
        assert parse_response(ProviderName.PROXY, OperationType.INSIGHTS, proxy_reply({"insights": []})).confidence == 60

    def test_proxy_overall_becomes_score(self):
        parsed = parse_response(ProviderName.PROXY, OperationType.SCORING, proxy_reply({"overall": 64}))
        assert parsed.result["score"] == 64

    def test_proxy_string_data(self):
        raw = {"success": True, "data": 'Result: {"score": 10}'}
        parsed = parse_response(ProviderName.PROXY, OperationType.SCORING, raw)
        assert parsed.result == {"score": 10}
        assert parsed.confidence == 70


class TestDefaultResult:
    def test_shapes_follow_field_types(self):
        result = default_result(OperationType.PREDICTIVE_ANALYTICS)
        assert result == {
            "conversionProbability": None,
            "predictedCloseDays": None,
            "dealValueEstimate": None,
            "riskFactors": [],
        }

    def test_string_and_object_fields(self):
        result = default_result(OperationType.ENRICHMENT)
        assert result["company"] == ""
        assert result["location"] == {}
        assert "confidence" not in result
