"""Response Normalizer — turns raw provider JSON into a structured result.

Two steps:
  1. ``extract_reply`` reads the provider's wire shape into a ``ProviderReply``
     (tool/function-call arguments, text that looks like JSON, or plain text).
  2. ``parse_response`` turns that reply into the operation's result object.

Replies that can't be parsed are not errors: the operation's default shape is
returned with ``degraded=True``, ``confidence=0`` and the raw text kept under
``rawText``. Empty replies, vendor refusals and proxy error envelopes are
transport failures and raise ``TransportError`` instead.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from smartcrm.ai.errors import TransportError
from smartcrm.ai.prompts import OPERATION_FIELDS
from smartcrm.ai.types import OperationType, ProviderName

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*")

FUNCTION_CALL_CONFIDENCE = 85
TEXT_JSON_CONFIDENCE = 80

PROXY_CONFIDENCE: dict[OperationType, int] = {
    OperationType.SCORING: 70,
    OperationType.ENRICHMENT: 65,
}
PROXY_DEFAULT_CONFIDENCE = 60
PROXY_MODEL = "proxy-edge-function"
PROXY_ENVELOPE_KEYS = ("success", "error", "model")

DEGRADED_NOTE = "Provider reply was not structured JSON; default result shape returned"


class ReplyKind(str, Enum):
    FUNCTION_CALL = "function_call"  # strict tool/function arguments
    TEXT_JSON = "text_json"  # free text containing a {...} object
    TEXT_PLAIN = "text_plain"  # no JSON object in sight


@dataclass
class ProviderReply:
    kind: ReplyKind
    args: dict[str, Any] | str | None = None  # FUNCTION_CALL only
    text: str = ""
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ParsedResult:
    result: dict[str, Any]
    confidence: int
    degraded: bool = False
    note: str = ""
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


# ---------------------------------------------------------------------------
# Degraded defaults
# ---------------------------------------------------------------------------

_EMPTY_BY_TYPE = {"array": list, "object": dict, "string": str}


def default_result(operation: OperationType) -> dict[str, Any]:
    """Operation-shaped placeholder. Numbers are None, never invented."""
    result: dict[str, Any] = {}
    for name, kind in OPERATION_FIELDS[operation].items():
        if name == "confidence":
            continue
        factory = _EMPTY_BY_TYPE.get(kind)
        result[name] = factory() if factory else None
    return result


# ---------------------------------------------------------------------------
# Reply extraction (one function per wire shape)
# ---------------------------------------------------------------------------


def _classify_text(text: str, **kwargs) -> ProviderReply:
    start, end = text.find("{"), text.rfind("}")
    kind = ReplyKind.TEXT_JSON if start != -1 and end > start else ReplyKind.TEXT_PLAIN
    return ProviderReply(kind=kind, text=text, **kwargs)


def _extract_chat_completion(raw: Mapping[str, Any]) -> ProviderReply:
    choices = raw.get("choices") or []
    if not choices:
        raise TransportError("Empty reply from openai: no choices", error_code="EMPTY")

    message = choices[0].get("message") or {}
    usage = raw.get("usage") or {}
    meta = {
        "model": raw.get("model", ""),
        "input_tokens": usage.get("prompt_tokens", 0),
        "output_tokens": usage.get("completion_tokens", 0),
    }

    tool_calls = message.get("tool_calls") or []
    if tool_calls:
        arguments = (tool_calls[0].get("function") or {}).get("arguments", "")
        return ProviderReply(kind=ReplyKind.FUNCTION_CALL, args=arguments, **meta)

    # Legacy function calling
    function_call = message.get("function_call")
    if function_call:
        return ProviderReply(kind=ReplyKind.FUNCTION_CALL, args=function_call.get("arguments", ""), **meta)

    content = message.get("content") or ""
    if isinstance(content, list):
        # Content-part arrays from OpenAI-compatible servers
        content = "".join(p.get("text", "") for p in content if isinstance(p, Mapping))
    if not content.strip():
        raise TransportError("Empty reply from openai", error_code="EMPTY")
    return _classify_text(content, **meta)


def _extract_generate_content(raw: Mapping[str, Any]) -> ProviderReply:
    usage = raw.get("usageMetadata") or {}
    meta = {
        "model": raw.get("modelVersion", ""),
        "input_tokens": usage.get("promptTokenCount", 0),
        "output_tokens": usage.get("candidatesTokenCount", 0),
    }

    candidates = raw.get("candidates") or []
    if not candidates:
        block_reason = (raw.get("promptFeedback") or {}).get("blockReason", "")
        if block_reason:
            raise TransportError(
                f"Gemini blocked the prompt: {block_reason}",
                error_code=f"BLOCKED_{block_reason}",
                retryable=False,
            )
        raise TransportError("Empty reply from gemini: no candidates", error_code="EMPTY")

    candidate = candidates[0]
    if candidate.get("finishReason") == "SAFETY":
        raise TransportError("Gemini safety filter triggered", error_code="SAFETY", retryable=False)

    parts = (candidate.get("content") or {}).get("parts") or []
    for part in parts:
        if "functionCall" in part:
            return ProviderReply(kind=ReplyKind.FUNCTION_CALL, args=part["functionCall"].get("args") or {}, **meta)

    text = "".join(p.get("text", "") for p in parts if "text" in p)
    if not text.strip():
        raise TransportError("Empty reply from gemini", error_code="EMPTY")
    return _classify_text(text, **meta)


def _extract_messages(raw: Mapping[str, Any]) -> ProviderReply:
    usage = raw.get("usage") or {}
    meta = {
        "model": raw.get("model", ""),
        "input_tokens": usage.get("input_tokens", 0),
        "output_tokens": usage.get("output_tokens", 0),
    }

    blocks = raw.get("content") or []
    for block in blocks:
        if block.get("type") == "tool_use":
            return ProviderReply(kind=ReplyKind.FUNCTION_CALL, args=block.get("input") or {}, **meta)

    text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
    if not text.strip():
        raise TransportError("Empty reply from anthropic", error_code="EMPTY")
    return _classify_text(text, **meta)


def _extract_proxy_envelope(raw: Mapping[str, Any]) -> ProviderReply:
    if not raw or not raw.get("success"):
        error = raw.get("error") if raw else None
        raise TransportError(f"Proxy returned an error envelope: {error or 'success=false'}", error_code="PROXY_ERROR")

    data = raw["data"] if "data" in raw else {k: v for k, v in raw.items() if k not in PROXY_ENVELOPE_KEYS}
    model = raw.get("model") or PROXY_MODEL

    if isinstance(data, Mapping):
        return ProviderReply(kind=ReplyKind.FUNCTION_CALL, args=dict(data), model=model)
    if isinstance(data, str) and data.strip():
        return _classify_text(data, model=model)
    raise TransportError("Empty reply from proxy", error_code="EMPTY")


_EXTRACTORS = {
    ProviderName.OPENAI: _extract_chat_completion,
    ProviderName.GEMINI: _extract_generate_content,
    ProviderName.ANTHROPIC: _extract_messages,
    ProviderName.PROXY: _extract_proxy_envelope,
}


def extract_reply(provider: ProviderName, raw: Mapping[str, Any]) -> ProviderReply:
    """Read a raw provider reply.

    Raises:
        TransportError: empty, refused or error replies, and replies whose
            shape doesn't match the provider's wire format (``BAD_SHAPE``).
    """
    extractor = _EXTRACTORS.get(provider)
    if extractor is None:
        raise ValueError(f"No reply extractor for provider: {provider}")
    try:
        return extractor(raw)
    except (AttributeError, TypeError, KeyError) as e:
        raise TransportError(
            f"Unexpected {provider.value} reply shape: {e}",
            error_code="BAD_SHAPE",
            retryable=False,
        ) from e


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Parse the first ``{`` .. last ``}`` span; retry once without Markdown fences."""
    parsed = _parse_braced(text)
    if parsed is None:
        parsed = _parse_braced(_FENCE_PATTERN.sub("", text).strip())
    return parsed


def _parse_braced(text: str) -> dict[str, Any] | None:
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _coerce_args(args: dict[str, Any] | str | None) -> dict[str, Any] | None:
    if isinstance(args, dict):
        return args
    if not args:
        return None
    try:
        parsed = json.loads(args)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _clamp_confidence(value: Any, fallback: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    return int(max(0, min(100, round(value))))


def _shape_proxy_result(operation: OperationType, data: dict[str, Any]) -> dict[str, Any]:
    if operation == OperationType.SCORING and "score" not in data and "overall" in data:
        data = {**data, "score": data["overall"]}
    return data


def parse_response(provider: ProviderName, operation: OperationType, raw: Mapping[str, Any]) -> ParsedResult:
    """Normalize a raw provider reply into the operation's result object.

    Raises:
        TransportError: empty reply, vendor refusal or proxy error envelope.
    """
    reply = extract_reply(provider, raw)
    meta = {"model": reply.model, "input_tokens": reply.input_tokens, "output_tokens": reply.output_tokens}

    parsed: dict[str, Any] | None = None
    fallback_confidence = TEXT_JSON_CONFIDENCE

    if reply.kind == ReplyKind.FUNCTION_CALL:
        parsed = _coerce_args(reply.args)
        fallback_confidence = FUNCTION_CALL_CONFIDENCE
        if parsed is None and isinstance(reply.args, str):
            # Malformed arguments: treat them like a text reply
            parsed = extract_json_object(reply.args)
            fallback_confidence = TEXT_JSON_CONFIDENCE
    elif reply.kind == ReplyKind.TEXT_JSON:
        parsed = extract_json_object(reply.text)

    if parsed is not None:
        if provider == ProviderName.PROXY:
            parsed = _shape_proxy_result(operation, parsed)
            fallback_confidence = PROXY_CONFIDENCE.get(operation, PROXY_DEFAULT_CONFIDENCE)
        confidence = _clamp_confidence(parsed.get("confidence"), fallback_confidence)
        return ParsedResult(result=parsed, confidence=confidence, **meta)

    raw_text = reply.text or (reply.args if isinstance(reply.args, str) else "")
    logger.warning(
        "Unstructured %s reply for %s, returning degraded default (%d chars)",
        provider.value,
        operation.value,
        len(raw_text),
    )
    result = default_result(operation)
    result["rawText"] = raw_text
    return ParsedResult(result=result, confidence=0, degraded=True, note=DEGRADED_NOTE, **meta)
