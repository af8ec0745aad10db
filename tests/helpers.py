"""Shared fakes and reply builders for the test suite."""

from __future__ import annotations

import asyncio
import json

from smartcrm.ai.errors import TransportError
from smartcrm.ai.transports import BaseTransport
from smartcrm.ai.types import OperationType, ProviderName, TransportType
from smartcrm.core.config import Settings


class FakeClock:
    """Manually advanced clock for time-dependent components."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport(BaseTransport):
    """Returns canned replies in order; the last one repeats. Exceptions are raised."""

    def __init__(self, provider: ProviderName, replies: list, delay: float = 0.0):
        super().__init__(api_key="test-key")
        self.provider = provider
        self.transport_type = TransportType.PROXY if provider == ProviderName.PROXY else TransportType.DIRECT
        self.replies = list(replies)
        self.delay = delay
        self.calls: list[dict] = []

    async def send(self, body: dict, *, model: str, operation: OperationType, timeout: float = 30.0) -> dict:
        self.calls.append({"body": body, "model": model, "operation": operation, "timeout": timeout})
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


def make_settings(**overrides) -> Settings:
    values = {
        "openai_api_key": "sk-test",
        "openai_enabled": True,
        "gemini_api_key": "",
        "gemini_enabled": False,
        "anthropic_api_key": "",
        "anthropic_enabled": False,
        "proxy_base_url": "https://proxy.example.com",
        "proxy_api_key": "proxy-key",
        "proxy_enabled": True,
        "cache_snapshot_path": "",
        "sentry_dsn": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def openai_tool_reply(args: dict, model: str = "gpt-4o-mini") -> dict:
    return {
        "id": "chatcmpl-1",
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "submit_scoring", "arguments": json.dumps(args)},
                        }
                    ],
                },
                "finish_reason": "tool_calls",
            }
        ],
        "usage": {"prompt_tokens": 120, "completion_tokens": 80},
    }


def openai_text_reply(text: str, model: str = "gpt-4o-mini") -> dict:
    return {
        "model": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 50, "completion_tokens": 25},
    }


def proxy_reply(data: dict) -> dict:
    return {"success": True, "data": data}


def server_error(provider: str = "openai", status: int = 500) -> TransportError:
    return TransportError(f"{provider} returned HTTP {status}", status_code=status, retryable=status >= 500)
