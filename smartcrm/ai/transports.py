"""Transports — outbound HTTP for each provider.

Each transport posts an already-built request body and returns the raw JSON
reply. Parsing belongs to the normalizer. Every failure becomes a
``TransportError`` so the orchestrator can retry or fall back uniformly:
  - OpenAI: chat completions, Bearer auth
  - Gemini: generateContent, ``key`` query param
  - Anthropic: messages API, ``x-api-key`` header
  - Proxy: serverless functions (``{base_url}/functions/v1/<endpoint>``)
    that hold their own vendor credentials
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from smartcrm.ai.errors import TransportError
from smartcrm.ai.types import OperationType, ProviderName, TransportType
from smartcrm.core.config import Settings

logger = logging.getLogger(__name__)


# Pricing per 1M tokens (USD)
_PRICING: dict[ProviderName, dict[str, dict[str, float]]] = {
    ProviderName.OPENAI: {
        "gpt-4o": {"input": 2.50, "output": 10.00},
        "gpt-4o-mini": {"input": 0.15, "output": 0.60},
        "gpt-4.1": {"input": 2.00, "output": 8.00},
        "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
    },
    ProviderName.GEMINI: {
        "gemini-2.0-flash": {"input": 0.10, "output": 0.40},
        "gemini-2.5-flash": {"input": 0.15, "output": 0.60},
        "gemini-2.5-pro": {"input": 1.25, "output": 10.00},
    },
    ProviderName.ANTHROPIC: {
        "claude-3-5-haiku-latest": {"input": 0.80, "output": 4.00},
        "claude-3-5-sonnet-latest": {"input": 3.00, "output": 15.00},
    },
}

_DEFAULT_PRICED_MODEL = {
    ProviderName.OPENAI: "gpt-4o-mini",
    ProviderName.GEMINI: "gemini-2.0-flash",
    ProviderName.ANTHROPIC: "claude-3-5-haiku-latest",
}


def estimate_cost(provider: ProviderName, model: str, input_tokens: int, output_tokens: int) -> float | None:
    """Estimated USD cost of one call, or None when the provider isn't billed per token here."""
    table = _PRICING.get(provider)
    if table is None:
        return None
    pricing = table.get(model) or table[_DEFAULT_PRICED_MODEL[provider]]
    return round((input_tokens * pricing["input"] + output_tokens * pricing["output"]) / 1_000_000, 6)


class BaseTransport(ABC):
    """Base class for all provider transports."""

    provider: ProviderName
    transport_type: TransportType = TransportType.DIRECT

    def __init__(self, api_key: str, **kwargs):
        self.api_key = api_key

    @abstractmethod
    async def send(self, body: dict, *, model: str, operation: OperationType, timeout: float = 30.0) -> dict:
        """Send ``body`` and return the decoded JSON reply."""
        ...

    async def _post_json(
        self,
        url: str,
        body: dict,
        timeout: float,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict:
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(
                    url,
                    json=body,
                    headers={"Content-Type": "application/json", **(headers or {})},
                    params=params,
                )

            if resp.status_code == 429:
                raise TransportError(
                    f"Rate limited by {self.provider.value}",
                    status_code=429,
                    error_code="429",
                )

            resp.raise_for_status()
            data = resp.json()

        except httpx.TimeoutException as e:
            raise TransportError(f"{self.provider.value} timeout after {timeout}s", error_code="TIMEOUT") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise TransportError(
                f"{self.provider.value} returned HTTP {status}",
                status_code=status,
                error_code=str(status),
                # 4xx other than 429 won't succeed on retry
                retryable=status >= 500,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{self.provider.value} request failed: {e}", error_code="NETWORK") from e
        except ValueError as e:
            raise TransportError(f"{self.provider.value} returned invalid JSON", error_code="BAD_JSON") from e

        if not isinstance(data, dict):
            raise TransportError(f"{self.provider.value} returned a non-object JSON body", error_code="BAD_JSON")
        return data


# ---------------------------------------------------------------------------
# Direct vendor transports
# ---------------------------------------------------------------------------


class OpenAITransport(BaseTransport):
    """OpenAI Chat Completions."""

    provider = ProviderName.OPENAI
    api_url = "https://api.openai.com/v1/chat/completions"

    async def send(self, body: dict, *, model: str, operation: OperationType, timeout: float = 30.0) -> dict:
        return await self._post_json(
            self.api_url,
            body,
            timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )


class GeminiTransport(BaseTransport):
    """Google Gemini generateContent."""

    provider = ProviderName.GEMINI
    api_url_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    async def send(self, body: dict, *, model: str, operation: OperationType, timeout: float = 30.0) -> dict:
        data = await self._post_json(
            self.api_url_template.format(model=model),
            body,
            timeout,
            params={"key": self.api_key},
        )
        # generateContent doesn't always echo the model
        data.setdefault("modelVersion", model)
        return data


class AnthropicTransport(BaseTransport):
    """Anthropic Messages API."""

    provider = ProviderName.ANTHROPIC
    api_url = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"

    async def send(self, body: dict, *, model: str, operation: OperationType, timeout: float = 30.0) -> dict:
        return await self._post_json(
            self.api_url,
            body,
            timeout,
            headers={"x-api-key": self.api_key, "anthropic-version": self.api_version},
        )


# ---------------------------------------------------------------------------
# Server-side proxy
# ---------------------------------------------------------------------------

# Operation → serverless function name
PROXY_ENDPOINTS: dict[OperationType, str] = {
    OperationType.SCORING: "ai-enrichment",
    OperationType.ENRICHMENT: "ai-enrichment",
    OperationType.RELATIONSHIP_MAPPING: "ai-enrichment",
    OperationType.EMAIL_GENERATION: "email-composer",
    OperationType.EMAIL_ANALYSIS: "email-analyzer",
    OperationType.INSIGHTS: "ai-insights",
    OperationType.COMMUNICATION_ANALYSIS: "communication-optimization",
    OperationType.AUTOMATION_SUGGESTIONS: "adaptive-playbook",
    OperationType.PREDICTIVE_ANALYTICS: "sales-forecasting",
}


class ProxyTransport(BaseTransport):
    """Serverless proxy that calls the vendor with server-held credentials.

    Replies arrive wrapped in a ``{"success": bool, "data": ...}`` envelope.
    """

    provider = ProviderName.PROXY
    transport_type = TransportType.PROXY

    def __init__(self, api_key: str, base_url: str = "", **kwargs):
        super().__init__(api_key=api_key, **kwargs)
        self.base_url = base_url.rstrip("/")

    def endpoint_url(self, operation: OperationType) -> str:
        endpoint = PROXY_ENDPOINTS.get(operation)
        if endpoint is None:
            raise TransportError(
                f"No proxy endpoint for operation: {operation.value}",
                error_code="NO_ENDPOINT",
                retryable=False,
            )
        return f"{self.base_url}/functions/v1/{endpoint}"

    async def send(self, body: dict, *, model: str, operation: OperationType, timeout: float = 30.0) -> dict:
        if not self.base_url or not self.api_key:
            raise TransportError("Proxy is not configured", error_code="NOT_CONFIGURED", retryable=False)

        url = self.endpoint_url(operation)
        logger.debug("Proxy call %s -> %s", operation.value, url)
        return await self._post_json(url, body, timeout, headers={"Authorization": f"Bearer {self.api_key}"})


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

TRANSPORT_REGISTRY: dict[ProviderName, type[BaseTransport]] = {
    ProviderName.OPENAI: OpenAITransport,
    ProviderName.GEMINI: GeminiTransport,
    ProviderName.ANTHROPIC: AnthropicTransport,
    ProviderName.PROXY: ProxyTransport,
}


def get_transport(provider: ProviderName, api_key: str, **kwargs: Any) -> BaseTransport:
    """Factory: get the appropriate transport for a provider."""
    cls = TRANSPORT_REGISTRY.get(provider)
    if cls is None:
        raise ValueError(f"No transport registered for provider: {provider}")
    return cls(api_key=api_key, **kwargs)


def build_transports(cfg: Settings) -> dict[ProviderName, BaseTransport]:
    """Instantiate a transport for every provider that has credentials."""
    transports: dict[ProviderName, BaseTransport] = {}
    if cfg.openai_api_key:
        transports[ProviderName.OPENAI] = get_transport(ProviderName.OPENAI, cfg.openai_api_key)
    if cfg.gemini_api_key:
        transports[ProviderName.GEMINI] = get_transport(ProviderName.GEMINI, cfg.gemini_api_key)
    if cfg.anthropic_api_key:
        transports[ProviderName.ANTHROPIC] = get_transport(ProviderName.ANTHROPIC, cfg.anthropic_api_key)
    if cfg.proxy_base_url and cfg.proxy_api_key:
        transports[ProviderName.PROXY] = get_transport(
            ProviderName.PROXY, cfg.proxy_api_key, base_url=cfg.proxy_base_url
        )
    return transports
