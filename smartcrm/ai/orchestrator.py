"""AI Orchestrator — single entry point for all AI operations.

Pipeline for every request:
  1. Validate (plain mappings go through the pydantic schema)
  2. Serve from the Response Cache when allowed
  3. Select a provider from the registry (fallback mode + scoring)
  4. Call it through its transport: rate-limit gate, timeout, retries with
     exponential backoff
  5. On exhaustion switch transport (direct → proxy, or proxy → direct in
     proxy_first mode)
  6. Normalize, cache, update registry stats and history

Usage:
    orchestrator = AIOrchestrator(registry, transports, cache)

    # Synchronous path
    response = await orchestrator.execute_immediate(
        {"operation": "scoring", "payload": {"contact": contact}}
    )

    # Queued path
    request_id = orchestrator.submit_request(request)
    orchestrator.start()  # queue pump
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import Counter, deque
from typing import Any, Awaitable, Callable, Mapping

from pydantic import ValidationError

from smartcrm.ai.cache import ResponseCache, ttl_for
from smartcrm.ai.errors import (
    AIServiceError,
    ProviderError,
    RateLimitedError,
    RequestValidationError,
    TransportError,
)
from smartcrm.ai.normalizer import ParsedResult, parse_response
from smartcrm.ai.prompts import build_payload
from smartcrm.ai.providers import ProviderRegistry, ProviderState
from smartcrm.ai.queue import RequestQueue
from smartcrm.ai.rate_limiter import RateLimiter
from smartcrm.ai.retry import RetryPolicy
from smartcrm.ai.transports import BaseTransport, estimate_cost
from smartcrm.ai.types import (
    AIRequest,
    AIResponse,
    FailureKind,
    FallbackMode,
    OperationType,
    ProviderName,
    RateLimitConfig,
    ResponseMetadata,
    TransportType,
)
from smartcrm.core.metrics import (
    AI_CACHE_LOOKUPS,
    AI_PROVIDER_LATENCY,
    AI_REQUESTS,
    AI_TRANSPORT_FALLBACKS,
)
from smartcrm.schemas.ai_request import AIRequestIn

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "ai_responses"
CACHE_TAG = "ai"
HISTORY_LIMIT = 1000
METRICS_WINDOW = 100


class AIOrchestrator:
    """Routes AI requests to providers with caching, retries and fallback.

    Integrates:
      - ProviderRegistry: availability, rolling stats, selection
      - RateLimiter: per ``"<provider>:<operation>"`` request windows
      - ResponseCache: per-operation TTL cache
      - Transports: outbound HTTP per provider
      - RequestQueue: priority queue drained by a background pump
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        transports: Mapping[ProviderName, BaseTransport],
        cache: ResponseCache,
        rate_limiter: RateLimiter | None = None,
        *,
        fallback_mode: FallbackMode = FallbackMode.DIRECT_FIRST,
        proxy_enabled: bool = True,
        retry_policy: RetryPolicy | None = None,
        request_timeout: float = 30.0,
        rate_limit: RateLimitConfig | None = None,
        poll_interval: float = 0.1,
        debug_fallback: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.transports = dict(transports)
        self.cache = cache
        self.rate_limiter = rate_limiter or RateLimiter()
        self.fallback_mode = FallbackMode(fallback_mode)
        self.proxy_enabled = proxy_enabled
        self.retry_policy = retry_policy or RetryPolicy()
        self.request_timeout = request_timeout
        self.rate_limit = rate_limit or RateLimitConfig()
        self.poll_interval = poll_interval

        self.queue = RequestQueue()
        self._history: deque[AIResponse] = deque(maxlen=HISTORY_LIMIT)
        self._pump: asyncio.Task | None = None
        self._sleep = sleep
        self._clock = clock
        # Per-attempt logs are noise unless fallbacks are being debugged
        self._attempt_log_level = logging.INFO if debug_fallback else logging.DEBUG

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit_request(self, request: AIRequest | Mapping[str, Any]) -> str:
        """Validate and enqueue a request. Returns its request id."""
        req = self._validate(request)
        self.queue.enqueue(req)
        logger.info(
            "AI request queued: %s (%s, priority=%s)",
            req.request_id,
            req.operation.value,
            req.priority.value,
            extra={"request_id": req.request_id, "operation": req.operation.value},
        )
        return req.request_id

    async def execute_immediate(self, request: AIRequest | Mapping[str, Any]) -> AIResponse:
        """Run a request now, bypassing the queue.

        Raises:
            RequestValidationError: malformed request, before any I/O.
            NoProviderAvailableError: no provider has credentials.
            RateLimitedError: every eligible provider window is exhausted.
            ProviderError: retries and the fallback transport were exhausted.
        """
        req = self._validate(request)
        return await self._run(req)

    # ------------------------------------------------------------------
    # Queue pump
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Start the background queue pump on the running loop."""
        if self._pump is None or self._pump.done():
            self._pump = asyncio.create_task(self._pump_loop(), name="ai-queue-pump")
            logger.info("AI queue pump started (poll every %.2fs)", self.poll_interval)
        return self._pump

    async def stop(self) -> None:
        if self._pump is None:
            return
        self._pump.cancel()
        try:
            await self._pump
        except asyncio.CancelledError:
            pass
        self._pump = None
        logger.info("AI queue pump stopped (%d requests still queued)", len(self.queue))

    @property
    def running(self) -> bool:
        return self._pump is not None and not self._pump.done()

    async def process_next(self) -> AIResponse | None:
        """Process one queued request. Returns None when the queue is empty.

        Failures come back as failure responses (already in history), never raised.
        """
        request = self.queue.dequeue()
        if request is None:
            return None

        try:
            response = await self._run(request)
        except AIServiceError as e:
            logger.error(
                "Queued AI request %s failed: %s",
                request.request_id,
                e.message,
                extra={"request_id": request.request_id, "operation": request.operation.value},
            )
            return AIResponse.failure(request, e.message, e.kind)

        logger.info(
            "Queued AI request %s completed via %s",
            request.request_id,
            response.metadata.provider,
            extra={"request_id": request.request_id, "operation": request.operation.value},
        )
        return response

    async def _pump_loop(self) -> None:
        while True:
            if not len(self.queue):
                await asyncio.sleep(self.poll_interval)
                continue
            try:
                await self.process_next()
            except Exception:
                # Keep the pump alive; the request is lost but logged
                logger.exception("Unexpected error while processing queued AI request")

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _validate(self, request: AIRequest | Mapping[str, Any]) -> AIRequest:
        if isinstance(request, AIRequest):
            if not isinstance(request.operation, OperationType):
                raise RequestValidationError(f"Unknown operation: {request.operation!r}")
            if not isinstance(request.payload, Mapping):
                raise RequestValidationError("payload must be a mapping")
            timeout = request.options.timeout_seconds
            if timeout is not None and timeout <= 0:
                raise RequestValidationError("timeout_seconds must be positive")
            return request

        if isinstance(request, Mapping):
            try:
                return AIRequestIn.model_validate(dict(request)).to_request()
            except ValidationError as e:
                raise RequestValidationError(f"Invalid AI request: {e}") from e

        raise RequestValidationError(f"Unsupported request type: {type(request).__name__}")

    async def _run(self, request: AIRequest) -> AIResponse:
        """Execute and record the outcome in history and metrics."""
        try:
            response = await self._execute(request)
        except AIServiceError as e:
            AI_REQUESTS.labels(request.operation.value, "none", e.kind.value.lower()).inc()
            self._history.append(AIResponse.failure(request, e.message, e.kind))
            raise

        outcome = "cached" if response.metadata.cached else ("degraded" if response.metadata.degraded else "success")
        AI_REQUESTS.labels(request.operation.value, response.metadata.provider, outcome).inc()
        self._history.append(response)
        return response

    async def _execute(self, request: AIRequest) -> AIResponse:
        start = self._clock()
        op = request.operation.value
        cache_params = request.cache_params()

        if request.options.use_cache:
            cached = self.cache.get(CACHE_NAMESPACE, cache_params)
            if cached is not None:
                AI_CACHE_LOOKUPS.labels(op, "hit").inc()
                logger.debug("AI response served from cache", extra={"request_id": request.request_id})
                response = AIResponse.from_dict(cached)
                response.request_id = request.request_id
                response.metadata.cached = True
                return response
            AI_CACHE_LOOKUPS.labels(op, "miss").inc()

        provider = self.registry.select_provider(request, self.fallback_mode)
        plan = self._transport_plan(request, provider)

        total_attempts = 0
        last_error: TransportError | None = None
        rate_limited: RateLimitedError | None = None

        for idx, state in enumerate(plan):
            if idx > 0:
                previous = plan[idx - 1]
                AI_TRANSPORT_FALLBACKS.labels(previous.transport.value, state.transport.value).inc()
                logger.log(
                    self._attempt_log_level,
                    "All %s attempts failed, falling back to %s",
                    previous.name.value,
                    state.name.value,
                    extra={"request_id": request.request_id, "provider": state.name.value},
                )

            try:
                parsed, model, attempts = await self._call_with_retries(request, state, primary=idx == 0)
            except RateLimitedError as e:
                rate_limited = e
                continue
            except TransportError as e:
                total_attempts += e.attempts
                last_error = e
                continue

            total_attempts += attempts
            return self._build_response(request, state, parsed, model, total_attempts, start)

        if last_error is None and rate_limited is not None:
            raise rate_limited

        message = last_error.message if last_error else "no transport attempted"
        raise ProviderError(
            f"AI provider {provider.name.value} failed for {op}: {message}",
            attempts=total_attempts,
        ) from last_error

    def _transport_plan(self, request: AIRequest, selected: ProviderState) -> list[ProviderState]:
        """Selected provider first, then at most one fallback on the other transport."""
        plan = [selected]

        if selected.transport == TransportType.DIRECT and self.proxy_enabled:
            proxy = next(iter(self.registry.available_providers(TransportType.PROXY)), None)
            if proxy is not None:
                plan.append(proxy)
        elif selected.transport == TransportType.PROXY and self.fallback_mode == FallbackMode.PROXY_FIRST:
            direct = self.registry.best_provider(request, TransportType.DIRECT)
            if direct is not None:
                plan.append(direct)

        return plan

    def _model_for(self, request: AIRequest, state: ProviderState, primary: bool) -> str:
        preferred_model = request.options.preferred_model
        preferred_provider = request.options.preferred_provider
        if preferred_model and (state.name == preferred_provider or (preferred_provider is None and primary)):
            return preferred_model
        return state.model

    async def _call_with_retries(
        self,
        request: AIRequest,
        state: ProviderState,
        primary: bool,
    ) -> tuple[ParsedResult, str, int]:
        """Call one provider with retries. Returns (parsed, model, attempts).

        Raises:
            RateLimitedError: the limiter window is exhausted before any call was made.
            TransportError: the last failure once retries are used up, or once the
                limiter refuses a retry after a failed call.
        """
        transport = self.transports.get(state.name)
        if transport is None:
            raise TransportError(f"No transport configured for {state.name.value}", retryable=False)

        model = self._model_for(request, state, primary)
        body = build_payload(state.name, model, request.operation, request.payload, request.context)
        timeout = request.options.timeout_seconds or self.request_timeout
        key = f"{state.name.value}:{request.operation.value}"
        error: TransportError | None = None

        for attempt in range(self.retry_policy.max_attempts):
            log_extra = {"request_id": request.request_id, "provider": state.name.value, "attempt": attempt + 1}
            limit = self.rate_limiter.check_limit(key, self.rate_limit)
            if not limit.allowed:
                if error is not None:
                    # A real failure outranks the refusal
                    raise error
                raise RateLimitedError(
                    f"rate limit exceeded, retry in {math.ceil(limit.retry_after)} seconds",
                    retry_after=limit.retry_after,
                )

            logger.log(
                self._attempt_log_level,
                "Attempting %s (attempt %d/%d)",
                state.name.value,
                attempt + 1,
                self.retry_policy.max_attempts,
                extra=log_extra,
            )

            started = self._clock()
            try:
                raw = await asyncio.wait_for(
                    transport.send(body, model=model, operation=request.operation, timeout=timeout),
                    timeout=timeout,
                )
                parsed = parse_response(state.name, request.operation, raw)
            except asyncio.TimeoutError:
                error = TransportError(f"{state.name.value} timed out after {timeout}s", error_code="TIMEOUT")
            except TransportError as e:
                error = e
            else:
                latency_ms = (self._clock() - started) * 1000
                self._record(key, state, latency_ms, success=True)
                return parsed, model, attempt + 1

            latency_ms = (self._clock() - started) * 1000
            self._record(key, state, latency_ms, success=False)
            error.attempts = attempt + 1

            logger.log(
                self._attempt_log_level,
                "%s attempt %d failed: %s",
                state.name.value,
                attempt + 1,
                error.message,
                extra=log_extra,
            )

            if not error.retryable or not self.retry_policy.should_retry(attempt):
                raise error

            await self._sleep(self.retry_policy.backoff(attempt))

        # max_attempts < 1
        raise TransportError(f"No attempts allowed for {state.name.value}", retryable=False)

    def _record(self, key: str, state: ProviderState, latency_ms: float, success: bool) -> None:
        self.rate_limiter.increment(key, success, self.rate_limit)
        self.registry.record_call(state.name, latency_ms, success)
        AI_PROVIDER_LATENCY.labels(state.name.value, state.transport.value).observe(latency_ms / 1000)

    def _build_response(
        self,
        request: AIRequest,
        state: ProviderState,
        parsed: ParsedResult,
        model: str,
        attempts: int,
        start: float,
    ) -> AIResponse:
        response_model = parsed.model or model
        response = AIResponse(
            request_id=request.request_id,
            operation=request.operation,
            result=parsed.result,
            metadata=ResponseMetadata(
                provider=state.name.value,
                model=response_model,
                transport=state.transport.value,
                processing_time_ms=int((self._clock() - start) * 1000),
                confidence=parsed.confidence,
                cached=False,
                cost_estimate=estimate_cost(state.name, response_model, parsed.input_tokens, parsed.output_tokens),
                attempts=attempts,
                degraded=parsed.degraded,
                note=parsed.note,
            ),
            error_kind=FailureKind.PARSE_DEGRADED if parsed.degraded else None,
        )

        # Degraded results are not worth serving again
        if request.options.use_cache and not parsed.degraded:
            self.cache.set(
                CACHE_NAMESPACE,
                request.cache_params(),
                response.to_dict(),
                ttl_seconds=ttl_for(request.operation),
                tags=[CACHE_TAG, request.operation.value],
            )

        return response

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_provider_status(self) -> list[dict]:
        return self.registry.get_status()

    def get_request_history(self, limit: int = 50) -> list[AIResponse]:
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def get_response(self, request_id: str) -> AIResponse | None:
        """Most recent recorded response for ``request_id`` (queued requests land here)."""
        for response in reversed(self._history):
            if response.request_id == request_id:
                return response
        return None

    def get_performance_metrics(self) -> dict:
        recent = list(self._history)[-METRICS_WINDOW:]
        if not recent:
            return {
                "total_requests": len(self._history),
                "success_rate": 0.0,
                "avg_processing_time_ms": 0.0,
                "cache_hit_rate": 0.0,
                "provider_breakdown": {},
                "cache": self.cache.get_stats(),
            }

        count = len(recent)
        breakdown = Counter(r.metadata.provider for r in recent if r.metadata.provider)
        return {
            "total_requests": len(self._history),
            "success_rate": round(sum(1 for r in recent if r.ok) / count, 4),
            "avg_processing_time_ms": round(sum(r.metadata.processing_time_ms for r in recent) / count, 1),
            "cache_hit_rate": round(sum(1 for r in recent if r.metadata.cached) / count, 4),
            "provider_breakdown": dict(breakdown),
            "cache": self.cache.get_stats(),
        }

    def get_queue_stats(self) -> dict:
        return {**self.queue.get_stats(), "running": self.running}

    def clear_cache(self) -> int:
        """Drop every cached AI response. Returns how many were removed."""
        removed = self.cache.delete_by_tag(CACHE_TAG)
        logger.info("Cleared %d cached AI responses", removed)
        return removed
