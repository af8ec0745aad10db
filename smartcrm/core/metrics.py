"""Prometheus metrics for the AI orchestration layer."""

from prometheus_client import Counter, Histogram, Info

# --- Metrics ---

APP_INFO = Info("smartcrm_ai", "SmartCRM AI orchestration layer info")
APP_INFO.info({"version": "1.0.0", "name": "smartcrm"})

AI_REQUESTS = Counter(
    "smartcrm_ai_requests_total",
    "AI requests handled by the orchestrator",
    ["operation", "provider", "outcome"],
)

AI_CACHE_LOOKUPS = Counter(
    "smartcrm_ai_cache_lookups_total",
    "Response cache lookups",
    ["operation", "result"],
)

AI_PROVIDER_LATENCY = Histogram(
    "smartcrm_ai_provider_call_seconds",
    "Latency of a single outbound provider call",
    ["provider", "transport"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 20, 30, 60],
)

AI_TRANSPORT_FALLBACKS = Counter(
    "smartcrm_ai_transport_fallbacks_total",
    "Switches from one transport to the other after retries were exhausted",
    ["from_transport", "to_transport"],
)
