"""
Prometheus Metrics for Relay - Observability instrumentation.

RESPONSIBILITY:
    Define and expose metrics for monitoring the gateway.
    Follows RED methodology: Rate, Errors, Duration, plus cache, provider
    and token counters specific to a multi-provider gateway.

CARDINALITY:
    Labels create separate time series. Every label here takes a value from
    a small closed set (endpoint path, status code, provider tag, outcome).
    Client IPs and request ids are never used as labels.
"""

from prometheus_client import Counter, Histogram, REGISTRY
import logging

logger = logging.getLogger(__name__)


# =============================================================================
# RED METRICS (Rate, Errors, Duration)
# =============================================================================

# Labels: endpoint (API route), status (HTTP status code)
#   - rate(relay_requests_total[5m]) → requests/second
#   - relay_requests_total{status="503"} → outage count
relay_requests_total = Counter(
    "relay_requests_total",
    "Total HTTP requests to the Relay API",
    labelnames=["endpoint", "status"],
)

relay_request_duration_seconds = Histogram(
    "relay_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["endpoint"],
    buckets=[
        0.01,   # 10ms - cache hits, health
        0.05,
        0.1,
        0.25,
        0.5,    # simulated providers
        1.0,
        2.5,
        5.0,    # typical upstream completion
        10.0,
        30.0,   # upstream read timeout
        float("inf")
    ]
)


# =============================================================================
# CACHE METRICS
# =============================================================================

# Labels: result (hit, miss)
#   - relay_cache_lookups_total{result="hit"} / sum(relay_cache_lookups_total) → hit rate
relay_cache_lookups_total = Counter(
    "relay_cache_lookups_total",
    "Response cache lookups by result",
    labelnames=["result"],
)


# =============================================================================
# PROVIDER METRICS
# =============================================================================

# Labels: provider (openai, gemini, mistral, claude), outcome (success, error)
relay_provider_calls_total = Counter(
    "relay_provider_calls_total",
    "Upstream provider calls by outcome",
    labelnames=["provider", "outcome"],
)

# Labels: from_provider (the provider that failed), to_provider (the one tried next)
relay_fallbacks_total = Counter(
    "relay_fallbacks_total",
    "Cross-provider fallbacks attempted",
    labelnames=["from_provider", "to_provider"],
)

# Labels: provider, direction (input, output)
#   - increase(relay_tokens_total[1d]) → daily token volume
relay_tokens_total = Counter(
    "relay_tokens_total",
    "Tokens consumed by provider and direction",
    labelnames=["provider", "direction"],
)


# =============================================================================
# ADMISSION METRICS
# =============================================================================

relay_rate_limited_total = Counter(
    "relay_rate_limited_total",
    "Requests rejected by the per-client rate limiter",
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def record_request(endpoint: str, status: int, duration_seconds: float) -> None:
    """
    Record request metrics (counter + duration histogram).

    Called from the HTTP middleware after each request completes.
    """
    relay_requests_total.labels(endpoint=endpoint, status=str(status)).inc()
    relay_request_duration_seconds.labels(endpoint=endpoint).observe(duration_seconds)


def record_cache_lookup(result: str) -> None:
    """Record a cache lookup. `result` is "hit" or "miss"."""
    if result not in ["hit", "miss"]:
        logger.warning(f"Invalid cache lookup result: {result}")
        return

    relay_cache_lookups_total.labels(result=result).inc()


def record_provider_call(provider: str, outcome: str) -> None:
    """Record one upstream call (after the client's own retries). `outcome` is "success" or "error"."""
    if outcome not in ["success", "error"]:
        logger.warning(f"Invalid provider call outcome: {outcome}")
        return

    relay_provider_calls_total.labels(provider=provider, outcome=outcome).inc()


def record_fallback(from_provider: str, to_provider: str) -> None:
    relay_fallbacks_total.labels(from_provider=from_provider, to_provider=to_provider).inc()


def record_rate_limited() -> None:
    relay_rate_limited_total.inc()


def record_tokens(provider: str, input_tokens: int, output_tokens: int) -> None:
    """Accumulate token usage. Zero counts are skipped."""
    if input_tokens > 0:
        relay_tokens_total.labels(provider=provider, direction="input").inc(input_tokens)
    if output_tokens > 0:
        relay_tokens_total.labels(provider=provider, direction="output").inc(output_tokens)


# Export metrics for main.py to use
__all__ = [
    "relay_requests_total",
    "relay_request_duration_seconds",
    "relay_cache_lookups_total",
    "relay_provider_calls_total",
    "relay_fallbacks_total",
    "relay_rate_limited_total",
    "relay_tokens_total",
    "record_request",
    "record_cache_lookup",
    "record_provider_call",
    "record_fallback",
    "record_rate_limited",
    "record_tokens",
    "REGISTRY",
]
