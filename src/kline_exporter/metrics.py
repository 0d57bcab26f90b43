"""
Prometheus metrics for the exporter.

Import this module at app startup to make them visible in the global REGISTRY.
"""

from prometheus_client import Counter, Histogram

FETCH_TOTAL = Counter(
    "kline_fetch_total",
    "Kline fetch attempts by interval and outcome",
    ["interval", "outcome"],  # outcome: success | retryable | fatal
)

RETRY_WAIT_SECONDS = Histogram(
    "kline_retry_wait_seconds",
    "Scheduled wait before retrying a series",
    ["interval"],
    buckets=[0.5, 1, 2, 4, 8, 16, 32, 60],
)

STORE_FALLBACK_TOTAL = Counter(
    "kline_state_store_fallback_total",
    "State store operations that fell through to the fallback tier",
    ["op"],
)
