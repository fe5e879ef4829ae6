from __future__ import annotations

from contextlib import contextmanager
from time import perf_counter

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

REQUESTS_TOTAL = Counter(
    "total_requests",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
REQUEST_LATENCY_SECONDS = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path"),
)
DB_QUERY_DURATION_SECONDS = Histogram(
    "db_query_duration_seconds",
    "Database query duration in seconds",
    labelnames=("operation",),
)
REDIS_LATENCY_SECONDS = Histogram(
    "redis_latency_seconds",
    "Redis command latency in seconds",
    labelnames=("operation",),
)
THREADS_PUBLISH_ATTEMPTS_TOTAL = Counter(
    "threads_publish_attempts_total",
    "Number of Threads publish operations started",
)
THREADS_PUBLISH_FAILURES_TOTAL = Counter(
    "threads_publish_failures_total",
    "Number of Threads publish operations that failed",
    labelnames=("stage",),
)
THREAD_QUEUE_ITEMS_PROCESSED_TOTAL = Counter(
    "thread_queue_items_processed_total",
    "Thread queue entries processed by workers",
    labelnames=("outcome",),
)

# Workers run in separate processes; their counts reach the API's registry through Redis.
BACKGROUND_COUNTER_KEYS = {
    "completed": "metrics:thread_queue_completed_total",
    "retried": "metrics:thread_queue_retried_total",
    "failed": "metrics:thread_queue_failed_total",
}
_last_background_counter_values: dict[str, float] = {outcome: 0.0 for outcome in BACKGROUND_COUNTER_KEYS}


def record_request(method: str, path: str, status_code: int, duration_seconds: float) -> None:
    REQUESTS_TOTAL.labels(method=method, path=path, status=str(status_code)).inc()
    REQUEST_LATENCY_SECONDS.labels(method=method, path=path).observe(duration_seconds)


def observe_db_query(duration_seconds: float, operation: str = "sql") -> None:
    DB_QUERY_DURATION_SECONDS.labels(operation=operation).observe(duration_seconds)


def observe_redis_latency(duration_seconds: float, operation: str) -> None:
    REDIS_LATENCY_SECONDS.labels(operation=operation).observe(duration_seconds)


def record_queue_outcome(outcome: str) -> None:
    THREAD_QUEUE_ITEMS_PROCESSED_TOTAL.labels(outcome=outcome).inc()
    redis_key = BACKGROUND_COUNTER_KEYS.get(outcome)
    if redis_key is None:
        return
    try:
        from app.infrastructure.cache.redis_client import get_redis_client

        redis_client = get_redis_client()
        with measure_redis("metrics_background_counter_incr"):
            redis_client.incr(redis_key)
    except Exception:
        # Metrics writes never interrupt queue processing.
        return


def _sync_background_counters_from_redis() -> None:
    try:
        from app.infrastructure.cache.redis_client import get_redis_client

        redis_client = get_redis_client()
        with measure_redis("metrics_background_counter_sync"):
            raw_values = redis_client.mget(list(BACKGROUND_COUNTER_KEYS.values()))
    except Exception:
        return

    for idx, outcome in enumerate(BACKGROUND_COUNTER_KEYS):
        raw_value = raw_values[idx] if raw_values else None
        current_value = float(raw_value or 0.0)
        delta = current_value - _last_background_counter_values.get(outcome, 0.0)
        if delta > 0:
            THREAD_QUEUE_ITEMS_PROCESSED_TOTAL.labels(outcome=outcome).inc(delta)
        _last_background_counter_values[outcome] = current_value


@contextmanager
def measure_redis(operation: str):
    started_at = perf_counter()
    try:
        yield
    finally:
        observe_redis_latency(perf_counter() - started_at, operation=operation)


def metrics_response() -> Response:
    _sync_background_counters_from_redis()
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
