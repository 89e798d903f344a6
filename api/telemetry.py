"""
Telemetry for the query pipeline
Process-wide metric store, correlation ids and request timing middleware
"""
import itertools
import logging
import secrets
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from errors import classify_error
from result_cache import ResultCache
from structured_logging import correlation_id_var

logger = logging.getLogger("azops.telemetry")

CORRELATION_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """Opaque per-request id: epoch milliseconds plus a random suffix"""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}"


@dataclass(frozen=True)
class Metric:
    name: str
    value: float
    tags: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0  # epoch milliseconds


class MetricsStore:
    """
    Append-only metric log with TTL and capacity eviction.
    Backed by ResultCache, so oldest metrics fall out first under pressure.
    """

    def __init__(self, max_size: int = 1000, ttl: float = 3600.0,
                 clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries = ResultCache(max_size=max_size, ttl=ttl,
                                    update_age_on_get=False, clock=clock)
        self._seq = itertools.count()

    def record(self, name: str, value: float = 1, **tags) -> Metric:
        """Record a metric; the active correlation id is attached when present"""
        if "correlation_id" not in tags:
            cid = correlation_id_var.get()
            if cid:
                tags["correlation_id"] = cid
        metric = Metric(name=name, value=value, tags=tags,
                        timestamp=round(self._clock() * 1000, 3))
        self._entries.set(f"{name}-{metric.timestamp}-{next(self._seq)}", metric)
        return metric

    def all(self) -> List[Metric]:
        return [m for _, m in self._entries.items()]

    def query(self, name: Optional[str] = None, since: Optional[float] = None) -> Dict[str, Any]:
        """Metrics whose name contains ``name`` and timestamp >= ``since`` (epoch ms)"""
        metrics = [
            m for m in self.all()
            if (name is None or name in m.name) and (since is None or m.timestamp >= since)
        ]
        return {
            "metrics": [asdict(m) for m in metrics],
            "summary": summarize(metrics),
        }

    def stats(self) -> Dict[str, Any]:
        """Request-level statistics derived from the handler's metric names"""
        received = completed = errors = limited = 0
        total_latency = 0.0
        for m in self.all():
            if m.name == "request_received":
                received += 1
            elif m.name == "request_completed":
                completed += 1
                total_latency += float(m.tags.get("duration_ms", 0))
            elif m.name == "request_error":
                errors += 1
            elif m.name == "rate_limit_exceeded":
                limited += 1
        return {
            "totalRequests": received,
            "successRate": round(completed / received, 4) if received else 0.0,
            "errorRate": round(errors / received, 4) if received else 0.0,
            "averageLatency": round(total_latency / completed, 2) if completed else 0.0,
            "rateLimit": {"exceeded": limited, "total": received + limited},
        }


def summarize(metrics: List[Metric]) -> Dict[str, Dict[str, float]]:
    summary: Dict[str, Dict[str, float]] = {}
    for metric in metrics:
        stats = summary.setdefault(metric.name, {
            "count": 0, "sum": 0.0, "avg": 0.0,
            "min": float("inf"), "max": float("-inf"),
        })
        stats["count"] += 1
        stats["sum"] += metric.value
        stats["avg"] = stats["sum"] / stats["count"]
        stats["min"] = min(stats["min"], metric.value)
        stats["max"] = max(stats["max"], metric.value)
    return summary


async def track_api_call(metrics: MetricsStore, breaker, service: str, operation: str,
                         fn: Callable[[], Awaitable[Any]]) -> Any:
    """Run ``fn`` through ``breaker`` and record a success/failure metric"""
    start = time.perf_counter()
    try:
        result = await breaker.execute(fn)
    except Exception as exc:
        metrics.record(
            f"{service}_{operation}_failure", 1,
            error_kind=classify_error(exc).value,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        raise
    metrics.record(
        f"{service}_{operation}_success", 1,
        duration_ms=round((time.perf_counter() - start) * 1000, 2),
    )
    return result


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Assign a correlation id to every request and time it"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = generate_correlation_id()
        request.state.correlation_id = correlation_id
        token = correlation_id_var.set(correlation_id)
        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)

        duration = time.perf_counter() - start_time
        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers["X-Process-Time"] = f"{duration:.4f}"
        logger.debug(
            "%s %s -> %s", request.method, request.url.path, response.status_code,
            extra={"correlation_id": correlation_id, "endpoint": request.url.path,
                   "status_code": response.status_code,
                   "duration_ms": round(duration * 1000, 2)},
        )
        return response


def request_correlation_id(request: Request) -> str:
    """Correlation id assigned by the middleware (fresh one if it did not run)"""
    cid = getattr(request.state, "correlation_id", None)
    if not cid:
        cid = generate_correlation_id()
        request.state.correlation_id = cid
    return cid
