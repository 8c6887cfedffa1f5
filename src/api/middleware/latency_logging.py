"""Request latency logging middleware for performance monitoring."""

import logging
import re
import time
from collections import defaultdict
from typing import Callable

from fastapi import Request, Response

logger = logging.getLogger(__name__)

# Thresholds for log levels (in milliseconds)
SLOW_REQUEST_THRESHOLD_MS = 1000
VERY_SLOW_REQUEST_THRESHOLD_MS = 3000

HEALTH_PATHS = ("/health", "/health/ready", "/health/workers")

_UUID_PATTERN = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
_BASKET_PATTERN = re.compile(r"/baskets/\d+")


def normalize_path(path: str) -> str:
    """Collapse order ids and basket numbers so routes group together."""
    path = _UUID_PATTERN.sub("{order_id}", path)
    return _BASKET_PATTERN.sub("/baskets/{basket_number}", path)


class LatencyStats:
    """In-memory latency samples per route, reported by the health endpoint."""

    def __init__(self, max_samples: int = 1000):
        self._samples: list[tuple[str, float]] = []
        self._max_samples = max_samples

    def record(self, path: str, latency_ms: float) -> None:
        """Record a latency sample."""
        self._samples.append((normalize_path(path), latency_ms))
        if len(self._samples) > self._max_samples:
            self._samples = self._samples[-self._max_samples:]

    def get_stats_by_path(self) -> dict[str, dict[str, float]]:
        """Count, mean and p95 latency for each normalized route."""
        by_path: dict[str, list[float]] = defaultdict(list)
        for path, latency in self._samples:
            by_path[path].append(latency)

        result = {}
        for path, latencies in by_path.items():
            ordered = sorted(latencies)
            total = len(ordered)
            result[path] = {
                "count": total,
                "avg_ms": round(sum(ordered) / total, 2),
                "p95_ms": round(ordered[min(int(total * 0.95), total - 1)], 2),
            }
        return result


# Global stats instance
_latency_stats: LatencyStats | None = None


def get_latency_stats() -> LatencyStats:
    """Get or create the global latency stats instance."""
    global _latency_stats
    if _latency_stats is None:
        _latency_stats = LatencyStats()
    return _latency_stats


async def latency_logging_with_stats_middleware(request: Request, call_next: Callable) -> Response:
    """Log every request's latency and keep samples for the health endpoint.

    Slow requests and error statuses are logged at higher levels. Health
    checks are only logged when unusually slow.
    """
    start_time = time.perf_counter()
    method = request.method
    path = request.url.path
    is_health_check = path in HEALTH_PATHS

    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        latency_ms = (time.perf_counter() - start_time) * 1000
        status_code = response.status_code if response else 500
        log_msg = f"{method} {path} - {status_code} - {latency_ms:.2f}ms"

        if is_health_check:
            if latency_ms > 100:
                logger.debug(log_msg)
        else:
            get_latency_stats().record(path, latency_ms)
            if status_code >= 500:
                logger.error(log_msg)
            elif latency_ms > VERY_SLOW_REQUEST_THRESHOLD_MS:
                logger.error(f"VERY SLOW REQUEST: {log_msg}")
            elif latency_ms > SLOW_REQUEST_THRESHOLD_MS:
                logger.warning(f"SLOW REQUEST: {log_msg}")
            elif status_code >= 400:
                logger.warning(log_msg)
            else:
                logger.info(log_msg)
