"""Performance monitoring utilities for the inspection service."""
import time
import logging
import threading
import functools
from typing import Any, Callable, Dict

logger = logging.getLogger("inspection-api.perf")


def timed_async(func: Callable) -> Callable:
    """
    Decorator that measures and logs execution time for async functions.

    Usage::

        @timed_async
        async def process_images(...):
            ...
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            logger.debug(
                f"{func.__qualname__} took {duration_ms}ms",
                extra={"duration_ms": duration_ms},
            )
    return wrapper


class ServiceMetricsTracker:
    """
    Thread-safe in-memory counters for analysis and upload throughput.

    Tracks:
    - Analyses completed, average duration, and parse method histogram
    - Analysis errors broken down by ErrorKind value
    - Batch uploads: images stored, images failed, automatic retries
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._analyses: int = 0
        self._analysis_duration_ms: float = 0.0
        self._slowest_analysis_ms: float = 0.0
        self._parse_methods: Dict[str, int] = {}
        self._errors: Dict[str, int] = {}
        self._batches: int = 0
        self._uploaded: int = 0
        self._failed: int = 0
        self._retries: int = 0

    # ------------------------------------------------------------------
    # Public write API
    # ------------------------------------------------------------------

    def record_analysis(self, duration_ms: float, method: str) -> None:
        with self._lock:
            self._analyses += 1
            self._analysis_duration_ms += duration_ms
            self._slowest_analysis_ms = max(self._slowest_analysis_ms, duration_ms)
            self._parse_methods[method] = self._parse_methods.get(method, 0) + 1

    def record_analysis_error(self, kind: str) -> None:
        with self._lock:
            self._errors[kind] = self._errors.get(kind, 0) + 1

    def record_batch(self, uploaded: int, failed: int, retries: int) -> None:
        with self._lock:
            self._batches += 1
            self._uploaded += uploaded
            self._failed += failed
            self._retries += retries

    # ------------------------------------------------------------------
    # Public read API
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            avg = round(self._analysis_duration_ms / self._analyses, 2) if self._analyses else 0.0
            return {
                "analyses_processed": self._analyses,
                "avg_analysis_duration_ms": avg,
                "slowest_analysis_ms": round(self._slowest_analysis_ms, 2),
                "parse_methods": dict(self._parse_methods),
                "error_count": sum(self._errors.values()),
                "error_count_by_kind": dict(self._errors),
                "batches_processed": self._batches,
                "images_uploaded": self._uploaded,
                "images_failed": self._failed,
                "upload_retries": self._retries,
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._analyses = 0
            self._analysis_duration_ms = 0.0
            self._slowest_analysis_ms = 0.0
            self._parse_methods.clear()
            self._errors.clear()
            self._batches = 0
            self._uploaded = 0
            self._failed = 0
            self._retries = 0


# Module-level singleton; import this instance everywhere else.
tracker = ServiceMetricsTracker()
