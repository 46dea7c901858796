"""
Gold Layer Module

Aggregate metrics derived from the silver layer. Nothing here is stored: values are
recomputed on query and kept in a short-lived cache, so a dashboard may see data a
few seconds stale.
"""
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from build_failure_monitor import config
from build_failure_monitor.models import BuildStatus, Failure, FailureType
from build_failure_monitor.utils import Window

logger = logging.getLogger(__name__)


@dataclass
class Metrics:
    total_builds: int = 0
    failure_rate: float = 0.0
    avg_build_time: int = 0
    flaky_test_count: int = 0

    def to_dict(self):
        return asdict(self)


class MetricsAggregator:
    """
    Computes rolling summary statistics over the builds in a time window.
    """

    def __init__(self, store, cache_ttl_seconds: Optional[float] = None, clock=time.monotonic):
        self.store = store
        self.cache_ttl_seconds = (
            config.METRICS_CACHE_TTL_SECONDS if cache_ttl_seconds is None else cache_ttl_seconds
        )
        self._clock = clock
        self._cache: Dict[object, tuple] = {}
        self._lock = threading.Lock()

    def compute_metrics(self, window: Optional[Window] = None) -> Metrics:
        """
        Algorithm:
        1. Count builds per status inside the window
        2. failure rate = (failed + flaky) / total, as a percentage with one decimal
        3. average duration in seconds, rounded to the nearest second
        4. flaky count = builds with status flaky

        An empty window yields all zeros.
        """
        window = window or Window.all_time()
        key = window.cache_key()
        if self.cache_ttl_seconds > 0:
            with self._lock:
                cached = self._cache.get(key)
            if cached and self._clock() - cached[0] < self.cache_ttl_seconds:
                return cached[1]

        summary = self.store.build_status_summary(window)
        total_builds = sum(count for count, _ in summary.values())
        if total_builds == 0:
            metrics = Metrics()
        else:
            failed = summary.get(BuildStatus.FAILED, (0, 0))[0]
            flaky = summary.get(BuildStatus.FLAKY, (0, 0))[0]
            total_duration = sum(duration for _, duration in summary.values())
            metrics = Metrics(
                total_builds=total_builds,
                failure_rate=round((failed + flaky) / total_builds * 100.0, 1),
                avg_build_time=int(round(total_duration / total_builds)),
                flaky_test_count=flaky,
            )

        logger.info(
            f"Computed metrics for {window}: total={metrics.total_builds}, "
            f"failureRate={metrics.failure_rate}%, avgTime={metrics.avg_build_time}s, "
            f"flaky={metrics.flaky_test_count}"
        )
        if self.cache_ttl_seconds > 0:
            with self._lock:
                self._cache[key] = (self._clock(), metrics)
        return metrics

    def invalidate(self):
        with self._lock:
            self._cache.clear()

    def failure_distribution(self, window: Optional[Window] = None) -> Dict[str, int]:
        """Number of distinct failures per failure type; every type is present."""
        counts = self.store.failure_type_counts(window)
        return {failure_type: counts.get(failure_type, 0) for failure_type in FailureType.ALL}

    def recurring_failures(
        self, min_frequency: int = 2, limit: int = 10, window: Optional[Window] = None
    ) -> List[Failure]:
        """Most frequent failures seen at least ``min_frequency`` times."""
        failures = self.store.list_failures(window)
        return [f for f in failures if f.frequency_count >= min_frequency][:limit]
