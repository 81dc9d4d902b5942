"""
Performance monitoring utilities for the Image Scan Ingest service.
"""

import threading
import time
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from .logging import get_logger


@dataclass
class PerformanceMetrics:
    """Performance metrics tracking."""

    # Store call tracking
    store_calls_total: int = 0
    store_call_times: List[float] = field(default_factory=list)

    # Tag cache
    cache_hits: int = 0
    cache_misses: int = 0

    # Tag operations
    tags_created: int = 0
    tag_creation_races: int = 0
    tags_dropped: int = 0

    # Event processing
    events_processed: int = 0
    total_processing_time: float = 0.0
    average_processing_time: Optional[float] = None
    events_by_status: Dict[str, int] = field(default_factory=dict)

    def update_averages(self):
        """Update calculated averages."""
        if self.events_processed > 0:
            self.average_processing_time = self.total_processing_time / self.events_processed

    def get_cache_hit_rate(self) -> float:
        """Calculate cache hit rate as a percentage."""
        total_cache_requests = self.cache_hits + self.cache_misses
        if total_cache_requests == 0:
            return 0.0
        return (self.cache_hits / total_cache_requests) * 100

    def get_average_store_time(self) -> float:
        """Average store round-trip in seconds."""
        if not self.store_call_times:
            return 0.0
        return sum(self.store_call_times) / len(self.store_call_times)

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary for logging."""
        self.update_averages()
        return {
            "store_calls_total": self.store_calls_total,
            "average_store_time": round(self.get_average_store_time(), 4),
            "cache_hit_rate_percent": round(self.get_cache_hit_rate(), 2),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "tags_created": self.tags_created,
            "tag_creation_races": self.tag_creation_races,
            "tags_dropped": self.tags_dropped,
            "events_processed": self.events_processed,
            "average_processing_time": round(self.average_processing_time or 0, 3),
            "events_by_status": dict(self.events_by_status),
        }


class PerformanceMonitor:
    """Performance monitoring and metrics collection.

    Shared by every request thread, so all recording goes through one lock.
    """

    # Bound on retained store latencies; older samples are discarded
    MAX_TIMING_SAMPLES = 1000

    def __init__(self):
        self.logger = get_logger("performance")
        self.metrics = PerformanceMetrics()
        self.start_time = time.time()
        self._lock = threading.Lock()

    def record_store_call(self, response_time: float):
        """Record a persistent store round-trip."""
        with self._lock:
            self.metrics.store_calls_total += 1
            self.metrics.store_call_times.append(response_time)
            if len(self.metrics.store_call_times) > self.MAX_TIMING_SAMPLES:
                del self.metrics.store_call_times[0]

    def record_cache_hit(self, count: int = 1):
        """Record tag cache hits."""
        with self._lock:
            self.metrics.cache_hits += count

    def record_cache_miss(self, count: int = 1):
        """Record tag cache misses."""
        with self._lock:
            self.metrics.cache_misses += count

    def record_tags_created(self, count: int):
        """Record tag creations."""
        with self._lock:
            self.metrics.tags_created += count

    def record_tag_creation_race(self):
        """Record a tag creation that lost a uniqueness race."""
        with self._lock:
            self.metrics.tag_creation_races += 1

    def record_tags_dropped(self, count: int):
        """Record tags that could not be resolved and were skipped."""
        with self._lock:
            self.metrics.tags_dropped += count

    def record_event_processed(self, status: str, processing_time: float):
        """Record scan event completion."""
        with self._lock:
            self.metrics.events_processed += 1
            self.metrics.total_processing_time += processing_time
            self.metrics.events_by_status[status] = self.metrics.events_by_status.get(status, 0) + 1

    def get_runtime_seconds(self) -> float:
        """Get total runtime in seconds."""
        return time.time() - self.start_time

    def log_performance_summary(self):
        """Log a summary of performance metrics."""
        runtime = self.get_runtime_seconds()
        metrics_dict = self.get_metrics_dict()

        self.logger.info(
            f"📈 Performance Summary: Runtime {runtime:.1f}s, "
            f"Events {metrics_dict.get('events_processed', 0)}, "
            f"Cache hit rate {metrics_dict.get('cache_hit_rate_percent', 0):.1f}%, "
            f"Store calls {metrics_dict.get('store_calls_total', 0)}, "
            f"Tags created {metrics_dict.get('tags_created', 0)}"
        )

    def get_metrics_dict(self) -> Dict[str, Any]:
        """Get all metrics as a dictionary."""
        runtime = self.get_runtime_seconds()
        with self._lock:
            metrics_dict = self.metrics.to_dict()
        metrics_dict["runtime_seconds"] = round(runtime, 2)
        return metrics_dict

    def reset(self):
        """Start a fresh measurement window."""
        with self._lock:
            self.metrics = PerformanceMetrics()
            self.start_time = time.time()


# Global performance monitor instance
performance_monitor = PerformanceMonitor()
