"""Latency, cache and storage-size metrics for the vector database"""

import contextlib
import logging
import threading
import time
from collections.abc import Iterator

from opentelemetry import metrics

from vault_vectors.models.metrics import CacheStats, DatabaseMetrics, LatencyStats
from vault_vectors.services.index import KeyType

logger = logging.getLogger(__name__)

_meter = metrics.get_meter(__name__)


class MetricsCollector:
    """
    Records per-operation latencies and summarizes database health

    Latencies are kept in local histograms and mirrored into an OpenTelemetry
    histogram, which is a no-op unless an SDK meter provider is installed.
    The collector only observes; `summary` reads storage and index state but
    never changes it.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.started_at = time.monotonic()
        self._lock = threading.Lock()
        self._latencies: dict[str, LatencyStats] = {}
        self._histogram = _meter.create_histogram(
            name="vault_vectors.operation.duration",
            unit="ms",
            description="Vector database operation latency",
        )

    def record(self, operation: str, elapsed_ms: float, error: bool = False) -> None:
        """Record one operation's latency"""
        if not self.enabled:
            return
        with self._lock:
            stats = self._latencies.setdefault(operation, LatencyStats())
            stats.record(elapsed_ms, error=error)
        self._histogram.record(
            elapsed_ms, attributes={"operation": operation, "success": not error}
        )

    @contextlib.contextmanager
    def timed(self, operation: str) -> Iterator[None]:
        """Time the enclosed block, counting it as an error if it raises"""
        start = time.perf_counter()
        error = False
        try:
            yield
        except BaseException:
            error = True
            raise
        finally:
            self.record(operation, (time.perf_counter() - start) * 1000, error=error)

    def latencies(self) -> dict[str, LatencyStats]:
        with self._lock:
            return {name: stats.model_copy(deep=True) for name, stats in self._latencies.items()}

    def reset(self) -> None:
        with self._lock:
            self._latencies.clear()

    def summary(
        self,
        storage,
        index,
        cache_stats: CacheStats | None = None,
        alias_count: int = 0,
    ) -> DatabaseMetrics:
        """
        Build a health and capacity summary

        Args:
            storage: StorageEngine to measure (sizes come from disk, not assumptions)
            index: MultiIndex holding the live entries
            cache_stats: Counters of the entry cache
            alias_count: Number of dedup aliases

        Returns:
            DatabaseMetrics
        """
        size = storage.storage_size()
        models = {
            model_name: len(index.lookup(KeyType.MODEL_NAME, model_name))
            for model_name in index.keys(KeyType.MODEL_NAME)
        }
        return DatabaseMetrics(
            total_entries=len(index),
            tombstoned_entries=len(storage.tombstones),
            batch_files=size.file_count,
            storage_bytes=size.on_disk_bytes,
            uncompressed_bytes=size.uncompressed_bytes,
            compression_ratio=size.compression_ratio,
            unreadable_files=len(storage.unreadable_files),
            models=models,
            cache=cache_stats or CacheStats(),
            latencies=self.latencies(),
            aliases=alias_count,
            uptime_seconds=time.monotonic() - self.started_at,
        )
