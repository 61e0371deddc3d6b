"""Database metrics models"""

from pydantic import BaseModel, Field

# Upper bounds (ms) of the latency histogram buckets; the last bucket is open-ended
LATENCY_BUCKETS_MS: tuple[float, ...] = (1.0, 5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0)


class LatencyStats(BaseModel):
    """Latency histogram of one operation"""

    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    min_ms: float | None = None
    max_ms: float | None = None
    buckets: list[int] = Field(default_factory=lambda: [0] * (len(LATENCY_BUCKETS_MS) + 1))

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def record(self, elapsed_ms: float, error: bool = False) -> None:
        self.count += 1
        if error:
            self.errors += 1
        self.total_ms += elapsed_ms
        self.min_ms = elapsed_ms if self.min_ms is None else min(self.min_ms, elapsed_ms)
        self.max_ms = elapsed_ms if self.max_ms is None else max(self.max_ms, elapsed_ms)
        for i, bound in enumerate(LATENCY_BUCKETS_MS):
            if elapsed_ms <= bound:
                self.buckets[i] += 1
                return
        self.buckets[-1] += 1


class CacheStats(BaseModel):
    """LRU cache counters"""

    hits: int = 0
    misses: int = 0
    size: int = 0
    capacity: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


class DatabaseMetrics(BaseModel):
    """Health and capacity summary returned by `get_metrics`"""

    total_entries: int = 0
    tombstoned_entries: int = 0
    batch_files: int = 0
    storage_bytes: int = 0
    uncompressed_bytes: int = 0
    compression_ratio: float = 1.0
    unreadable_files: int = 0
    models: dict[str, int] = Field(default_factory=dict, description="Entries per model")
    cache: CacheStats = Field(default_factory=CacheStats)
    latencies: dict[str, LatencyStats] = Field(default_factory=dict)
    aliases: int = 0
    uptime_seconds: float = 0.0
