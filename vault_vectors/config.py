"""Centralized configuration using Pydantic BaseSettings"""

from enum import Enum

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CompressionAlgorithm(str, Enum):
    """Whole-body compression applied to batch files"""

    NONE = "none"
    GZIP = "gzip"
    LZ4 = "lz4"


class MaintenancePolicyKind(str, Enum):
    """When the maintenance scheduler decides a cycle should run"""

    TIME = "time"
    SIZE = "size"
    IDLE = "idle"


class VectorStorageConfig(BaseSettings):
    """Vector storage configuration with environment variable support"""

    # Storage
    storage_dir: str = Field(
        default="./data/vector_storage",
        description="Directory holding batch files, backups and ledgers",
    )
    compression_algorithm: CompressionAlgorithm = Field(
        default=CompressionAlgorithm.GZIP, description="Compression for new batch files"
    )
    enable_compression: bool = Field(
        default=True, description="Disable to write uncompressed batch files"
    )
    max_entries_per_file: int = Field(
        default=1000, ge=1, le=100_000, description="Maximum entries per batch file"
    )
    enable_checksums: bool = Field(
        default=True, description="Verify batch checksums on every load"
    )
    auto_backup: bool = Field(
        default=True, description="Keep rotated backups of every batch file written"
    )
    max_backups: int = Field(default=5, ge=0, le=1000, description="Backups kept in rotation")
    enable_metrics: bool = Field(default=True, description="Record latencies and sizes")

    # Cache and index
    cache_max_entries: int = Field(
        default=1024, ge=0, le=1_000_000, description="LRU cache bound (0 disables)"
    )
    content_preview_length: int = Field(
        default=100, ge=4, le=10_000, description="Maximum characters kept as preview"
    )
    time_bucket_seconds: int = Field(
        default=3600, ge=1, description="Granularity of the time-bucket index"
    )
    persist_index_snapshot: bool = Field(
        default=True, description="Persist the index on close and reuse it at startup"
    )

    # Deduplication
    enable_deduplication: bool = Field(default=True, description="Enable deduplication")
    dedup_similarity_threshold: float = Field(
        default=0.95, gt=0.0, le=1.0, description="Cosine similarity cutoff for duplicates"
    )
    dedup_batch_size: int = Field(
        default=1000, ge=1, le=100_000, description="Entries loaded per clustering window"
    )

    # Incremental updates
    enable_incremental_updates: bool = Field(
        default=False, description="Enable vault diffing and re-embedding"
    )
    monitored_extensions: list[str] = Field(
        default_factory=lambda: ["md", "markdown", "txt"],
        description="File extensions considered part of the vault",
    )
    excluded_dirs: list[str] = Field(
        default_factory=lambda: [".git", "node_modules", ".obsidian", ".trash"],
        description="Directory names skipped while scanning the vault",
    )

    # Maintenance
    enable_maintenance: bool = Field(default=False, description="Enable background maintenance")
    maintenance_policy: MaintenancePolicyKind = Field(
        default=MaintenancePolicyKind.TIME, description="Maintenance trigger policy"
    )
    maintenance_interval_seconds: int = Field(
        default=300, ge=1, description="How often the scheduler checks for work"
    )
    compaction_threshold: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Tombstone ratio that makes compaction due"
    )
    compaction_size_threshold_bytes: int = Field(
        default=50 * 1024 * 1024, ge=0, description="Storage size that triggers the size policy"
    )
    compaction_cooldown_seconds: int = Field(
        default=3600, ge=0, description="Minimum spacing between automatic compactions"
    )
    compaction_small_file_threshold: int = Field(
        default=32, ge=1, description="Number of undersized batch files that makes compaction due"
    )
    idle_seconds: int = Field(
        default=30, ge=0, description="Quiet period required by the idle policy"
    )

    # Chunking and embedding collaborators
    chunk_size_tokens: int = Field(
        default=512, ge=16, le=8192, description="Target chunk size in tokens"
    )
    chunk_overlap_tokens: int = Field(
        default=64, ge=0, le=1024, description="Token overlap between adjacent chunks"
    )
    embedding_model: str = Field(
        default="BAAI/bge-small-en-v1.5", description="Local embedding model name (fastembed)"
    )
    embedding_batch_size: int = Field(
        default=32, ge=1, le=256, description="Batch size for embedding generation"
    )

    # OpenTelemetry
    otel_enabled: bool = Field(default=False, description="Enable OpenTelemetry logging")
    otel_tracing_enabled: bool = Field(
        default=False, description="Enable OpenTelemetry tracing for database operations"
    )
    otel_endpoint: str = Field(
        default="http://localhost:4318",
        description="OpenTelemetry collector endpoint (HTTP/protobuf)",
    )
    otel_service_name: str = Field(
        default="vault-vectors", description="Service name for OpenTelemetry"
    )
    otel_service_version: str = Field(
        default="1.0.0", description="Service version for OpenTelemetry"
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    @property
    def effective_compression(self) -> CompressionAlgorithm:
        """Compression actually used for new files"""
        if not self.enable_compression:
            return CompressionAlgorithm.NONE
        return self.compression_algorithm


# Global config instance
config = VectorStorageConfig()
