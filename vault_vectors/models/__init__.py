"""Data models for the vector database"""

from vault_vectors.models.chunk import TextChunk
from vault_vectors.models.deduplication import (
    ApplyDeduplicationResult,
    DeduplicationConfig,
    DeduplicationMetrics,
    DeduplicationResult,
    DuplicateCluster,
)
from vault_vectors.models.embedding import EmbeddingEntry, EmbeddingInput, EmbeddingMetadata
from vault_vectors.models.incremental import (
    FileState,
    MonitorState,
    UpdateReport,
    VaultDiff,
    VaultSnapshot,
)
from vault_vectors.models.maintenance import MaintenancePolicy, MaintenanceStats
from vault_vectors.models.metrics import CacheStats, DatabaseMetrics, LatencyStats
from vault_vectors.models.operations import BatchDeleteResult, BatchFailure, BatchStoreResult
from vault_vectors.models.storage import (
    CompactionResult,
    DataVersion,
    IntegrityReport,
    OrphanCleanupResult,
    RepairResult,
    StorageFileHeader,
    StorageSize,
)

__all__ = [
    "TextChunk",
    "EmbeddingEntry",
    "EmbeddingInput",
    "EmbeddingMetadata",
    "DeduplicationConfig",
    "DuplicateCluster",
    "DeduplicationMetrics",
    "DeduplicationResult",
    "ApplyDeduplicationResult",
    "MonitorState",
    "FileState",
    "VaultSnapshot",
    "VaultDiff",
    "UpdateReport",
    "MaintenancePolicy",
    "MaintenanceStats",
    "LatencyStats",
    "CacheStats",
    "DatabaseMetrics",
    "BatchFailure",
    "BatchStoreResult",
    "BatchDeleteResult",
    "DataVersion",
    "StorageFileHeader",
    "CompactionResult",
    "IntegrityReport",
    "StorageSize",
    "OrphanCleanupResult",
    "RepairResult",
]
