"""Batch file and storage report models"""

import time

from pydantic import BaseModel, Field

from vault_vectors.config import CompressionAlgorithm


class DataVersion(BaseModel):
    """On-disk format version"""

    major: int = 1
    minor: int = 0
    patch: int = 0

    def is_compatible(self, other: "DataVersion") -> bool:
        """True when a reader at this version can load data written at `other`"""
        return self.major == other.major and self.minor >= other.minor

    def version_string(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


CURRENT_VERSION = DataVersion(major=1, minor=0, patch=0)


class StorageFileHeader(BaseModel):
    """Header written as the first line of every batch file"""

    version: DataVersion = Field(default_factory=lambda: CURRENT_VERSION.model_copy())
    compression: CompressionAlgorithm = Field(description="Algorithm applied to the body")
    entry_count: int = Field(ge=0, description="Number of entries in the body")
    created_at: int = Field(
        default_factory=lambda: int(time.time()), description="Unix timestamp of creation"
    )
    checksum: str | None = Field(
        default=None, description="SHA-256 hex digest of the body bytes as stored"
    )
    uncompressed_size: int = Field(default=0, ge=0, description="Size of the serialized body")


class CompactionResult(BaseModel):
    """Outcome of a compaction pass"""

    files_compacted: int = Field(default=0, description="Source files merged and removed")
    files_removed: int = Field(default=0, description="Source files removed with no survivors")
    files_written: int = Field(default=0, description="New dense files written")
    tombstones_purged: int = Field(default=0, description="Tombstoned entries dropped")
    entries_remaining: int = Field(default=0, description="Live entries after the pass")
    bytes_reclaimed: int = Field(default=0, description="On-disk bytes freed")
    cancelled: bool = Field(default=False, description="Pass stopped at a checkpoint")
    relocations: dict[str, str] = Field(
        default_factory=dict, description="Entry id to its new file id"
    )

    def merge(self, other: "CompactionResult") -> None:
        """Fold a partial result into this one"""
        self.files_compacted += other.files_compacted
        self.files_removed += other.files_removed
        self.files_written += other.files_written
        self.tombstones_purged += other.tombstones_purged
        self.bytes_reclaimed += other.bytes_reclaimed
        self.cancelled = self.cancelled or other.cancelled
        self.relocations.update(other.relocations)


class IntegrityReport(BaseModel):
    """Read-only health report over all batch files and the index"""

    valid_files: int = 0
    corrupted_files: int = 0
    incompatible_files: int = 0
    healthy_entries: int = 0
    tombstoned_entries: int = 0
    orphaned_storage_entries: int = Field(
        default=0, description="Live entries in storage missing from the index"
    )
    orphaned_index_entries: int = Field(
        default=0, description="Index ids with no live storage record"
    )
    unreadable_files: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def orphaned_entries(self) -> int:
        return self.orphaned_storage_entries + self.orphaned_index_entries

    def is_healthy(self) -> bool:
        return (
            not self.errors
            and self.corrupted_files == 0
            and self.incompatible_files == 0
            and self.orphaned_entries == 0
        )

    def summary(self) -> str:
        return (
            f"Storage integrity: {self.valid_files} valid files, "
            f"{self.corrupted_files} corrupted files, {self.healthy_entries} healthy entries, "
            f"{self.orphaned_entries} orphaned entries, {len(self.errors)} errors"
        )


class StorageSize(BaseModel):
    """Measured storage footprint"""

    file_count: int = 0
    on_disk_bytes: int = 0
    uncompressed_bytes: int = 0
    estimated_files: int = Field(
        default=0, description="Files whose uncompressed size had to be estimated"
    )

    @property
    def compression_ratio(self) -> float:
        if self.uncompressed_bytes <= 0:
            return 1.0
        return self.on_disk_bytes / self.uncompressed_bytes


class OrphanCleanupResult(BaseModel):
    """Outcome of reconciling the index against storage"""

    index_orphans: int = Field(default=0, description="Index ids with no storage record")
    storage_orphans: int = Field(default=0, description="Storage records missing from the index")
    rebuilt: bool = Field(default=False, description="Whether the index was rebuilt")
    entries_indexed: int = 0


class RepairResult(BaseModel):
    """Outcome of a repair pass"""

    files_restored: list[str] = Field(default_factory=list)
    files_unrecoverable: list[str] = Field(default_factory=list)
    orphan_cleanup: OrphanCleanupResult = Field(default_factory=OrphanCleanupResult)
