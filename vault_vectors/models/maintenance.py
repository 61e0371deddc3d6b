"""Maintenance scheduling models"""

from pydantic import BaseModel, Field

from vault_vectors.config import MaintenancePolicyKind
from vault_vectors.models.storage import CompactionResult, IntegrityReport


class MaintenancePolicy(BaseModel):
    """When automatic maintenance should run"""

    kind: MaintenancePolicyKind = MaintenancePolicyKind.TIME
    interval_seconds: int = Field(default=300, ge=1, description="Scheduler check interval")
    tombstone_ratio: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Ratio of dead entries that makes compaction due"
    )
    size_threshold_bytes: int = Field(default=50 * 1024 * 1024, ge=0)
    small_file_threshold: int = Field(
        default=32, ge=1, description="Undersized batch files that make compaction due"
    )
    idle_seconds: int = Field(
        default=30, ge=0, description="Quiet period of foreground activity before running"
    )
    cooldown_seconds: int = Field(
        default=3600, ge=0, description="Minimum spacing between automatic compactions"
    )


class MaintenanceStats(BaseModel):
    """Running totals and the last outcome of the maintenance scheduler"""

    cycles_run: int = 0
    cycles_skipped: int = 0
    compactions_run: int = 0
    backups_pruned: int = 0
    last_run_at: float | None = None
    last_compaction_at: float | None = None
    last_compaction: CompactionResult | None = None
    last_integrity_report: IntegrityReport | None = None
    last_error: str | None = None
