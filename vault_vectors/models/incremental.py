"""Vault state and incremental update models"""

from enum import Enum

from pydantic import BaseModel, Field


class MonitorState(str, Enum):
    """Incremental update monitor state machine"""

    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    APPLYING = "applying"


class FileState(BaseModel):
    """Observed state of one vault file"""

    path: str = Field(description="Vault-relative POSIX path")
    content_hash: str = Field(description="SHA-256 of the file contents")
    size: int = Field(default=0, ge=0)
    mtime_ns: int = Field(default=0, ge=0)


class VaultSnapshot(BaseModel):
    """All monitored files of a vault at one instant"""

    root: str
    files: dict[str, FileState] = Field(default_factory=dict)
    taken_at: float = 0.0


class VaultDiff(BaseModel):
    """Difference between a vault snapshot and what the index holds"""

    added: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.removed)

    @property
    def total(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed)


class UpdateReport(BaseModel):
    """Outcome of applying a vault diff"""

    files_added: int = 0
    files_modified: int = 0
    files_removed: int = 0
    entries_stored: int = 0
    entries_deleted: int = 0
    failures: dict[str, str] = Field(
        default_factory=dict, description="Vault path to the error that stopped it"
    )
    elapsed_ms: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failures
