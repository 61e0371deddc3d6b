"""Batch operation results"""

from pydantic import BaseModel, Field


class BatchFailure(BaseModel):
    """One entry excluded from a batch"""

    position: int = Field(description="Index of the entry in the submitted batch")
    field: str
    reason: str


class BatchStoreResult(BaseModel):
    """Best-effort outcome of `store_batch`: stored ids plus per-entry failures"""

    ids: list[str | None] = Field(
        default_factory=list, description="Id per submitted entry, None where it failed"
    )
    failures: list[BatchFailure] = Field(default_factory=list)

    @property
    def stored_ids(self) -> list[str]:
        return [entry_id for entry_id in self.ids if entry_id is not None]

    @property
    def success(self) -> bool:
        return not self.failures


class BatchDeleteResult(BaseModel):
    """Outcome of `delete_batch`"""

    deleted: list[str] = Field(default_factory=list)
    not_found: list[str] = Field(default_factory=list)
