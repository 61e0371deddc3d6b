"""Deduplication models"""

from pydantic import BaseModel, Field


class DeduplicationConfig(BaseModel):
    """Parameters of a clustering pass"""

    similarity_threshold: float = Field(
        default=0.95, description="Cosine similarity cutoff, checked to lie in (0, 1] per pass"
    )
    batch_size: int = Field(default=1000, description="Entries loaded per window")
    model_name: str | None = Field(
        default=None, description="Restrict the pass to one model (default: every model)"
    )


class DuplicateCluster(BaseModel):
    """A representative and the entries similar enough to merge into it"""

    representative_id: str
    model_name: str
    member_ids: list[str] = Field(
        default_factory=list, description="Duplicates of the representative, oldest first"
    )
    similarities: dict[str, float] = Field(
        default_factory=dict, description="Member id to its similarity with the representative"
    )

    @property
    def size(self) -> int:
        return len(self.member_ids) + 1


class DeduplicationMetrics(BaseModel):
    """Counters and timing of a clustering pass"""

    entries_scanned: int = 0
    models_scanned: int = 0
    comparisons: int = 0
    windows: int = 0
    elapsed_ms: float = 0.0


class DeduplicationResult(BaseModel):
    """Clusters found by `find_duplicate_clusters`"""

    threshold: float
    clusters: list[DuplicateCluster] = Field(default_factory=list)
    metrics: DeduplicationMetrics = Field(default_factory=DeduplicationMetrics)

    @property
    def duplicate_count(self) -> int:
        return sum(len(cluster.member_ids) for cluster in self.clusters)


class ApplyDeduplicationResult(BaseModel):
    """Outcome of applying (or dry-running) a deduplication result"""

    merged: bool = Field(description="False for a dry run")
    tombstoned_ids: list[str] = Field(default_factory=list)
    aliases_added: dict[str, str] = Field(
        default_factory=dict, description="Merged id to representative id"
    )
    skipped_ids: list[str] = Field(
        default_factory=list, description="Members that were no longer live"
    )
