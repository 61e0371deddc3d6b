"""Similarity clustering and merging of near-duplicate embeddings"""

import logging
import time

import numpy as np

from vault_vectors.config import VectorStorageConfig, config
from vault_vectors.errors import ValidationError
from vault_vectors.models.deduplication import (
    ApplyDeduplicationResult,
    DeduplicationConfig,
    DeduplicationMetrics,
    DeduplicationResult,
    DuplicateCluster,
)
from vault_vectors.services.aliases import AliasTable
from vault_vectors.services.index import KeyType
from vault_vectors.services.operations import VectorOperations

logger = logging.getLogger(__name__)

# Float32 vectors that are equal can land a hair under 1.0 after normalization
SIMILARITY_EPSILON = 1e-6


def _normalize(vector: list[float]) -> np.ndarray | None:
    array = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(array)
    if norm == 0.0:
        return None
    return array / norm


class Deduplicator:
    """
    Greedy clustering of same-model vectors by cosine similarity

    Entries are visited oldest-created first (ties broken by id). Each entry
    joins the first representative it is at least `threshold` similar to, or
    becomes a representative itself. The earliest member is therefore always
    the representative, and representatives are pairwise below the
    threshold, which makes a second pass over merged data a no-op.
    """

    def __init__(
        self,
        operations: VectorOperations,
        aliases: AliasTable,
        storage_config: VectorStorageConfig | None = None,
    ):
        self.operations = operations
        self.index = operations.index
        self.aliases = aliases
        self.config = storage_config or config

    def default_config(self) -> DeduplicationConfig:
        return DeduplicationConfig(
            similarity_threshold=self.config.dedup_similarity_threshold,
            batch_size=self.config.dedup_batch_size,
        )

    def find_duplicate_clusters(
        self, dedup_config: DeduplicationConfig | None = None
    ) -> DeduplicationResult:
        """
        Cluster live entries without changing anything

        Args:
            dedup_config: Threshold, window size and optional model filter

        Returns:
            DeduplicationResult with only clusters that have duplicates
        """
        dedup_config = dedup_config or self.default_config()
        threshold = dedup_config.similarity_threshold
        if not 0.0 < threshold <= 1.0:
            raise ValidationError("similarity_threshold", "must be in (0, 1]")
        if dedup_config.batch_size < 1:
            raise ValidationError("batch_size", "must be at least 1")

        start = time.perf_counter()
        result = DeduplicationResult(threshold=threshold)
        metrics = result.metrics

        if dedup_config.model_name is not None:
            models = [dedup_config.model_name]
        else:
            models = self.index.keys(KeyType.MODEL_NAME)

        for model_name in models:
            ordered_ids = self.index.ordered_ids(model_name)
            if not ordered_ids:
                continue
            metrics.models_scanned += 1
            result.clusters.extend(
                self._cluster_model(model_name, ordered_ids, threshold, dedup_config, metrics)
            )

        metrics.elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Deduplication scan: {metrics.entries_scanned} entries, "
            f"{len(result.clusters)} clusters, {result.duplicate_count} duplicates "
            f"({metrics.elapsed_ms:.1f}ms)"
        )
        return result

    def _cluster_model(
        self,
        model_name: str,
        ordered_ids: list[str],
        threshold: float,
        dedup_config: DeduplicationConfig,
        metrics: DeduplicationMetrics,
    ) -> list[DuplicateCluster]:
        rep_ids: list[str] = []
        rep_vectors: list[np.ndarray] = []
        rep_matrix = np.empty((0, 0))
        clusters: dict[str, DuplicateCluster] = {}

        for offset in range(0, len(ordered_ids), dedup_config.batch_size):
            window = ordered_ids[offset : offset + dedup_config.batch_size]
            metrics.windows += 1
            entries = {entry.id: entry for entry in self.operations.retrieve_batch(window)}

            for entry_id in window:
                entry = entries.get(entry_id)
                if entry is None:
                    continue
                metrics.entries_scanned += 1
                vector = _normalize(entry.vector)

                match = None
                if vector is not None and rep_vectors:
                    if rep_matrix.shape[0] != len(rep_vectors):
                        rep_matrix = np.vstack(rep_vectors)
                    similarities = rep_matrix @ vector
                    metrics.comparisons += len(rep_vectors)
                    hits = np.flatnonzero(similarities >= threshold - SIMILARITY_EPSILON)
                    if hits.size:
                        match = int(hits[0])

                if match is None:
                    # Zero vectors have no direction and never match anything
                    if vector is not None:
                        rep_ids.append(entry_id)
                        rep_vectors.append(vector)
                    continue

                rep_id = rep_ids[match]
                cluster = clusters.get(rep_id)
                if cluster is None:
                    cluster = DuplicateCluster(representative_id=rep_id, model_name=model_name)
                    clusters[rep_id] = cluster
                cluster.member_ids.append(entry_id)
                cluster.similarities[entry_id] = float(min(similarities[match], 1.0))

        return list(clusters.values())

    def apply_deduplication(
        self, result: DeduplicationResult, merge: bool = True
    ) -> ApplyDeduplicationResult:
        """
        Tombstone duplicates and alias them to their representative

        With `merge=False` nothing is changed; the returned report lists what
        a merge would do. Members or representatives deleted since the scan
        are skipped.
        """
        outcome = ApplyDeduplicationResult(merged=merge)
        mapping: dict[str, str] = {}

        for cluster in result.clusters:
            if cluster.representative_id not in self.index:
                outcome.skipped_ids.extend(cluster.member_ids)
                continue
            for member_id in cluster.member_ids:
                if member_id in self.index:
                    mapping[member_id] = cluster.representative_id
                else:
                    outcome.skipped_ids.append(member_id)

        outcome.tombstoned_ids = list(mapping)
        outcome.aliases_added = dict(mapping)
        if not merge or not mapping:
            return outcome

        self.operations.delete_batch(list(mapping))
        self.aliases.add_many(mapping)
        logger.info(
            f"Merged {len(mapping)} duplicates into "
            f"{len(set(mapping.values()))} representatives"
        )
        return outcome
