"""VectorDatabase: the public surface over storage, index and optional sidecars"""

import contextlib
import logging
import time
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

from vault_vectors.config import VectorStorageConfig, config
from vault_vectors.errors import (
    FeatureDisabledError,
    SerializationError,
    StorageError,
    ValidationError,
)
from vault_vectors.models.deduplication import (
    ApplyDeduplicationResult,
    DeduplicationConfig,
    DeduplicationResult,
)
from vault_vectors.models.embedding import EmbeddingEntry, EmbeddingInput
from vault_vectors.models.incremental import UpdateReport
from vault_vectors.models.maintenance import MaintenancePolicy, MaintenanceStats
from vault_vectors.models.metrics import DatabaseMetrics
from vault_vectors.models.operations import BatchDeleteResult, BatchStoreResult
from vault_vectors.models.storage import (
    CompactionResult,
    IntegrityReport,
    OrphanCleanupResult,
    RepairResult,
)
from vault_vectors.services.aliases import AliasTable
from vault_vectors.services.cache import EntryCache
from vault_vectors.services.chunker import Chunker
from vault_vectors.services.core import DatabaseCore
from vault_vectors.services.deduplication import Deduplicator
from vault_vectors.services.embedder import Embedder
from vault_vectors.services.incremental import (
    ChunkerProtocol,
    EmbedderProtocol,
    IncrementalUpdateMonitor,
)
from vault_vectors.services.index import MultiIndex
from vault_vectors.services.maintenance import (
    MaintenanceScheduler,
    check_integrity,
    compact_storage,
    repair_storage,
)
from vault_vectors.services.metrics import MetricsCollector
from vault_vectors.services.operations import VectorOperations
from vault_vectors.services.storage import StorageEngine, StorageHandle
from vault_vectors.services.telemetry import TelemetryService
from vault_vectors.services.vault_watcher import VaultWatcher
from vault_vectors.utils.rwlock import DatabaseState

logger = logging.getLogger(__name__)

ALIASES_FILE = "aliases.json"
INDEX_SNAPSHOT_FILE = "index_snapshot.json"


class VectorDatabase:
    """
    Embedding store for a note vault

    The core (storage engine, multi-index, operations) is always present.
    Deduplication, incremental updates and background maintenance are
    sidecars built only when enabled in the config; asking for a disabled
    one raises `FeatureDisabledError`.

    All state is reached through a `DatabaseState`: reads share it, writes
    hold it exclusively, and sidecars access it as background callers.

    Usage:
        async with VectorDatabase(VectorStorageConfig(storage_dir=tmp)) as db:
            entry_id = await db.store(vector, "note.md", "chunk_0000", text, "m1")
    """

    def __init__(
        self,
        storage_config: VectorStorageConfig | None = None,
        vault_root: str | Path | None = None,
        embedder: EmbedderProtocol | None = None,
        chunker: ChunkerProtocol | None = None,
        telemetry: TelemetryService | None = None,
        watch_vault: bool = True,
    ):
        """
        Args:
            storage_config: Settings (defaults to the global config)
            vault_root: Note vault to keep in sync (incremental updates only)
            embedder: Embedding collaborator (defaults to the fastembed Embedder)
            chunker: Chunking collaborator (defaults to the tiktoken Chunker)
            telemetry: OpenTelemetry service (defaults to one built from the config)
            watch_vault: Start a file-system watcher on open (incremental updates only)
        """
        self.config = storage_config or config
        self._owns_telemetry = telemetry is None
        self.telemetry = telemetry or TelemetryService(self.config)
        self.metrics = MetricsCollector(enabled=self.config.enable_metrics)

        storage = StorageEngine(self.config)
        index = MultiIndex(time_bucket_seconds=self.config.time_bucket_seconds)
        operations = VectorOperations(storage, index, self.config)
        aliases = AliasTable(storage.root / ALIASES_FILE, storage.write_json)
        self.cache = EntryCache(self.config.cache_max_entries)
        self._core = DatabaseCore(storage, index, operations, aliases, self.cache)
        self._state = DatabaseState(self._core)
        self._handle: StorageHandle | None = None
        self._snapshot_path = storage.root / INDEX_SNAPSHOT_FILE

        self._deduplicator: Deduplicator | None = None
        if self.config.enable_deduplication:
            self._deduplicator = Deduplicator(operations, aliases, self.config)

        self._monitor: IncrementalUpdateMonitor | None = None
        self._watcher: VaultWatcher | None = None
        if self.config.enable_incremental_updates:
            if vault_root is None:
                raise ValidationError(
                    "vault_root", "required when incremental updates are enabled"
                )
            embedder = embedder or Embedder(self.config)
            chunker = chunker or Chunker(self.config)
            self._monitor = IncrementalUpdateMonitor(
                vault_root, self._state, embedder, chunker, self.config
            )
            if watch_vault:
                self._watcher = VaultWatcher(self._monitor)

        self._maintenance: MaintenanceScheduler | None = None
        if self.config.enable_maintenance:
            self._maintenance = MaintenanceScheduler(self._state, self.config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    async def open(self) -> None:
        """
        Lock the storage directory, recover crash leftovers and load the index

        Raises:
            StorageError: If another process holds the directory, or it cannot be created
        """
        if self._handle is not None:
            return
        storage = self._core.storage
        handle = StorageHandle(storage.lock_path)
        handle.acquire()
        try:
            async with self._state.writing() as core:
                core.storage.initialize()
                core.aliases.load()
                self._load_index(core)
        except BaseException:
            handle.release()
            raise
        self._handle = handle

        if self._maintenance is not None:
            self._maintenance.start()
        if self._watcher is not None:
            self._watcher.start()
        logger.info(
            f"Opened vector database at {storage.root} with {len(self._core.index)} entries"
        )

    def _load_index(self, core: DatabaseCore) -> None:
        loaded = False
        if self.config.persist_index_snapshot:
            try:
                loaded = core.index.load_snapshot(self._snapshot_path, core.storage_fingerprint())
            except SerializationError as e:
                logger.warning(f"Ignoring unreadable index snapshot: {e}")
        if not loaded:
            core.index.rebuild_from_storage(core.storage)
        # A snapshot only describes the storage it was written from
        self._snapshot_path.unlink(missing_ok=True)

    async def close(self) -> None:
        """Stop sidecars, persist the index snapshot and release the directory lock"""
        if self._handle is None:
            return
        if self._watcher is not None:
            self._watcher.stop()
        if self._monitor is not None:
            await self._monitor.stop()
        if self._maintenance is not None:
            await self._maintenance.stop()

        try:
            if self.config.persist_index_snapshot:
                async with self._state.writing() as core:
                    try:
                        core.index.save_snapshot(
                            self._snapshot_path,
                            core.storage_fingerprint(),
                            core.storage.write_json,
                        )
                    except (StorageError, SerializationError) as e:
                        logger.warning(f"Failed to save index snapshot: {e}")
        finally:
            self._handle.release()
            self._handle = None
            self.cache.clear()
            if self._owns_telemetry:
                self.telemetry.shutdown()
        logger.info("Closed vector database")

    async def __aenter__(self) -> "VectorDatabase":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _require_open(self) -> None:
        if self._handle is None:
            raise StorageError("Vector database is not open")

    @contextlib.contextmanager
    def _observe(self, operation: str, **parameters: Any) -> Iterator[None]:
        """Time an operation and report it to metrics and telemetry"""
        self._require_open()
        start = time.perf_counter()
        error: Exception | None = None
        try:
            with self.metrics.timed(operation), self.telemetry.span(operation, **parameters):
                yield
        except Exception as e:
            error = e
            raise
        finally:
            self.telemetry.log_operation(
                operation,
                parameters=parameters,
                elapsed_ms=(time.perf_counter() - start) * 1000,
                error=error,
            )

    # ------------------------------------------------------------------
    # Sidecars
    # ------------------------------------------------------------------

    @property
    def deduplicator(self) -> Deduplicator:
        if self._deduplicator is None:
            raise FeatureDisabledError("deduplication")
        return self._deduplicator

    @property
    def monitor(self) -> IncrementalUpdateMonitor:
        if self._monitor is None:
            raise FeatureDisabledError("incremental_updates")
        return self._monitor

    @property
    def maintenance(self) -> MaintenanceScheduler:
        if self._maintenance is None:
            raise FeatureDisabledError("maintenance")
        return self._maintenance

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def store(
        self,
        vector: list[float],
        file_path: str,
        chunk_id: str,
        text: str,
        model_name: str,
        custom_metadata: dict[str, str] | None = None,
    ) -> str:
        """
        Validate and durably store one embedding

        Returns:
            The new entry id

        Raises:
            ValidationError: Empty fields, non-finite values or a dimension mismatch
            StorageError: The batch file could not be written
        """
        item = VectorOperations.coerce_input(
            {
                "vector": vector,
                "file_path": file_path,
                "chunk_id": chunk_id,
                "text": text,
                "model_name": model_name,
                "custom_metadata": custom_metadata or {},
            }
        )
        with self._observe("store", model=model_name):
            async with self._state.writing() as core:
                return core.operations.store(item)

    async def store_batch(self, entries: Iterable[EmbeddingInput | dict]) -> list[str]:
        """
        Store many embeddings, best effort

        Returns:
            Ids of the entries that were stored, in submission order. Use
            `store_batch_report` to see which entries failed and why.
        """
        return (await self.store_batch_report(entries)).stored_ids

    async def store_batch_report(
        self, entries: Iterable[EmbeddingInput | dict]
    ) -> BatchStoreResult:
        entries = list(entries)
        with self._observe("store_batch", batch_size=len(entries)):
            async with self._state.writing() as core:
                result = core.operations.store_batch(entries)
        if result.failures:
            logger.warning(
                f"Batch store rejected {len(result.failures)} of {len(entries)} entries"
            )
        return result

    async def delete(self, entry_id: str) -> bool:
        """
        Delete an entry, or forget an alias left by deduplication

        Returns:
            False if `entry_id` is neither a live entry nor an alias
        """
        with self._observe("delete"):
            async with self._state.writing() as core:
                if core.operations.delete(entry_id):
                    core.forget([entry_id])
                    return True
                return core.aliases.remove(entry_id)

    async def delete_batch(self, entry_ids: Iterable[str]) -> BatchDeleteResult:
        entry_ids = list(entry_ids)
        with self._observe("delete_batch", batch_size=len(entry_ids)):
            async with self._state.writing() as core:
                result = core.operations.delete_batch(entry_ids)
                core.forget(result.deleted)
                not_found = []
                for entry_id in result.not_found:
                    if core.aliases.remove(entry_id):
                        result.deleted.append(entry_id)
                    else:
                        not_found.append(entry_id)
                result.not_found = not_found
        return result

    async def delete_by_file(self, file_path: str) -> int:
        """Delete every entry of a source file; returns how many were deleted"""
        with self._observe("delete_by_file"):
            async with self._state.writing() as core:
                deleted = core.operations.delete_by_file(file_path)
                core.forget(deleted)
        return len(deleted)

    async def update_vector(self, entry_id: str, vector: list[float]) -> str:
        """
        Replace an entry's vector

        The replacement keeps the provenance but gets a new id; the old id
        stays resolvable as an alias.

        Returns:
            The replacement's id

        Raises:
            NotFound: If `entry_id` is not live
            ValidationError: If the vector is invalid for the entry's model
        """
        with self._observe("update_vector"):
            async with self._state.writing() as core:
                replacement = core.operations.update_vector(entry_id, vector)
                core.cache.remove(entry_id)
                core.aliases.add(entry_id, replacement.id)
        return replacement.id

    async def update_vector_batch(self, updates: dict[str, list[float]]) -> dict[str, str]:
        """
        Replace many vectors at once; each old id stays resolvable as an alias

        Returns:
            Replacement ids keyed by the id they replace. Ids that are not
            live are left out.

        Raises:
            ValidationError: If any vector is invalid; nothing is written
        """
        updates = dict(updates)
        with self._observe("update_vector_batch", batch_size=len(updates)):
            async with self._state.writing() as core:
                replacements = core.operations.update_vector_batch(updates)
                core.cache.remove_many(list(replacements))
                for entry_id, replacement in replacements.items():
                    core.aliases.add(entry_id, replacement.id)
        return {entry_id: replacement.id for entry_id, replacement in replacements.items()}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def retrieve(self, entry_id: str) -> EmbeddingEntry | None:
        """
        Load an entry by id

        An id merged away by deduplication (or replaced by `update_vector`)
        resolves to its surviving entry.
        """
        with self._observe("retrieve"):
            cached = self.cache.get(entry_id)
            if cached is not None:
                return cached
            async with self._state.reading() as core:
                entry = core.operations.retrieve(entry_id)
                if entry is None:
                    target = core.aliases.resolve(entry_id)
                    if target is not None:
                        entry = core.operations.retrieve(target)
                if entry is not None:
                    core.cache.put(entry)
        return entry

    async def retrieve_batch(self, entry_ids: Iterable[str]) -> list[EmbeddingEntry]:
        """Load many entries; unknown ids are skipped, aliases are resolved"""
        entry_ids = list(entry_ids)
        with self._observe("retrieve_batch", batch_size=len(entry_ids)):
            async with self._state.reading() as core:
                resolved = []
                for entry_id in entry_ids:
                    if entry_id not in core.index:
                        entry_id = core.aliases.resolve(entry_id) or entry_id
                    resolved.append(entry_id)
                found = {entry.id: entry for entry in core.operations.retrieve_batch(resolved)}
        return [found[entry_id] for entry_id in resolved if entry_id in found]

    async def find_by_file(self, file_path: str) -> list[EmbeddingEntry]:
        with self._observe("find_by_file"):
            async with self._state.reading() as core:
                return core.operations.find_by_file(file_path)

    async def find_by_model(self, model_name: str) -> list[EmbeddingEntry]:
        with self._observe("find_by_model", model=model_name):
            async with self._state.reading() as core:
                return core.operations.find_by_model(model_name)

    async def find_by_content_hash(self, text_hash: str) -> list[EmbeddingEntry]:
        with self._observe("find_by_content_hash"):
            async with self._state.reading() as core:
                return core.operations.find_by_content_hash(text_hash)

    async def find_by_chunk_id(self, chunk_id: str) -> list[EmbeddingEntry]:
        with self._observe("find_by_chunk_id"):
            async with self._state.reading() as core:
                return core.operations.find_by_chunk_id(chunk_id)

    async def find_by_time_range(self, start: float, end: float) -> list[EmbeddingEntry]:
        """Entries created in [start, end], oldest first"""
        with self._observe("find_by_time_range"):
            async with self._state.reading() as core:
                return core.operations.find_by_time_range(start, end)

    async def list_ids(self) -> list[str]:
        self._require_open()
        async with self._state.reading() as core:
            return core.operations.list_ids()

    async def count(self) -> int:
        self._require_open()
        async with self._state.reading() as core:
            return core.operations.count()

    async def is_empty(self) -> bool:
        return await self.count() == 0

    async def exists(self, entry_id: str) -> bool:
        """Whether `entry_id` is a live entry (aliases are not followed)"""
        self._require_open()
        async with self._state.reading() as core:
            return core.operations.exists(entry_id)

    async def resolve_alias(self, entry_id: str) -> str | None:
        """The surviving id an alias leads to, or None if `entry_id` is not an alias"""
        self._require_open()
        async with self._state.reading() as core:
            return core.aliases.resolve(entry_id)

    async def merged_into(self, entry_id: str) -> list[str]:
        """Ids that were merged into (or replaced by) `entry_id`"""
        self._require_open()
        async with self._state.reading() as core:
            return core.aliases.merged_into(entry_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def compact(self, file_ids: Iterable[str] | None = None) -> CompactionResult:
        """Merge sparse batch files and purge tombstones"""
        with self._observe("compact"):
            return await compact_storage(self._state, file_ids)

    async def validate_integrity(self) -> IntegrityReport:
        """Verify every batch file and the index against storage; changes nothing"""
        with self._observe("validate_integrity"):
            return await check_integrity(self._state)

    async def repair(self) -> RepairResult:
        """Restore damaged files from backups and reconcile the index"""
        with self._observe("repair"):
            return await repair_storage(self._state)

    async def cleanup_orphans(self) -> OrphanCleanupResult:
        with self._observe("cleanup_orphans"):
            async with self._state.writing() as core:
                result = core.operations.cleanup_orphans()
                if result.rebuilt:
                    core.cache.clear()
        return result

    async def cleanup_stale_files(self, valid_paths: Iterable[str]) -> int:
        """Delete entries whose source file is not in `valid_paths`"""
        valid_paths = list(valid_paths)
        with self._observe("cleanup_stale_files"):
            async with self._state.writing() as core:
                deleted = core.operations.cleanup_stale_files(valid_paths)
                core.forget(deleted)
        return len(deleted)

    async def cleanup_older_than(self, timestamp: float) -> int:
        """Delete entries created before `timestamp`; returns how many were deleted"""
        with self._observe("cleanup_older_than"):
            async with self._state.writing() as core:
                deleted = core.operations.cleanup_older_than(timestamp)
                core.forget(deleted)
        return len(deleted)

    async def get_metrics(self) -> DatabaseMetrics:
        self._require_open()
        async with self._state.reading() as core:
            return self.metrics.summary(
                core.storage, core.index, core.cache.stats(), alias_count=len(core.aliases)
            )

    def schedule_maintenance(self, policy: MaintenancePolicy) -> None:
        self.maintenance.schedule(policy)

    async def run_maintenance(self) -> MaintenanceStats:
        """Run one maintenance cycle now, as the scheduler would"""
        self._require_open()
        return await self.maintenance.run_maintenance_cycle()

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------

    async def deduplicate(
        self, dedup_config: DeduplicationConfig | None = None
    ) -> DeduplicationResult:
        """
        Find clusters of near-duplicate vectors; nothing is changed

        Raises:
            FeatureDisabledError: If deduplication is disabled
            ValidationError: If the threshold is outside (0, 1]
        """
        deduplicator = self.deduplicator
        with self._observe("deduplicate"):
            async with self._state.reading():
                return deduplicator.find_duplicate_clusters(dedup_config)

    async def apply_deduplication(
        self, result: DeduplicationResult, merge: bool = True
    ) -> ApplyDeduplicationResult:
        """Tombstone duplicates and alias them to their representatives"""
        deduplicator = self.deduplicator
        with self._observe("apply_deduplication", merge=merge):
            async with self._state.writing() as core:
                outcome = deduplicator.apply_deduplication(result, merge=merge)
                if merge:
                    core.cache.remove_many(outcome.tombstoned_ids)
        return outcome

    # ------------------------------------------------------------------
    # Incremental updates
    # ------------------------------------------------------------------

    async def sync_vault(self) -> UpdateReport:
        """Diff the vault against the index and re-embed what changed"""
        monitor = self.monitor
        with self._observe("sync_vault"):
            return await monitor.run_once()
