"""CRUD and batch operations over the storage engine and index"""

import logging
from collections import defaultdict
from collections.abc import Iterable

import numpy as np
from pydantic import ValidationError as PydanticValidationError

from vault_vectors.config import VectorStorageConfig, config
from vault_vectors.errors import (
    NotFound,
    SerializationError,
    StorageError,
    ValidationError,
    VectorDbError,
)
from vault_vectors.models.embedding import EmbeddingEntry, EmbeddingInput
from vault_vectors.models.operations import BatchDeleteResult, BatchFailure, BatchStoreResult
from vault_vectors.models.storage import OrphanCleanupResult
from vault_vectors.services.index import KeyType, MultiIndex
from vault_vectors.services.storage import StorageEngine

logger = logging.getLogger(__name__)


def _sort_key(entry: EmbeddingEntry) -> tuple[float, str]:
    return (entry.created_at, entry.id)


class VectorOperations:
    """
    Validated reads and writes over (storage, index)

    Not synchronized: the database facade calls these methods while holding
    the state lock, and every storage write is followed by its index update
    with no suspension point in between.
    """

    def __init__(
        self,
        storage: StorageEngine,
        index: MultiIndex,
        storage_config: VectorStorageConfig | None = None,
    ):
        self.storage = storage
        self.index = index
        self.config = storage_config or config

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_input(
        self, item: EmbeddingInput, pending_dimensions: dict[str, int] | None = None
    ) -> None:
        """
        Check an input before it is written

        Raises:
            ValidationError: Naming the first offending field
        """
        for field in ("file_path", "chunk_id", "model_name"):
            if not getattr(item, field).strip():
                raise ValidationError(field, "must not be empty")
        if not item.text:
            raise ValidationError("text", "must not be empty")
        self.validate_vector(item.vector, item.model_name, pending_dimensions)

    def validate_vector(
        self,
        vector: list[float],
        model_name: str,
        pending_dimensions: dict[str, int] | None = None,
    ) -> None:
        if vector is None or len(vector) == 0:
            raise ValidationError("vector", "must not be empty")
        # Checked as stored: float32 overflow turns large finite values into inf
        with np.errstate(over="ignore"):
            try:
                array = np.asarray(vector, dtype=np.float32)
            except (TypeError, ValueError) as e:
                raise ValidationError("vector", f"must be numeric: {e}") from e
        if array.ndim != 1:
            raise ValidationError("vector", "must be one-dimensional")
        non_finite = np.flatnonzero(~np.isfinite(array))
        if non_finite.size:
            i = int(non_finite[0])
            raise ValidationError("vector", f"non-finite value at index {i}: {vector[i]}")

        expected = self.index.model_dimension(model_name)
        if expected is None and pending_dimensions:
            expected = pending_dimensions.get(model_name)
        if expected is not None and len(array) != expected:
            raise ValidationError(
                "vector",
                f"dimension {len(array)} does not match {expected} for model {model_name}",
            )

    def _build_entry(self, item: EmbeddingInput) -> EmbeddingEntry:
        return EmbeddingEntry.create(
            vector=item.vector,
            file_path=item.file_path,
            chunk_id=item.chunk_id,
            text=item.text,
            model_name=item.model_name,
            custom_metadata=item.custom_metadata,
            preview_length=self.config.content_preview_length,
        )

    @staticmethod
    def coerce_input(item: EmbeddingInput | dict) -> EmbeddingInput:
        if isinstance(item, EmbeddingInput):
            return EmbeddingInput.model_validate(item.model_dump())
        try:
            return EmbeddingInput.model_validate(item)
        except PydanticValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error["loc"]) or "entry"
            raise ValidationError(field, error["msg"]) from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _check_new_ids(self, entries: list[EmbeddingEntry]) -> None:
        """
        Refuse ids that are live, tombstoned or repeated within the call

        Raises:
            StorageError: Naming the first reused id
        """
        seen: set[str] = set()
        for entry in entries:
            if entry.id in seen or entry.id in self.index or self.storage.is_tombstoned(entry.id):
                raise StorageError(f"Refusing to reuse entry id {entry.id}")
            seen.add(entry.id)

    def _persist(self, entries: list[EmbeddingEntry]) -> list[str]:
        """
        Write and index new entries into fresh batch files

        Every call starts new files; undersized files are merged later by
        compaction. Each file is indexed as soon as its write is durable, so
        a failure on a later file leaves earlier entries both stored and
        indexed.

        Returns:
            File ids written, in write order
        """
        self._check_new_ids(entries)
        touched: list[str] = []
        for batch in self.storage.split_into_batches(entries):
            file_id = self.storage.write_batch(batch)
            self._index_written(file_id, batch)
            touched.append(file_id)
        return touched

    def _index_written(self, file_id: str, entries: list[EmbeddingEntry]) -> None:
        for entry in entries:
            self.index.insert(entry, file_id)

    def store(self, item: EmbeddingInput) -> str:
        """
        Validate and durably store one embedding

        Returns:
            The new entry id
        """
        self.validate_input(item)
        entry = self._build_entry(item)
        self._persist([entry])
        logger.debug(f"Stored embedding {entry.id[:12]} for {item.file_path}#{item.chunk_id}")
        return entry.id

    def store_entries(self, entries: list[EmbeddingEntry]) -> list[str]:
        """Persist already-built entries (used by updates and re-embedding)"""
        self._persist(entries)
        return [entry.id for entry in entries]

    def store_batch(self, items: Iterable[EmbeddingInput | dict]) -> BatchStoreResult:
        """
        Store many embeddings, best effort

        Each item is validated on its own; invalid items are reported and the
        rest are written. A storage failure on one batch file is reported
        against the entries bound for that file and does not undo earlier
        files.
        """
        result = BatchStoreResult()
        pending_dimensions: dict[str, int] = {}
        valid: list[tuple[int, EmbeddingEntry]] = []

        for position, raw in enumerate(items):
            result.ids.append(None)
            try:
                item = self.coerce_input(raw)
                self.validate_input(item, pending_dimensions)
            except ValidationError as e:
                result.failures.append(
                    BatchFailure(position=position, field=e.field, reason=e.reason)
                )
                continue
            pending_dimensions.setdefault(item.model_name, len(item.vector))
            valid.append((position, self._build_entry(item)))

        if not valid:
            return result

        entries = [entry for _, entry in valid]
        try:
            self._persist(entries)
        except (StorageError, SerializationError) as e:
            positions = {entry.id: position for position, entry in valid}
            self._persist_per_file(entries, result, positions, e)

        for position, entry in valid:
            if entry.id in self.index:
                result.ids[position] = entry.id

        logger.debug(
            f"Batch stored {len(result.stored_ids)} of {len(result.ids)} embeddings "
            f"({len(result.failures)} failures)"
        )
        return result

    def _persist_per_file(
        self,
        entries: list[EmbeddingEntry],
        result: BatchStoreResult,
        positions: dict[str, int],
        first_error: VectorDbError,
    ) -> None:
        """Retry a failed batch one file at a time, reporting what still fails"""
        logger.warning(f"Batch write failed ({first_error}); retrying per file")
        # Entries made durable by the failed attempt are already indexed
        pending = [entry for entry in entries if entry.id not in self.index]
        for batch in self.storage.split_into_batches(pending):
            try:
                self._persist(batch)
            except (StorageError, SerializationError) as e:
                for entry in batch:
                    if entry.id not in self.index:
                        result.failures.append(
                            BatchFailure(
                                position=positions[entry.id], field="storage", reason=str(e)
                            )
                        )

    def delete(self, entry_id: str) -> bool:
        """Tombstone a live entry; returns False if it does not exist"""
        file_id = self.index.location(entry_id)
        if file_id is None:
            return False
        self.storage.delete_logical(entry_id, file_id)
        self.index.remove(entry_id)
        logger.debug(f"Deleted embedding {entry_id[:12]}")
        return True

    def delete_batch(self, entry_ids: Iterable[str]) -> BatchDeleteResult:
        """Tombstone many entries with a single ledger write"""
        result = BatchDeleteResult()
        locations: dict[str, str] = {}
        for entry_id in dict.fromkeys(entry_ids):
            file_id = self.index.location(entry_id)
            if file_id is None:
                result.not_found.append(entry_id)
            else:
                locations[entry_id] = file_id

        if locations:
            self.storage.delete_logical_batch(locations)
            for entry_id in locations:
                self.index.remove(entry_id)
            result.deleted = list(locations)
        return result

    def delete_by_file(self, file_path: str) -> list[str]:
        """Tombstone every entry of a source file; returns the deleted ids"""
        ids = sorted(self.index.lookup(KeyType.FILE_PATH, file_path))
        return self.delete_batch(ids).deleted

    def _build_replacement(self, entry: EmbeddingEntry, vector: list[float]) -> EmbeddingEntry:
        try:
            replacement = entry.recreate(vector)
        except PydanticValidationError as e:
            raise ValidationError("vector", e.errors()[0]["msg"]) from e
        self.validate_vector(replacement.vector, entry.metadata.model_name)
        return replacement

    def update_vector(self, entry_id: str, vector: list[float]) -> EmbeddingEntry:
        """
        Replace an entry's vector by writing a new entry and tombstoning the old

        Vectors are immutable once written, so the replacement has a new id.

        Returns:
            The replacement entry

        Raises:
            NotFound: If `entry_id` is not live
            ValidationError: If the vector is empty, non-finite or the wrong dimension
        """
        entry = self.retrieve(entry_id)
        if entry is None:
            raise NotFound(entry_id)
        replacement = self._build_replacement(entry, vector)

        old_file_id = self.index.location(entry_id)
        self._persist([replacement])
        self.storage.delete_logical(entry_id, old_file_id)
        self.index.remove(entry_id)
        logger.debug(f"Replaced vector of {entry_id[:12]} with {replacement.id[:12]}")
        return replacement

    def update_vector_batch(self, updates: dict[str, list[float]]) -> dict[str, EmbeddingEntry]:
        """
        Replace many vectors with one write pass and one tombstone ledger update

        Every vector is validated before anything is written, so an invalid
        one leaves the whole batch unapplied. Ids that are not live are skipped.

        Returns:
            Replacement entries keyed by the id they replace
        """
        replacements: dict[str, EmbeddingEntry] = {}
        for entry in self.retrieve_batch(updates):
            replacements[entry.id] = self._build_replacement(entry, updates[entry.id])
        if not replacements:
            return {}

        locations = {entry_id: self.index.location(entry_id) for entry_id in replacements}
        self._persist(list(replacements.values()))
        self.storage.delete_logical_batch(locations)
        for entry_id in locations:
            self.index.remove(entry_id)
        logger.debug(f"Replaced {len(replacements)} of {len(updates)} vectors")
        return replacements

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def retrieve(self, entry_id: str) -> EmbeddingEntry | None:
        """Load a live entry from its batch file"""
        file_id = self.index.location(entry_id)
        if file_id is None:
            return None
        for entry in self.storage.load_with_recovery(file_id):
            if entry.id == entry_id:
                return entry
        logger.warning(f"Index points {entry_id[:12]} at {file_id} but the file lacks it")
        return None

    def retrieve_batch(self, entry_ids: Iterable[str]) -> list[EmbeddingEntry]:
        """
        Load many live entries, reading each batch file once

        Unknown ids are skipped; results follow the order of `entry_ids`.
        """
        requested = list(dict.fromkeys(entry_ids))
        by_file: dict[str, set[str]] = defaultdict(set)
        for entry_id in requested:
            file_id = self.index.location(entry_id)
            if file_id is not None:
                by_file[file_id].add(entry_id)

        found: dict[str, EmbeddingEntry] = {}
        for file_id, wanted in by_file.items():
            for entry in self.storage.load_with_recovery(file_id):
                if entry.id in wanted:
                    found[entry.id] = entry
        return [found[entry_id] for entry_id in requested if entry_id in found]

    def find_by_key(self, key_type: KeyType, key: str) -> list[EmbeddingEntry]:
        entries = self.retrieve_batch(self.index.lookup(key_type, key))
        return sorted(entries, key=_sort_key)

    def find_by_file(self, file_path: str) -> list[EmbeddingEntry]:
        return self.find_by_key(KeyType.FILE_PATH, file_path)

    def find_by_model(self, model_name: str) -> list[EmbeddingEntry]:
        return self.find_by_key(KeyType.MODEL_NAME, model_name)

    def find_by_content_hash(self, text_hash: str) -> list[EmbeddingEntry]:
        return self.find_by_key(KeyType.CONTENT_HASH, text_hash)

    def find_by_chunk_id(self, chunk_id: str) -> list[EmbeddingEntry]:
        return self.find_by_key(KeyType.CHUNK_ID, chunk_id)

    def find_by_time_range(self, start: float, end: float) -> list[EmbeddingEntry]:
        entries = self.retrieve_batch(self.index.lookup_time_range(start, end))
        return sorted(entries, key=_sort_key)

    def list_ids(self) -> list[str]:
        return sorted(self.index.all_ids())

    def count(self) -> int:
        return len(self.index)

    def exists(self, entry_id: str) -> bool:
        return entry_id in self.index

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def live_storage_locations(self) -> dict[str, str]:
        """Every live entry id in storage mapped to the newest file holding it"""
        locations: dict[str, str] = {}
        for file_id, entries in self.storage.iter_batches():
            for entry in entries:
                locations[entry.id] = file_id
        return locations

    def cleanup_orphans(self) -> OrphanCleanupResult:
        """
        Reconcile the index with storage

        Storage is authoritative: if any index id lacks a live record, or any
        live record is missing from the index, the index is rebuilt.
        """
        storage_ids = self.live_storage_locations()
        index_ids = self.index.all_ids()

        result = OrphanCleanupResult(
            index_orphans=len(index_ids - storage_ids.keys()),
            storage_orphans=len(storage_ids.keys() - index_ids),
        )
        misplaced = any(
            self.index.location(entry_id) != file_id
            for entry_id, file_id in storage_ids.items()
            if entry_id in index_ids
        )
        if result.index_orphans or result.storage_orphans or misplaced:
            logger.warning(
                f"Index out of sync with storage ({result.index_orphans} index orphans, "
                f"{result.storage_orphans} storage orphans); rebuilding"
            )
            stats = self.index.rebuild_from_storage(self.storage)
            result.rebuilt = True
            result.entries_indexed = stats.entries_indexed
        else:
            result.entries_indexed = len(self.index)
        return result

    def cleanup_stale_files(self, valid_paths: Iterable[str]) -> list[str]:
        """
        Delete entries whose source file is not among `valid_paths`

        Returns:
            The deleted entry ids
        """
        valid = set(valid_paths)
        stale_ids: list[str] = []
        for file_path in self.index.keys(KeyType.FILE_PATH):
            if file_path not in valid:
                stale_ids.extend(sorted(self.index.lookup(KeyType.FILE_PATH, file_path)))
        if not stale_ids:
            return []
        deleted = self.delete_batch(stale_ids).deleted
        logger.info(f"Removed {len(deleted)} embeddings of files no longer in the vault")
        return deleted

    def cleanup_older_than(self, timestamp: float) -> list[str]:
        """
        Delete entries created before `timestamp`

        Returns:
            The deleted entry ids
        """
        old_ids = sorted(self.index.ids_created_before(timestamp))
        if not old_ids:
            return []
        deleted = self.delete_batch(old_ids).deleted
        logger.info(f"Removed {len(deleted)} embeddings created before {timestamp}")
        return deleted
