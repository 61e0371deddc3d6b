"""In-memory multi-key index over stored embeddings"""

import json
import logging
from collections import defaultdict
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field

from vault_vectors.errors import SerializationError
from vault_vectors.models.embedding import EmbeddingEntry

logger = logging.getLogger(__name__)

SOURCE_HASH_KEY = "source_hash"


class KeyType(str, Enum):
    """Secondary keys an entry can be looked up by"""

    FILE_PATH = "file_path"
    MODEL_NAME = "model_name"
    CONTENT_HASH = "content_hash"
    CHUNK_ID = "chunk_id"
    TIME_BUCKET = "time_bucket"


class IndexMetadata(BaseModel):
    """What the index remembers about an entry without loading its batch"""

    file_id: str
    file_path: str
    chunk_id: str
    model_name: str
    text_hash: str
    created_at: float
    dimension: int
    source_hash: str | None = None


class IndexStats(BaseModel):
    """Index size summary"""

    total_entries: int = 0
    file_paths: int = 0
    model_names: int = 0
    content_hashes: int = 0
    chunk_ids: int = 0
    time_buckets: int = 0
    batch_files: int = 0


class RebuildStats(BaseModel):
    """Outcome of rebuilding the index from storage"""

    entries_indexed: int = 0
    files_scanned: int = 0
    duplicate_ids: list[str] = Field(default_factory=list)


class MultiIndex:
    """
    Maps secondary keys to entry ids and entry ids to batch files

    The index is a derived cache of storage: every mutation is applied only
    after the matching storage write succeeded, and `rebuild_from_storage`
    restores it from scratch. It is not synchronized; callers hold the
    database state lock.
    """

    def __init__(self, time_bucket_seconds: int = 3600):
        self.time_bucket_seconds = time_bucket_seconds
        self._entries: dict[str, IndexMetadata] = {}
        self._keys: dict[KeyType, dict[str, set[str]]] = {
            key_type: defaultdict(set) for key_type in KeyType
        }
        self._model_dimensions: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def time_bucket(self, timestamp: float) -> str:
        return str(int(timestamp // self.time_bucket_seconds))

    def _keys_for(self, meta: IndexMetadata) -> dict[KeyType, str]:
        return {
            KeyType.FILE_PATH: meta.file_path,
            KeyType.MODEL_NAME: meta.model_name,
            KeyType.CONTENT_HASH: meta.text_hash,
            KeyType.CHUNK_ID: meta.chunk_id,
            KeyType.TIME_BUCKET: self.time_bucket(meta.created_at),
        }

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def insert(self, entry: EmbeddingEntry, file_id: str) -> None:
        """Index an entry that now lives in `file_id`"""
        meta = IndexMetadata(
            file_id=file_id,
            file_path=entry.metadata.file_path,
            chunk_id=entry.metadata.chunk_id,
            model_name=entry.metadata.model_name,
            text_hash=entry.metadata.text_hash,
            created_at=entry.created_at,
            dimension=entry.dimension,
            source_hash=entry.metadata.custom_metadata.get(SOURCE_HASH_KEY),
        )
        self._insert_metadata(entry.id, meta)

    def _insert_metadata(self, entry_id: str, meta: IndexMetadata) -> None:
        if entry_id in self._entries:
            self.remove(entry_id)
        self._entries[entry_id] = meta
        for key_type, key in self._keys_for(meta).items():
            self._keys[key_type][key].add(entry_id)
        self._model_dimensions.setdefault(meta.model_name, meta.dimension)

    def remove(self, entry_id: str) -> bool:
        """Drop an entry from every key; returns False if it was not indexed"""
        meta = self._entries.pop(entry_id, None)
        if meta is None:
            return False
        for key_type, key in self._keys_for(meta).items():
            ids = self._keys[key_type].get(key)
            if ids is None:
                continue
            ids.discard(entry_id)
            if not ids:
                del self._keys[key_type][key]
        if meta.model_name not in self._keys[KeyType.MODEL_NAME]:
            self._model_dimensions.pop(meta.model_name, None)
        return True

    def relocate(self, entry_id: str, file_id: str) -> None:
        """Point an entry at the batch file it was moved to"""
        meta = self._entries.get(entry_id)
        if meta is not None:
            meta.file_id = file_id

    def clear(self) -> None:
        self._entries.clear()
        for keys in self._keys.values():
            keys.clear()
        self._model_dimensions.clear()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, key_type: KeyType, key: str) -> set[str]:
        """Ids indexed under a key (a copy; empty when the key is unknown)"""
        ids = self._keys[KeyType(key_type)].get(str(key))
        return set(ids) if ids else set()

    def lookup_time_range(self, start: float, end: float) -> set[str]:
        """Ids created within [start, end]"""
        if end < start:
            return set()
        first = int(start // self.time_bucket_seconds)
        last = int(end // self.time_bucket_seconds)
        buckets = self._keys[KeyType.TIME_BUCKET]
        result: set[str] = set()
        if last - first + 1 <= len(buckets):
            candidate_keys = (str(b) for b in range(first, last + 1))
        else:
            candidate_keys = (k for k in list(buckets) if first <= int(k) <= last)
        for bucket in candidate_keys:
            for entry_id in buckets.get(bucket, ()):
                if start <= self._entries[entry_id].created_at <= end:
                    result.add(entry_id)
        return result

    def ids_created_before(self, timestamp: float) -> set[str]:
        """Ids created strictly before `timestamp`"""
        last = int(timestamp // self.time_bucket_seconds)
        return {
            entry_id
            for bucket, ids in self._keys[KeyType.TIME_BUCKET].items()
            if int(bucket) <= last
            for entry_id in ids
            if self._entries[entry_id].created_at < timestamp
        }

    def get(self, entry_id: str) -> IndexMetadata | None:
        return self._entries.get(entry_id)

    def location(self, entry_id: str) -> str | None:
        meta = self._entries.get(entry_id)
        return meta.file_id if meta else None

    def all_ids(self) -> set[str]:
        return set(self._entries)

    def keys(self, key_type: KeyType) -> list[str]:
        return sorted(self._keys[KeyType(key_type)])

    def model_dimension(self, model_name: str) -> int | None:
        return self._model_dimensions.get(model_name)

    def ids_by_file(self) -> dict[str, set[str]]:
        """Group indexed ids by the batch file holding them"""
        groups: dict[str, set[str]] = defaultdict(set)
        for entry_id, meta in self._entries.items():
            groups[meta.file_id].add(entry_id)
        return dict(groups)

    def source_hashes(self) -> dict[str, set[str]]:
        """Recorded source-file hashes per vault path"""
        hashes: dict[str, set[str]] = defaultdict(set)
        for meta in self._entries.values():
            hashes[meta.file_path].add(meta.source_hash or "")
        return dict(hashes)

    def ordered_ids(self, model_name: str | None = None) -> list[str]:
        """Ids oldest-created first (ties broken by id)"""
        ids = self._keys[KeyType.MODEL_NAME].get(model_name, set()) if model_name else self._entries
        return sorted(ids, key=lambda eid: (self._entries[eid].created_at, eid))

    def stats(self) -> IndexStats:
        return IndexStats(
            total_entries=len(self._entries),
            file_paths=len(self._keys[KeyType.FILE_PATH]),
            model_names=len(self._keys[KeyType.MODEL_NAME]),
            content_hashes=len(self._keys[KeyType.CONTENT_HASH]),
            chunk_ids=len(self._keys[KeyType.CHUNK_ID]),
            time_buckets=len(self._keys[KeyType.TIME_BUCKET]),
            batch_files=len({meta.file_id for meta in self._entries.values()}),
        )

    # ------------------------------------------------------------------
    # Rebuild and snapshots
    # ------------------------------------------------------------------

    def rebuild_from_storage(self, storage) -> RebuildStats:
        """
        Replace the index with one derived from every live entry in storage

        If an id appears in more than one file (a crash between writing a
        compacted file and removing its sources), the newest file wins.
        """
        stats = RebuildStats()
        self.clear()
        for file_id, entries in storage.iter_batches():
            stats.files_scanned += 1
            for entry in entries:
                if entry.id in self._entries:
                    stats.duplicate_ids.append(entry.id)
                self.insert(entry, file_id)
                stats.entries_indexed += 1

        stats.entries_indexed = len(self._entries)
        if stats.duplicate_ids:
            logger.warning(f"Found {len(stats.duplicate_ids)} ids stored in more than one file")
        logger.info(
            f"Rebuilt index with {stats.entries_indexed} entries "
            f"from {stats.files_scanned} files"
        )
        return stats

    def to_snapshot(self, storage_fingerprint: str) -> dict:
        """Serializable form of the index"""
        return {
            "fingerprint": storage_fingerprint,
            "time_bucket_seconds": self.time_bucket_seconds,
            "entries": {eid: meta.model_dump() for eid, meta in self._entries.items()},
            "file_path_index": {k: sorted(v) for k, v in self._keys[KeyType.FILE_PATH].items()},
            "model_name_index": {k: sorted(v) for k, v in self._keys[KeyType.MODEL_NAME].items()},
            "timestamp_index": {k: sorted(v) for k, v in self._keys[KeyType.TIME_BUCKET].items()},
        }

    def save_snapshot(self, path: Path, storage_fingerprint: str, writer) -> None:
        """Persist the index through `writer(path, payload)` (an atomic JSON writer)"""
        writer(path, self.to_snapshot(storage_fingerprint))
        logger.debug(f"Saved index snapshot with {len(self._entries)} entries")

    def load_snapshot(self, path: Path, storage_fingerprint: str) -> bool:
        """
        Load a persisted snapshot if it matches the current storage state

        Returns:
            True if the snapshot was loaded, False if it was absent or stale
        """
        if not path.exists():
            return False
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SerializationError(f"Failed to load index snapshot: {e}") from e

        if data.get("fingerprint") != storage_fingerprint:
            logger.info("Index snapshot is stale; rebuilding from storage")
            return False
        if data.get("time_bucket_seconds") != self.time_bucket_seconds:
            logger.info("Index snapshot uses a different time bucket; rebuilding from storage")
            return False

        self.clear()
        try:
            for entry_id, raw in data["entries"].items():
                self._insert_metadata(entry_id, IndexMetadata.model_validate(raw))
        except (KeyError, TypeError, ValueError) as e:
            self.clear()
            raise SerializationError(f"Invalid index snapshot: {e}") from e
        logger.info(f"Loaded index snapshot with {len(self._entries)} entries")
        return True
