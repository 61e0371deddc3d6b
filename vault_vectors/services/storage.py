"""Flat-file storage engine for embedding batches"""

import fcntl
import hashlib
import json
import logging
import os
import time
from collections import Counter
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path
from uuid import uuid4

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from vault_vectors.config import VectorStorageConfig, config
from vault_vectors.errors import (
    ChecksumMismatch,
    IntegrityError,
    SerializationError,
    StorageError,
    VersionIncompatible,
)
from vault_vectors.models.embedding import EmbeddingEntry
from vault_vectors.models.storage import (
    CURRENT_VERSION,
    CompactionResult,
    StorageFileHeader,
    StorageSize,
)
from vault_vectors.services.compression import compress, decompress, estimate_uncompressed_size

logger = logging.getLogger(__name__)

BATCH_SUFFIX = ".batch"
BACKUP_SUFFIX = ".backup"
TEMP_SUFFIX = ".tmp"
QUARANTINE_SUFFIX = ".corrupt"

_entries_adapter = TypeAdapter(list[EmbeddingEntry])


class StorageHandle:
    """
    Exclusive advisory lock over a storage directory

    Held for the lifetime of an open database so that a second process
    cannot write into the same directory.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self._file = None

    @property
    def held(self) -> bool:
        return self._file is not None

    def acquire(self) -> None:
        """
        Take the lock without blocking

        Raises:
            StorageError: If another process holds the lock
        """
        if self._file is not None:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(self.lock_path, "a+")
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            lock_file.close()
            raise StorageError(
                f"Storage directory is locked by another process: {self.lock_path.parent}", e
            ) from e
        self._file = lock_file
        logger.debug(f"Acquired storage lock: {self.lock_path}")

    def release(self) -> None:
        if self._file is None:
            return
        try:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        finally:
            self._file.close()
            self._file = None
            logger.debug(f"Released storage lock: {self.lock_path}")

    def __enter__(self) -> "StorageHandle":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class StorageEngine:
    """Reads and writes batch files with checksums, compression and backups"""

    def __init__(self, storage_config: VectorStorageConfig | None = None):
        self.config = storage_config or config
        self.root = Path(self.config.storage_dir)
        self.batches_dir = self.root / "batches"
        self.backups_dir = self.root / "backups"
        self.tombstones_path = self.root / "tombstones.json"
        self.journal_path = self.root / "compaction.journal"
        self.lock_path = self.root / ".lock"

        # entry id -> file id of every logically deleted entry
        self._tombstones: dict[str, str] = {}
        # file id -> reason for files that failed to load and could not be restored
        self._unreadable: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Create directories, clear crash leftovers and load the tombstone ledger"""
        try:
            self.batches_dir.mkdir(parents=True, exist_ok=True)
            self.backups_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create storage directory: {e}", e) from e

        self.cleanup_stale_files()
        self._load_tombstones()
        self._recover_compaction_journal()
        logger.info(
            f"Storage initialized at {self.root}: {len(self.list_file_ids())} batch files, "
            f"{len(self._tombstones)} tombstones"
        )

    def cleanup_stale_files(self) -> int:
        """Remove temp files left behind by interrupted writes"""
        removed = 0
        for directory in (self.root, self.batches_dir, self.backups_dir):
            if not directory.exists():
                continue
            for temp_file in directory.glob(f".*{TEMP_SUFFIX}"):
                logger.warning(f"Removing stale temp file: {temp_file}")
                temp_file.unlink(missing_ok=True)
                removed += 1
        return removed

    # ------------------------------------------------------------------
    # File naming
    # ------------------------------------------------------------------

    def new_file_id(self) -> str:
        """Sortable, unique batch file id (creation order == name order)"""
        return f"batch_{time.time_ns():020d}_{uuid4().hex[:8]}"

    def file_path(self, file_id: str) -> Path:
        return self.batches_dir / f"{file_id}{BATCH_SUFFIX}"

    def list_file_ids(self) -> list[str]:
        if not self.batches_dir.exists():
            return []
        return sorted(
            path.name[: -len(BATCH_SUFFIX)] for path in self.batches_dir.glob(f"*{BATCH_SUFFIX}")
        )

    def exists(self, file_id: str) -> bool:
        return self.file_path(file_id).exists()

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def _encode_batch(self, entries: list[EmbeddingEntry]) -> bytes:
        """Serialize entries into header line + compressed body"""
        algorithm = self.config.effective_compression
        try:
            raw_body = _entries_adapter.dump_json(entries)
        except (ValueError, TypeError) as e:
            raise SerializationError(f"Failed to serialize batch: {e}") from e

        body = compress(raw_body, algorithm)
        header = StorageFileHeader(
            compression=algorithm,
            entry_count=len(entries),
            checksum=hashlib.sha256(body).hexdigest(),
            uncompressed_size=len(raw_body),
        )
        return header.model_dump_json().encode("utf-8") + b"\n" + body

    def _parse_header(self, header_line: bytes, file_id: str) -> StorageFileHeader:
        try:
            header = StorageFileHeader.model_validate_json(header_line)
        except (PydanticValidationError, ValueError) as e:
            raise SerializationError(f"Invalid header in {file_id}: {e}") from e

        if not CURRENT_VERSION.is_compatible(header.version):
            raise VersionIncompatible(
                expected=CURRENT_VERSION.version_string(),
                found=header.version.version_string(),
                file_id=file_id,
            )
        return header

    def _decode_batch(
        self, data: bytes, file_id: str
    ) -> tuple[StorageFileHeader, list[EmbeddingEntry]]:
        """
        Verify and decode a batch file's bytes

        Raises:
            SerializationError: Malformed header or body
            VersionIncompatible: Written by an incompatible format version
            ChecksumMismatch: Body does not match the header checksum
            CompressionError: Body cannot be decompressed
            IntegrityError: Entry count disagrees with the header
        """
        header_line, separator, body = data.partition(b"\n")
        if not separator:
            raise SerializationError(f"Batch file {file_id} has no header line")

        header = self._parse_header(header_line, file_id)

        if self.config.enable_checksums and header.checksum is not None:
            found = hashlib.sha256(body).hexdigest()
            if found != header.checksum:
                raise ChecksumMismatch(file_id, expected=header.checksum, found=found)

        raw_body = decompress(body, header.compression)
        try:
            entries = _entries_adapter.validate_json(raw_body)
        except (PydanticValidationError, ValueError) as e:
            raise SerializationError(f"Invalid body in {file_id}: {e}") from e

        if len(entries) != header.entry_count:
            raise IntegrityError(
                f"Entry count mismatch in {file_id} "
                f"(header: {header.entry_count}, actual: {len(entries)})",
                file_id=file_id,
            )
        return header, entries

    # ------------------------------------------------------------------
    # Atomic writes
    # ------------------------------------------------------------------

    def _atomic_write(self, target: Path, data: bytes) -> None:
        """Write to a temp file, fsync, then rename over the target"""
        temp_path = target.with_name(f".{target.name}.{uuid4().hex[:8]}{TEMP_SUFFIX}")
        try:
            with open(temp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, target)
            self._fsync_directory(target.parent)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write {target.name}: {e}", e) from e

    @staticmethod
    def _fsync_directory(directory: Path) -> None:
        if not hasattr(os, "O_DIRECTORY"):
            return
        fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def write_json(self, target: Path, payload: dict) -> None:
        try:
            data = json.dumps(payload, sort_keys=True).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Failed to serialize {target.name}: {e}") from e
        self._atomic_write(target, data)

    # ------------------------------------------------------------------
    # Batch read/write
    # ------------------------------------------------------------------

    def write_batch(
        self,
        entries: list[EmbeddingEntry],
        file_id: str | None = None,
        backup: bool | None = None,
    ) -> str:
        """
        Durably write entries as one batch file

        Args:
            entries: Entries to write (at most max_entries_per_file)
            file_id: Optional pre-allocated file id
            backup: Copy the new file into the backup set (default: auto_backup)

        Returns:
            The new file id
        """
        if not entries:
            raise StorageError("Refusing to write an empty batch")
        if len(entries) > self.config.max_entries_per_file:
            raise StorageError(
                f"Batch of {len(entries)} exceeds max_entries_per_file "
                f"({self.config.max_entries_per_file})"
            )

        file_id = file_id or self.new_file_id()
        target = self.file_path(file_id)
        self._atomic_write(target, self._encode_batch(entries))
        logger.debug(f"Stored {len(entries)} embedding entries to {target.name}")

        should_backup = self.config.auto_backup if backup is None else backup
        if should_backup:
            try:
                self.backup_file(file_id)
            except StorageError as e:
                # The batch itself is durable; only its recovery copy is missing
                logger.warning(f"Failed to back up {file_id}: {e}")
        return file_id

    def split_into_batches(self, entries: list[EmbeddingEntry]) -> list[list[EmbeddingEntry]]:
        size = self.config.max_entries_per_file
        return [entries[i : i + size] for i in range(0, len(entries), size)]

    def read_header(self, file_id: str) -> StorageFileHeader:
        """Read only the header line; the body is not decompressed"""
        path = self.file_path(file_id)
        try:
            with open(path, "rb") as f:
                header_line = f.readline()
        except FileNotFoundError as e:
            raise StorageError(f"Batch file not found: {file_id}", e) from e
        except OSError as e:
            raise StorageError(f"Failed to read batch header {file_id}: {e}", e) from e
        return self._parse_header(header_line.rstrip(b"\n"), file_id)

    def _read_bytes(self, file_id: str) -> bytes:
        try:
            return self.file_path(file_id).read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"Batch file not found: {file_id}", e) from e
        except OSError as e:
            raise StorageError(f"Failed to read batch file {file_id}: {e}", e) from e

    def read_batch(self, file_id: str, include_tombstoned: bool = False) -> list[EmbeddingEntry]:
        """
        Strictly load a batch file; any verification failure is raised

        Args:
            file_id: Batch file id
            include_tombstoned: Also return logically deleted entries
        """
        _, entries = self._decode_batch(self._read_bytes(file_id), file_id)
        if include_tombstoned:
            return entries
        return [entry for entry in entries if entry.id not in self._tombstones]

    def load_with_recovery(
        self, file_id: str, include_tombstoned: bool = False
    ) -> list[EmbeddingEntry]:
        """
        Load a batch file, restoring it from backup if it fails verification

        Files that cannot be restored are recorded as unreadable and the
        original error is raised.
        """
        try:
            entries = self.read_batch(file_id, include_tombstoned=include_tombstoned)
        except (IntegrityError, SerializationError) as e:
            logger.warning(f"Batch {file_id} failed verification ({e}); attempting restore")
            if self.restore_from_backup(file_id):
                try:
                    entries = self.read_batch(file_id, include_tombstoned=include_tombstoned)
                except (IntegrityError, SerializationError, VersionIncompatible) as retry_error:
                    self.mark_unreadable(file_id, str(retry_error))
                    raise
                self._unreadable.pop(file_id, None)
                return entries
            self.mark_unreadable(file_id, str(e))
            raise
        except VersionIncompatible as e:
            self.mark_unreadable(file_id, str(e))
            raise
        self._unreadable.pop(file_id, None)
        return entries

    def mark_unreadable(self, file_id: str, reason: str) -> None:
        logger.error(f"Batch {file_id} is unreadable: {reason}")
        self._unreadable[file_id] = reason

    @property
    def unreadable_files(self) -> dict[str, str]:
        return dict(self._unreadable)

    def iter_batches(
        self, file_ids: Iterable[str] | None = None, include_tombstoned: bool = False
    ) -> Iterator[tuple[str, list[EmbeddingEntry]]]:
        """Yield (file_id, entries) for every loadable batch, skipping unreadable ones"""
        for file_id in list(file_ids) if file_ids is not None else self.list_file_ids():
            try:
                entries = self.load_with_recovery(file_id, include_tombstoned=include_tombstoned)
            except (IntegrityError, SerializationError, VersionIncompatible) as e:
                logger.warning(f"Skipping batch {file_id}: {e}")
                continue
            yield file_id, entries

    # ------------------------------------------------------------------
    # Tombstones
    # ------------------------------------------------------------------

    def _load_tombstones(self) -> None:
        if not self.tombstones_path.exists():
            self._tombstones = {}
            return
        try:
            data = json.loads(self.tombstones_path.read_text(encoding="utf-8"))
            self._tombstones = {str(k): str(v) for k, v in data.get("tombstones", {}).items()}
        except (OSError, ValueError, AttributeError) as e:
            raise SerializationError(f"Failed to load tombstone ledger: {e}") from e

    def _save_tombstones(self) -> None:
        self.write_json(self.tombstones_path, {"version": 1, "tombstones": self._tombstones})

    def delete_logical(self, entry_id: str, file_id: str) -> bool:
        """Tombstone one entry; returns False if it was already tombstoned"""
        return self.delete_logical_batch({entry_id: file_id}) == 1

    def delete_logical_batch(self, locations: dict[str, str]) -> int:
        """Tombstone several entries with a single ledger write"""
        added = {eid: fid for eid, fid in locations.items() if eid not in self._tombstones}
        if not added:
            return 0
        self._tombstones.update(added)
        try:
            self._save_tombstones()
        except (StorageError, SerializationError):
            for eid in added:
                self._tombstones.pop(eid, None)
            raise
        return len(added)

    def is_tombstoned(self, entry_id: str) -> bool:
        return entry_id in self._tombstones

    @property
    def tombstones(self) -> dict[str, str]:
        return dict(self._tombstones)

    def tombstone_counts(self) -> Counter:
        return Counter(self._tombstones.values())

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def undersized_file_count(self) -> int:
        """Readable batch files holding fewer than half the batch bound"""
        count = 0
        for file_id in self.list_file_ids():
            if file_id in self._unreadable:
                continue
            try:
                header = self.read_header(file_id)
            except (StorageError, SerializationError, VersionIncompatible):
                continue
            if header.entry_count < self.config.max_entries_per_file / 2:
                count += 1
        return count

    def plan_compaction(self, file_ids: Iterable[str] | None = None) -> list[list[str]]:
        """
        Group files into compaction units using header counts only

        Files with tombstones or fewer than half the batch bound are
        candidates. Consecutive candidates are merged while their live
        entries fit in one batch file.
        """
        max_entries = self.config.max_entries_per_file
        tombstone_counts = self.tombstone_counts()
        candidates: list[tuple[str, int, int]] = []

        for file_id in list(file_ids) if file_ids is not None else self.list_file_ids():
            if file_id in self._unreadable:
                continue
            try:
                header = self.read_header(file_id)
            except (StorageError, SerializationError, VersionIncompatible) as e:
                logger.warning(f"Excluding {file_id} from compaction: {e}")
                continue
            dead = tombstone_counts.get(file_id, 0)
            live = max(header.entry_count - dead, 0)
            if dead > 0 or live < max_entries / 2:
                candidates.append((file_id, live, dead))

        groups: list[list[str]] = []
        current: list[str] = []
        current_live = 0
        current_dead = 0
        for file_id, live, dead in candidates:
            if current and current_live + live > max_entries:
                groups.append(current)
                current, current_live, current_dead = [], 0, 0
            current.append(file_id)
            current_live += live
            current_dead += dead
        if current:
            groups.append(current)

        # A lone file without tombstones gains nothing from being rewritten
        return [
            group
            for group in groups
            if len(group) > 1 or tombstone_counts.get(group[0], 0) > 0
        ]

    def compact_group(self, group: list[str]) -> CompactionResult:
        """
        Merge a group of files into one dense file, dropping tombstones

        The transition is journaled: outputs are durable before any source is
        removed, and an interrupted pass is replayed or rolled back at startup.
        """
        result = CompactionResult()
        live_entries: list[EmbeddingEntry] = []
        purged_ids: list[str] = []
        survivors_by_file: dict[str, int] = {}
        bytes_before = 0

        for file_id in group:
            entries = self.load_with_recovery(file_id, include_tombstoned=True)
            if self.config.auto_backup:
                self.backup_file(file_id)
            bytes_before += self.file_path(file_id).stat().st_size
            survivors = 0
            for entry in entries:
                if entry.id in self._tombstones:
                    purged_ids.append(entry.id)
                else:
                    live_entries.append(entry)
                    survivors += 1
            survivors_by_file[file_id] = survivors

        output_ids = [self.new_file_id() for _ in self.split_into_batches(live_entries)]
        self._write_journal({"state": "writing", "sources": group, "outputs": output_ids})

        bytes_after = 0
        for output_id, batch in zip(output_ids, self.split_into_batches(live_entries), strict=True):
            self.write_batch(batch, file_id=output_id)
            bytes_after += self.file_path(output_id).stat().st_size
            for entry in batch:
                result.relocations[entry.id] = output_id

        self._write_journal({"state": "committed", "sources": group, "outputs": output_ids})
        self._finish_compaction(group, purged_ids)

        result.files_written = len(output_ids)
        result.files_compacted = sum(1 for n in survivors_by_file.values() if n > 0)
        result.files_removed = sum(1 for n in survivors_by_file.values() if n == 0)
        result.tombstones_purged = len(purged_ids)
        result.entries_remaining = len(live_entries)
        result.bytes_reclaimed = max(bytes_before - bytes_after, 0)
        logger.debug(
            f"Compacted {len(group)} files into {len(output_ids)}: "
            f"{len(purged_ids)} tombstones purged"
        )
        return result

    def compact(
        self,
        file_ids: Iterable[str] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> CompactionResult:
        """
        Compact the given files (default: all), checking `should_stop` between groups
        """
        result = CompactionResult()
        for group in self.plan_compaction(file_ids):
            if should_stop is not None and should_stop():
                logger.info("Compaction cancelled at checkpoint")
                result.cancelled = True
                break
            partial = self.compact_group(group)
            result.merge(partial)
            result.entries_remaining += partial.entries_remaining
        return result

    def _write_journal(self, payload: dict) -> None:
        self.write_json(self.journal_path, payload)

    def _finish_compaction(self, sources: list[str], purged_ids: Iterable[str]) -> None:
        for file_id in sources:
            self.file_path(file_id).unlink(missing_ok=True)
            self._unreadable.pop(file_id, None)
        source_set = set(sources)
        for entry_id in list(purged_ids):
            self._tombstones.pop(entry_id, None)
        # Tombstones whose file no longer exists have nothing left to hide
        for entry_id, file_id in list(self._tombstones.items()):
            if file_id in source_set:
                self._tombstones.pop(entry_id, None)
        self._save_tombstones()
        self.journal_path.unlink(missing_ok=True)

    def _recover_compaction_journal(self) -> None:
        if not self.journal_path.exists():
            return
        try:
            journal = json.loads(self.journal_path.read_text(encoding="utf-8"))
            sources = list(journal["sources"])
            outputs = list(journal["outputs"])
            state = journal["state"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise SerializationError(f"Failed to load compaction journal: {e}") from e

        if state == "committed":
            logger.warning(f"Completing interrupted compaction of {len(sources)} files")
            self._finish_compaction(sources, [])
        else:
            logger.warning(f"Rolling back interrupted compaction of {len(sources)} files")
            for output_id in outputs:
                self.file_path(output_id).unlink(missing_ok=True)
            self.journal_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def backup_file(self, file_id: str) -> Path | None:
        """Copy a batch file into the backup set and rotate old backups"""
        source = self.file_path(file_id)
        if not source.exists():
            return None
        self.backups_dir.mkdir(parents=True, exist_ok=True)
        backup_path = self.backups_dir / f"{file_id}.{time.time_ns()}{BACKUP_SUFFIX}"
        self._atomic_write(backup_path, self._read_bytes(file_id))
        self._rotate_backups(file_id)
        return backup_path

    def list_backups(self, file_id: str | None = None) -> list[Path]:
        """Backups newest first, optionally for one file"""
        if not self.backups_dir.exists():
            return []
        pattern = f"{file_id}.*{BACKUP_SUFFIX}" if file_id else f"*{BACKUP_SUFFIX}"
        return sorted(self.backups_dir.glob(pattern), key=_backup_timestamp, reverse=True)

    def _rotate_backups(self, file_id: str) -> int:
        removed = 0
        for backup in self.list_backups(file_id)[self.config.max_backups :]:
            logger.debug(f"Removing old backup: {backup.name}")
            backup.unlink(missing_ok=True)
            removed += 1
        return removed

    def prune_backups(self) -> int:
        """Apply rotation to every file and drop backups of files that no longer exist"""
        live_files = set(self.list_file_ids())
        backed_up = {_backup_file_id(p) for p in self.list_backups()}
        removed = 0
        for file_id in backed_up:
            if file_id in live_files:
                removed += self._rotate_backups(file_id)
            else:
                for backup in self.list_backups(file_id):
                    backup.unlink(missing_ok=True)
                    removed += 1
        if removed:
            logger.info(f"Pruned {removed} backups")
        return removed

    def quarantine(self, file_id: str) -> Path | None:
        """Keep a copy of a damaged batch file outside the backup rotation"""
        source = self.file_path(file_id)
        if not source.exists():
            return None
        target = self.backups_dir / f"{file_id}.{time.time_ns()}{QUARANTINE_SUFFIX}"
        self.backups_dir.mkdir(parents=True, exist_ok=True)
        self._atomic_write(target, self._read_bytes(file_id))
        logger.warning(f"Quarantined damaged batch {file_id} as {target.name}")
        return target

    def restore_from_backup(self, file_id: str) -> bool:
        """Replace a batch file with its newest backup that verifies"""
        for backup in self.list_backups(file_id):
            try:
                data = backup.read_bytes()
                self._decode_batch(data, file_id)
            except (OSError, IntegrityError, SerializationError, VersionIncompatible) as e:
                logger.warning(f"Backup {backup.name} is not usable: {e}")
                continue
            self._atomic_write(self.file_path(file_id), data)
            self._unreadable.pop(file_id, None)
            logger.warning(f"Restored {file_id} from backup {backup.name}")
            return True
        return False

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def storage_size(self) -> StorageSize:
        """Measure on-disk size and, where headers allow, uncompressed size"""
        size = StorageSize()
        for file_id in self.list_file_ids():
            path = self.file_path(file_id)
            try:
                on_disk = path.stat().st_size
            except FileNotFoundError:
                continue
            size.file_count += 1
            size.on_disk_bytes += on_disk
            try:
                size.uncompressed_bytes += self.read_header(file_id).uncompressed_size
            except (StorageError, SerializationError, VersionIncompatible):
                size.estimated_files += 1
                size.uncompressed_bytes += estimate_uncompressed_size(
                    on_disk, self.config.effective_compression
                )
        return size


def _backup_timestamp(path: Path) -> int:
    # <file_id>.<timestamp_ns>.backup
    try:
        return int(path.name[: -len(BACKUP_SUFFIX)].rsplit(".", 1)[1])
    except (IndexError, ValueError):
        return 0


def _backup_file_id(path: Path) -> str:
    return path.name[: -len(BACKUP_SUFFIX)].rsplit(".", 1)[0]
