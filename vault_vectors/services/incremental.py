"""Incremental update monitor: keeps embeddings in step with vault files"""

import asyncio
import hashlib
import logging
import os
import time
from pathlib import Path
from typing import Protocol

from vault_vectors.config import VectorStorageConfig, config
from vault_vectors.errors import ValidationError, VectorDbError
from vault_vectors.models.chunk import TextChunk
from vault_vectors.models.embedding import EmbeddingEntry
from vault_vectors.models.incremental import (
    FileState,
    MonitorState,
    UpdateReport,
    VaultDiff,
    VaultSnapshot,
)
from vault_vectors.services.core import DatabaseCore
from vault_vectors.services.index import SOURCE_HASH_KEY, KeyType
from vault_vectors.utils.rwlock import DatabaseState

logger = logging.getLogger(__name__)


class ChunkerProtocol(Protocol):
    async def chunk(self, text: str, file_path: str) -> list[TextChunk]: ...


class EmbedderProtocol(Protocol):
    model_name: str

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


def hash_file(path: Path) -> str:
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            hasher.update(block)
    return hasher.hexdigest()


class IncrementalUpdateMonitor:
    """
    Diffs a vault against the index and re-embeds what changed

    State machine: Idle -> Scanning -> Diffing -> Applying -> Idle. A change
    notification during a pass sends the monitor back to Scanning instead of
    Idle once the pass finishes. A file is modified when its content hash
    differs from the hash recorded on its entries; mtime and size are only
    used to skip rehashing unchanged files.
    """

    def __init__(
        self,
        vault_root: str | Path,
        state: DatabaseState[DatabaseCore],
        embedder: EmbedderProtocol,
        chunker: ChunkerProtocol,
        storage_config: VectorStorageConfig | None = None,
        max_passes: int = 5,
    ):
        self.vault_root = Path(vault_root)
        self.config = storage_config or config
        self._state = state
        self.embedder = embedder
        self.chunker = chunker
        self.max_passes = max_passes

        self.state = MonitorState.IDLE
        self._rescan_requested = False
        self._pass_lock = asyncio.Lock()
        self._pending_run: asyncio.Task | None = None
        self._debounce_seconds = 0.5
        # path -> (mtime_ns, size, content_hash)
        self._hash_hints: dict[str, tuple[int, int, str]] = {}
        # path -> content hash of files that produced no chunks
        self._empty_files: dict[str, str] = {}
        self._extensions = {ext.lower().lstrip(".") for ext in self.config.monitored_extensions}
        self._excluded_dirs = set(self.config.excluded_dirs)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def is_monitored(self, path: Path) -> bool:
        """Whether a path (absolute or vault-relative) belongs to the vault"""
        if path.suffix.lower().lstrip(".") not in self._extensions:
            return False
        try:
            relative = path.relative_to(self.vault_root) if path.is_absolute() else path
        except ValueError:
            return False
        return not any(part in self._excluded_dirs for part in relative.parts[:-1])

    def scan(self) -> VaultSnapshot:
        """Walk the vault and fingerprint every monitored file"""
        snapshot = VaultSnapshot(root=str(self.vault_root), taken_at=time.time())
        if not self.vault_root.is_dir():
            logger.warning(f"Vault root does not exist: {self.vault_root}")
            return snapshot

        for dirpath, dirnames, filenames in os.walk(self.vault_root):
            dirnames[:] = sorted(d for d in dirnames if d not in self._excluded_dirs)
            for filename in sorted(filenames):
                path = Path(dirpath) / filename
                if not self.is_monitored(path):
                    continue
                relative = path.relative_to(self.vault_root).as_posix()
                try:
                    snapshot.files[relative] = self._file_state(path, relative)
                except OSError as e:
                    logger.warning(f"Skipping unreadable vault file {relative}: {e}")

        seen = snapshot.files.keys()
        for stale in [p for p in self._hash_hints if p not in seen]:
            del self._hash_hints[stale]
        logger.debug(f"Scanned {len(snapshot.files)} vault files")
        return snapshot

    def _file_state(self, path: Path, relative: str) -> FileState:
        stat = path.stat()
        hint = self._hash_hints.get(relative)
        if hint is not None and hint[0] == stat.st_mtime_ns and hint[1] == stat.st_size:
            content_hash = hint[2]
        else:
            content_hash = hash_file(path)
            self._hash_hints[relative] = (stat.st_mtime_ns, stat.st_size, content_hash)
        return FileState(
            path=relative,
            content_hash=content_hash,
            size=stat.st_size,
            mtime_ns=stat.st_mtime_ns,
        )

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------

    async def diff(self, snapshot: VaultSnapshot) -> VaultDiff:
        """Compare a snapshot with the source hashes recorded in the index"""
        async with self._state.reading(background=True) as core:
            recorded = core.index.source_hashes()

        result = VaultDiff()
        for path, file_state in sorted(snapshot.files.items()):
            hashes = recorded.get(path)
            if hashes is None:
                if self._empty_files.get(path) != file_state.content_hash:
                    result.added.append(path)
            elif hashes != {file_state.content_hash}:
                result.modified.append(path)

        result.removed = sorted(path for path in recorded if path not in snapshot.files)
        for path in [p for p in self._empty_files if p not in snapshot.files]:
            del self._empty_files[path]
        return result

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    async def apply_diff(self, diff: VaultDiff, snapshot: VaultSnapshot) -> UpdateReport:
        """
        Re-embed added and modified files and drop removed ones

        A failure on one file (unreadable, embedding error, invalid vector)
        is recorded in the report and the remaining files still proceed.
        """
        start = time.perf_counter()
        report = UpdateReport()

        for path in diff.added + diff.modified:
            file_state = snapshot.files.get(path)
            if file_state is None:
                report.failures[path] = "missing from snapshot"
                continue
            try:
                entries = await self._embed_file(path, file_state)
                stored, deleted = await self._replace_file_entries(path, entries)
            except (OSError, UnicodeDecodeError, VectorDbError) as e:
                logger.warning(f"Failed to update embeddings for {path}: {e}")
                report.failures[path] = str(e)
                continue
            except Exception as e:
                # Embedding collaborators raise their own error types
                logger.warning(f"Failed to embed {path}: {e}")
                report.failures[path] = f"{type(e).__name__}: {e}"
                continue

            if not entries:
                self._empty_files[path] = file_state.content_hash
            if path in diff.added:
                report.files_added += 1
            else:
                report.files_modified += 1
            report.entries_stored += stored
            report.entries_deleted += deleted

        if diff.removed:
            async with self._state.writing(background=True) as core:
                for path in diff.removed:
                    try:
                        deleted = core.operations.delete_by_file(path)
                    except VectorDbError as e:
                        logger.warning(f"Failed to remove embeddings for {path}: {e}")
                        report.failures[path] = str(e)
                        continue
                    core.forget(deleted)
                    report.files_removed += 1
                    report.entries_deleted += len(deleted)

        report.elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Applied vault diff: {report.files_added} added, {report.files_modified} modified, "
            f"{report.files_removed} removed, {len(report.failures)} failed"
        )
        return report

    async def _embed_file(self, path: str, file_state: FileState) -> list[EmbeddingEntry]:
        text = (self.vault_root / path).read_text(encoding="utf-8")
        chunks = await self.chunker.chunk(text, path)
        if not chunks:
            return []

        vectors = await self.embedder.embed_batch([chunk.text for chunk in chunks])
        if len(vectors) != len(chunks):
            raise ValidationError(
                "vector", f"embedder returned {len(vectors)} vectors for {len(chunks)} chunks"
            )

        return [
            EmbeddingEntry.create(
                vector=vector,
                file_path=path,
                chunk_id=chunk.chunk_id,
                text=chunk.text,
                model_name=self.embedder.model_name,
                custom_metadata={SOURCE_HASH_KEY: file_state.content_hash},
                preview_length=self.config.content_preview_length,
            )
            for chunk, vector in zip(chunks, vectors, strict=True)
        ]

    async def _replace_file_entries(
        self, path: str, entries: list[EmbeddingEntry]
    ) -> tuple[int, int]:
        """Store a file's new entries, then tombstone its old ones"""
        async with self._state.writing(background=True) as core:
            old_ids = sorted(core.index.lookup(KeyType.FILE_PATH, path))
            pending: dict[str, int] = {}
            for entry in entries:
                core.operations.validate_vector(entry.vector, entry.metadata.model_name, pending)
                pending.setdefault(entry.metadata.model_name, entry.dimension)

            if entries:
                core.operations.store_entries(entries)
            deleted = core.operations.delete_batch(old_ids).deleted if old_ids else []
            core.forget(deleted)
        return len(entries), len(deleted)

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    async def run_once(self) -> UpdateReport:
        """
        Run Scanning -> Diffing -> Applying until no change arrived mid-pass

        Returns:
            Combined report of every pass
        """
        async with self._pass_lock:
            combined = UpdateReport()
            start = time.perf_counter()
            passes = 0
            try:
                while True:
                    passes += 1
                    self._rescan_requested = False

                    self.state = MonitorState.SCANNING
                    snapshot = await asyncio.to_thread(self.scan)

                    self.state = MonitorState.DIFFING
                    vault_diff = await self.diff(snapshot)

                    self.state = MonitorState.APPLYING
                    if not vault_diff.is_empty():
                        report = await self.apply_diff(vault_diff, snapshot)
                        _merge_reports(combined, report)

                    if not self._rescan_requested or passes >= self.max_passes:
                        break
                    logger.debug("Vault changed during update; rescanning")
            finally:
                self.state = MonitorState.IDLE
            combined.elapsed_ms = (time.perf_counter() - start) * 1000

        if self._rescan_requested:
            # Changes arrived after the last scan; a debounced run must not block its successor
            if self._pending_run is asyncio.current_task():
                self._pending_run = None
            self.notify_change()
        return combined

    def notify_change(self, path: str | Path | None = None) -> None:
        """
        Record a file-system change

        While a pass is running the monitor rescans when it finishes; when
        idle a debounced pass is scheduled on the running event loop.
        """
        if path is not None and not self.is_monitored(Path(path)):
            return
        self._rescan_requested = True
        if self.state != MonitorState.IDLE:
            return
        if self._pending_run is not None and not self._pending_run.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._pending_run = loop.create_task(self._debounced_run())

    async def _debounced_run(self) -> None:
        await asyncio.sleep(self._debounce_seconds)
        try:
            report = await self.run_once()
        except (OSError, VectorDbError) as e:
            logger.error(f"Vault update failed: {e}")
            return
        if not report.success:
            logger.warning(f"Vault update finished with {len(report.failures)} failures")

    async def stop(self) -> None:
        """Cancel a scheduled pass, if any"""
        if self._pending_run is not None and not self._pending_run.done():
            self._pending_run.cancel()
            try:
                await self._pending_run
            except asyncio.CancelledError:
                pass
        self._pending_run = None


def _merge_reports(target: UpdateReport, report: UpdateReport) -> None:
    target.files_added += report.files_added
    target.files_modified += report.files_modified
    target.files_removed += report.files_removed
    target.entries_stored += report.entries_stored
    target.entries_deleted += report.entries_deleted
    target.failures.update(report.failures)
