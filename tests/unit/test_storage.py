"""Unit tests for the flat-file storage engine"""

import json

import pytest

from vault_vectors.config import CompressionAlgorithm, VectorStorageConfig
from vault_vectors.errors import ChecksumMismatch, StorageError, VersionIncompatible
from vault_vectors.models.embedding import EmbeddingEntry
from vault_vectors.services.storage import StorageEngine, StorageHandle


def make_entry(i: int, file_path: str = "note.md", model_name: str = "m1") -> EmbeddingEntry:
    return EmbeddingEntry.create(
        vector=[0.1 * i, 0.5, -0.25, float(i)],
        file_path=file_path,
        chunk_id=f"chunk_{i:04d}",
        text=f"Chunk number {i} of {file_path}",
        model_name=model_name,
    )


def flip_last_byte(path) -> None:
    data = bytearray(path.read_bytes())
    data[-1] ^= 0xFF
    path.write_bytes(bytes(data))


class TestStorageEngine:
    """Test batch file encoding, verification, tombstones and backups"""

    @pytest.fixture
    def storage_config(self, tmp_path):
        return VectorStorageConfig(
            storage_dir=str(tmp_path / "store"), max_entries_per_file=10, max_backups=2
        )

    @pytest.fixture
    def storage(self, storage_config):
        engine = StorageEngine(storage_config)
        engine.initialize()
        return engine

    def test_write_and_read_batch(self, storage):
        """Test that entries round-trip through a batch file unchanged"""
        entries = [make_entry(i) for i in range(3)]

        file_id = storage.write_batch(entries)

        assert storage.list_file_ids() == [file_id]
        assert storage.read_batch(file_id) == entries

    @pytest.mark.parametrize("algorithm", list(CompressionAlgorithm))
    def test_header_records_compression(self, tmp_path, algorithm):
        """Test that the header describes the body without decompressing it"""
        engine = StorageEngine(
            VectorStorageConfig(
                storage_dir=str(tmp_path / "store"), compression_algorithm=algorithm
            )
        )
        engine.initialize()
        file_id = engine.write_batch([make_entry(1), make_entry(2)])

        header = engine.read_header(file_id)

        assert header.compression == algorithm
        assert header.entry_count == 2
        assert header.checksum is not None
        assert header.uncompressed_size > 0
        assert len(engine.read_batch(file_id)) == 2

    def test_reads_files_written_with_another_algorithm(self, tmp_path):
        """Test that the header's algorithm wins over the configured one"""
        storage_dir = str(tmp_path / "store")
        writer = StorageEngine(
            VectorStorageConfig(storage_dir=storage_dir, compression_algorithm="lz4")
        )
        writer.initialize()
        file_id = writer.write_batch([make_entry(1)])

        reader = StorageEngine(
            VectorStorageConfig(storage_dir=storage_dir, compression_algorithm="gzip")
        )
        reader.initialize()

        assert reader.read_batch(file_id)[0].metadata.chunk_id == "chunk_0001"

    def test_rejects_empty_and_oversized_batches(self, storage):
        """Test batch size bounds"""
        with pytest.raises(StorageError, match="empty"):
            storage.write_batch([])
        with pytest.raises(StorageError, match="exceeds"):
            storage.write_batch([make_entry(i) for i in range(11)])

    def test_split_into_batches(self, storage):
        """Test that entries are split at max_entries_per_file"""
        batches = storage.split_into_batches([make_entry(i) for i in range(25)])

        assert [len(batch) for batch in batches] == [10, 10, 5]

    def test_flipped_body_byte_is_checksum_mismatch(self, storage):
        """Test that a corrupted body is detected before decompression"""
        file_id = storage.write_batch([make_entry(1)])
        flip_last_byte(storage.file_path(file_id))

        with pytest.raises(ChecksumMismatch) as exc_info:
            storage.read_batch(file_id)

        assert exc_info.value.file_id == file_id

    def test_incompatible_version_is_reported(self, storage):
        """Test that a newer major version halts loading of that file"""
        file_id = storage.write_batch([make_entry(1)])
        path = storage.file_path(file_id)
        header_line, _, body = path.read_bytes().partition(b"\n")
        header = json.loads(header_line)
        header["version"]["major"] = 2
        path.write_bytes(json.dumps(header).encode() + b"\n" + body)

        with pytest.raises(VersionIncompatible) as exc_info:
            storage.read_batch(file_id)

        assert exc_info.value.expected == "1.0.0"
        assert exc_info.value.found == "2.0.0"

    def test_load_with_recovery_restores_backup(self, storage):
        """Test that a corrupted file is restored from its newest good backup"""
        entries = [make_entry(i) for i in range(2)]
        file_id = storage.write_batch(entries)
        flip_last_byte(storage.file_path(file_id))

        assert storage.load_with_recovery(file_id) == entries
        assert storage.read_batch(file_id) == entries
        assert storage.unreadable_files == {}

    def test_unrecoverable_file_is_recorded(self, tmp_path):
        """Test that a corrupt file without backups is marked unreadable and skipped"""
        engine = StorageEngine(
            VectorStorageConfig(storage_dir=str(tmp_path / "store"), auto_backup=False)
        )
        engine.initialize()
        bad_id = engine.write_batch([make_entry(1)])
        good_id = engine.write_batch([make_entry(2)])
        flip_last_byte(engine.file_path(bad_id))

        with pytest.raises(ChecksumMismatch):
            engine.load_with_recovery(bad_id)

        assert bad_id in engine.unreadable_files
        assert [file_id for file_id, _ in engine.iter_batches()] == [good_id]

    def test_tombstones_persist_across_restarts(self, storage, storage_config):
        """Test that logical deletes survive a new engine instance"""
        entries = [make_entry(i) for i in range(3)]
        file_id = storage.write_batch(entries)

        assert storage.delete_logical(entries[0].id, file_id) is True
        assert storage.delete_logical(entries[0].id, file_id) is False

        reopened = StorageEngine(storage_config)
        reopened.initialize()

        assert reopened.is_tombstoned(entries[0].id)
        assert [e.id for e in reopened.read_batch(file_id)] == [e.id for e in entries[1:]]
        assert len(reopened.read_batch(file_id, include_tombstoned=True)) == 3

    def test_backup_rotation(self, storage):
        """Test that only max_backups backups are kept per file"""
        file_id = storage.new_file_id()
        for i in range(4):
            storage.write_batch([make_entry(i)], file_id=file_id)

        backups = storage.list_backups(file_id)

        assert len(backups) == 2
        # Newest first
        assert storage.restore_from_backup(file_id) is True
        assert storage.read_batch(file_id)[0].metadata.chunk_id == "chunk_0003"

    def test_prune_backups_drops_removed_files(self, storage):
        """Test that backups of files that no longer exist are pruned"""
        kept = storage.write_batch([make_entry(1)])
        removed = storage.write_batch([make_entry(2)])
        storage.file_path(removed).unlink()

        assert storage.prune_backups() == 1
        assert storage.list_backups(removed) == []
        assert len(storage.list_backups(kept)) == 1

    def test_quarantine_is_outside_rotation(self, storage):
        """Test that a quarantined copy is not treated as a backup"""
        file_id = storage.write_batch([make_entry(1)])

        target = storage.quarantine(file_id)

        assert target is not None and target.exists()
        assert target.name.endswith(".corrupt")
        assert len(storage.list_backups(file_id)) == 1

    def test_stale_temp_files_removed_on_initialize(self, storage, storage_config):
        """Test that leftovers of interrupted writes are cleaned up"""
        stale = storage.batches_dir / ".batch_x.batch.deadbeef.tmp"
        stale.write_bytes(b"partial")

        StorageEngine(storage_config).initialize()

        assert not stale.exists()

    def test_storage_size(self, storage):
        """Test that sizes come from disk and headers"""
        storage.write_batch([make_entry(i) for i in range(5)])
        storage.write_batch([make_entry(i) for i in range(5, 8)])

        size = storage.storage_size()

        assert size.file_count == 2
        assert size.on_disk_bytes == sum(
            storage.file_path(f).stat().st_size for f in storage.list_file_ids()
        )
        assert size.uncompressed_bytes > 0
        assert size.estimated_files == 0


class TestCompaction:
    """Test journaled compaction of batch files"""

    @pytest.fixture
    def storage_config(self, tmp_path):
        return VectorStorageConfig(storage_dir=str(tmp_path / "store"), max_entries_per_file=10)

    @pytest.fixture
    def storage(self, storage_config):
        engine = StorageEngine(storage_config)
        engine.initialize()
        return engine

    def test_compact_merges_files_and_purges_tombstones(self, storage):
        """Test that sparse files are merged and dead entries dropped"""
        groups = [[make_entry(i + 4 * g) for i in range(4)] for g in range(3)]
        file_ids = [storage.write_batch(entries) for entries in groups]
        storage.delete_logical_batch({groups[0][0].id: file_ids[0], groups[0][1].id: file_ids[0]})

        result = storage.compact()

        assert result.tombstones_purged == 2
        assert result.files_written == 1
        assert len(result.relocations) == 10
        assert storage.tombstones == {}
        assert len(storage.list_file_ids()) == 1
        survivors = storage.read_batch(storage.list_file_ids()[0])
        assert {e.id for e in survivors} == {e.id for g in groups for e in g} - {
            groups[0][0].id,
            groups[0][1].id,
        }

    def test_full_files_without_tombstones_are_left_alone(self, storage):
        """Test that dense, clean files are not rewritten"""
        file_id = storage.write_batch([make_entry(i) for i in range(10)])

        assert storage.plan_compaction() == []
        assert storage.compact().files_written == 0
        assert storage.list_file_ids() == [file_id]

    def test_should_stop_cancels_at_checkpoint(self, storage):
        """Test that compaction stops before the next group"""
        for g in range(2):
            entries = [make_entry(i + 10 * g) for i in range(10)]
            file_id = storage.write_batch(entries)
            storage.delete_logical(entries[0].id, file_id)

        result = storage.compact(should_stop=lambda: True)

        assert result.cancelled is True
        assert result.files_written == 0

    def test_interrupted_compaction_rolls_back(self, storage, storage_config):
        """Test that outputs of an uncommitted compaction are removed at startup"""
        source = storage.write_batch([make_entry(1)])
        output = storage.write_batch([make_entry(1)])
        storage.write_json(
            storage.journal_path, {"state": "writing", "sources": [source], "outputs": [output]}
        )

        StorageEngine(storage_config).initialize()

        assert storage.list_file_ids() == [source]
        assert not storage.journal_path.exists()

    def test_committed_compaction_completes(self, storage, storage_config):
        """Test that sources of a committed compaction are removed at startup"""
        source = storage.write_batch([make_entry(1)])
        output = storage.write_batch([make_entry(1)])
        storage.write_json(
            storage.journal_path, {"state": "committed", "sources": [source], "outputs": [output]}
        )

        StorageEngine(storage_config).initialize()

        assert storage.list_file_ids() == [output]
        assert not storage.journal_path.exists()


class TestStorageHandle:
    """Test the advisory directory lock"""

    def test_second_handle_fails_fast(self, tmp_path):
        """Test that a held lock cannot be taken again"""
        lock_path = tmp_path / ".lock"
        first = StorageHandle(lock_path)
        second = StorageHandle(lock_path)

        with first:
            assert first.held
            with pytest.raises(StorageError, match="locked"):
                second.acquire()
            assert not second.held

        second.acquire()
        assert second.held
        second.release()
        assert not second.held

    def test_handle_context_releases_on_error(self, tmp_path):
        """Test that the lock is released on every exit path"""
        lock_path = tmp_path / ".lock"

        with pytest.raises(RuntimeError):
            with StorageHandle(lock_path):
                raise RuntimeError("boom")

        with StorageHandle(lock_path) as handle:
            assert handle.held
