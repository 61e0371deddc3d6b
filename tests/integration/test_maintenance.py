"""Integration tests for compaction, integrity checks and the maintenance scheduler"""

from unittest.mock import patch

import pytest

from vault_vectors.config import MaintenancePolicyKind, VectorStorageConfig
from vault_vectors.errors import StorageError
from vault_vectors.models.embedding import EmbeddingInput
from vault_vectors.models.maintenance import MaintenancePolicy
from vault_vectors.services.aliases import AliasTable
from vault_vectors.services.cache import EntryCache
from vault_vectors.services.core import DatabaseCore
from vault_vectors.services.index import MultiIndex
from vault_vectors.services.maintenance import (
    MAINTENANCE_JOB_ID,
    MaintenanceScheduler,
    check_integrity,
    compact_storage,
    repair_storage,
)
from vault_vectors.services.operations import VectorOperations
from vault_vectors.services.storage import StorageEngine
from vault_vectors.utils.rwlock import DatabaseState


def build_state(tmp_path, **overrides):
    settings = {"storage_dir": str(tmp_path / "store"), "max_entries_per_file": 10}
    storage_config = VectorStorageConfig(**{**settings, **overrides})
    storage = StorageEngine(storage_config)
    storage.initialize()
    index = MultiIndex()
    operations = VectorOperations(storage, index, storage_config)
    aliases = AliasTable(storage.root / "aliases.json", storage.write_json)
    core = DatabaseCore(storage, index, operations, aliases, EntryCache(16))
    return storage_config, core, DatabaseState(core)


def store_many(core, count, file_path="note.md"):
    result = core.operations.store_batch(
        [
            EmbeddingInput(
                vector=[float(i), 1.0],
                file_path=file_path,
                chunk_id=f"chunk_{i}",
                text=f"paragraph {i}",
                model_name="m1",
            )
            for i in range(count)
        ]
    )
    return result.ids


class TestCompactStorage:
    """Test group-by-group compaction under the state lock"""

    @pytest.mark.asyncio
    async def test_compaction_purges_and_relocates(self, tmp_path):
        """Test that survivors move and the index follows them"""
        _, core, state = build_state(tmp_path)
        ids = store_many(core, 30)
        core.operations.delete_batch(ids[:25])

        result = await compact_storage(state)

        assert result.tombstones_purged == 25
        assert result.entries_remaining == 5
        assert core.storage.tombstones == {}
        assert len(core.storage.list_file_ids()) == 1
        new_file = core.storage.list_file_ids()[0]
        assert {core.index.location(entry_id) for entry_id in ids[25:]} == {new_file}
        assert [e.id for e in core.operations.find_by_file("note.md")] == ids[25:]

    @pytest.mark.asyncio
    async def test_compaction_restricted_to_files(self, tmp_path):
        """Test compacting only the requested files"""
        _, core, state = build_state(tmp_path)
        ids = store_many(core, 20)
        first, second = core.storage.list_file_ids()
        core.operations.delete_batch([ids[0], ids[15]])

        result = await compact_storage(state, file_ids=[second])

        assert result.tombstones_purged == 1
        assert first in core.storage.list_file_ids()
        assert core.storage.is_tombstoned(ids[0])

    @pytest.mark.asyncio
    async def test_should_stop_cancels_before_any_group(self, tmp_path):
        """Test the cancellation checkpoint"""
        _, core, state = build_state(tmp_path)
        ids = store_many(core, 10)
        core.operations.delete(ids[0])
        files_before = core.storage.list_file_ids()

        result = await compact_storage(state, should_stop=lambda: True)

        assert result.cancelled is True
        assert core.storage.list_file_ids() == files_before
        assert core.storage.is_tombstoned(ids[0])

    @pytest.mark.asyncio
    async def test_stores_after_compaction(self, tmp_path):
        """Test that stores after compaction land beside the compacted file"""
        _, core, state = build_state(tmp_path)
        ids = store_many(core, 10)
        core.operations.delete_batch(ids[:5])
        await compact_storage(state)

        new_ids = store_many(core, 3, file_path="other.md")

        assert core.operations.count() == 8
        assert all(core.operations.retrieve(entry_id) for entry_id in ids[5:] + new_ids)


class TestIntegrityAndRepair:
    """Test read-only validation and backup-based repair"""

    @pytest.mark.asyncio
    async def test_healthy_storage(self, tmp_path):
        """Test a clean report"""
        _, core, state = build_state(tmp_path)
        ids = store_many(core, 12)
        core.operations.delete(ids[0])

        report = await check_integrity(state)

        assert report.is_healthy()
        assert report.valid_files == 2
        assert report.healthy_entries == 11
        assert report.tombstoned_entries == 1

    @pytest.mark.asyncio
    async def test_orphans_are_counted(self, tmp_path):
        """Test both directions of index/storage disagreement"""
        _, core, state = build_state(tmp_path)
        ids = store_many(core, 3)
        core.index.remove(ids[0])

        report = await check_integrity(state)

        assert report.orphaned_storage_entries == 1
        assert report.orphaned_index_entries == 0
        assert not report.is_healthy()

    @pytest.mark.asyncio
    async def test_repair_without_backup_reports_unrecoverable(self, tmp_path):
        """Test that a damaged file with no backup is left in place and reported"""
        _, core, state = build_state(tmp_path, auto_backup=False)
        store_many(core, 3)
        file_id = core.storage.list_file_ids()[0]
        path = core.storage.file_path(file_id)
        path.write_bytes(path.read_bytes()[:-4])

        result = await repair_storage(state)

        assert result.files_unrecoverable == [file_id]
        assert file_id in core.storage.unreadable_files
        assert path.exists()
        assert core.operations.count() == 0

        report = await check_integrity(state)
        assert report.corrupted_files == 1
        assert report.unreadable_files == [file_id]

    @pytest.mark.asyncio
    async def test_compacted_file_is_backed_up_and_repairable(self, tmp_path):
        """Test that a damaged compaction output is restored with its survivors"""
        _, core, state = build_state(tmp_path, max_entries_per_file=2)
        ids = store_many(core, 4)
        core.operations.delete_batch([ids[0], ids[2]])
        await compact_storage(state)
        (output,) = core.storage.list_file_ids()
        assert core.storage.list_backups(output)
        path = core.storage.file_path(output)
        data = bytearray(path.read_bytes())
        data[-1] ^= 0xFF
        path.write_bytes(bytes(data))

        result = await repair_storage(state)

        assert result.files_restored == [output]
        assert result.files_unrecoverable == []
        assert result.orphan_cleanup.rebuilt is False
        assert [e.id for e in core.operations.retrieve_batch([ids[1], ids[3]])] == [ids[1], ids[3]]
        assert (await check_integrity(state)).is_healthy()


class TestMaintenanceScheduler:
    """Test policy decisions and the maintenance cycle"""

    @pytest.mark.asyncio
    async def test_compaction_due_by_tombstone_ratio(self, tmp_path):
        """Test the dead-entry ratio trigger"""
        storage_config, core, state = build_state(tmp_path, compaction_threshold=0.3)
        scheduler = MaintenanceScheduler(state, storage_config)
        ids = store_many(core, 10)

        assert await scheduler.compaction_due() is False
        core.operations.delete_batch(ids[:2])
        assert await scheduler.compaction_due() is False
        core.operations.delete(ids[2])
        assert await scheduler.compaction_due() is True

    @pytest.mark.asyncio
    async def test_compaction_due_by_undersized_files(self, tmp_path):
        """Test that many small batch files make compaction due without tombstones"""
        storage_config, core, state = build_state(tmp_path, compaction_small_file_threshold=3)
        scheduler = MaintenanceScheduler(state, storage_config)
        store_many(core, 1)
        store_many(core, 1)

        assert await scheduler.compaction_due() is False
        store_many(core, 1)
        assert await scheduler.compaction_due() is True

        result = await scheduler.compact_if_due()
        assert result.files_written == 1
        assert len(core.storage.list_file_ids()) == 1
        assert await scheduler.compaction_due() is False

    @pytest.mark.asyncio
    async def test_compaction_due_by_size(self, tmp_path):
        """Test the size policy trigger"""
        storage_config, core, state = build_state(tmp_path)
        policy = MaintenancePolicy(kind=MaintenancePolicyKind.SIZE, size_threshold_bytes=1)
        scheduler = MaintenanceScheduler(state, storage_config, policy)
        store_many(core, 2)

        assert await scheduler.compaction_due() is True

    @pytest.mark.asyncio
    async def test_cooldown_blocks_repeat_compaction(self, tmp_path):
        """Test that automatic compaction respects the cooldown"""
        storage_config, core, state = build_state(tmp_path)
        scheduler = MaintenanceScheduler(state, storage_config)
        ids = store_many(core, 10)
        core.operations.delete_batch(ids[:5])

        assert (await scheduler.compact_if_due()).tombstones_purged == 5
        core.operations.delete_batch(ids[5:9])
        assert await scheduler.compact_if_due() is None
        assert (await scheduler.compact_if_due(force=True)).tombstones_purged == 4
        assert scheduler.stats.compactions_run == 2

    @pytest.mark.asyncio
    async def test_maintenance_cycle(self, tmp_path):
        """Test a full cycle under the time policy"""
        storage_config, core, state = build_state(tmp_path, max_backups=1)
        scheduler = MaintenanceScheduler(state, storage_config)
        ids = store_many(core, 10)
        core.operations.delete_batch(ids[:5])

        stats = await scheduler.run_maintenance_cycle()

        assert stats.cycles_run == 1
        assert stats.compactions_run == 1
        assert stats.last_error is None
        assert stats.last_integrity_report.is_healthy()
        assert stats.last_run_at is not None
        # Backups of the removed source file are gone
        assert {p.name.split(".")[0] for p in core.storage.list_backups()} <= set(
            core.storage.list_file_ids()
        )

    @pytest.mark.asyncio
    async def test_idle_policy_skips_busy_database(self, tmp_path):
        """Test that the idle policy waits for a quiet period"""
        storage_config, _, state = build_state(tmp_path)
        policy = MaintenancePolicy(kind=MaintenancePolicyKind.IDLE, idle_seconds=60)
        scheduler = MaintenanceScheduler(state, storage_config, policy)

        stats = await scheduler.run_maintenance_cycle()

        assert stats.cycles_skipped == 1
        assert stats.cycles_run == 0

    @pytest.mark.asyncio
    async def test_cycle_failure_is_recorded(self, tmp_path):
        """Test that a failing cycle is logged and kept in the stats"""
        storage_config, core, state = build_state(tmp_path)
        scheduler = MaintenanceScheduler(state, storage_config)
        ids = store_many(core, 4)
        core.operations.delete_batch(ids[:2])

        with patch(
            "vault_vectors.services.maintenance.compact_storage",
            side_effect=StorageError("disk full"),
        ):
            stats = await scheduler.run_maintenance_cycle()

        assert stats.cycles_run == 1
        assert stats.last_error == "disk full"
        assert stats.last_integrity_report is None
        assert core.storage.is_tombstoned(ids[0])

    @pytest.mark.asyncio
    async def test_scheduler_start_and_stop(self, tmp_path):
        """Test job registration, rescheduling and shutdown"""
        storage_config, _, state = build_state(tmp_path, maintenance_interval_seconds=120)
        scheduler = MaintenanceScheduler(state, storage_config)

        scheduler.start()
        job = scheduler.scheduler.get_job(MAINTENANCE_JOB_ID)
        assert job is not None
        assert job.trigger.interval.total_seconds() == 120

        scheduler.schedule(MaintenancePolicy(interval_seconds=30))
        job = scheduler.scheduler.get_job(MAINTENANCE_JOB_ID)
        assert job.trigger.interval.total_seconds() == 30

        await scheduler.stop()
        assert scheduler.scheduler is None
