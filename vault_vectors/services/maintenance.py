"""Compaction, integrity validation, repair and their background scheduling"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from vault_vectors.config import MaintenancePolicyKind, VectorStorageConfig, config
from vault_vectors.errors import (
    IntegrityError,
    SerializationError,
    StorageError,
    VectorDbError,
    VersionIncompatible,
)
from vault_vectors.models.maintenance import MaintenancePolicy, MaintenanceStats
from vault_vectors.models.storage import CompactionResult, IntegrityReport, RepairResult
from vault_vectors.services.core import DatabaseCore
from vault_vectors.utils.rwlock import DatabaseState

logger = logging.getLogger(__name__)

MAINTENANCE_JOB_ID = "vector_maintenance"

# Longest a background pass waits for foreground work to drain between steps
FOREGROUND_WAIT_SECONDS = 5.0


async def _yield_to_foreground(state: DatabaseState[DatabaseCore]) -> None:
    await asyncio.sleep(0)
    deadline = time.monotonic() + FOREGROUND_WAIT_SECONDS
    while state.foreground_busy and time.monotonic() < deadline:
        await asyncio.sleep(0.01)


async def compact_storage(
    state: DatabaseState[DatabaseCore],
    file_ids: Iterable[str] | None = None,
    should_stop: Callable[[], bool] | None = None,
    background: bool = False,
) -> CompactionResult:
    """
    Compact storage one group at a time under the exclusive lock

    The lock is released between groups, which are the checkpoints: a
    cancellation or `should_stop` takes effect there and every finished group
    stays finished. The index is updated from each group's relocations
    rather than rebuilt. Background passes also wait for foreground work to
    drain between groups.
    """
    result = CompactionResult()
    restrict = set(file_ids) if file_ids is not None else None
    done: set[str] = set()

    while True:
        if should_stop is not None and should_stop():
            logger.info("Compaction cancelled at checkpoint")
            result.cancelled = True
            break

        async with state.writing(background=background) as core:
            candidates = [
                file_id
                for file_id in core.storage.list_file_ids()
                if file_id not in done and (restrict is None or file_id in restrict)
            ]
            groups = core.storage.plan_compaction(candidates)
            if not groups:
                break
            group = groups[0]
            partial = core.storage.compact_group(group)
            for entry_id, file_id in partial.relocations.items():
                core.index.relocate(entry_id, file_id)
            done.update(partial.relocations.values())

        result.merge(partial)
        if background:
            await _yield_to_foreground(state)
        else:
            await asyncio.sleep(0)

    async with state.reading(background=background) as core:
        result.entries_remaining = len(core.index)
    logger.info(
        f"Compaction finished: {result.files_compacted + result.files_removed} files merged "
        f"into {result.files_written}, {result.tombstones_purged} tombstones purged, "
        f"{result.bytes_reclaimed} bytes reclaimed"
    )
    return result


async def check_integrity(
    state: DatabaseState[DatabaseCore], background: bool = False
) -> IntegrityReport:
    """
    Verify every batch file and cross-check the index, changing nothing

    Files are read strictly (no backup restoration) so the report reflects
    what is actually on disk.
    """
    report = IntegrityReport()
    async with state.reading(background=background) as core:
        storage = core.storage
        storage_ids: set[str] = set()

        for file_id in storage.list_file_ids():
            try:
                entries = storage.read_batch(file_id, include_tombstoned=True)
            except VersionIncompatible as e:
                report.incompatible_files += 1
                report.unreadable_files.append(file_id)
                report.errors.append(f"{type(e).__name__}: {file_id}: {e}")
                continue
            except (IntegrityError, SerializationError, StorageError) as e:
                report.corrupted_files += 1
                report.unreadable_files.append(file_id)
                report.errors.append(f"{type(e).__name__}: {file_id}: {e}")
                continue

            report.valid_files += 1
            for entry in entries:
                if storage.is_tombstoned(entry.id):
                    report.tombstoned_entries += 1
                else:
                    storage_ids.add(entry.id)

        index_ids = core.index.all_ids()
        unreadable = set(report.unreadable_files)
        # Ids in unreadable files are unverifiable, not orphaned
        unverifiable = {
            entry_id for entry_id in index_ids if core.index.location(entry_id) in unreadable
        }
        report.healthy_entries = len(storage_ids & index_ids)
        report.orphaned_storage_entries = len(storage_ids - index_ids)
        report.orphaned_index_entries = len(index_ids - storage_ids - unverifiable)

    log = logger.info if report.is_healthy() else logger.error
    log(report.summary())
    return report


async def repair_storage(state: DatabaseState[DatabaseCore]) -> RepairResult:
    """
    Restore damaged batch files from backups, then reconcile the index

    Damaged files are quarantined before being replaced. Files with no
    verifiable backup are left in place and reported.
    """
    result = RepairResult()
    async with state.writing() as core:
        storage = core.storage
        for file_id in storage.list_file_ids():
            try:
                storage.read_batch(file_id, include_tombstoned=True)
                continue
            except VersionIncompatible as e:
                logger.warning(f"Leaving {file_id} in place: {e}")
                result.files_unrecoverable.append(file_id)
                continue
            except (IntegrityError, SerializationError) as e:
                logger.warning(f"Repairing {file_id}: {e}")

            storage.quarantine(file_id)
            if storage.restore_from_backup(file_id):
                result.files_restored.append(file_id)
            else:
                storage.mark_unreadable(file_id, "no verifiable backup")
                result.files_unrecoverable.append(file_id)

        result.orphan_cleanup = core.operations.cleanup_orphans()
        core.cache.clear()

    logger.info(
        f"Repair finished: {len(result.files_restored)} restored, "
        f"{len(result.files_unrecoverable)} unrecoverable"
    )
    return result


class MaintenanceScheduler:
    """
    Runs compaction, backup pruning and integrity checks in the background

    A job on an APScheduler `AsyncIOScheduler` ticks every
    `interval_seconds`; the policy decides whether a tick does any work.
    Work always runs as background access to the database state, so it
    waits behind foreground callers and lets them in between groups.
    """

    def __init__(
        self,
        state: DatabaseState[DatabaseCore],
        storage_config: VectorStorageConfig | None = None,
        policy: MaintenancePolicy | None = None,
    ):
        self.config = storage_config or config
        self._state = state
        self.policy = policy or MaintenancePolicy(
            kind=self.config.maintenance_policy,
            interval_seconds=self.config.maintenance_interval_seconds,
            tombstone_ratio=self.config.compaction_threshold,
            size_threshold_bytes=self.config.compaction_size_threshold_bytes,
            small_file_threshold=self.config.compaction_small_file_threshold,
            idle_seconds=self.config.idle_seconds,
            cooldown_seconds=self.config.compaction_cooldown_seconds,
        )
        self.stats = MaintenanceStats()
        self.scheduler: AsyncIOScheduler | None = None
        self._cycle_lock = asyncio.Lock()
        self._stopping = False

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, policy: MaintenancePolicy) -> None:
        """Switch policy, rescheduling the job if the scheduler is running"""
        self.policy = policy
        if self.scheduler is not None:
            self._add_job()
        logger.info(
            f"Maintenance policy set to {policy.kind.value} "
            f"(every {policy.interval_seconds}s)"
        )

    def _add_job(self) -> None:
        trigger = IntervalTrigger(seconds=self.policy.interval_seconds)
        self.scheduler.add_job(
            self.run_maintenance_cycle,
            trigger=trigger,
            id=MAINTENANCE_JOB_ID,
            name="Vector Storage Maintenance",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def start(self) -> None:
        """Start the scheduler on the running event loop"""
        if self.scheduler is not None:
            return
        self._stopping = False
        self.scheduler = AsyncIOScheduler()
        self._add_job()
        self.scheduler.start()
        logger.info(f"Scheduled maintenance every {self.policy.interval_seconds} seconds")

    async def stop(self) -> None:
        """Gracefully stop the scheduler and wait for a running cycle to finish"""
        self._stopping = True
        if self.scheduler is not None:
            try:
                self.scheduler.remove_job(MAINTENANCE_JOB_ID)
                logger.info("Stopped maintenance scheduler")
            except JobLookupError:
                logger.warning("Maintenance job not found during shutdown")
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        async with self._cycle_lock:
            pass

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _in_cooldown(self) -> bool:
        last = self.stats.last_compaction_at
        return last is not None and time.time() - last < self.policy.cooldown_seconds

    async def compaction_due(self) -> bool:
        """Whether dead entries, undersized files or storage size warrant a compaction"""
        async with self._state.reading(background=True) as core:
            dead = len(core.storage.tombstones)
            live = len(core.index)
            too_many_small = (
                core.storage.undersized_file_count() >= self.policy.small_file_threshold
            )
            size_exceeded = False
            if self.policy.kind == MaintenancePolicyKind.SIZE:
                size = core.storage.storage_size()
                size_exceeded = size.on_disk_bytes >= self.policy.size_threshold_bytes
        total = dead + live
        ratio = dead / total if total else 0.0
        ratio_exceeded = dead > 0 and ratio >= self.policy.tombstone_ratio
        return ratio_exceeded or size_exceeded or too_many_small

    def _policy_allows_cycle(self) -> bool:
        if self.policy.kind == MaintenancePolicyKind.IDLE:
            return self._state.idle_for() >= self.policy.idle_seconds
        return True

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    async def compact_if_due(self, force: bool = False) -> CompactionResult | None:
        """
        Compact when due and outside the cooldown

        Returns:
            The compaction result, or None if nothing was due
        """
        if not force and (self._in_cooldown() or not await self.compaction_due()):
            return None
        result = await compact_storage(
            self._state, should_stop=lambda: self._stopping, background=True
        )
        self.stats.compactions_run += 1
        self.stats.last_compaction_at = time.time()
        self.stats.last_compaction = result
        return result

    async def validate_integrity(self) -> IntegrityReport:
        report = await check_integrity(self._state, background=True)
        self.stats.last_integrity_report = report
        return report

    async def prune_backups(self) -> int:
        async with self._state.writing(background=True) as core:
            removed = core.storage.prune_backups()
        self.stats.backups_pruned += removed
        return removed

    async def run_maintenance_cycle(self) -> MaintenanceStats:
        """
        One scheduler tick: compact if due, prune backups, validate integrity

        Failures are recorded in the stats and logged; the job keeps running.
        """
        if self._cycle_lock.locked() or not self._policy_allows_cycle():
            self.stats.cycles_skipped += 1
            return self.stats

        async with self._cycle_lock:
            try:
                await self.compact_if_due()
                if not self._stopping:
                    await self.prune_backups()
                if not self._stopping:
                    await self.validate_integrity()
                self.stats.last_error = None
            except (VectorDbError, OSError) as e:
                logger.error(f"Maintenance cycle failed: {e}", exc_info=True)
                self.stats.last_error = str(e)
            self.stats.cycles_run += 1
            self.stats.last_run_at = time.time()
        return self.stats
