"""Async reader/writer lock and the owner of the shared storage state"""

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator, Iterator
from typing import Generic, TypeVar

T = TypeVar("T")


class AsyncRWLock:
    """
    Many concurrent readers or one writer

    Writers are preferred: once a writer is waiting, new readers queue behind
    it so that a steady stream of reads cannot starve compaction or stores.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def write_locked(self) -> bool:
        return self._writer

    async def acquire_read(self) -> None:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._writers_waiting == 0)
            self._readers += 1

    async def release_read(self) -> None:
        async with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    async def acquire_write(self) -> None:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            except BaseException:
                # Readers queued behind this writer must re-check their predicate
                self._writers_waiting -= 1
                self._cond.notify_all()
                raise
            self._writers_waiting -= 1
            self._writer = True

    async def release_write(self) -> None:
        async with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextlib.asynccontextmanager
    async def read_lock(self) -> AsyncIterator[None]:
        await self.acquire_read()
        try:
            yield
        finally:
            await asyncio.shield(self.release_read())

    @contextlib.asynccontextmanager
    async def write_lock(self) -> AsyncIterator[None]:
        await self.acquire_write()
        try:
            yield
        finally:
            await asyncio.shield(self.release_write())


class DatabaseState(Generic[T]):
    """
    Owns the shared (storage, index) state and hands it out only under a lock

    Callers never see the lock itself: `reading()` yields the state for
    shared access and `writing()` for exclusive access. Foreground callers
    are counted from the moment they ask for the state until they release it,
    so that background maintenance can yield to them.
    """

    def __init__(self, state: T):
        self._state = state
        self._lock = AsyncRWLock()
        self._foreground = 0
        self.last_foreground_at = time.monotonic()

    @property
    def foreground_busy(self) -> bool:
        """True while foreground callers hold or wait for the state"""
        return self._foreground > 0

    def idle_for(self) -> float:
        """Seconds since foreground access last finished"""
        if self._foreground:
            return 0.0
        return time.monotonic() - self.last_foreground_at

    @contextlib.asynccontextmanager
    async def reading(self, background: bool = False) -> AsyncIterator[T]:
        with self._tracked(background):
            async with self._lock.read_lock():
                yield self._state

    @contextlib.asynccontextmanager
    async def writing(self, background: bool = False) -> AsyncIterator[T]:
        with self._tracked(background):
            async with self._lock.write_lock():
                yield self._state

    @contextlib.contextmanager
    def _tracked(self, background: bool) -> Iterator[None]:
        if background:
            yield
            return
        self._foreground += 1
        try:
            yield
        finally:
            self._foreground -= 1
            self.last_foreground_at = time.monotonic()
