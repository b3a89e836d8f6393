"""Reader-writer lock for asyncio tasks."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress


class ReadWriteLock:
    """Many concurrent readers or one writer, granted in FIFO order.

    Once any task is queued, new arrivals queue behind it, so a waiting writer
    is not starved by a steady stream of readers.
    """

    def __init__(self) -> None:
        self._readers = 0
        self._writer = False
        self._waiters: deque[tuple[bool, asyncio.Future[None]]] = deque()

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def write_locked(self) -> bool:
        return self._writer

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        await self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        await self.acquire_write()
        try:
            yield
        finally:
            self.release_write()

    async def acquire_read(self) -> None:
        if not self._writer and not self._waiters:
            self._readers += 1
            return
        await self._wait(writer=False)

    async def acquire_write(self) -> None:
        if not self._writer and self._readers == 0 and not self._waiters:
            self._writer = True
            return
        await self._wait(writer=True)

    def release_read(self) -> None:
        if self._readers <= 0:
            msg = "release_read without a matching acquire_read"
            raise RuntimeError(msg)
        self._readers -= 1
        self._wake()

    def release_write(self) -> None:
        if not self._writer:
            msg = "release_write without a matching acquire_write"
            raise RuntimeError(msg)
        self._writer = False
        self._wake()

    async def _wait(self, *, writer: bool) -> None:
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (writer, future)
        self._waiters.append(entry)
        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # Granted just before the cancellation landed; hand it back.
                if writer:
                    self.release_write()
                else:
                    self.release_read()
            else:
                with suppress(ValueError):
                    self._waiters.remove(entry)
                self._wake()
            raise

    def _wake(self) -> None:
        while self._waiters:
            writer, future = self._waiters[0]
            if future.done():
                self._waiters.popleft()
                continue
            if writer:
                if self._writer or self._readers:
                    return
                self._waiters.popleft()
                self._writer = True
                future.set_result(None)
                return
            if self._writer:
                return
            self._waiters.popleft()
            self._readers += 1
            future.set_result(None)
