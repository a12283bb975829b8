from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable
from genbuilder.core.logging import job_extra

log = logging.getLogger(__name__)

Write = Callable[[], Awaitable[None]]

@dataclass
class _QueuedWrite:
    job_id: str
    description: str
    write: Write
    future: asyncio.Future | None = None
    quiet: bool = False

class BackgroundWriter:
    """Single FIFO worker for store writes.

    ``submit`` never blocks the caller: when the queue is full the write is
    dropped and logged. ``submit_and_wait`` goes through the same queue, so a
    job's awaited write lands after every write it submitted before.
    """

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self.dropped = 0
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None

    def start(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.maxsize)
        self._worker = asyncio.get_running_loop().create_task(self._run(), name="background-writer")

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def submit(self, job_id: str, description: str, write: Write, quiet: bool = False) -> bool:
        self.start()
        try:
            self._queue.put_nowait(_QueuedWrite(job_id, description, write, quiet=quiet))
        except asyncio.QueueFull:
            self.dropped += 1
            log.warning("Write queue full, dropping %s", description, extra=job_extra(job_id))
            return False
        return True

    async def submit_and_wait(self, job_id: str, description: str, write: Write) -> None:
        self.start()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(_QueuedWrite(job_id, description, write, future=future))
        await future

    async def drain(self) -> None:
        if self._queue is not None and self._worker is not None and not self._worker.done():
            await self._queue.join()

    async def stop(self) -> None:
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await item.write()
            except asyncio.CancelledError:
                if item.future is not None and not item.future.done():
                    item.future.cancel()
                raise
            except Exception as e:
                if item.future is not None:
                    if not item.future.done():
                        item.future.set_exception(e)
                elif item.quiet:
                    log.debug("Dropped %s: %s", item.description, e, extra=job_extra(item.job_id))
                else:
                    log.warning("Failed to persist %s: %s", item.description, e, extra=job_extra(item.job_id))
            else:
                if item.future is not None and not item.future.done():
                    item.future.set_result(None)
            finally:
                self._queue.task_done()
