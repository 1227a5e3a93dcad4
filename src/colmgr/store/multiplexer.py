"""
Queue-backed WriteMultiplexer shared by the store backends.
"""

import asyncio
import logging
from typing import Optional

from ..exceptions import StoreError
from .base import ColumnStore, Put, TableLike, TableName, WriteMultiplexer


logger = logging.getLogger(__name__)


class QueueingMultiplexer(WriteMultiplexer):
    """
    Buffers puts in a bounded asyncio queue drained by a background task.

    ``put`` returns False when the queue is full. Puts that the store rejects
    are retried up to their ``retry`` budget and then dropped with an error log.
    """

    def __init__(self, store: ColumnStore, queue_size: int = 10000):
        self.store = store
        self.queue_size = queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._drain_task: Optional[asyncio.Task] = None
        self.applied_count = 0
        self.failed_count = 0

    def _ensure_started(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.queue_size)
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())
        return self._queue

    async def _drain(self) -> None:
        queue = self._queue
        while True:
            table, put, retries_left = await queue.get()
            try:
                await self.store.put(table, put)
                self.applied_count += 1
            except StoreError as e:
                if retries_left > 0 and not queue.full():
                    logger.debug(f"Retrying queued put for {table}: {e}")
                    queue.put_nowait((table, put, retries_left - 1))
                else:
                    self.failed_count += 1
                    logger.error(f"Dropping queued put for {table}: {e}")
            except Exception as e:
                self.failed_count += 1
                logger.exception(f"Unexpected failure applying queued put for {table}: {e}")
            finally:
                queue.task_done()

    async def put(self, table: TableLike, put: Put, retry: int = 0) -> bool:
        queue = self._ensure_started()
        try:
            queue.put_nowait((TableName.value_of(table), put, retry))
        except asyncio.QueueFull:
            logger.debug(f"Multiplexer queue full; put for {table} not queued")
            return False
        return True

    async def flush(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        await self.flush()
        if self._drain_task is not None:
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
            self._drain_task = None
