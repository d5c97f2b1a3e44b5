"""Ordered per-key work queues.

Every external event that mutates owned state (push events, confirmations,
timer ticks) is posted as a work item to the queue of the resource it touches.
One worker task per key drains its queue sequentially, so a transition is fully
applied before the next event for the same key starts.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)

Work = Callable[[], Awaitable[Any]]


def _retrieve(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()


class Mailbox:
    def __init__(self, name: str) -> None:
        self._name = name
        self._queues: dict[Hashable, deque[tuple[Work, asyncio.Future[Any]]]] = {}
        self._workers: dict[Hashable, asyncio.Task[None]] = {}

    def post(self, key: Hashable, work: Work) -> asyncio.Future[Any]:
        """Queue ``work`` behind everything already posted for ``key``."""
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_retrieve)
        self._queues.setdefault(key, deque()).append((work, future))
        if key not in self._workers:
            self._workers[key] = asyncio.create_task(
                self._drain(key), name=f"{self._name}-mailbox-{key}",
            )
        return future

    def busy(self, key: Hashable) -> bool:
        return key in self._workers

    async def join(self) -> None:
        """Wait until every queue is empty."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def close(self) -> None:
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        for queue in self._queues.values():
            for _work, future in queue:
                future.cancel()
        self._queues.clear()
        self._workers.clear()

    async def _drain(self, key: Hashable) -> None:
        queue = self._queues[key]
        try:
            while queue:
                work, future = queue.popleft()
                if future.cancelled():
                    continue
                try:
                    result = await work()
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as exc:
                    logger.exception("%s: work item for %s failed", self._name, key)
                    future.set_exception(exc)
                else:
                    future.set_result(result)
        finally:
            self._workers.pop(key, None)
            if not queue:
                self._queues.pop(key, None)
