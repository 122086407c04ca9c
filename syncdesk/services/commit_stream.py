from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from syncdesk.models.view_state import ViewState

logger = logging.getLogger(__name__)


class CommitBroadcaster:
    """Turns view commits into snapshots queued for each async subscriber.

    Subscriber queues are bounded; a slow consumer loses its oldest pending
    snapshots, never the most recent one.
    """

    def __init__(self, view: ViewState, *, maxsize: int = 100) -> None:
        self._view = view
        self._maxsize = max(1, maxsize)
        self._queues: set[asyncio.Queue[dict[str, Any]]] = set()
        self._unsubscribe = view.subscribe(self._on_commit)
        self.commits = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def _on_commit(self, reason: str, view: ViewState) -> None:
        self.commits += 1
        if not self._queues:
            return
        snapshot = view.snapshot()
        snapshot["reason"] = reason
        for queue in list(self._queues):
            if queue.full():
                queue.get_nowait()
                logger.debug("Subscriber lagging; dropped oldest snapshot")
            queue.put_nowait(snapshot)

    def open(self) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._maxsize)
        self._queues.add(queue)
        return queue

    def release(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        self._queues.discard(queue)

    async def subscribe(self) -> AsyncIterator[dict[str, Any]]:
        queue = self.open()
        try:
            while True:
                yield await queue.get()
        finally:
            self.release(queue)

    def close(self) -> None:
        self._unsubscribe()
        self._queues.clear()


__all__ = ["CommitBroadcaster"]
