"""Background retention cleanup, decoupled from the memory read path.

Readers call ``request(doctor_id)``, which only enqueues; a single worker
task drains the queue and runs ``EpisodeStore.cleanup_old_episodes``.
Duplicate requests for a doctor already waiting in the queue are dropped.
"""

from __future__ import annotations

import asyncio
import logging

from jarvis.memory.episodes import EpisodeStore

logger = logging.getLogger(__name__)


class RetentionWorker:
    def __init__(self, store: EpisodeStore, max_pending: int = 100) -> None:
        self.store = store
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max_pending)
        self._pending: set[str] = set()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Spawn the worker on the running event loop (idempotent)."""
        if not self.running:
            self._task = asyncio.create_task(self._run(), name="jarvis-retention")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def request(self, doctor_id: str) -> bool:
        """Queue a cleanup for *doctor_id*; never blocks the caller."""
        if doctor_id in self._pending:
            return False
        try:
            self._queue.put_nowait(doctor_id)
        except asyncio.QueueFull:
            logger.warning("Retention queue full, dropping cleanup request")
            return False
        self._pending.add(doctor_id)
        return True

    async def drain(self) -> int:
        """Process everything queued right now, in the caller's task."""
        total = 0
        while not self._queue.empty():
            total += await self._process(self._queue.get_nowait())
        return total

    async def _process(self, doctor_id: str) -> int:
        self._pending.discard(doctor_id)
        try:
            return await self.store.cleanup_old_episodes(doctor_id)
        finally:
            self._queue.task_done()

    async def _run(self) -> None:
        while True:
            doctor_id = await self._queue.get()
            try:
                await self._process(doctor_id)
            except Exception:
                logger.exception("Retention cleanup crashed for doctor %s", doctor_id)
