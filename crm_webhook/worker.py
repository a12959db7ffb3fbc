import asyncio
import logging
from typing import Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundWorker:
    """Runs post-acknowledgment work as detached asyncio tasks.

    Callers never await the tasks they submit. ``drain`` is the shutdown hook:
    it waits for in-flight work and cancels whatever is still running once the
    timeout passes. Cancelled work is lost; the sender already got its 200 and
    will not redeliver.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        if self._closed:
            coro.close()
            raise RuntimeError("BackgroundWorker is shutting down")
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    async def join(self):
        """Wait for everything submitted so far, without closing the worker."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def drain(self, timeout: float = 10.0):
        self._closed = True
        if not self._tasks:
            return
        logger.info("Draining %d background task(s)", len(self._tasks))
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            logger.error("Background task %s did not finish within %.1fs; cancelling, work may be lost",
                         task.get_name(), timeout)
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
