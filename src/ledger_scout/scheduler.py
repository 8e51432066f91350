from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Hashable

logger = logging.getLogger(__name__)

TaskFactory = Callable[[asyncio.Event], Awaitable[None]]


@dataclass(slots=True)
class ScheduledTask:
    key: Hashable
    task: asyncio.Task
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    def cancel(self) -> None:
        """Ask the task to stop cooperatively; it decides where to check."""
        self.cancel_event.set()

    def done(self) -> bool:
        return self.task.done()


class BackgroundScheduler:
    """
    Runs fire-and-forget refreshes as tracked tasks.

    At most one task per key is alive at a time; scheduling a key that is
    already running returns the existing task. Each task receives a
    cancellation event it is expected to honour between suspension points.
    """

    def __init__(self) -> None:
        self._tasks: Dict[Hashable, ScheduledTask] = {}

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    def is_scheduled(self, key: Hashable) -> bool:
        return key in self._tasks

    def schedule(self, key: Hashable, factory: TaskFactory) -> ScheduledTask:
        existing = self._tasks.get(key)
        if existing is not None and not existing.done():
            logger.debug("Background task already scheduled. key=%s", key)
            return existing

        cancel_event = asyncio.Event()
        task = asyncio.create_task(factory(cancel_event))
        scheduled = ScheduledTask(key=key, task=task, cancel_event=cancel_event)
        self._tasks[key] = scheduled
        task.add_done_callback(lambda t: self._on_done(key, scheduled))
        logger.debug("Background task scheduled. key=%s", key)
        return scheduled

    async def drain(self) -> None:
        """Wait until every scheduled task, including ones scheduled meanwhile, has finished."""
        while self._tasks:
            tasks = [scheduled.task for scheduled in self._tasks.values()]
            await asyncio.gather(*tasks, return_exceptions=True)
            # Let done-callbacks run so finished tasks leave the registry.
            await asyncio.sleep(0)

    async def shutdown(self) -> None:
        scheduled = list(self._tasks.values())
        for item in scheduled:
            item.cancel()
            item.task.cancel()
        if scheduled:
            await asyncio.gather(*(item.task for item in scheduled), return_exceptions=True)
        self._tasks.clear()

    def _on_done(self, key: Hashable, scheduled: ScheduledTask) -> None:
        if self._tasks.get(key) is scheduled:
            del self._tasks[key]
        task = scheduled.task
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task failed. key=%s", key, exc_info=error)
