"""Periodic housekeeping tasks driven by an injectable clock."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .messages import Clock

logger = logging.getLogger(__name__)


@dataclass
class Task:
    name: str
    interval: float
    fn: Callable[[], object]
    next_run: float
    runs: int = 0
    failures: int = 0


class Scheduler:
    """
    Runs named callables every ``interval`` seconds.

    Nothing here starts timers on its own: :meth:`run_due` does one pass
    against the clock, and :meth:`run_forever` is the asyncio loop the server
    runs in the background. A failing task is logged and rescheduled.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or time.time
        self._tasks: Dict[str, Task] = {}

    def add(self, name: str, interval: float, fn: Callable[[], object], *, run_at_start: bool = False) -> Task:
        if interval <= 0:
            raise ValueError(f"interval for {name!r} must be positive")
        now = self._clock()
        task = Task(name=name, interval=float(interval), fn=fn, next_run=now if run_at_start else now + interval)
        self._tasks[name] = task
        return task

    def remove(self, name: str) -> bool:
        return self._tasks.pop(name, None) is not None

    @property
    def tasks(self) -> List[Task]:
        return list(self._tasks.values())

    def run_due(self, now: Optional[float] = None) -> List[str]:
        """Run every task whose deadline has passed; return the names that ran."""
        now = self._clock() if now is None else now
        ran: List[str] = []
        for task in list(self._tasks.values()):
            if task.next_run > now:
                continue
            task.next_run = now + task.interval
            task.runs += 1
            ran.append(task.name)
            try:
                task.fn()
            except Exception as e:
                task.failures += 1
                logger.exception("Scheduled task %s failed: %s", task.name, e)
        return ran

    async def run_forever(self, poll: float = 1.0) -> None:
        """Poll forever, running each pass in a worker thread."""
        while True:
            await asyncio.to_thread(self.run_due)
            await asyncio.sleep(poll)
