"""
TaskScheduler - Session Module
Cancellable per-session task list driven by an external tick.

Each entry is (fire_at, priority, seq) → task. `tick(now)` runs every due
task in that order; deadlines use PRIORITY_DEADLINE so that a timeout and a
completion due in the same millisecond resolve as a timeout.

`invalidate()` cancels everything and bumps the epoch. Tasks carry the epoch
they were scheduled under and are skipped if it no longer matches.
"""

import heapq
import itertools
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from src.utils.logger import setup_logger

logger = setup_logger(__name__)

PRIORITY_DEADLINE = 0
PRIORITY_NORMAL = 1


@dataclass
class ScheduledTask:
    id: str
    name: str
    fire_at: int
    action: Callable[[], None]
    epoch: int
    cancelled: bool = False


class TaskScheduler:

    def __init__(self):
        self.epoch = 0
        self._heap: List[Tuple[int, int, int, str]] = []
        self._tasks: Dict[str, ScheduledTask] = {}
        self._seq = itertools.count()

    def schedule_at(self, fire_at: int, action: Callable[[], None], name: str,
                    priority: int = PRIORITY_NORMAL) -> str:
        seq = next(self._seq)
        task_id = f"{name}-{seq}"
        self._tasks[task_id] = ScheduledTask(task_id, name, int(fire_at), action, self.epoch)
        heapq.heappush(self._heap, (int(fire_at), priority, seq, task_id))
        logger.debug(f"Scheduled {task_id} at {fire_at}")
        return task_id

    def cancel(self, task_id: Optional[str]) -> bool:
        task = self._tasks.pop(task_id, None) if task_id else None
        if task is None:
            return False
        task.cancelled = True
        return True

    def cancel_named(self, *names: str) -> int:
        ids = [tid for tid, t in self._tasks.items() if t.name in names]
        for tid in ids:
            self.cancel(tid)
        return len(ids)

    def invalidate(self) -> int:
        """Cancel every pending task and start a new epoch."""
        count = len(self._tasks)
        for task in self._tasks.values():
            task.cancelled = True
        self._tasks.clear()
        self._heap.clear()
        self.epoch += 1
        return count

    def pending(self) -> List[Tuple[str, int]]:
        return sorted(((t.name, t.fire_at) for t in self._tasks.values()), key=lambda x: x[1])

    def has_pending(self, name: str) -> bool:
        return any(t.name == name for t in self._tasks.values())

    def next_fire_time(self) -> Optional[int]:
        while self._heap and self._heap[0][3] not in self._tasks:
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def tick(self, now: int) -> int:
        """Run every task due at or before `now`. Returns how many ran."""
        ran = 0
        while self._heap and self._heap[0][0] <= now:
            _, _, _, task_id = heapq.heappop(self._heap)
            task = self._tasks.pop(task_id, None)
            if task is None or task.cancelled:
                continue
            if task.epoch != self.epoch:
                logger.debug(f"Dropped stale task {task_id}")
                continue
            ran += 1
            task.action()
        return ran
