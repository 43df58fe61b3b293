from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Union

LOG = logging.getLogger(__name__)

TaskCallable = Callable[[], None]
FireAt = Union[datetime, float]

_DEFAULT_WORKERS = 4
_JOIN_TIMEOUT_SEC = 5


@dataclass
class ScheduledTask:
    key: str
    fire_at: float
    generation: int
    action: TaskCallable = field(repr=False)
    cancelled: bool = False


class NotificationScheduler:
    """Keyed one-shot delayed callbacks on a small fixed worker pool.

    A single dispatcher thread waits for the earliest deadline and hands due tasks
    to the workers. Scheduling under an existing key cancels the previous task.
    ``reset()`` drops every pending task and swaps in a fresh pool; a task that
    belongs to an older pool generation is never run.
    """

    def __init__(self, workers: int = _DEFAULT_WORKERS, clock: Callable[[], float] = time.time) -> None:
        self._worker_count = max(1, workers)
        self._clock = clock
        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, ScheduledTask]] = []
        self._tasks: dict[str, ScheduledTask] = {}
        self._seq = itertools.count()
        self._thread_ids = itertools.count()
        self._generation = 0
        self._ready: "queue.Queue[Optional[ScheduledTask]]" = queue.Queue()
        self._workers: list[threading.Thread] = []
        self._dispatcher: Optional[threading.Thread] = None
        self._started = False
        self._stopping = False

    def start(self) -> None:
        with self._cond:
            if self._started:
                return
            self._stopping = False
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop, name="minesite-scheduler-dispatch", daemon=True
            )
            self._dispatcher.start()
            self._spawn_workers(self._ready)
            self._started = True
        LOG.info("Notification scheduler started with %d workers", self._worker_count)

    def stop(self) -> None:
        with self._cond:
            if not self._started:
                return
            self._cancel_all()
            self._stopping = True
            self._retire_workers(self._ready)
            workers, dispatcher = self._workers, self._dispatcher
            self._workers, self._dispatcher = [], None
            self._started = False
            self._cond.notify_all()
        if dispatcher is not None:
            dispatcher.join(timeout=_JOIN_TIMEOUT_SEC)
        for worker in workers:
            if worker is not threading.current_thread():
                worker.join(timeout=_JOIN_TIMEOUT_SEC)

    def schedule(self, key: str, fire_at: FireAt, action: TaskCallable) -> ScheduledTask:
        when = fire_at.timestamp() if isinstance(fire_at, datetime) else float(fire_at)
        with self._cond:
            previous = self._tasks.pop(key, None)
            if previous is not None:
                previous.cancelled = True
                LOG.debug("Cancelled duplicate task: %s", key)
            task = ScheduledTask(key=key, fire_at=when, generation=self._generation, action=action)
            self._tasks[key] = task
            heapq.heappush(self._heap, (when, next(self._seq), task))
            self._cond.notify_all()
        LOG.debug("Scheduled task '%s' with %.1fs delay", key, max(0.0, when - self._clock()))
        return task

    def schedule_in(self, key: str, delay_seconds: float, action: TaskCallable) -> ScheduledTask:
        return self.schedule(key, self._clock() + max(0.0, delay_seconds), action)

    def cancel(self, key: str) -> bool:
        with self._cond:
            task = self._tasks.pop(key, None)
            if task is None:
                return False
            task.cancelled = True
            self._cond.notify_all()
            return True

    def pending(self) -> list[str]:
        with self._cond:
            return sorted(self._tasks)

    def reset(self) -> None:
        with self._cond:
            self._cancel_all()
            self._generation += 1
            old_ready = self._ready
            self._ready = queue.Queue()
            if self._started:
                self._retire_workers(old_ready)
                self._workers = []
                self._spawn_workers(self._ready)
            self._cond.notify_all()
        LOG.info("Scheduler reset completed")

    def _cancel_all(self) -> None:
        for key, task in self._tasks.items():
            task.cancelled = True
            LOG.debug("Cancelled task: %s", key)
        self._tasks.clear()
        self._heap.clear()

    def _spawn_workers(self, ready: "queue.Queue[Optional[ScheduledTask]]") -> None:
        for _ in range(self._worker_count):
            worker = threading.Thread(
                target=self._worker_loop,
                args=(ready,),
                name=f"minesite-scheduler-{next(self._thread_ids)}",
                daemon=True,
            )
            worker.start()
            self._workers.append(worker)

    def _retire_workers(self, ready: "queue.Queue[Optional[ScheduledTask]]") -> None:
        for _ in self._workers:
            ready.put(None)

    def _dispatch_loop(self) -> None:
        with self._cond:
            while not self._stopping:
                if not self._heap:
                    self._cond.wait()
                    continue
                fire_at, _, task = self._heap[0]
                if task.cancelled:
                    heapq.heappop(self._heap)
                    continue
                delay = fire_at - self._clock()
                if delay > 0:
                    self._cond.wait(timeout=delay)
                    continue
                heapq.heappop(self._heap)
                if self._tasks.get(task.key) is task:
                    del self._tasks[task.key]
                self._ready.put(task)

    def _worker_loop(self, ready: "queue.Queue[Optional[ScheduledTask]]") -> None:
        while True:
            task = ready.get()
            if task is None:
                ready.task_done()
                return
            try:
                if self._is_current(task):
                    task.action()
            except Exception:  # noqa: BLE001
                LOG.exception("Scheduled task '%s' failed", task.key)
            finally:
                ready.task_done()

    def _is_current(self, task: ScheduledTask) -> bool:
        with self._cond:
            return not task.cancelled and task.generation == self._generation
