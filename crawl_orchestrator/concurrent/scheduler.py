"""
Task queues for the crawl engine.

Two termination policies share one store: ``DrainTaskQueue`` reports the
empty signal once no task is waiting and none is being processed, while
``ContinuousTaskQueue`` blocks on an empty store until it is closed.
"""

import heapq
import itertools
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple

from crawl_orchestrator.utils.logging import get_logger
from .models import Task


logger = get_logger(__name__)


class TaskQueue(ABC):
    """
    Shared store of pending tasks.

    Tasks come out highest priority first, FIFO among equal priorities. A task
    returned by ``get`` counts as in-flight until the consumer calls
    ``task_done`` for it; the waiting and in-flight counters are only mutated
    under the queue condition.
    """

    def __init__(self):
        self._heap: List[Tuple[int, int, Task]] = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._in_flight = 0
        self._closed = False

        # Statistics
        self._put_count = 0
        self._get_count = 0
        self._done_count = 0

    def put(self, task: Task) -> None:
        """
        Enqueue a task. Always succeeds and is safe from any thread.

        Args:
            task: Task to enqueue
        """
        with self._condition:
            heapq.heappush(self._heap, (-task.priority, next(self._sequence), task))
            self._put_count += 1
            self._condition.notify()
        logger.debug(f"Enqueued task {task.task_id} ({task.url})")

    def put_many(self, tasks: Iterable[Task]) -> int:
        """
        Enqueue several tasks.

        Returns:
            Number of tasks enqueued
        """
        count = 0
        for task in tasks:
            self.put(task)
            count += 1
        return count

    @abstractmethod
    def get(self, timeout: Optional[float] = None) -> Optional[Task]:
        """
        Dequeue the next task and mark it in-flight.

        Args:
            timeout: Optional timeout in seconds

        Returns:
            Next task, or None as the empty signal (no more work for this consumer)

        Raises:
            queue.Empty: If the timeout expires first
        """
        pass

    def task_done(self, task: Task) -> None:
        """
        Release the in-flight slot taken by ``get``.

        Follow-up tasks and retries must be enqueued before this call so that
        quiescence is never observed while they are still pending.

        Raises:
            ValueError: If called more times than tasks were dequeued
        """
        with self._condition:
            if self._in_flight <= 0:
                raise ValueError("task_done() called more times than tasks were dequeued")
            self._in_flight -= 1
            self._done_count += 1
            if self._in_flight == 0:
                self._condition.notify_all()

    def close(self) -> None:
        """Wake every blocked consumer with the empty signal."""
        with self._condition:
            self._closed = True
            self._condition.notify_all()
        logger.debug(f"{type(self).__name__} closed with {len(self._heap)} tasks waiting")

    @property
    def is_closed(self) -> bool:
        with self._condition:
            return self._closed

    @property
    def waiting_count(self) -> int:
        with self._condition:
            return len(self._heap)

    @property
    def in_flight_count(self) -> int:
        with self._condition:
            return self._in_flight

    def is_quiescent(self) -> bool:
        """True when no task is waiting and none is being processed."""
        with self._condition:
            return not self._heap and self._in_flight == 0

    def get_stats(self) -> Dict[str, Any]:
        """
        Get queue statistics.

        Returns:
            Dictionary with queue statistics
        """
        with self._condition:
            return {
                "type": type(self).__name__,
                "waiting": len(self._heap),
                "in_flight": self._in_flight,
                "closed": self._closed,
                "put_count": self._put_count,
                "get_count": self._get_count,
                "done_count": self._done_count
            }

    def __len__(self) -> int:
        return self.waiting_count

    def _take(self) -> Task:
        # Caller holds the condition
        _, _, task = heapq.heappop(self._heap)
        self._in_flight += 1
        self._get_count += 1
        return task

    def _wait(self, deadline: Optional[float]) -> None:
        # Caller holds the condition
        if deadline is None:
            self._condition.wait()
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise queue.Empty
        self._condition.wait(remaining)


class DrainTaskQueue(TaskQueue):
    """
    Queue that terminates once the crawl has drained.

    ``get`` returns the empty signal when nothing is waiting and nothing is
    in-flight. Quiescence is sticky: once observed, all later calls return the
    empty signal so every consumer winds down.
    """

    def __init__(self):
        super().__init__()
        self._drained = False

    @property
    def is_drained(self) -> bool:
        with self._condition:
            return self._drained

    def get(self, timeout: Optional[float] = None) -> Optional[Task]:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while True:
                if self._closed or self._drained:
                    return None
                if self._heap:
                    return self._take()
                if self._in_flight == 0:
                    self._drained = True
                    self._condition.notify_all()
                    logger.info("Task queue drained")
                    return None
                self._wait(deadline)

    def put(self, task: Task) -> None:
        if self.is_drained:
            logger.warning(f"Task {task.url} enqueued after the queue drained; it will not be processed")
        super().put(task)


class ContinuousTaskQueue(TaskQueue):
    """Queue that never reports completion; ``get`` blocks until a task arrives or the queue is closed."""

    def get(self, timeout: Optional[float] = None) -> Optional[Task]:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while True:
                if self._closed:
                    return None
                if self._heap:
                    return self._take()
                self._wait(deadline)


def create_task_queue(loop: bool) -> TaskQueue:
    """Default queue for the given engine mode."""
    return ContinuousTaskQueue() if loop else DrainTaskQueue()
