"""
Spider workers and the pool that runs them.

A ``SpiderWorker`` is a plain object whose ``run`` method is handed to a
``threading.Thread`` by the ``WorkerPool``. Pause and stop are cooperative:
they are observed between tasks, never in the middle of one.
"""

import random
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from crawl_orchestrator.utils.logging import get_logger
from crawl_orchestrator.utils.errors import (
    CrawlOrchestratorError,
    FetchError,
    ParseError,
    EmitError,
    describe_error
)
from .models import EngineConfig, FetchProfile, Task, WorkerState
from .scheduler import TaskQueue
from .thread_safe import AtomicReference, CompletionBarrier, ThreadSafeCounter

if TYPE_CHECKING:
    from crawl_orchestrator.crawlers.base import BaseFetcher, BasePipeline, RuleProvider
    from crawl_orchestrator.utils.proxy_pool import ProxySelector


logger = get_logger(__name__)


@dataclass
class EngineStats:
    """Task counters shared by every worker of one engine."""
    tasks_processed: ThreadSafeCounter = field(default_factory=ThreadSafeCounter)
    fetch_failures: ThreadSafeCounter = field(default_factory=ThreadSafeCounter)
    retries: ThreadSafeCounter = field(default_factory=ThreadSafeCounter)
    tasks_dropped: ThreadSafeCounter = field(default_factory=ThreadSafeCounter)
    parse_errors: ThreadSafeCounter = field(default_factory=ThreadSafeCounter)
    records_emitted: ThreadSafeCounter = field(default_factory=ThreadSafeCounter)
    emit_errors: ThreadSafeCounter = field(default_factory=ThreadSafeCounter)
    follow_ups: ThreadSafeCounter = field(default_factory=ThreadSafeCounter)

    def as_dict(self) -> Dict[str, int]:
        return {name: counter.get_value() for name, counter in vars(self).items()}


@dataclass(frozen=True)
class SpiderContext:
    """Everything a worker shares with its siblings, injected at construction."""
    scheduler: TaskQueue
    rules: "AtomicReference[RuleProvider]"
    fetcher: "BaseFetcher"
    pipeline: "BasePipeline"
    config: EngineConfig
    barrier: CompletionBarrier
    stats: EngineStats = field(default_factory=EngineStats)
    proxy_selector: Optional["ProxySelector"] = None


class SpiderWorker:
    """Pulls tasks from the shared queue and runs them through fetch, parse and emit."""

    def __init__(self, worker_id: str, context: SpiderContext):
        """
        Initialize worker.

        Args:
            worker_id: Unique identifier, also the worker's barrier party
            context: Shared collaborators
        """
        self.worker_id = worker_id
        self.context = context
        self.logger = get_logger(f"{__name__}.{worker_id}")

        # All run-state fields are guarded by the condition
        self._condition = threading.Condition()
        self._state = WorkerState.IDLE
        self._pause_requested = False
        self._stop_requested = False
        self._busy = False
        self._current_task: Optional[Task] = None

    @property
    def state(self) -> WorkerState:
        with self._condition:
            return self._state

    @property
    def current_task(self) -> Optional[Task]:
        with self._condition:
            return self._current_task

    @property
    def is_busy(self) -> bool:
        with self._condition:
            return self._busy

    def pause(self) -> None:
        """Ask the worker to park before its next task."""
        with self._condition:
            if self._state != WorkerState.STOPPED:
                self._pause_requested = True
                self._condition.notify_all()

    def restart(self) -> None:
        """Release a paused worker."""
        with self._condition:
            self._pause_requested = False
            self._condition.notify_all()

    def stop(self) -> None:
        """Ask the worker to exit at its next iteration boundary."""
        with self._condition:
            self._stop_requested = True
            self._condition.notify_all()

    def wait_settled(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the worker is not inside a task.

        Combined with ``pause`` this guarantees the worker will not start
        another task until ``restart``.

        Returns:
            True if settled within the timeout
        """
        with self._condition:
            return self._condition.wait_for(
                lambda: not self._busy or self._state == WorkerState.STOPPED,
                timeout=timeout
            )

    def run(self) -> None:
        """Worker loop; returns when the queue signals empty or the worker is stopped."""
        self.logger.info(f"Worker {self.worker_id} starting")
        with self._condition:
            if not self._stop_requested:
                self._state = WorkerState.RUNNING

        try:
            while self._pause_gate():
                task = self.context.scheduler.get()
                if task is None:
                    self.logger.debug(f"Worker {self.worker_id} received empty signal")
                    break

                try:
                    if not self._enter_task(task):
                        # Stopped while holding the task: hand it back before releasing in-flight
                        self.context.scheduler.put(task)
                        break
                    try:
                        self._process(task)
                    except Exception as e:
                        self.context.stats.tasks_dropped.increment()
                        self.logger.error(
                            f"Worker {self.worker_id} dropped task {task.task_id} ({task.url}) "
                            f"after unexpected error: {describe_error(e)}",
                            exc_info=True
                        )
                    finally:
                        self._leave_task()
                finally:
                    self.context.scheduler.task_done(task)

                self._sleep_interval()

        except Exception as e:
            self.logger.error(f"Fatal error in worker {self.worker_id}: {describe_error(e)}", exc_info=True)

        finally:
            with self._condition:
                self._state = WorkerState.STOPPED
                self._busy = False
                self._current_task = None
                self._condition.notify_all()
            self.context.barrier.count_down(self.worker_id)
            self.logger.info(f"Worker {self.worker_id} stopped")

    def _pause_gate(self) -> bool:
        """Park while paused. Returns False once stop was requested."""
        with self._condition:
            while self._pause_requested and not self._stop_requested:
                if self._state != WorkerState.PAUSED:
                    self._state = WorkerState.PAUSED
                    self.logger.debug(f"Worker {self.worker_id} paused")
                    self._condition.notify_all()
                self._condition.wait()
            if self._stop_requested:
                return False
            if self._state == WorkerState.PAUSED:
                self.logger.debug(f"Worker {self.worker_id} resumed")
            self._state = WorkerState.RUNNING
            return True

    def _enter_task(self, task: Task) -> bool:
        """Second pause check between dequeue and fetch; marks the worker busy."""
        with self._condition:
            if not self._pause_gate():
                return False
            self._busy = True
            self._current_task = task
            return True

    def _leave_task(self) -> None:
        with self._condition:
            self._busy = False
            self._current_task = None
            self._condition.notify_all()

    def _sleep_interval(self) -> None:
        interval = self.context.config.interval
        if interval <= 0:
            return
        delay = interval * random.uniform(0.5, 1.5)
        with self._condition:
            self._condition.wait_for(lambda: self._stop_requested, timeout=delay)

    def _process(self, task: Task) -> None:
        """Fetch, parse and emit one task. Follow-ups are enqueued before the caller releases in-flight."""
        context = self.context
        stats = context.stats

        # One provider snapshot per task
        provider = context.rules.get()

        try:
            rule = provider.resolve_rule(task) if provider is not None else None
        except Exception as e:
            stats.parse_errors.increment()
            self._drop(task, "resolve", self._as_error(e, ParseError, "Rule resolution failed", task))
            return
        if rule is None:
            stats.parse_errors.increment()
            self._drop(task, "resolve", ParseError("No rule matches task url", {"url": task.url}))
            return

        profile = self._select_profile(task)
        start_time = time.monotonic()
        try:
            response = context.fetcher.fetch(task, profile)
        except Exception as e:
            error = self._as_error(e, FetchError, "Fetch failed", task)
            stats.fetch_failures.increment()
            if profile.proxy is not None and context.proxy_selector is not None:
                context.proxy_selector.mark_failure(profile.proxy, str(error))
            self._retry_or_drop(task, error)
            return

        if profile.proxy is not None and context.proxy_selector is not None:
            context.proxy_selector.mark_success(profile.proxy, time.monotonic() - start_time)

        try:
            result = rule.parse(response, task)
        except Exception as e:
            stats.parse_errors.increment()
            self._drop(task, "parse", self._as_error(e, ParseError, f"Rule '{rule.name}' failed", task))
            return

        for follow_up in result.follow_ups:
            context.scheduler.put(follow_up)
        stats.follow_ups.increment(len(result.follow_ups))

        if result.record is not None:
            try:
                context.pipeline.emit(result.record)
                stats.records_emitted.increment()
            except Exception as e:
                stats.emit_errors.increment()
                error = self._as_error(e, EmitError, "Emit failed", task)
                self.logger.error(
                    f"Record from task {task.task_id} ({task.url}) not emitted: {describe_error(error)}"
                )

        stats.tasks_processed.increment()
        self.logger.debug(
            f"Worker {self.worker_id} processed {task.url} with rule '{rule.name}' "
            f"({len(result.follow_ups)} follow-ups)"
        )

    def _select_profile(self, task: Task) -> FetchProfile:
        config = self.context.config
        selector = self.context.proxy_selector
        proxy = None
        if config.proxy and task.use_proxy and selector is not None:
            try:
                proxy = selector.select(task)
            except Exception as e:
                self.logger.warning(f"Proxy selection failed for {task.url}, fetching directly: {e}")
        return FetchProfile(proxy=proxy, mobile=config.mobile)

    def _retry_or_drop(self, task: Task, error: FetchError) -> None:
        retry_budget = self.context.config.retry
        if task.retry_count < retry_budget:
            attempt = task.attempts
            task.increment_retry()
            self.context.stats.retries.increment()
            self.logger.warning(
                f"Fetch attempt {attempt}/{retry_budget + 1} failed for {task.url}, "
                f"re-enqueueing: {error.message}"
            )
            self.context.scheduler.put(task)
        else:
            self._drop(task, "fetch", error)

    def _drop(self, task: Task, stage: str, error: CrawlOrchestratorError) -> None:
        self.context.stats.tasks_dropped.increment()
        self.logger.error(
            f"Dropped task {task.task_id} ({task.url}) at stage '{stage}' "
            f"after {task.retry_count} retries: {describe_error(error)}"
        )

    @staticmethod
    def _as_error(exception: Exception, error_type: type, message: str, task: Task) -> CrawlOrchestratorError:
        if isinstance(exception, error_type):
            return exception
        error = error_type(f"{message}: {exception}", {"url": task.url, "task_id": task.task_id})
        error.__cause__ = exception
        return error

    def __repr__(self) -> str:
        return f"SpiderWorker(id={self.worker_id}, state={self.state.value})"


class WorkerPool:
    """Owns the spider workers of one engine run and the threads executing them."""

    def __init__(self, context: SpiderContext, size: int):
        """
        Initialize pool.

        Args:
            context: Shared collaborators handed to every worker
            size: Number of workers; must match the barrier parties
        """
        self.context = context
        self._workers: List[SpiderWorker] = [
            SpiderWorker(f"spider_{i}", context) for i in range(size)
        ]
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    @property
    def workers(self) -> List[SpiderWorker]:
        return list(self._workers)

    def start(self) -> None:
        """Spawn one thread per worker."""
        with self._lock:
            logger.info(f"Starting {len(self._workers)} spider workers")
            for index, worker in enumerate(self._workers):
                thread = threading.Thread(target=worker.run, name=f"Spider-{index}", daemon=True)
                try:
                    thread.start()
                except RuntimeError as e:
                    logger.error(f"Failed to start worker {worker.worker_id}: {e}")
                    # A worker that never runs still owes its count-down
                    worker.stop()
                    self.context.barrier.count_down(worker.worker_id)
                    continue
                self._threads[worker.worker_id] = thread

    def live_workers(self) -> List[SpiderWorker]:
        with self._lock:
            return [
                worker for worker in self._workers
                if worker.worker_id in self._threads
                and self._threads[worker.worker_id].is_alive()
                and worker.state != WorkerState.STOPPED
            ]

    def pause_all(self) -> int:
        workers = self.live_workers()
        for worker in workers:
            worker.pause()
        return len(workers)

    def restart_all(self) -> int:
        workers = self.live_workers()
        for worker in workers:
            worker.restart()
        return len(workers)

    def stop_all(self) -> int:
        # Stop every worker, including ones whose thread has not been scheduled yet
        for worker in self._workers:
            worker.stop()
        return len(self._workers)

    def wait_settled(self, timeout: Optional[float] = None) -> bool:
        """Wait until no worker is inside a task."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for worker in self._workers:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not worker.wait_settled(remaining):
                return False
        return True

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Join worker threads.

        Returns:
            True if every thread finished within the timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            if thread is threading.current_thread():
                continue
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(t.is_alive() for t in threads if t is not threading.current_thread())

    def worker_states(self) -> Tuple[Tuple[str, str], ...]:
        return tuple((worker.worker_id, worker.state.value) for worker in self._workers)

    def get_pool_stats(self) -> Dict[str, Any]:
        states = [worker.state for worker in self._workers]
        return {
            "total_workers": len(self._workers),
            "live_workers": len(self.live_workers()),
            "worker_states": {state.value: states.count(state) for state in WorkerState},
            "busy_workers": sum(1 for worker in self._workers if worker.is_busy)
        }
