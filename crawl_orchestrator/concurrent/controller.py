"""
Crawl engine controller.
Owns the configuration, task queue and worker pool, drives the lifecycle
state machine and coordinates rule hot-swap and shutdown.
"""

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from crawl_orchestrator.utils.logging import get_logger, enable_debug_logging
from crawl_orchestrator.utils.errors import (
    ConfigurationError,
    EngineStateError,
    InterruptedWait,
    describe_error
)
from crawl_orchestrator.utils.proxy_pool import ProxyPool, ProxySelector
from crawl_orchestrator.crawlers.base import BaseFetcher, BasePipeline, RuleProvider
from crawl_orchestrator.crawlers.http_client import HttpFetcher
from crawl_orchestrator.crawlers.pipelines import LoggingPipeline
from crawl_orchestrator.crawlers.rules import RegexRuleProvider, load_rule_provider
from crawl_orchestrator.crawlers.start_requests import load_start_tasks
from .models import EngineConfig, EngineSnapshot, EngineState, RuleDescriptor, Task
from .scheduler import TaskQueue, create_task_queue
from .thread_safe import AtomicReference, CompletionBarrier
from .thread_pool import EngineStats, SpiderContext, SpiderWorker, WorkerPool
from .events import EventDispatcher, EventListener, LifecycleEvent
from .monitoring import EngineMonitor, LoggingMonitor


class CrawlEngine:
    """
    Single-use crawl engine.

    Lifecycle: UNCONFIGURED -> CONFIGURED -> RUNNING <-> PAUSED -> STOPPED.
    In drain mode ``run`` blocks until the queue is quiescent and every worker
    has counted down the completion barrier; in continuous mode the crawl only
    ends through ``stop``.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        rule_provider: Optional[RuleProvider] = None,
        fetcher: Optional[BaseFetcher] = None,
        pipeline: Optional[BasePipeline] = None,
        scheduler: Optional[TaskQueue] = None,
        proxy_selector: Optional[ProxySelector] = None,
        event_listener: Optional[EventListener] = None,
        monitor: Optional[EngineMonitor] = None,
        name: str = "CrawlEngine"
    ):
        """
        Initialize and configure the engine.

        Args:
            config: Engine configuration (defaults to ``EngineConfig()``)
            rule_provider: Rule provider; built from ``config.rule_module`` when omitted
            fetcher: Fetch collaborator (defaults to ``HttpFetcher``)
            pipeline: Emit collaborator (defaults to ``LoggingPipeline``)
            scheduler: Task queue (defaults to the queue matching ``config.loop``)
            proxy_selector: Proxy selector (defaults to a pool read from ``config.proxy_file``)
            event_listener: Optional lifecycle listener
            monitor: Telemetry hook (defaults to ``LoggingMonitor``)
            name: Engine name used in logs and thread names

        Raises:
            ConfigurationError: If no rule provider is given and none can be built
        """
        self.name = name
        self.logger = get_logger(__name__)

        self._state = EngineState.UNCONFIGURED
        self._lock = threading.RLock()
        self._config: Optional[EngineConfig] = None
        self._rules: AtomicReference[RuleProvider] = AtomicReference()
        self._start_tasks: List[Task] = []

        # Run state
        self._pool: Optional[WorkerPool] = None
        self._barrier: Optional[CompletionBarrier] = None
        self._thread: Optional[threading.Thread] = None
        self._teardown_thread: Optional[threading.Thread] = None
        self._stats = EngineStats()
        self._start_time: Optional[datetime] = None
        self._stop_time: Optional[datetime] = None
        self._teardown_started = False
        self._announced = threading.Event()
        self._run_thread: Optional[threading.Thread] = None
        self._terminated = threading.Event()

        self.configure(
            config=config,
            rule_provider=rule_provider,
            fetcher=fetcher,
            pipeline=pipeline,
            scheduler=scheduler,
            proxy_selector=proxy_selector,
            event_listener=event_listener,
            monitor=monitor
        )

    def configure(
        self,
        config: Optional[EngineConfig] = None,
        rule_provider: Optional[RuleProvider] = None,
        fetcher: Optional[BaseFetcher] = None,
        pipeline: Optional[BasePipeline] = None,
        scheduler: Optional[TaskQueue] = None,
        proxy_selector: Optional[ProxySelector] = None,
        event_listener: Optional[EventListener] = None,
        monitor: Optional[EngineMonitor] = None
    ) -> "CrawlEngine":
        """
        (Re)configure the engine. Only allowed before Start.

        Raises:
            EngineStateError: If the engine has already started
            ConfigurationError: If the rule source is empty and no provider is given
        """
        with self._lock:
            if self._state not in (EngineState.UNCONFIGURED, EngineState.CONFIGURED):
                raise EngineStateError(
                    "Engine can only be configured before it starts",
                    {"state": self._state.value}
                )

            config = config or EngineConfig()

            if rule_provider is None:
                if not config.rule_module:
                    raise ConfigurationError(
                        "Rule source cannot be empty: pass a rule provider or set rule_module"
                    )
                rule_provider = load_rule_provider(config.rule_module)
            elif not isinstance(rule_provider, RuleProvider):
                raise ConfigurationError(
                    "rule_provider must implement RuleProvider",
                    {"type": type(rule_provider).__name__}
                )

            self._config = config
            self._rules.set(rule_provider)
            self._scheduler = scheduler or create_task_queue(config.loop)
            self._proxy_selector = proxy_selector or ProxyPool.from_file(
                config.proxy_file, config.proxy_policy
            )
            self._fetcher = fetcher or HttpFetcher(timeout=config.fetch_timeout)
            self._pipeline = pipeline or LoggingPipeline()
            self._events = EventDispatcher(event_listener)
            self._monitor = monitor or LoggingMonitor()
            self._state = EngineState.CONFIGURED

        self.logger.info(
            f"Engine {self.name} configured: threads={config.thread_count}, retry={config.retry}, "
            f"loop={config.loop}, proxy={config.proxy}, mobile={config.mobile}, rules={rule_provider!r}"
        )
        return self

    # Start tasks

    def add_start_task(self, task: Task) -> "CrawlEngine":
        """
        Register a start task. After Start the task goes straight into the queue.

        Raises:
            EngineStateError: If the engine has stopped
        """
        with self._lock:
            if self._state == EngineState.STOPPED:
                raise EngineStateError("Cannot add tasks to a stopped engine", {"url": task.url})
            if self._state in (EngineState.RUNNING, EngineState.PAUSED):
                self._scheduler.put(task)
            else:
                self._start_tasks.append(task)
        return self

    def add_start_urls(self, *urls: str) -> "CrawlEngine":
        """Register GET start tasks for the given urls."""
        for url in urls:
            self.add_start_task(Task(url=url))
        return self

    # Lifecycle

    def run(self) -> None:
        """
        Start the crawl on the calling thread.

        Seeds the queue, spawns the workers and fires Started. In drain mode it
        then blocks until every worker has finished and tears the engine down.

        Raises:
            EngineStateError: If the engine is not in the CONFIGURED state
            ConfigurationError: If the start file is malformed
        """
        with self._lock:
            if self._state != EngineState.CONFIGURED:
                raise EngineStateError(
                    f"Engine {self.name} cannot start from state {self._state.value}",
                    {"state": self._state.value}
                )

            config = self._config
            if config.debug:
                enable_debug_logging(True)

            seeds = list(self._start_tasks) + load_start_tasks(config.start_file)
            self._scheduler.put_many(seeds)

            self._barrier = CompletionBarrier(config.thread_count)
            context = SpiderContext(
                scheduler=self._scheduler,
                rules=self._rules,
                fetcher=self._fetcher,
                pipeline=self._pipeline,
                config=config,
                barrier=self._barrier,
                stats=self._stats,
                proxy_selector=self._proxy_selector
            )
            self._pool = WorkerPool(context, config.thread_count)
            self._start_time = datetime.now()
            self._run_thread = threading.current_thread()
            self._state = EngineState.RUNNING
            self._pool.start()

        try:
            self.logger.info(f"Engine {self.name} started with {len(seeds)} start tasks")
            self._export()
            self._events.fire(LifecycleEvent.STARTED, self)
        finally:
            self._announced.set()

        if config.loop:
            return

        self._await_workers()
        self._teardown()

    def start(self) -> "CrawlEngine":
        """
        Run the engine on a dedicated ``CrawlEngine`` thread.

        Raises:
            EngineStateError: If the engine was already started
        """
        with self._lock:
            if self._thread is not None or self._state != EngineState.CONFIGURED:
                raise EngineStateError(
                    f"Engine {self.name} cannot start from state {self._state.value}",
                    {"state": self._state.value}
                )
            self._thread = threading.Thread(target=self._run_guarded, name=self.name, daemon=True)
            self._thread.start()
        return self

    def _run_guarded(self) -> None:
        try:
            self.run()
        except Exception as e:
            self.logger.error(f"Engine {self.name} failed: {describe_error(e)}", exc_info=True)

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the engine thread started by ``start``.

        Returns:
            True if the thread finished (or was never started)
        """
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def pause(self) -> bool:
        """
        Ask every live worker to park before its next task.

        Returns:
            True if the engine transitioned to PAUSED
        """
        with self._lock:
            if self._state != EngineState.RUNNING or self._pool is None:
                self.logger.debug(f"Pause ignored in state {self._state.value}")
                return False
            if self._pool.pause_all() == 0:
                self.logger.debug("Pause ignored: no live workers")
                return False
            self._state = EngineState.PAUSED

        self._events.fire(LifecycleEvent.PAUSED, self)
        return True

    def restart(self) -> bool:
        """
        Resume paused workers.

        Returns:
            True if the engine transitioned back to RUNNING
        """
        with self._lock:
            if self._state != EngineState.PAUSED or self._pool is None:
                self.logger.debug(f"Restart ignored in state {self._state.value}")
                return False
            self._pool.restart_all()
            self._state = EngineState.RUNNING

        self._events.fire(LifecycleEvent.RESTARTED, self)
        return True

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """
        Broadcast stop to every worker.

        Workers finish their current task and exit at the next iteration
        boundary. With ``wait`` the call blocks until every worker has counted
        down and the engine has torn down; it must not be called with ``wait``
        from a worker thread. Without ``wait`` teardown happens in the
        background and ``await_termination`` can be used to wait for it.

        Returns:
            True if the engine has terminated when the call returns
        """
        with self._lock:
            if self._state == EngineState.STOPPED:
                return self._terminated.is_set()

            if self._state in (EngineState.UNCONFIGURED, EngineState.CONFIGURED):
                never_started = True
            else:
                never_started = False
                self.logger.info(f"Stopping engine {self.name}")
                self._pool.stop_all()
                self._scheduler.close()

        if never_started:
            self._teardown()
            return True

        if wait:
            return self.await_termination(timeout)

        self._ensure_background_teardown()
        return self._terminated.is_set()

    def await_termination(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for all workers to finish and the engine to tear down.

        Returns:
            True if the engine terminated within the timeout
        """
        with self._lock:
            barrier = self._barrier
        if barrier is None:
            return self._terminated.wait(timeout)

        try:
            released = barrier.wait(timeout)
        except InterruptedWait:
            released = False
        if not released:
            return False
        self._teardown()
        return self._terminated.wait(timeout)

    def _ensure_background_teardown(self) -> None:
        with self._lock:
            # In drain mode the thread blocked in run() tears down on its own
            if self._teardown_thread is not None or not self._config.loop:
                return
            self._teardown_thread = threading.Thread(
                target=self.await_termination,
                name=f"{self.name}-Teardown",
                daemon=True
            )
            self._teardown_thread.start()

    def _await_workers(self) -> None:
        """Block on the completion barrier (drain mode)."""
        try:
            self._barrier.wait()
        except (InterruptedWait, KeyboardInterrupt) as e:
            self.logger.warning(f"Engine {self.name} interrupted while waiting for workers ({type(e).__name__}), stopping")
            self._pool.stop_all()
            self._scheduler.close()
            self._pool.join()

    def _teardown(self) -> None:
        """Release fetch resources and fire Stopped. Runs once per engine."""
        with self._lock:
            if self._teardown_started:
                return
            self._teardown_started = True
            started = self._start_time is not None

        # Stopped must never overtake Started fired from another thread
        if started and threading.current_thread() is not self._run_thread:
            self._announced.wait()

        for resource in (self._fetcher, self._pipeline):
            try:
                resource.close()
            except Exception as e:
                self.logger.error(f"Failed to close {type(resource).__name__}: {describe_error(e)}")

        with self._lock:
            self._stop_time = datetime.now()
            self._state = EngineState.STOPPED

        if started:
            self._unexport()
        self._terminated.set()

        self.logger.info(f"Engine {self.name} stopped: {self._stats.as_dict()}")
        self._events.fire(LifecycleEvent.STOPPED, self)

    # Rule hot-swap

    def begin_update_rules(self, timeout: Optional[float] = None) -> bool:
        """
        Pause the engine and wait until no worker is inside a task.

        Returns:
            True once every worker has settled
        """
        self.pause()
        with self._lock:
            pool = self._pool
        if pool is None:
            return True
        return pool.wait_settled(timeout)

    def end_update_rules(self, provider: RuleProvider) -> RuleProvider:
        """
        Install ``provider`` and resume the workers.

        Returns:
            The provider that was replaced
        """
        if not isinstance(provider, RuleProvider):
            raise ConfigurationError(
                "provider must implement RuleProvider",
                {"type": type(provider).__name__}
            )
        previous = self._rules.get_and_set(provider)
        self.logger.info(f"Rule provider swapped: {previous!r} -> {provider!r}")
        self.restart()
        return previous

    def reload_rules(self, provider: Optional[RuleProvider] = None, timeout: Optional[float] = None) -> bool:
        """
        Hot-swap the rule provider: pause, swap, restart.

        Args:
            provider: New provider; when omitted ``config.rule_module`` is re-imported
            timeout: Maximum time to wait for workers to settle

        Returns:
            True if the new provider was installed

        Raises:
            ConfigurationError: If no provider is given and the rule module cannot be reloaded
        """
        if provider is None:
            provider = load_rule_provider(self._config.rule_module, reload=True)
        if not isinstance(provider, RuleProvider):
            raise ConfigurationError(
                "provider must implement RuleProvider",
                {"type": type(provider).__name__}
            )

        with self._lock:
            state = self._state
        if state not in (EngineState.RUNNING, EngineState.PAUSED):
            self._rules.set(provider)
            self.logger.info(f"Rule provider replaced: {provider!r}")
            return True

        was_paused = state == EngineState.PAUSED
        if not self.begin_update_rules(timeout):
            self.logger.warning("Workers did not settle in time, rule reload aborted")
            if not was_paused:
                self.restart()
            return False

        if was_paused:
            self._rules.set(provider)
            self.logger.info(f"Rule provider replaced while paused: {provider!r}")
        else:
            self.end_update_rules(provider)
        return True

    def register_rule(self, rule: RuleDescriptor, timeout: Optional[float] = None) -> bool:
        """Add (or replace) a rule through the hot-swap path."""
        return self.reload_rules(self._regex_provider().with_rule(rule), timeout)

    def unregister_rule(self, name: str, timeout: Optional[float] = None) -> bool:
        """
        Remove a rule through the hot-swap path.

        Raises:
            KeyError: If no rule has that name
        """
        return self.reload_rules(self._regex_provider().without_rule(name), timeout)

    def _regex_provider(self) -> RegexRuleProvider:
        provider = self._rules.get()
        if not isinstance(provider, RegexRuleProvider):
            raise ConfigurationError(
                "Rule registration requires a RegexRuleProvider",
                {"type": type(provider).__name__}
            )
        return provider

    # Monitoring

    def _export(self) -> None:
        try:
            self._monitor.export(self.snapshot())
        except Exception as e:
            self.logger.error(f"Monitor export failed: {describe_error(e)}")

    def _unexport(self) -> None:
        try:
            self._monitor.unexport(self.snapshot())
        except Exception as e:
            self.logger.error(f"Monitor unexport failed: {describe_error(e)}")

    def snapshot(self) -> EngineSnapshot:
        """Read-only view of the engine state."""
        with self._lock:
            state = self._state
            pool = self._pool
        return EngineSnapshot(
            name=self.name,
            state=state,
            loop=self._config.loop,
            thread_count=self._config.thread_count,
            started_at=self._start_time,
            worker_states=pool.worker_states() if pool else (),
            queue_stats=self._scheduler.get_stats(),
            task_stats=self._stats.as_dict(),
            proxy_stats=self._proxy_selector.get_statistics() if self._proxy_selector else {}
        )

    def get_status(self) -> Dict[str, Any]:
        """
        Get current engine status.

        Returns:
            Dictionary with engine status
        """
        snapshot = self.snapshot()
        with self._lock:
            pool = self._pool
            barrier = self._barrier
        return {
            "name": self.name,
            "state": snapshot.state.value,
            "mode": "continuous" if snapshot.loop else "drain",
            "start_time": self._start_time.isoformat() if self._start_time else None,
            "stop_time": self._stop_time.isoformat() if self._stop_time else None,
            "uptime_seconds": snapshot.get_uptime(),
            "thread_count": snapshot.thread_count,
            "workers": dict(snapshot.worker_states),
            "pool": pool.get_pool_stats() if pool else {},
            "barrier_remaining": barrier.remaining if barrier else None,
            "queue": snapshot.queue_stats,
            "tasks": snapshot.task_stats,
            "proxies": snapshot.proxy_stats,
            "rules": self.rule_provider.rule_names() if self.rule_provider else []
        }

    # Read-only accessors

    @property
    def state(self) -> EngineState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state in (EngineState.RUNNING, EngineState.PAUSED)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def start_time(self) -> Optional[datetime]:
        return self._start_time

    @property
    def start_tasks(self) -> Tuple[Task, ...]:
        with self._lock:
            return tuple(self._start_tasks)

    @property
    def workers(self) -> List[SpiderWorker]:
        with self._lock:
            return self._pool.workers if self._pool else []

    @property
    def scheduler(self) -> TaskQueue:
        return self._scheduler

    @property
    def rule_provider(self) -> Optional[RuleProvider]:
        return self._rules.get()

    @property
    def proxy_selector(self) -> Optional[ProxySelector]:
        return self._proxy_selector

    @property
    def barrier(self) -> Optional[CompletionBarrier]:
        return self._barrier

    @property
    def stats(self) -> EngineStats:
        return self._stats

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit: stop the engine and wait for teardown."""
        try:
            self.stop(wait=True)
        except Exception as e:
            self.logger.error(f"Error in context manager cleanup: {describe_error(e)}")
        return False

    def __repr__(self) -> str:
        return f"CrawlEngine(name={self.name}, state={self.state.value})"
