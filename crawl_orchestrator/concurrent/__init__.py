"""
Concurrency core of the crawl engine.

Main Components:
- TaskQueue: drain-to-completion and continuous task queues
- SpiderWorker / WorkerPool: fetch, parse and emit loop with cooperative pause and stop
- CompletionBarrier: exactly-once-per-worker shutdown barrier
- EventListener: lifecycle notifications
- EngineMonitor: telemetry hook

The engine itself lives in ``crawl_orchestrator.concurrent.controller``.
"""

from .models import (
    Task,
    EngineConfig,
    EngineState,
    WorkerState,
    FetchProfile,
    FetchResponse,
    ParseResult,
    RuleDescriptor,
    EngineSnapshot
)

from .thread_safe import (
    ThreadSafeCounter,
    AtomicReference,
    CompletionBarrier
)

from .scheduler import TaskQueue, DrainTaskQueue, ContinuousTaskQueue, create_task_queue
from .thread_pool import SpiderWorker, SpiderContext, WorkerPool, EngineStats
from .events import LifecycleEvent, EventListener, EventDispatcher
from .monitoring import EngineMonitor, LoggingMonitor

__all__ = [
    # Core models
    'Task',
    'EngineConfig',
    'EngineState',
    'WorkerState',
    'FetchProfile',
    'FetchResponse',
    'ParseResult',
    'RuleDescriptor',
    'EngineSnapshot',

    # Thread-safe utilities
    'ThreadSafeCounter',
    'AtomicReference',
    'CompletionBarrier',

    # Main components
    'TaskQueue',
    'DrainTaskQueue',
    'ContinuousTaskQueue',
    'create_task_queue',
    'SpiderWorker',
    'SpiderContext',
    'WorkerPool',
    'EngineStats',

    # Events and monitoring
    'LifecycleEvent',
    'EventListener',
    'EventDispatcher',
    'EngineMonitor',
    'LoggingMonitor'
]
