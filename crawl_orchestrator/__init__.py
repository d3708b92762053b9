"""
Crawl orchestration engine.

A pool of spider workers pulls fetch tasks from a shared queue, runs them
through fetch, parse and emit, and feeds discovered follow-up tasks back into
the queue. The engine coordinates pause, resume, hot rule reload and
graceful shutdown across the pool.
"""

__version__ = "1.0.0"

from crawl_orchestrator.concurrent.models import Task, EngineConfig, EngineState, RuleDescriptor, ParseResult
from crawl_orchestrator.concurrent.controller import CrawlEngine
from crawl_orchestrator.concurrent.events import EventListener, LifecycleEvent

__all__ = [
    'CrawlEngine',
    'Task',
    'EngineConfig',
    'EngineState',
    'RuleDescriptor',
    'ParseResult',
    'EventListener',
    'LifecycleEvent'
]
