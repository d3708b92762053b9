"""
Telemetry hook for the crawl engine.

The engine hands a read-only ``EngineSnapshot`` to its monitor at Start
(``export``) and once teardown is done (``unexport``). A failing monitor is
logged by the engine and never affects the crawl.
"""

from typing import Any, Dict, Optional

import psutil

from crawl_orchestrator.utils.logging import get_logger
from .models import EngineSnapshot


class EngineMonitor:
    """Interface for monitoring hooks."""

    def export(self, snapshot: EngineSnapshot) -> None:
        """Called when the engine starts."""
        pass

    def unexport(self, snapshot: EngineSnapshot) -> None:
        """Called when the engine has torn down."""
        pass


class LoggingMonitor(EngineMonitor):
    """Default monitor: logs engine state with process resource usage."""

    def __init__(self, logger_name: str = __name__):
        self.logger = get_logger(logger_name)
        self._process: Optional[psutil.Process] = None

    def _process_metrics(self) -> Dict[str, Any]:
        try:
            if self._process is None:
                self._process = psutil.Process()
                # First cpu_percent call only primes the counter
                self._process.cpu_percent()
            return {
                "memory_rss_mb": round(self._process.memory_info().rss / (1024 * 1024), 2),
                "cpu_percent": self._process.cpu_percent(),
                "threads": self._process.num_threads()
            }
        except psutil.Error as e:
            self.logger.warning(f"Could not record process metrics: {e}")
            return {}

    def export(self, snapshot: EngineSnapshot) -> None:
        metrics = self._process_metrics()
        self.logger.info(
            f"Engine {snapshot.name} started: state={snapshot.state.value}, "
            f"threads={snapshot.thread_count}, loop={snapshot.loop}, "
            f"queue={snapshot.queue_stats}, process={metrics}"
        )

    def unexport(self, snapshot: EngineSnapshot) -> None:
        metrics = self._process_metrics()
        self.logger.info(
            f"Engine {snapshot.name} finished after {snapshot.get_uptime():.2f}s: "
            f"tasks={snapshot.task_stats}, queue={snapshot.queue_stats}, "
            f"proxies={snapshot.proxy_stats}, process={metrics}"
        )
