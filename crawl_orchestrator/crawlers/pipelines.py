"""
Output pipelines.
"""

import threading
from typing import Any, List

from crawl_orchestrator.utils.logging import get_logger
from .base import BasePipeline


class LoggingPipeline(BasePipeline):
    """Default pipeline: writes every record to the log."""

    def __init__(self, logger_name: str = __name__):
        self.logger = get_logger(logger_name)

    def emit(self, record: Any) -> None:
        self.logger.info(f"Record: {record!r}")


class CollectingPipeline(BasePipeline):
    """Keeps records in memory; handy for scripts and tests."""

    def __init__(self):
        self._records: List[Any] = []
        self._lock = threading.Lock()

    def emit(self, record: Any) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> List[Any]:
        with self._lock:
            return list(self._records)
