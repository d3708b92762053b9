"""
Logging configuration and utilities.
Centralizes logging for the engine, its workers and the crawler collaborators,
with daily rotation and a retention window for log files.
"""

import logging
import logging.handlers
import sys
import time
import threading
from pathlib import Path
from typing import Optional
from datetime import datetime, timedelta

import schedule
import structlog


# Logger tree switched to DEBUG by the engine debug flag
CRAWLERS_LOGGER_NAME = "crawl_orchestrator.crawlers"

_cleanup_thread: Optional[threading.Thread] = None
_cleanup_lock = threading.Lock()


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    retention_days: int = 7
) -> None:
    """
    Set up structured logging for the application.
    
    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        retention_days: Number of days to retain log files
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.handlers.clear()
    
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s'
    ))
    root_logger.addHandler(console_handler)
    
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        
        # Rotate at midnight, keep one backup per retained day
        file_handler = logging.handlers.TimedRotatingFileHandler(
            log_file,
            when='midnight',
            interval=1,
            backupCount=retention_days,
            encoding='utf-8'
        )
        file_handler.suffix = "%Y-%m-%d"
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        ))
        root_logger.addHandler(file_handler)
        
        _start_log_cleanup_scheduler(log_path.parent, retention_days)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.
    
    Args:
        name: Logger name (typically __name__)
        
    Returns:
        Standard library logger
    """
    return logging.getLogger(name)


def enable_debug_logging(enabled: bool = True) -> None:
    """
    Switch the crawler collaborators' logger tree to DEBUG.
    
    Args:
        enabled: True to log at DEBUG, False to inherit the root level again
    """
    crawlers_logger = logging.getLogger(CRAWLERS_LOGGER_NAME)
    crawlers_logger.setLevel(logging.DEBUG if enabled else logging.NOTSET)


def _start_log_cleanup_scheduler(logs_dir: Path, retention_days: int) -> None:
    """Start the daily log cleanup job (once per process)."""
    global _cleanup_thread
    
    with _cleanup_lock:
        if _cleanup_thread is not None and _cleanup_thread.is_alive():
            return
        
        logger = get_logger(__name__)
        
        def cleanup_job():
            try:
                cleanup_old_logs(logs_dir, retention_days)
            except OSError as e:
                logger.error(f"Log cleanup failed: {e}")
        
        schedule.every().day.at("02:00").do(cleanup_job)
        
        def run_scheduler():
            while True:
                schedule.run_pending()
                time.sleep(60)
        
        _cleanup_thread = threading.Thread(target=run_scheduler, name="LogCleanup", daemon=True)
        _cleanup_thread.start()


def cleanup_old_logs(logs_dir: Path, retention_days: int = 7) -> int:
    """
    Delete log files older than the retention window.
    
    Args:
        logs_dir: Log directory path
        retention_days: Number of days to keep
        
    Returns:
        Number of deleted files
    """
    if not logs_dir.exists():
        return 0
    
    logger = get_logger(__name__)
    cleaned_count = 0
    cutoff_date = datetime.now() - timedelta(days=retention_days)
    
    for log_file in logs_dir.glob("*.log*"):
        if not log_file.is_file():
            continue
        file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
        if file_mtime < cutoff_date:
            log_file.unlink()
            cleaned_count += 1
            logger.info(f"Removed expired log file: {log_file.name}")
    
    if cleaned_count > 0:
        logger.info(f"Log cleanup finished, removed {cleaned_count} files")
    
    return cleaned_count
