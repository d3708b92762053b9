"""
Custom exception classes for the crawl orchestration engine.
"""

from typing import Optional, Dict, Any


class CrawlOrchestratorError(Exception):
    """Base exception for all crawl orchestrator errors."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(CrawlOrchestratorError):
    """Exception raised for configuration-related issues. Fatal: the engine must not start."""
    pass


class EngineStateError(CrawlOrchestratorError):
    """Exception raised when a lifecycle operation is invoked in the wrong engine state."""
    pass


class FetchError(CrawlOrchestratorError):
    """Exception raised when fetching a task fails. Recoverable, subject to retry."""
    pass


class ParseError(CrawlOrchestratorError):
    """Exception raised when a fetched response cannot be parsed. The task is dropped."""
    pass


class EmitError(CrawlOrchestratorError):
    """Exception raised when an extracted record cannot be emitted."""
    pass


class InterruptedWait(CrawlOrchestratorError):
    """Exception raised when a blocking wait is interrupted before its condition holds."""
    pass


def describe_error(error: BaseException) -> str:
    """
    Render an error for log lines, including structured details when present.
    
    Args:
        error: The exception to describe
        
    Returns:
        Human readable description
    """
    text = f"{type(error).__name__}: {error}"
    if isinstance(error, CrawlOrchestratorError) and error.details:
        details = ", ".join(f"{key}={value}" for key, value in error.details.items())
        text = f"{text} ({details})"
    return text
