"""
Abstract interfaces for the collaborators driven by the engine's workers:
the fetcher, the rule provider and the output pipeline.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from crawl_orchestrator.concurrent.models import FetchProfile, FetchResponse, RuleDescriptor, Task


class BaseFetcher(ABC):
    """Performs the network fetch for a task. Shared by all workers."""

    @abstractmethod
    def fetch(self, task: "Task", profile: "FetchProfile") -> "FetchResponse":
        """
        Fetch the target of a task.

        Args:
            task: Task to fetch
            profile: Proxy and device profile for this attempt

        Returns:
            Raw response

        Raises:
            FetchError: If the fetch does not succeed. Any other exception is
                treated the same way by the engine.
        """
        pass

    def close(self) -> None:
        """Release network resources. Called once at engine teardown."""
        pass


class RuleProvider(ABC):
    """
    Maps tasks to extraction rules.

    Providers are treated as immutable by the engine: hot reload installs a
    new provider instead of mutating the current one.
    """

    @abstractmethod
    def resolve_rule(self, task: "Task") -> Optional["RuleDescriptor"]:
        """
        Find the rule handling ``task``.

        Args:
            task: Task about to be processed

        Returns:
            Matching rule or None
        """
        pass

    def rule_names(self) -> List[str]:
        return []


class BasePipeline(ABC):
    """Receives the records extracted by the rules."""

    @abstractmethod
    def emit(self, record: Any) -> None:
        """
        Persist or forward an extracted record.

        Raises:
            EmitError: If the record cannot be emitted
        """
        pass

    def close(self) -> None:
        pass
