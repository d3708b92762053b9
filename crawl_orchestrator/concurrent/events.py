"""
Lifecycle notifications for the crawl engine.
"""

import threading
from enum import Enum
from typing import TYPE_CHECKING, Optional, Set

from crawl_orchestrator.utils.logging import get_logger

if TYPE_CHECKING:
    from .controller import CrawlEngine


logger = get_logger(__name__)


class LifecycleEvent(Enum):
    """Engine lifecycle transition."""
    STARTED = "started"
    PAUSED = "paused"
    RESTARTED = "restarted"
    STOPPED = "stopped"


class EventListener:
    """Interface for engine lifecycle listeners. Override the hooks you need."""

    def on_start(self, engine: "CrawlEngine") -> None:
        """Called after the workers have been spawned."""
        pass

    def on_pause(self, engine: "CrawlEngine") -> None:
        """Called after the pause signal reached every live worker."""
        pass

    def on_restart(self, engine: "CrawlEngine") -> None:
        """Called after the resume signal reached every live worker."""
        pass

    def on_stop(self, engine: "CrawlEngine") -> None:
        """Called once teardown has finished."""
        pass


_HANDLERS = {
    LifecycleEvent.STARTED: "on_start",
    LifecycleEvent.PAUSED: "on_pause",
    LifecycleEvent.RESTARTED: "on_restart",
    LifecycleEvent.STOPPED: "on_stop",
}


class EventDispatcher:
    """
    Delivers lifecycle events to the single registered listener.

    Started and Stopped are delivered at most once per engine lifetime;
    Paused and Restarted once per transition. Listener failures are logged
    and never propagate into the engine.
    """

    _ONCE_PER_LIFETIME = (LifecycleEvent.STARTED, LifecycleEvent.STOPPED)

    def __init__(self, listener: Optional[EventListener] = None):
        self.listener = listener
        self._fired: Set[LifecycleEvent] = set()
        self._lock = threading.Lock()

    def has_fired(self, event: LifecycleEvent) -> bool:
        with self._lock:
            return event in self._fired

    def fire(self, event: LifecycleEvent, engine: "CrawlEngine") -> bool:
        """
        Deliver ``event`` synchronously on the calling thread.

        Returns:
            True if the event was delivered (or recorded with no listener),
            False if it was suppressed as a duplicate
        """
        with self._lock:
            if event in self._ONCE_PER_LIFETIME and event in self._fired:
                logger.debug(f"Suppressing duplicate {event.value} event")
                return False
            self._fired.add(event)

        logger.info(f"Engine {engine.name} {event.value}")
        if self.listener is None:
            return True

        try:
            getattr(self.listener, _HANDLERS[event])(engine)
        except Exception as e:
            logger.error(f"Event listener failed on {event.value}: {e}", exc_info=True)
        return True
