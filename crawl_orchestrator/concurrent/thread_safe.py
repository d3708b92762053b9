"""
Thread-safe primitives shared by the engine and its workers.
"""

import threading
from typing import Any, Generic, Hashable, Optional, Set, TypeVar

from crawl_orchestrator.utils.errors import InterruptedWait
from crawl_orchestrator.utils.logging import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


class ThreadSafeCounter:
    """Thread-safe counter with atomic operations."""

    def __init__(self, initial_value: int = 0):
        """
        Initialize counter with initial value.

        Args:
            initial_value: Starting value for the counter
        """
        self._value = initial_value
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> int:
        """
        Atomically increment counter and return new value.

        Args:
            amount: Amount to increment by (default: 1)

        Returns:
            New counter value after increment
        """
        with self._lock:
            self._value += amount
            return self._value

    def decrement(self, amount: int = 1) -> int:
        """
        Atomically decrement counter and return new value.

        Args:
            amount: Amount to decrement by (default: 1)

        Returns:
            New counter value after decrement
        """
        with self._lock:
            self._value -= amount
            return self._value

    def get_value(self) -> int:
        """
        Get current counter value.

        Returns:
            Current counter value
        """
        with self._lock:
            return self._value

    def reset(self) -> int:
        """
        Reset counter to zero and return previous value.

        Returns:
            Previous value before reset
        """
        with self._lock:
            old_value = self._value
            self._value = 0
            return old_value

    def __repr__(self) -> str:
        return f"ThreadSafeCounter(value={self.get_value()})"


class AtomicReference(Generic[T]):
    """Reference whose reads and swaps are atomic with respect to each other."""

    def __init__(self, value: Optional[T] = None):
        self._value = value
        self._lock = threading.Lock()

    def get(self) -> Optional[T]:
        with self._lock:
            return self._value

    def set(self, value: T) -> None:
        with self._lock:
            self._value = value

    def get_and_set(self, value: T) -> Optional[T]:
        """
        Install a new value and return the one it replaced.

        Args:
            value: New value

        Returns:
            Previous value
        """
        with self._lock:
            old_value = self._value
            self._value = value
            return old_value


class CompletionBarrier:
    """
    Shutdown barrier the engine waits on before teardown.

    Initialized to the number of parties (workers). Each party counts down
    exactly once; repeated count-downs from the same party are ignored so the
    barrier can never reach zero early.
    """

    def __init__(self, parties: int):
        """
        Initialize barrier.

        Args:
            parties: Number of count-downs required to release waiters
        """
        if parties < 0:
            raise ValueError("parties must be >= 0")
        self._parties = parties
        self._remaining = parties
        self._arrived: Set[Hashable] = set()
        self._aborted = False
        self._condition = threading.Condition()

    @property
    def parties(self) -> int:
        return self._parties

    @property
    def remaining(self) -> int:
        with self._condition:
            return self._remaining

    @property
    def count_downs(self) -> int:
        """Number of accepted count-downs so far."""
        with self._condition:
            return len(self._arrived)

    def count_down(self, party: Hashable) -> bool:
        """
        Record that ``party`` finished.

        Args:
            party: Identity of the counting party (worker id)

        Returns:
            True if the count-down was accepted, False for a duplicate or an
            already released barrier
        """
        with self._condition:
            if party in self._arrived:
                logger.warning(f"Ignoring repeated completion notice from {party}")
                return False
            if self._remaining == 0:
                logger.warning(f"Ignoring completion notice from {party}: barrier already released")
                return False

            self._arrived.add(party)
            self._remaining -= 1
            if self._remaining == 0:
                self._condition.notify_all()
            return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until every party has counted down.

        Args:
            timeout: Optional timeout in seconds

        Returns:
            True if the barrier was released, False on timeout

        Raises:
            InterruptedWait: If the barrier was aborted while waiting
        """
        with self._condition:
            released = self._condition.wait_for(
                lambda: self._remaining == 0 or self._aborted,
                timeout=timeout
            )
            if self._remaining == 0:
                return True
            if self._aborted:
                raise InterruptedWait(
                    "Completion barrier wait aborted",
                    {"remaining": self._remaining, "parties": self._parties}
                )
            return released

    def abort(self) -> None:
        """Wake all waiters with InterruptedWait."""
        with self._condition:
            self._aborted = True
            self._condition.notify_all()

    def __repr__(self) -> str:
        return f"CompletionBarrier(parties={self._parties}, remaining={self.remaining})"
