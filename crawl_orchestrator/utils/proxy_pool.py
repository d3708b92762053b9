"""
Proxy pool management.
Rotates HTTP/HTTPS/SOCKS proxies across workers and tracks their health.
"""

import random
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from crawl_orchestrator.utils.logging import get_logger


logger = get_logger(__name__)

PROXY_POLICIES = ("round_robin", "random", "disabled")


@dataclass(eq=False)
class ProxyInfo:
    """Proxy endpoint plus its health counters."""
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None
    protocol: str = 'http'  # http, https, socks4, socks5
    country: Optional[str] = None

    # Health
    is_active: bool = True
    last_used: Optional[datetime] = None
    success_count: int = 0
    failure_count: int = 0  # consecutive failures
    avg_response_time: float = 0.0

    # Usage
    total_requests: int = 0
    failed_requests: int = 0

    @property
    def proxy_url(self) -> str:
        """Proxy URL usable by HTTP clients."""
        if self.username and self.password:
            return f"{self.protocol}://{self.username}:{self.password}@{self.host}:{self.port}"
        return f"{self.protocol}://{self.host}:{self.port}"

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return (self.total_requests - self.failed_requests) / self.total_requests

    @classmethod
    def from_line(cls, line: str) -> "ProxyInfo":
        """
        Parse one proxy list entry.

        Accepts ``host:port`` or ``scheme://[user:pass@]host:port``.

        Raises:
            ValueError: If the entry cannot be parsed
        """
        entry = line.strip()
        if "://" not in entry:
            entry = f"http://{entry}"
        parsed = urlparse(entry)
        if not parsed.hostname or parsed.port is None:
            raise ValueError(f"Invalid proxy entry: {line.strip()!r}")
        return cls(
            host=parsed.hostname,
            port=parsed.port,
            username=parsed.username,
            password=parsed.password,
            protocol=parsed.scheme
        )


def load_proxies_from_file(path: str) -> List[ProxyInfo]:
    """
    Read a proxy list file, one entry per line, ``#`` starting a comment.

    Args:
        path: Proxy list file path

    Returns:
        Parsed proxies; invalid lines are logged and skipped
    """
    proxies = []
    with open(path, 'r', encoding='utf-8') as f:
        for line_number, line in enumerate(f, start=1):
            line = line.split('#', 1)[0].strip()
            if not line:
                continue
            try:
                proxies.append(ProxyInfo.from_line(line))
            except ValueError as e:
                logger.warning(f"Skipping proxy entry at {path}:{line_number}: {e}")
    return proxies


class ProxySelector(ABC):
    """Assigns a proxy to each task; must be safe under concurrent calls."""

    @abstractmethod
    def select(self, task: Any = None) -> Optional[ProxyInfo]:
        """Return the proxy to use for ``task``, or None for a direct connection."""
        pass

    def mark_success(self, proxy: ProxyInfo, response_time: float = 0.0) -> None:
        pass

    def mark_failure(self, proxy: ProxyInfo, error: str = "") -> None:
        pass

    def get_statistics(self) -> Dict[str, Any]:
        return {}


class ProxyPool(ProxySelector):
    """
    Rotating proxy pool.

    The pool contents live in a tuple that is only ever replaced wholesale, so a
    selection works on either the old or the new pool, never a mix of both.
    """

    def __init__(
        self,
        proxies: Optional[Iterable[ProxyInfo]] = None,
        policy: str = "round_robin",
        max_failure_count: int = 5,
        source_file: Optional[str] = None
    ):
        """
        Initialize the proxy pool.

        Args:
            proxies: Initial proxies
            policy: Rotation policy, one of PROXY_POLICIES
            max_failure_count: Consecutive failures before a proxy is deactivated
            source_file: Proxy list file used by reload_from_file
        """
        if policy not in PROXY_POLICIES:
            raise ValueError(f"Unknown proxy policy: {policy}")

        self.policy = policy
        self.max_failure_count = max_failure_count
        self.source_file = source_file

        self._proxies: Tuple[ProxyInfo, ...] = tuple(proxies or ())
        self._generation = 0
        self._cursor = 0
        self._lock = threading.Lock()

        logger.debug(f"Proxy pool initialized with {len(self._proxies)} proxies, policy={policy}")

    @classmethod
    def from_file(cls, path: Optional[str], policy: str = "round_robin", **kwargs: Any) -> "ProxyPool":
        """
        Build a pool from a proxy list file. A missing file yields an empty pool.
        """
        pool = cls(policy=policy, source_file=path, **kwargs)
        if path and Path(path).is_file():
            pool.reload(load_proxies_from_file(path))
        else:
            logger.info(f"Proxy file {path} not found, proxy pool is empty")
        return pool

    @property
    def generation(self) -> int:
        """Incremented on every reload."""
        return self._generation

    def snapshot(self) -> Tuple[ProxyInfo, ...]:
        """Current pool contents."""
        return self._proxies

    def __len__(self) -> int:
        return len(self._proxies)

    def reload(self, proxies: Iterable[ProxyInfo]) -> None:
        """
        Replace the pool contents atomically.

        Args:
            proxies: New pool contents
        """
        new_pool = tuple(proxies)
        with self._lock:
            self._proxies = new_pool
            self._cursor = 0
            self._generation += 1
        logger.info(f"Proxy pool reloaded with {len(new_pool)} proxies (generation {self._generation})")

    def reload_from_file(self, path: Optional[str] = None) -> int:
        """
        Re-read the proxy list file and swap it in.

        Returns:
            Number of proxies loaded
        """
        path = path or self.source_file
        if not path:
            raise ValueError("No proxy file configured")
        proxies = load_proxies_from_file(path)
        self.reload(proxies)
        return len(proxies)

    def add_proxy(self, host: str, port: int, **kwargs: Any) -> ProxyInfo:
        """Append a single proxy to the pool."""
        proxy = ProxyInfo(host=host, port=port, **kwargs)
        with self._lock:
            self._proxies = self._proxies + (proxy,)
            self._generation += 1
        logger.info(f"Added proxy: {proxy.address}")
        return proxy

    def load_proxies_from_config(self, proxy_list: List[Dict[str, Any]]) -> None:
        """
        Replace the pool with proxies described by configuration dictionaries.

        Args:
            proxy_list: Proxy keyword dictionaries (host, port, username, ...)
        """
        self.reload(ProxyInfo(**proxy_config) for proxy_config in proxy_list)

    def select(self, task: Any = None) -> Optional[ProxyInfo]:
        """
        Pick the proxy for the next request according to the rotation policy.

        Args:
            task: Task about to be fetched

        Returns:
            Proxy or None when disabled or the pool is empty
        """
        if self.policy == "disabled":
            return None

        pool = self._proxies
        if not pool:
            return None

        candidates = [p for p in pool if p.is_active]
        if not candidates:
            logger.warning("No active proxies left, reactivating pool")
            self._reactivate(pool)
            candidates = list(pool)

        if self.policy == "random":
            proxy = random.choice(candidates)
        else:
            with self._lock:
                index = self._cursor
                self._cursor += 1
            proxy = candidates[index % len(candidates)]

        proxy.last_used = datetime.now()
        if task is not None:
            logger.debug(f"Selected proxy {proxy.address} for {getattr(task, 'url', task)}")
        return proxy

    def mark_success(self, proxy: ProxyInfo, response_time: float = 0.0) -> None:
        """Record a successful request through ``proxy``."""
        with self._lock:
            proxy.success_count += 1
            proxy.total_requests += 1
            proxy.failure_count = 0
            if proxy.avg_response_time == 0:
                proxy.avg_response_time = response_time
            else:
                proxy.avg_response_time = (proxy.avg_response_time + response_time) / 2

    def mark_failure(self, proxy: ProxyInfo, error: str = "") -> None:
        """Record a failed request; deactivates the proxy at the failure limit."""
        with self._lock:
            proxy.failure_count += 1
            proxy.total_requests += 1
            proxy.failed_requests += 1
            deactivated = proxy.is_active and proxy.failure_count >= self.max_failure_count
            if deactivated:
                proxy.is_active = False

        if deactivated:
            logger.warning(f"Proxy disabled: {proxy.address}, {proxy.failure_count} consecutive failures")
        logger.debug(f"Proxy failure: {proxy.address}, error: {error}")

    def _reactivate(self, pool: Tuple[ProxyInfo, ...]) -> None:
        with self._lock:
            for proxy in pool:
                proxy.is_active = True
                proxy.failure_count = 0

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get proxy pool statistics.

        Returns:
            Statistics dictionary
        """
        pool = self._proxies
        total_requests = sum(p.total_requests for p in pool)
        total_failed = sum(p.failed_requests for p in pool)
        return {
            'policy': self.policy,
            'generation': self._generation,
            'total_proxies': len(pool),
            'active_proxies': len([p for p in pool if p.is_active]),
            'total_requests': total_requests,
            'average_success_rate': (total_requests - total_failed) / total_requests if total_requests else 0.0
        }
