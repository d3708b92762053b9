"""
HTTP fetcher backed by requests, with proxy support and user agent rotation.
"""

import random
import threading
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from crawl_orchestrator.concurrent.models import FetchProfile, FetchResponse, Task
from crawl_orchestrator.utils.errors import FetchError
from crawl_orchestrator.utils.logging import get_logger
from .base import BaseFetcher


logger = get_logger(__name__)


class UserAgentRotator:
    """Picks desktop or mobile user agents at random."""

    DESKTOP_USER_AGENTS = [
        'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
        'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
        'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0',
        'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15',
        'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
    ]

    MOBILE_USER_AGENTS = [
        'Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1',
        'Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36',
        'Mozilla/5.0 (Linux; Android 13; SM-S918B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36',
        'Mozilla/5.0 (iPad; CPU OS 17_2 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1'
    ]

    def get_user_agent(self, mobile: bool = False) -> str:
        return random.choice(self.MOBILE_USER_AGENTS if mobile else self.DESKTOP_USER_AGENTS)


class HttpFetcher(BaseFetcher):
    """
    Default fetch collaborator.

    Each worker thread gets its own ``requests.Session``; all sessions are
    closed together by ``close``. Transport-level retries are off by default
    because the engine owns the retry budget.
    """

    def __init__(self, timeout: float = 30.0, transport_retries: int = 0, pool_size: int = 10):
        """
        Initialize HTTP fetcher.

        Args:
            timeout: Request timeout in seconds
            transport_retries: urllib3 level retries per attempt
            pool_size: Connection pool size per session
        """
        self.timeout = timeout
        self.transport_retries = transport_retries
        self.pool_size = pool_size
        self.user_agent_rotator = UserAgentRotator()

        self._local = threading.local()
        self._sessions: List[requests.Session] = []
        self._sessions_lock = threading.Lock()
        self._closed = False

    def _create_session(self) -> requests.Session:
        """Create requests session with the transport retry strategy mounted."""
        session = requests.Session()
        retry_strategy = Retry(
            total=self.transport_retries,
            backoff_factor=0.5,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "OPTIONS"]
        )
        adapter = HTTPAdapter(
            max_retries=retry_strategy,
            pool_connections=self.pool_size,
            pool_maxsize=self.pool_size
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _get_session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._create_session()
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def _prepare_headers(self, task: Task, mobile: bool) -> Dict[str, str]:
        headers = {
            'User-Agent': self.user_agent_rotator.get_user_agent(mobile),
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.5',
            'Connection': 'keep-alive'
        }
        if task.referer:
            headers['Referer'] = task.referer
        # Task headers take precedence
        headers.update(task.headers)
        return headers

    def fetch(self, task: Task, profile: Optional[FetchProfile] = None) -> FetchResponse:
        """
        Fetch the task target.

        Raises:
            FetchError: On transport errors and HTTP error statuses
        """
        if self._closed:
            raise FetchError("Fetcher is closed", {"url": task.url})

        profile = profile or FetchProfile()
        kwargs: Dict[str, Any] = {
            'headers': self._prepare_headers(task, profile.mobile),
            'cookies': task.cookies or None,
            'timeout': self.timeout
        }
        if task.parameters:
            if task.method == "GET":
                kwargs['params'] = task.parameters
            else:
                kwargs['data'] = task.parameters
        if profile.proxy is not None:
            kwargs['proxies'] = {'http': profile.proxy.proxy_url, 'https': profile.proxy.proxy_url}

        logger.debug(f"HTTP request: {task.method} {task.url} (proxy={profile.proxy.address if profile.proxy else None}, mobile={profile.mobile})")

        try:
            response = self._get_session().request(task.method, task.url, **kwargs)
        except requests.exceptions.RequestException as e:
            raise FetchError(
                f"HTTP request failed: {e}",
                {"url": task.url, "method": task.method}
            ) from e

        if response.status_code >= 400:
            raise FetchError(
                f"HTTP {response.status_code}",
                {"url": task.url, "status_code": response.status_code}
            )

        logger.debug(f"HTTP request successful: {task.method} {task.url} (status={response.status_code}, size={len(response.content)})")

        return FetchResponse(
            url=response.url,
            status_code=response.status_code,
            content=response.content,
            headers=dict(response.headers),
            encoding=task.charset or response.encoding,
            elapsed=response.elapsed.total_seconds()
        )

    def close(self) -> None:
        """Close every session opened by the worker threads."""
        with self._sessions_lock:
            sessions = list(self._sessions)
            self._sessions.clear()
            self._closed = True
        for session in sessions:
            session.close()
        logger.debug(f"Closed {len(sessions)} HTTP sessions")
