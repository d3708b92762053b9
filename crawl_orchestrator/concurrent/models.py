"""
Data models for the crawl orchestration engine.
"""

import re
import uuid
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple

from crawl_orchestrator.utils.errors import ConfigurationError
from crawl_orchestrator.utils.proxy_pool import ProxyInfo, PROXY_POLICIES


class WorkerState(Enum):
    """Spider worker state."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class EngineState(Enum):
    """Crawl engine lifecycle state."""
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


HTTP_METHODS = ("GET", "POST", "HEAD", "PUT", "DELETE", "OPTIONS", "PATCH")


@dataclass
class Task:
    """
    A single fetch request travelling through the engine.

    Everything except ``retry_count`` is treated as read-only once the task
    has been enqueued; the counter is only bumped by the worker that owns the
    current attempt.
    """
    url: str
    method: str = "GET"
    referer: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)
    parameters: Dict[str, Any] = field(default_factory=dict)
    charset: Optional[str] = None
    priority: int = 0
    use_proxy: bool = True
    retry_count: int = 0
    task_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.url or not self.url.strip():
            raise ValueError("Task url cannot be empty")
        self.method = self.method.upper()
        if self.method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {self.method}")

    @property
    def attempts(self) -> int:
        """Number of fetch attempts made so far, counting the current one."""
        return self.retry_count + 1

    def increment_retry(self) -> int:
        """Bump the retry counter and return the new value."""
        self.retry_count += 1
        return self.retry_count

    def derive(self, url: str, **overrides: Any) -> "Task":
        """
        Create a follow-up task discovered while processing this one.

        The follow-up inherits headers, cookies, charset and proxy preference,
        points its referer at this task and starts with a fresh retry budget.

        Args:
            url: Target of the follow-up task
            **overrides: Field values replacing the inherited ones

        Returns:
            New task
        """
        values: Dict[str, Any] = {
            "url": url,
            "referer": self.url,
            "headers": dict(self.headers),
            "cookies": dict(self.cookies),
            "charset": self.charset,
            "use_proxy": self.use_proxy,
        }
        values.update(overrides)
        return Task(**values)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Build a task from a start-list entry."""
        known = {
            "url", "method", "referer", "headers", "cookies",
            "parameters", "charset", "priority", "use_proxy", "metadata"
        }
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass(frozen=True)
class EngineConfig:
    """
    Immutable engine configuration.

    Validated once on construction; use ``with_overrides`` to derive a changed copy.
    """
    thread_count: int = 1
    interval: float = 0.0
    retry: int = 3
    loop: bool = False
    proxy: bool = True
    mobile: bool = False
    debug: bool = False
    rule_module: Optional[str] = None
    start_file: Optional[str] = "starts.json"
    proxy_file: Optional[str] = "proxys"
    proxy_policy: str = "round_robin"
    fetch_timeout: float = 30.0

    def __post_init__(self):
        """Normalize and validate configuration after initialization."""
        # A non-positive worker count falls back to a single worker
        if not isinstance(self.thread_count, int) or self.thread_count < 1:
            object.__setattr__(self, "thread_count", 1)
        self.validate()

    def validate(self) -> None:
        """
        Validate configuration parameters.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        errors = []

        if self.thread_count > 1000:
            errors.append("thread_count must not exceed 1000")

        if not (0 <= self.interval <= 3600):
            errors.append("interval must be between 0 and 3600 seconds")

        if not isinstance(self.retry, int) or not (0 <= self.retry <= 100):
            errors.append("retry must be an integer between 0 and 100")

        if self.proxy_policy not in PROXY_POLICIES:
            errors.append(f"proxy_policy must be one of {', '.join(PROXY_POLICIES)}")

        if not (0 < self.fetch_timeout <= 600):
            errors.append("fetch_timeout must be between 0 and 600 seconds")

        if self.rule_module is not None and not self.rule_module.strip():
            errors.append("rule_module cannot be blank")

        if errors:
            raise ConfigurationError(
                "Engine configuration validation failed",
                {"errors": errors}
            )

    def with_overrides(self, **changes: Any) -> "EngineConfig":
        """Return a validated copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FetchProfile:
    """Network profile applied to a single fetch attempt."""
    proxy: Optional[ProxyInfo] = None
    mobile: bool = False


@dataclass
class FetchResponse:
    """Raw response handed from the fetch collaborator to the rule provider."""
    url: str
    status_code: int
    content: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    encoding: Optional[str] = None
    elapsed: float = 0.0

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding or "utf-8", errors="replace")

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400


@dataclass
class ParseResult:
    """Outcome of parsing one response: at most one record plus follow-up tasks."""
    record: Optional[Any] = None
    follow_ups: List[Task] = field(default_factory=list)

    @classmethod
    def coerce(cls, value: Any, task: Task) -> "ParseResult":
        """
        Normalize whatever a rule parser returned.

        Accepts a ParseResult, a ``(record, follow_ups)`` tuple whose second
        item is a list, tuple or None, or a bare record. Follow-ups given as
        plain URLs are derived from ``task``.
        """
        if isinstance(value, ParseResult):
            result = value
        elif (isinstance(value, tuple) and len(value) == 2
              and (value[1] is None or isinstance(value[1], (list, tuple)))):
            result = cls(record=value[0], follow_ups=list(value[1] or []))
        else:
            result = cls(record=value)

        result.follow_ups = [
            item if isinstance(item, Task) else task.derive(str(item))
            for item in result.follow_ups
        ]
        return result


@dataclass(frozen=True)
class RuleDescriptor:
    """Extraction rule bound to the URLs matching ``pattern``."""
    name: str
    pattern: str
    parser: Callable[[FetchResponse, Task], Any]
    _compiled: Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if not self.name:
            raise ConfigurationError("Rule name cannot be empty")
        try:
            object.__setattr__(self, "_compiled", re.compile(self.pattern))
        except re.error as e:
            raise ConfigurationError(
                f"Invalid url pattern for rule '{self.name}'",
                {"pattern": self.pattern, "error": str(e)}
            )

    def matches(self, url: str) -> bool:
        return self._compiled.match(url) is not None

    def parse(self, response: FetchResponse, task: Task) -> ParseResult:
        return ParseResult.coerce(self.parser(response, task), task)


@dataclass(frozen=True)
class EngineSnapshot:
    """Read-only view of engine state handed to monitoring hooks."""
    name: str
    state: EngineState
    loop: bool
    thread_count: int
    started_at: Optional[datetime]
    worker_states: Tuple[Tuple[str, str], ...]
    queue_stats: Dict[str, Any]
    task_stats: Dict[str, int]
    proxy_stats: Dict[str, Any]
    taken_at: datetime = field(default_factory=datetime.now)

    def get_uptime(self) -> float:
        """Seconds since the engine started, 0 when not started."""
        if self.started_at is None:
            return 0.0
        return (self.taken_at - self.started_at).total_seconds()
