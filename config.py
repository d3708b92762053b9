"""
Configuration management for the crawl orchestration engine.

Settings come from a JSON file validated against ``CONFIG_SCHEMA`` and are
then overridden by environment variables (optionally read from a ``.env``
file). The result is an immutable ``EngineConfig``.
"""

import json
import os
import threading
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from jsonschema import validate, ValidationError

from crawl_orchestrator.concurrent.models import EngineConfig
from crawl_orchestrator.utils.errors import ConfigurationError
from crawl_orchestrator.utils.logging import get_logger
from crawl_orchestrator.utils.proxy_pool import PROXY_POLICIES


logger = get_logger(__name__)


@dataclass(frozen=True)
class LoggingConfig:
    """Logging settings passed to ``setup_logging``."""
    log_level: str = "INFO"
    log_file: Optional[str] = None
    retention_days: int = 7


# Configuration schema for validation
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "engine": {
            "type": "object",
            "properties": {
                "thread_count": {"type": "integer", "minimum": 1, "maximum": 1000},
                "interval": {"type": "number", "minimum": 0, "maximum": 3600},
                "retry": {"type": "integer", "minimum": 0, "maximum": 100},
                "loop": {"type": "boolean"},
                "proxy": {"type": "boolean"},
                "mobile": {"type": "boolean"},
                "debug": {"type": "boolean"},
                "rule_module": {"type": ["string", "null"], "minLength": 1},
                "start_file": {"type": ["string", "null"]},
                "proxy_file": {"type": ["string", "null"]},
                "proxy_policy": {"type": "string", "enum": list(PROXY_POLICIES)},
                "fetch_timeout": {"type": "number", "exclusiveMinimum": 0, "maximum": 600}
            },
            "additionalProperties": False
        },
        "logging": {
            "type": "object",
            "properties": {
                "log_level": {
                    "type": "string",
                    "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
                },
                "log_file": {"type": ["string", "null"]},
                "retention_days": {"type": "integer", "minimum": 1, "maximum": 365}
            },
            "additionalProperties": False
        }
    },
    "additionalProperties": False
}

# Environment variable -> (EngineConfig field, converter name)
ENV_OVERRIDES = {
    "CRAWL_THREADS": ("thread_count", "int"),
    "CRAWL_RETRY": ("retry", "int"),
    "CRAWL_INTERVAL": ("interval", "float"),
    "CRAWL_LOOP": ("loop", "bool"),
    "CRAWL_PROXY": ("proxy", "bool"),
    "CRAWL_MOBILE": ("mobile", "bool"),
    "CRAWL_DEBUG": ("debug", "bool"),
    "CRAWL_RULE_MODULE": ("rule_module", "str"),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _convert(name: str, raw: str, kind: str) -> Any:
    value = raw.strip()
    try:
        if kind == "int":
            return int(value)
        if kind == "float":
            return float(value)
    except ValueError:
        raise ConfigurationError(f"Environment variable {name} must be a number", {"value": raw})
    if kind == "bool":
        lowered = value.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ConfigurationError(f"Environment variable {name} must be a boolean", {"value": raw})
    return value


def read_env_file(path: Path) -> Dict[str, str]:
    """
    Parse a ``KEY=VALUE`` env file. Blank lines and ``#`` comments are skipped.

    Returns:
        Parsed variables; empty if the file does not exist
    """
    values: Dict[str, str] = {}
    if not path.is_file():
        return values
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#') and '=' in line:
                key, value = line.split('=', 1)
                values[key.strip()] = value.strip().strip('"').strip("'")
    logger.info(f"Loaded {len(values)} environment variables from {path}")
    return values


class ConfigManager:
    """Loads engine and logging configuration from file and environment."""

    def __init__(
        self,
        config_path: str = "crawl.json",
        env_file: Optional[str] = ".env",
        environ: Optional[Mapping[str, str]] = None
    ):
        """
        Initialize configuration manager.

        Args:
            config_path: JSON configuration file
            env_file: Optional ``.env`` file; real environment variables win over it
            environ: Environment to read (defaults to ``os.environ``)
        """
        self.config_path = Path(config_path)
        self.env_file = Path(env_file) if env_file else None
        self._environ = environ
        self._lock = threading.RLock()
        self._data: Optional[Dict[str, Any]] = None

    def validate_config(self, config_data: Dict[str, Any]) -> None:
        """Validate configuration data against schema."""
        try:
            validate(instance=config_data, schema=CONFIG_SCHEMA)
        except ValidationError as e:
            raise ConfigurationError(
                f"Configuration validation failed: {e.message}",
                {"path": list(e.path)}
            ) from e

    def _load_file(self) -> Dict[str, Any]:
        with self._lock:
            if self._data is not None:
                return self._data

            if not self.config_path.exists():
                logger.info(f"Config file {self.config_path} not found, using defaults and environment")
                self._data = {}
                return self._data

            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    config_data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigurationError(
                    f"Config file {self.config_path} is not valid JSON",
                    {"error": str(e)}
                ) from e

            self.validate_config(config_data)
            self._data = config_data
            logger.info(f"Configuration loaded and validated from {self.config_path}")
            return self._data

    def _environment(self) -> Dict[str, str]:
        environment: Dict[str, str] = {}
        if self.env_file is not None:
            environment.update(read_env_file(self.env_file))
        environment.update(self._environ if self._environ is not None else os.environ)
        return environment

    def load_config(self, **overrides: Any) -> EngineConfig:
        """
        Build the engine configuration.

        Precedence, lowest first: defaults, config file, environment, ``overrides``.
        ``None`` overrides are ignored so unset CLI options fall through.

        Raises:
            ConfigurationError: If the file or any override is invalid
        """
        values: Dict[str, Any] = dict(self._load_file().get("engine", {}))

        environment = self._environment()
        for name, (field_name, kind) in ENV_OVERRIDES.items():
            if environment.get(name, "").strip():
                values[field_name] = _convert(name, environment[name], kind)

        known = {f.name for f in fields(EngineConfig)}
        for key, value in overrides.items():
            if key not in known:
                raise ConfigurationError(f"Unknown engine option: {key}")
            if value is not None:
                values[key] = value

        return EngineConfig(**values)

    def load_logging_config(self) -> LoggingConfig:
        """Build the logging configuration from the ``logging`` section."""
        return LoggingConfig(**self._load_file().get("logging", {}))

    def reload(self) -> EngineConfig:
        """Forget the cached file contents and load again."""
        with self._lock:
            self._data = None
        return self.load_config()

    def export_config(self, config: EngineConfig, logging_config: Optional[LoggingConfig] = None) -> Dict[str, Any]:
        """Export configuration as a document accepted by ``CONFIG_SCHEMA``."""
        document = {"engine": config.to_dict()}
        if logging_config is not None:
            document["logging"] = asdict(logging_config)
        return document

    def save_config(self, config: EngineConfig, logging_config: Optional[LoggingConfig] = None) -> None:
        """Validate and write the configuration to ``config_path``."""
        document = self.export_config(config, logging_config)
        self.validate_config(document)
        with open(self.config_path, 'w', encoding='utf-8') as f:
            json.dump(document, f, indent=2, ensure_ascii=False)
        with self._lock:
            self._data = document
        logger.info(f"Configuration saved to {self.config_path}")
