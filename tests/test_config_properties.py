"""
Property-based tests for configuration loading.

Defaults, JSON file, environment and CLI overrides are layered in that order.
"""

import json
import tempfile
from pathlib import Path

import pytest
from hypothesis import given, strategies as st

from config import ConfigManager, LoggingConfig, read_env_file
from crawl_orchestrator.concurrent.models import EngineConfig
from crawl_orchestrator.utils.errors import ConfigurationError


@st.composite
def engine_section_strategy(draw):
    """Generate a valid ``engine`` configuration section."""
    return {
        "thread_count": draw(st.integers(min_value=1, max_value=64)),
        "interval": draw(st.sampled_from([0, 0.5, 1.0, 2.5, 10])),
        "retry": draw(st.integers(min_value=0, max_value=100)),
        "loop": draw(st.booleans()),
        "proxy": draw(st.booleans()),
        "mobile": draw(st.booleans()),
        "proxy_policy": draw(st.sampled_from(["round_robin", "random", "disabled"])),
    }


def write_config(directory, document):
    path = Path(directory) / "crawl.json"
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


class TestConfigFileProperties:
    """Values in the JSON file reach the engine configuration unchanged."""

    @given(section=engine_section_strategy())
    def test_file_values_loaded(self, section):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = write_config(temp_dir, {"engine": section})
            config = ConfigManager(str(path), env_file=None, environ={}).load_config()

        for key, value in section.items():
            assert getattr(config, key) == value

    @given(section=engine_section_strategy())
    def test_save_then_load_is_consistent(self, section):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "crawl.json"
            manager = ConfigManager(str(path), env_file=None, environ={})
            original = EngineConfig(**section)
            manager.save_config(original, LoggingConfig(log_level="DEBUG"))

            reloaded = ConfigManager(str(path), env_file=None, environ={})
            assert reloaded.load_config() == original
            assert reloaded.load_logging_config().log_level == "DEBUG"

    def test_missing_file_uses_defaults(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "absent.json"), env_file=None, environ={})
        assert manager.load_config() == EngineConfig()
        assert manager.load_logging_config() == LoggingConfig()

    @pytest.mark.parametrize("document", [
        {"engine": {"thread_count": 0}},
        {"engine": {"retry": "three"}},
        {"engine": {"proxy_policy": "sticky"}},
        {"engine": {"unknown": 1}},
        {"logging": {"log_level": "LOUD"}},
        {"extra": {}},
    ])
    def test_schema_violations_rejected(self, tmp_path, document):
        path = write_config(tmp_path, document)
        with pytest.raises(ConfigurationError):
            ConfigManager(str(path), env_file=None, environ={}).load_config()

    def test_invalid_json_rejected(self, tmp_path):
        path = tmp_path / "crawl.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigurationError) as exc_info:
            ConfigManager(str(path), env_file=None, environ={}).load_config()
        assert "not valid JSON" in str(exc_info.value)

    def test_reload_picks_up_changes(self, tmp_path):
        path = write_config(tmp_path, {"engine": {"retry": 1}})
        manager = ConfigManager(str(path), env_file=None, environ={})
        assert manager.load_config().retry == 1

        write_config(tmp_path, {"engine": {"retry": 7}})
        assert manager.load_config().retry == 1
        assert manager.reload().retry == 7


class TestEnvironmentOverrides:
    """CRAWL_* variables override the file."""

    @given(threads=st.integers(min_value=1, max_value=64), retry=st.integers(min_value=0, max_value=100))
    def test_numeric_overrides(self, threads, retry):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = write_config(temp_dir, {"engine": {"thread_count": 3, "retry": 5}})
            environ = {"CRAWL_THREADS": str(threads), "CRAWL_RETRY": f" {retry} "}
            config = ConfigManager(str(path), env_file=None, environ=environ).load_config()

        assert config.thread_count == threads
        assert config.retry == retry

    @pytest.mark.parametrize("raw,expected", [
        ("1", True), ("true", True), ("YES", True), ("on", True),
        ("0", False), ("False", False), ("no", False), ("off", False),
    ])
    def test_boolean_overrides(self, tmp_path, raw, expected):
        manager = ConfigManager(str(tmp_path / "crawl.json"), env_file=None, environ={"CRAWL_LOOP": raw})
        assert manager.load_config().loop is expected

    @pytest.mark.parametrize("environ", [
        {"CRAWL_THREADS": "many"},
        {"CRAWL_INTERVAL": "soon"},
        {"CRAWL_PROXY": "maybe"},
    ])
    def test_bad_values_rejected(self, tmp_path, environ):
        manager = ConfigManager(str(tmp_path / "crawl.json"), env_file=None, environ=environ)
        with pytest.raises(ConfigurationError):
            manager.load_config()

    def test_blank_variables_ignored(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "crawl.json"), env_file=None, environ={"CRAWL_RETRY": "  "})
        assert manager.load_config().retry == EngineConfig().retry

    def test_env_file_below_real_environment(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "# local settings\n"
            "CRAWL_RETRY=9\n"
            "CRAWL_RULE_MODULE='site_rules'\n"
            "CRAWL_THREADS=4\n",
            encoding="utf-8"
        )
        manager = ConfigManager(
            str(tmp_path / "crawl.json"),
            env_file=str(env_file),
            environ={"CRAWL_THREADS": "2"}
        )

        config = manager.load_config()

        assert config.retry == 9
        assert config.rule_module == "site_rules"
        assert config.thread_count == 2

    def test_read_env_file_missing(self, tmp_path):
        assert read_env_file(tmp_path / ".env") == {}


class TestCommandLineOverrides:
    """Explicit overrides win over everything else."""

    @given(retry=st.integers(min_value=0, max_value=100))
    def test_overrides_win(self, retry):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = write_config(temp_dir, {"engine": {"retry": 1, "loop": True}})
            manager = ConfigManager(str(path), env_file=None, environ={"CRAWL_RETRY": "2"})
            config = manager.load_config(retry=retry, loop=None)

        assert config.retry == retry
        assert config.loop is True

    def test_unknown_override_rejected(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "crawl.json"), env_file=None, environ={})
        with pytest.raises(ConfigurationError):
            manager.load_config(threads=4)

    def test_invalid_override_rejected(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "crawl.json"), env_file=None, environ={})
        with pytest.raises(ConfigurationError):
            manager.load_config(retry=500)
