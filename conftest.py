"""
Pytest configuration and fixtures for crawl orchestrator tests.
"""

import pytest
from hypothesis import settings, Verbosity
import logging
import os

# Configure Hypothesis for faster test runs
settings.register_profile("fast", max_examples=10, deadline=None, verbosity=Verbosity.quiet)
settings.register_profile("thorough", max_examples=100, deadline=None, verbosity=Verbosity.normal)

settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "fast"))


@pytest.fixture
def work_dir(tmp_path, monkeypatch):
    """Run the test inside an empty directory so default files (starts.json, proxys, .env) are absent."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "property: property-based test")
    config.addinivalue_line("markers", "integration: multi-threaded engine test")

    # Configure logging for tests
    logging.getLogger("crawl_orchestrator").setLevel(logging.WARNING)
    logging.getLogger("hypothesis").setLevel(logging.WARNING)


def pytest_collection_modifyitems(config, items):
    """Mark property-based and integration tests."""
    for item in items:
        if any(marker.name == "hypothesis" for marker in item.iter_markers()) or "properties" in item.fspath.basename:
            item.add_marker(pytest.mark.property)
        if "integration" in item.fspath.basename or "engine" in item.fspath.basename:
            item.add_marker(pytest.mark.integration)
