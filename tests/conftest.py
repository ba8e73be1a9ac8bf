"""Pytest configuration and shared fixtures for portfwd tests."""

from __future__ import annotations

import logging

import pytest

from portfwd.config import reset_config
from portfwd.nat import lifecycle as lifecycle_module
from portfwd.nat.cache import reset_device_cache


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("asyncio", "marks tests as async (deselect with '-m \"not asyncio\"')"),
        ("unit", "marks tests as unit tests"),
        ("network", "marks tests as network tests"),
        ("cli", "marks tests as CLI tests"),
        ("config", "marks tests as configuration tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep tests away from user config files and PORTFWD_* variables."""
    import os

    for name in list(os.environ):
        if name.startswith("PORTFWD_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    yield


@pytest.fixture(autouse=True)
def cleanup_singletons():
    """Reset the process-wide config, device cache and renewal loop."""
    reset_config()
    reset_device_cache()
    lifecycle_module._renewal_loop = None  # noqa: SLF001
    yield
    reset_config()
    reset_device_cache()
    lifecycle_module._renewal_loop = None  # noqa: SLF001


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
        if logger_name == "portfwd":
            logger.propagate = True
            logger.setLevel(logging.NOTSET)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
