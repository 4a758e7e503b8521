"""Shared pytest configuration for converge."""

import logging
import os

import pytest
import structlog

from converge.config.settings import get_settings


def pytest_configure(config):
    """Keep engine and handler logs quiet unless a test fails."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Tests never see CONVERGE_* variables from the developer's shell."""
    for name in list(os.environ):
        if name.startswith("CONVERGE_"):
            monkeypatch.delenv(name)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
