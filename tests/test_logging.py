"""Tests for structlog configuration."""

import logging

import pytest
import structlog
from insiderguard.config import Settings
from insiderguard.logging import SERVICE_NAME, build_processors, configure_logging, log_level


@pytest.fixture
def restore_structlog():
    saved = structlog.get_config()
    yield
    structlog.configure(**saved)
    structlog.contextvars.clear_contextvars()


def test_log_level_follows_debug():
    assert log_level(Settings(debug=True)) == logging.DEBUG
    assert log_level(Settings(debug=False)) == logging.INFO


def test_console_renderer_in_development():
    processors = build_processors(Settings(environment="development"))

    assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


def test_json_renderer_elsewhere():
    processors = build_processors(Settings(environment="production"))

    assert isinstance(processors[-1], structlog.processors.JSONRenderer)
    assert structlog.contextvars.merge_contextvars in processors


def test_configure_binds_service(restore_structlog):
    configure_logging(Settings(environment="staging"))

    bound = structlog.contextvars.get_contextvars()
    assert bound == {"service": SERVICE_NAME, "environment": "staging"}
