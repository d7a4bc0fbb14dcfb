"""Tests for logging setup."""

import json
import logging

import pytest
import structlog

from src.shared.logging import session_context, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def test_session_context_binds_and_unbinds():
    with session_context("s1", phase="plan.research"):
        assert structlog.contextvars.get_contextvars() == {
            "session_id": "s1",
            "phase": "plan.research",
        }
    assert "session_id" not in structlog.contextvars.get_contextvars()


def test_file_log_is_json_with_session_id(tmp_path, restore_root_logger):
    log_file = tmp_path / "logs" / "app.log"
    setup_logging(level="INFO", file_path=str(log_file))

    with session_context("abc"):
        logging.getLogger("src.test").warning("Checkpoint save failed for %s", "abc")

    for handler in logging.getLogger().handlers:
        handler.flush()
    record = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert record["session_id"] == "abc"
    assert record["level"] == "warning"
    assert record["event"] == "Checkpoint save failed for abc"


def test_noisy_loggers_quieted(restore_root_logger):
    setup_logging(level="INFO")
    assert logging.getLogger("httpx").level == logging.WARNING
