"""
Tests for logging setup and the error message table.
"""

import logging

import pytest
from rich.logging import RichHandler

from resmqtt.core.exceptions import ERROR_MESSAGES, error_message
from resmqtt.core.logging import log_error, log_packet, logger, setup_logging


@pytest.fixture
def restore_handlers():
    saved = list(logger.handlers)
    level = logger.level
    yield
    for handler in list(logger.handlers):
        if handler not in saved:
            handler.close()
            logger.removeHandler(handler)
    for handler in saved:
        if handler not in logger.handlers:
            logger.addHandler(handler)
    logger.setLevel(level)


def test_library_logger_is_silent_by_default():
    assert any(isinstance(h, logging.NullHandler) for h in logger.handlers)


def test_setup_logging_adds_rich_console_and_file(tmp_path, restore_handlers):
    log_file = tmp_path / "mqtt.log"
    configured = setup_logging(logging.DEBUG, log_file)
    assert configured is logger
    assert any(isinstance(h, RichHandler) for h in logger.handlers)

    log_packet("PINGREQ", b"\xc0\x00")
    log_error("CONNECTION_FAILED", reason="refused")
    for handler in logger.handlers:
        handler.flush()

    text = log_file.read_text(encoding="utf-8")
    assert ">> PINGREQ: c0 00" in text
    assert "Connection failed: refused" in text


def test_setup_logging_replaces_previous_handlers(tmp_path, restore_handlers):
    setup_logging(logging.INFO)
    setup_logging(logging.INFO)
    assert sum(isinstance(h, RichHandler) for h in logger.handlers) == 1


def test_error_message_formats_details():
    assert (
        error_message("CONNECTION_REFUSED", reason="bad", code=4)
        == "Connection refused: bad (code=4)"
    )
    assert "UNEXPECTED_ERROR" in ERROR_MESSAGES


def test_log_error_uses_the_requested_level(tmp_path, restore_handlers):
    log_file = tmp_path / "mqtt.log"
    setup_logging(logging.DEBUG, log_file)
    log_error(
        "BUFFER_EVICTED", logging.WARNING, capacity=2, entry="PendingPublish"
    )
    for handler in logger.handlers:
        handler.flush()

    text = log_file.read_text(encoding="utf-8")
    assert "WARNING" in text
    assert "Offline buffer full (2), dropped PendingPublish" in text
