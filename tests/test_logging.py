"""Tests for logging utilities."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

from mail_forwarder.core.config import LoggingSettings
from mail_forwarder.core.logging import JsonFormatter, configure_logging


def test_configure_logging_sets_root_level() -> None:
    """configure_logging should set the root logger level according to settings."""

    settings = LoggingSettings(level="debug", structured=False)
    configure_logging(settings)
    assert logging.getLogger().level == logging.DEBUG


def test_log_file_receives_records(tmp_path: Path) -> None:
    """A configured log file should be appended to even when quiet."""

    log_file = tmp_path / "forwarder.log"
    configure_logging(LoggingSettings(level="INFO", file=log_file, quiet=True))

    logging.getLogger("mail_forwarder.test").info("forwarded message 17")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "forwarded message 17" in log_file.read_text(encoding="utf-8")
    assert not any(
        type(handler) is logging.StreamHandler for handler in logging.getLogger().handlers
    )


def test_quiet_without_file_discards_output() -> None:
    """Quiet mode without a file should leave only a null handler."""

    configure_logging(LoggingSettings(quiet=True))

    handlers = logging.getLogger().handlers
    assert [type(handler) for handler in handlers] == [logging.NullHandler]


def test_httpx_logger_is_kept_at_warning() -> None:
    """Per-request HTTP logs from notification delivery should be muted."""

    configure_logging(LoggingSettings(level="DEBUG"))
    assert logging.getLogger("httpx").level == logging.WARNING


def test_structured_records_are_valid_json() -> None:
    """Quotes and newlines in messages must not break the JSON line."""

    record = logging.LogRecord(
        "mail_forwarder.test",
        logging.WARNING,
        __file__,
        1,
        'subject "%s"\nsecond line',
        ("quoted",),
        None,
    )

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == 'subject "quoted"\nsecond line'
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "mail_forwarder.test"


def test_structured_records_include_exception() -> None:
    """Tracebacks are carried inside the JSON object."""

    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.getLogger("mail_forwarder.test").makeRecord(
            "mail_forwarder.test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
        )

    payload = json.loads(JsonFormatter().format(record))

    assert "ValueError: boom" in payload["exc_info"]


def test_structured_setting_installs_json_formatter(tmp_path: Path) -> None:
    """structured=True should write one JSON object per line to the log file."""

    log_file = tmp_path / "forwarder.log"
    configure_logging(
        LoggingSettings(level="INFO", file=log_file, quiet=True, structured=True)
    )

    logging.getLogger("mail_forwarder.test").info('said "hi"')
    for handler in logging.getLogger().handlers:
        handler.flush()

    (line,) = log_file.read_text(encoding="utf-8").splitlines()
    assert json.loads(line)["message"] == 'said "hi"'
