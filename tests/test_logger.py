"""Test logging setup."""

import logging

import pytest

from sessionq.core.log_store import LogStore
from sessionq.utils.exceptions import PathViolation
from sessionq.utils.logger import SECURITY_LOGGER, RedactingFilter, security_event, setup_logger


@pytest.fixture
def configured(tmp_path, log_root):
    """Engine logging to files, with the log root redacted."""
    main_log = tmp_path / "logs" / "app.log"
    security_log = tmp_path / "logs" / "security.log"
    setup_logger(level="INFO", log_file=str(main_log), rich_console=False,
                 redact=(str(log_root.resolve()),), security_log_file=str(security_log))
    yield main_log, security_log

    for name in ("sessionq", SECURITY_LOGGER):
        for handler in logging.getLogger(name).handlers:
            handler.close()
        logging.getLogger(name).handlers.clear()


def test_redacting_filter():
    """Test paths are replaced in the formatted message."""
    record = logging.LogRecord("sessionq", logging.INFO, __file__, 1,
                               "opened %s/demo/abc.jsonl", ("/srv/logs",), None)

    assert RedactingFilter(["/srv/logs"]).filter(record)
    assert record.getMessage() == "opened <root>/demo/abc.jsonl"


def test_redacting_filter_leaves_other_messages():
    """Test messages without internal paths are untouched."""
    record = logging.LogRecord("sessionq", logging.INFO, __file__, 1, "%d logs", (3,), None)

    RedactingFilter(["/srv/logs"]).filter(record)
    assert record.msg == "%d logs"
    assert record.getMessage() == "3 logs"


def test_security_events_get_their_own_file(configured, log_root):
    """Test rejected paths reach both logs, ordinary records only the main one."""
    main_log, security_log = configured

    LogStore(str(log_root))
    with pytest.raises(PathViolation):
        LogStore(str(log_root)).collection_path("..")
    security_event("Rejected query using forbidden construct: $ENV")

    security = security_log.read_text(encoding="utf-8")
    assert "Rejected collection name '..'" in security
    assert "$ENV" in security
    assert "LogStore initialized" not in security

    main = main_log.read_text(encoding="utf-8")
    assert "LogStore initialized for <root>" in main
    assert "Rejected collection name" in main
    assert str(log_root.resolve()) not in main
