"""Tests for logging configuration."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator

import pytest

from matlas.logging_setup import JsonFormatter, TextFormatter, setup_logging


def _record(message: str = "Operation finished", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="matlas.executor",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def root_logger() -> Iterator[logging.Logger]:
    root = logging.getLogger()
    level = root.level
    yield root
    for handler in list(root.handlers):
        if getattr(handler, "_matlas", False):
            root.removeHandler(handler)
    root.setLevel(level)


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_extra_fields(self) -> None:
        """Test extras are top-level keys next to the message."""
        line = JsonFormatter().format(_record(op_id="op-001", status="Succeeded"))

        data = json.loads(line)
        assert data["message"] == "Operation finished"
        assert data["level"] == "INFO"
        assert data["logger"] == "matlas.executor"
        assert data["op_id"] == "op-001"
        assert data["status"] == "Succeeded"
        assert data["timestamp"].endswith("Z")

    def test_exception(self) -> None:
        """Test exception tracebacks are included."""
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        data = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]


class TestTextFormatter:
    """Tests for TextFormatter."""

    def test_key_value_suffix(self) -> None:
        """Test extras follow the message as key=value pairs."""
        line = TextFormatter().format(_record(op_id="op-001", kind="Cluster"))

        assert "matlas.executor: Operation finished op_id=op-001 kind=Cluster" in line

    def test_no_extras(self) -> None:
        """Test lines without context end with the message."""
        assert TextFormatter().format(_record()).endswith("Operation finished")


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_default_level(self, root_logger: logging.Logger) -> None:
        """Test the default level keeps info logs off the terminal."""
        setup_logging()

        assert root_logger.level == logging.WARNING

    def test_verbose(self, root_logger: logging.Logger) -> None:
        """Test verbose mode logs everything."""
        setup_logging(verbose=True)

        assert root_logger.level == logging.DEBUG
        assert logging.getLogger("urllib3").level == logging.WARNING

    def test_idempotent(self, root_logger: logging.Logger) -> None:
        """Test repeated setup replaces its own handler."""
        setup_logging()
        setup_logging(json_logs=True)

        ours = [h for h in root_logger.handlers if getattr(h, "_matlas", False)]
        assert len(ours) == 1
        assert isinstance(ours[0].formatter, JsonFormatter)
