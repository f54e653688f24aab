"""Tests for the JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys

import pytest
from gate_api.middleware.json_formatter import JSONFormatter, install_json_logging


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(
    name: str = "test",
    level: int = logging.INFO,
    msg: str = "test message",
    args: tuple = (),
) -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=args,
        exc_info=None,
    )


class TestJSONFormatter:
    """Verify structured JSON output from the formatter."""

    def test_basic_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record(name="test.logger")))
        assert data["level"] == "INFO"
        assert data["logger"] == "test.logger"
        assert data["message"] == "test message"
        assert "timestamp" in data

    def test_args_are_interpolated(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record(msg="read %d of %d", args=(2, 3))))
        assert data["message"] == "read 2 of 3"

    def test_single_line_output(self, formatter: JSONFormatter) -> None:
        assert "\n" not in formatter.format(_record(level=logging.WARNING, msg="line one\nline two"))

    def test_request_context_included(self, formatter: JSONFormatter) -> None:
        record = _record(name="api.access", msg="request completed")
        record.request = {  # type: ignore[attr-defined]
            "method": "GET",
            "path": "/api/v1/news",
            "status_code": 402,
            "duration_ms": 1.5,
            "identity": "a@example.com",
        }
        data = json.loads(formatter.format(record))
        assert data["request"]["status_code"] == 402
        assert data["request"]["identity"] == "a@example.com"

    def test_correlation_id_lifted(self, formatter: JSONFormatter) -> None:
        record = _record(name="api.access", msg="request completed")
        record.request = {"path": "/api/v1/news", "correlation_id": "corr-9"}  # type: ignore[attr-defined]
        data = json.loads(formatter.format(record))
        assert data["correlation_id"] == "corr-9"
        assert data["request"]["correlation_id"] == "corr-9"

    def test_no_request_context_omitted(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record()))
        assert "request" not in data
        assert "exc_info" not in data

    def test_exception_included(self, formatter: JSONFormatter) -> None:
        try:
            raise RuntimeError("ledger down")
        except RuntimeError:
            record = _record(level=logging.ERROR, msg="failed")
            record.exc_info = sys.exc_info()
        data = json.loads(formatter.format(record))
        assert "RuntimeError: ledger down" in data["exc_info"]


class TestInstall:
    """Verify the root logger is switched to JSON output."""

    def test_replaces_root_handlers(self) -> None:
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        uvicorn_access = logging.getLogger("uvicorn.access")
        saved_uvicorn_level = uvicorn_access.level
        try:
            install_json_logging(logging.DEBUG)
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.DEBUG
            assert uvicorn_access.level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
            uvicorn_access.setLevel(saved_uvicorn_level)
