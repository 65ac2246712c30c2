"""Tests for stalerefs.error_report module."""

import datetime as dt
import io
import json

import pytest

from stalerefs.engine.errors import AuthenticationFailed, ConfigError
from stalerefs.error_report import ErrorReport, build_error_report, render_error_report


# ---------------------------------------------------------------------------
# build_error_report
# ---------------------------------------------------------------------------


class TestBuildErrorReport:
    def test_fatal_error(self):
        exc = AuthenticationFailed("HTTP 401: token rejected")
        report = build_error_report(exc, command="push-requests", args={"since": "x"})

        assert report.command == "push-requests"
        assert report.error_type == "AuthenticationFailed"
        assert report.error_message == "HTTP 401: token rejected"
        assert report.fatal is True
        assert report.args == {"since": "x"}
        assert report.exit_code == 2

    def test_non_fatal_error(self):
        report = build_error_report(ValueError("bad"), exit_code=1)
        assert report.fatal is False
        assert report.exit_code == 1
        assert report.command == ""
        assert report.args == {}

    def test_traceback_captured(self):
        try:
            raise ConfigError(["max_pages: 0 is less than the minimum of 1"])
        except ConfigError as exc:
            report = build_error_report(exc, command="branches")
        assert report.traceback is not None
        assert "ConfigError" in report.traceback

    def test_traceback_none_when_no_traceback(self):
        report = build_error_report(RuntimeError("no tb"))
        assert report.traceback is None

    def test_timestamp_is_utc_iso(self):
        report = build_error_report(RuntimeError("ts"))
        parsed = dt.datetime.fromisoformat(report.timestamp)
        assert parsed.tzinfo is not None
        assert report.version


# ---------------------------------------------------------------------------
# Serialisation and rendering
# ---------------------------------------------------------------------------


def _make_report(**kwargs) -> ErrorReport:
    defaults = dict(
        command="branches",
        error_type="RepositoryUnreadable",
        error_message="Not a directory: /nope",
        fatal=True,
        traceback="Traceback (most recent call last):\n  ...\nRepositoryUnreadable: Not a directory",
        timestamp="2026-01-15T08:30:00+00:00",
        version="0.3.0",
        python_version="3.11.4",
        args={"target": "/nope"},
        exit_code=2,
    )
    defaults.update(kwargs)
    return ErrorReport(**defaults)


def test_to_json_roundtrip_fields():
    parsed = json.loads(_make_report().to_json())
    assert parsed["error_type"] == "RepositoryUnreadable"
    assert parsed["fatal"] is True


def test_immutability():
    report = _make_report()
    with pytest.raises(AttributeError):
        report.command = "changed"  # type: ignore[misc]


class TestRenderErrorReport:
    def test_contains_context(self):
        text = render_error_report(_make_report())
        assert text.startswith("=== stalerefs error ===")
        assert "Command:   branches" in text
        assert "RepositoryUnreadable: Not a directory: /nope" in text
        assert "Fatal:     yes" in text
        assert "Exit code: 2" in text
        assert '"target"' in text

    def test_args_omitted_when_empty(self):
        assert "Args:" not in render_error_report(_make_report(args={}))

    def test_traceback_only_when_verbose(self):
        assert "--- traceback ---" not in render_error_report(_make_report())
        assert "--- traceback ---" in render_error_report(_make_report(), verbose=True)

    def test_writes_to_file(self):
        buf = io.StringIO()
        text = render_error_report(_make_report(), file=buf)
        assert buf.getvalue() == text + "\n"
