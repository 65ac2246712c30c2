"""Error report for runs that abort with a fatal error.

The CLI builds an :class:`ErrorReport` whenever ``Engine.run`` raises
(authentication failure, unreadable repository, malformed cutoff, ...) and
renders it to stderr instead of writing a run report.

Typical usage inside a CLI handler::

    from stalerefs.error_report import build_error_report, render_error_report

    try:
        report = engine.run(source, cutoff, mode)
    except FatalError as exc:
        error = build_error_report(exc, command="branches", exit_code=2)
        render_error_report(error, file=sys.stderr)
        return error.exit_code
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import platform
import traceback
from typing import Any, Dict, IO, Optional

from stalerefs import __version__
from stalerefs.engine.errors import FatalError


@dataclasses.dataclass(frozen=True)
class ErrorReport:
    """Immutable value object that holds every piece of an error report."""

    command: str
    error_type: str
    error_message: str
    fatal: bool
    traceback: Optional[str]
    timestamp: str
    version: str
    python_version: str
    args: Dict[str, Any]
    exit_code: int

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True, default=str)


def build_error_report(
    exc: BaseException,
    *,
    command: str = "",
    args: Optional[Dict[str, Any]] = None,
    exit_code: int = 2,
) -> ErrorReport:
    """Build an :class:`ErrorReport` from an exception and context metadata.

    Parameters
    ----------
    exc:
        The exception that aborted the run.
    command:
        CLI subcommand that was running (e.g. ``"push-requests"``).
    args:
        Context about the invocation. Never include the access token.
    exit_code:
        Suggested process exit code (defaults to the fatal code ``2``).
    """
    tb: Optional[str] = None
    if exc.__traceback__ is not None:
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    return ErrorReport(
        command=command,
        error_type=type(exc).__qualname__,
        error_message=str(exc),
        fatal=isinstance(exc, FatalError),
        traceback=tb,
        timestamp=dt.datetime.now(dt.timezone.utc).isoformat(),
        version=__version__,
        python_version=platform.python_version(),
        args=args or {},
        exit_code=exit_code,
    )


def render_error_report(
    report: ErrorReport,
    *,
    file: IO[str] | None = None,
    verbose: bool = False,
) -> str:
    """Render a human-readable error report and optionally print it.

    The traceback is only included when *verbose* is true.
    """
    lines = [
        "=== stalerefs error ===",
        f"Command:   {report.command or '(unknown)'}",
        f"Error:     {report.error_type}: {report.error_message}",
        f"Fatal:     {'yes' if report.fatal else 'no'}",
        f"Timestamp: {report.timestamp}",
        f"Version:   {report.version} (Python {report.python_version})",
    ]

    if report.args:
        lines.append(f"Args:      {json.dumps(report.args, sort_keys=True, default=str)}")

    if verbose and report.traceback:
        lines.append("")
        lines.append("--- traceback ---")
        lines.append(report.traceback.rstrip())
        lines.append("--- end traceback ---")

    lines.append(f"Exit code: {report.exit_code}")
    lines.append("=======================")

    text = "\n".join(lines)

    if file is not None:
        print(text, file=file)

    return text
