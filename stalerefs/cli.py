"""Command-line entry point for stalerefs.

Subcommands:

- ``branches DIRECTORY``: delete stale local branches of a clone.
- ``push-requests URL``: close stale pull/merge requests.
- ``report DIRECTORY|URL``: list candidates and their staleness without
  acting.

Every subcommand is a dry run unless ``--delete`` is given. Exit codes:
``0`` success, ``1`` partial failure (some candidates failed, or the run was
interrupted), ``2`` fatal (the run aborted before acting).
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
import sys
from typing import Any, Iterable

from stalerefs import __version__, metrics
from stalerefs.config import RunConfig, load_dotenv_if_enabled, load_settings
from stalerefs.engine.core import Engine
from stalerefs.engine.errors import FatalError, RepositoryUnreadable, UnsupportedProvider
from stalerefs.engine.executor import ActionExecutor, CancellationToken
from stalerefs.engine.report import Report, write_report
from stalerefs.error_report import build_error_report, render_error_report
from stalerefs.sources import build_source, is_remote_selector

LOG = logging.getLogger("stalerefs.cli")

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2


def configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def add_common_args(parser: argparse.ArgumentParser, *, mutating: bool = True) -> None:
    parser.add_argument(
        "-s",
        "--since",
        required=True,
        help="Cutoff in RFC 3339 format; older references are stale",
    )
    parser.add_argument(
        "-t",
        "--token",
        help="Personal access token for GitHub or GitLab (or set TOKEN)",
    )
    if mutating:
        parser.add_argument(
            "-D",
            "--delete",
            action="store_true",
            help="Delete or close stale references. Without it nothing is changed.",
        )
        parser.add_argument("--report", help="Write the JSON run report to this path")
        parser.add_argument(
            "--workers", type=positive_int, help="Concurrent actions (default 1)"
        )
    parser.add_argument("--config", help="YAML settings file")
    parser.add_argument("--metrics-file", help="Write Prometheus metrics to this path")
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress JSON report output to stdout",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stalerefs",
        description="Find and remove stale branches and push requests.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    branches = sub.add_parser(
        "branches",
        help="Delete local branches not updated since the cutoff.",
    )
    branches.add_argument("target", metavar="DIRECTORY", help="Git directory to work from")
    add_common_args(branches)

    push_requests = sub.add_parser(
        "push-requests",
        help="Close pull/merge requests not updated since the cutoff.",
    )
    push_requests.add_argument("target", metavar="URL", help="Repository URL")
    add_common_args(push_requests)

    report = sub.add_parser(
        "report",
        help="Report stale branches or push requests without changing anything.",
    )
    report.add_argument("target", metavar="DIRECTORY|URL", help="Git directory or repository URL")
    report.add_argument("-o", "--output", help="Output path for the JSON report")
    add_common_args(report, mutating=False)
    return parser


def exit_code_for(report: Report) -> int:
    if report.has_failures or not report.complete:
        return EXIT_PARTIAL
    return EXIT_OK


def _safe_args(args: argparse.Namespace) -> dict[str, Any]:
    return {k: v for k, v in vars(args).items() if k != "token"}


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.verbose)
    load_dotenv_if_enabled()

    try:
        settings = load_settings(args.config)
        if getattr(args, "workers", None) is not None:
            settings = dataclasses.replace(settings, max_workers=args.workers)
        config = RunConfig.build(
            args.target,
            args.since,
            delete=getattr(args, "delete", False),
            token=args.token,
        )
        if args.command == "push-requests" and not is_remote_selector(config.source):
            raise UnsupportedProvider(config.source)
        if args.command == "branches" and is_remote_selector(config.source):
            raise RepositoryUnreadable(f"Expected a local directory, got {config.source}")
        source = build_source(config.source, config.token, settings)
        engine = Engine(
            ActionExecutor(settings.retry_policy, max_workers=settings.max_workers)
        )
        if args.command == "report":
            survey = engine.survey(source, config.cutoff)
            write_report(survey, args.output, print_output=not args.quiet)
            _write_metrics(args)
            return EXIT_OK
        cancel = CancellationToken()
        previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.cancel())
        try:
            report = engine.run(source, config.cutoff, config.mode, cancel)
        finally:
            signal.signal(signal.SIGINT, previous)
    except FatalError as exc:
        error = build_error_report(
            exc, command=args.command, args=_safe_args(args), exit_code=EXIT_FATAL
        )
        render_error_report(error, file=sys.stderr, verbose=args.verbose >= 2)
        return error.exit_code

    write_report(report, args.report, print_output=not args.quiet)
    _write_metrics(args)
    print(report.summary(), file=sys.stderr)
    return exit_code_for(report)


def _write_metrics(args: argparse.Namespace) -> None:
    if args.metrics_file:
        metrics.write_metrics(args.metrics_file)


if __name__ == "__main__":
    raise SystemExit(main())
