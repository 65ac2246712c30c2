"""Prometheus metrics for stalerefs runs.

Metrics live in a registry-local ``CollectorRegistry`` so they do not clash
with external collectors during tests or when the package is imported
multiple times. The CLI can dump them for the node-exporter textfile
collector with :func:`write_metrics`.
"""

from __future__ import annotations

import logging
import time

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, write_to_textfile

LOG = logging.getLogger("stalerefs.metrics")

registry = CollectorRegistry()

candidates_examined_total = Counter(
    "stalerefs_candidates_examined_total",
    "Candidates enumerated from a reference source",
    ["kind"],
    registry=registry,
)
outcomes_total = Counter(
    "stalerefs_outcomes_total",
    "Action outcomes recorded, by status",
    ["status"],
    registry=registry,
)
action_retries_total = Counter(
    "stalerefs_action_retries_total",
    "Transient action failures that were retried",
    registry=registry,
)
last_run_timestamp_seconds = Gauge(
    "stalerefs_last_run_timestamp_seconds",
    "Completion time of the last run as epoch seconds",
    registry=registry,
)


def record_examined(kind: str, count: int = 1) -> None:
    if count:
        candidates_examined_total.labels(kind=kind).inc(count)


def record_outcome(status: str) -> None:
    outcomes_total.labels(status=status).inc()


def record_retry() -> None:
    action_retries_total.inc()


def mark_run_finished() -> None:
    last_run_timestamp_seconds.set(time.time())


def render_metrics() -> bytes:
    return generate_latest(registry)


def write_metrics(path: str) -> None:
    write_to_textfile(path, registry)
    LOG.info("Wrote metrics to %s", path)
