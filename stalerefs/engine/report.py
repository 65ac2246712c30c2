"""Run reports — per-candidate outcomes, summary counts, and serialization.

Two report shapes are produced by the engine:

- :class:`Report`: the result of a delete/close run (dry-run or destructive),
  built incrementally by :class:`ReportBuilder` as outcomes arrive.
- :class:`StalenessReport`: the result of the report-only workflow, listing
  every examined candidate and whether it is stale.

Both are immutable once built. ``to_dict()`` yields the stable field set
(``identifier``, ``display_name``, ``status``, summary counts) that
downstream serializers rely on; :func:`write_report` validates the dict
against :data:`REPORT_SCHEMA` before writing JSON.
"""

from __future__ import annotations

import enum
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from jsonschema import Draft202012Validator

from stalerefs.engine.candidates import CandidateKind, RunMode
from stalerefs.engine.errors import StaleRefsError

LOG = logging.getLogger("stalerefs.engine.report")


class OutcomeStatus(str, enum.Enum):
    SKIPPED = "skipped"  # dry-run
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ActionOutcome:
    """Result of acting on one candidate. Created once, never mutated."""

    candidate_identifier: str
    display_name: str
    status: OutcomeStatus
    kind: CandidateKind
    reason: str | None = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.candidate_identifier,
            "display_name": self.display_name,
            "kind": self.kind.value,
            "status": self.status.value,
            "reason": self.reason,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class Report:
    """Outcomes of one run plus run metadata.

    ``complete`` is false when the run was cancelled before every stale
    candidate was acted on.
    """

    cutoff: datetime
    mode: RunMode
    source: str
    outcomes: tuple[ActionOutcome, ...]
    total_examined: int
    total_stale: int
    total_acted_on: int
    total_failed: int
    total_skipped: int
    complete: bool = True
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def has_failures(self) -> bool:
        return self.total_failed > 0

    def summary(self) -> str:
        """One-line human-readable summary for logs and the CLI."""
        text = (
            f"{self.total_stale} stale of {self.total_examined} examined; "
            f"{self.total_acted_on} acted on, {self.total_failed} failed, "
            f"{self.total_skipped} skipped ({self.mode.value})"
        )
        if not self.complete:
            text += " [incomplete: cancelled]"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "cutoff": self.cutoff.isoformat(),
            "mode": self.mode.value,
            "complete": self.complete,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "summary": {
                "examined": self.total_examined,
                "stale": self.total_stale,
                "acted_on": self.total_acted_on,
                "failed": self.total_failed,
                "skipped": self.total_skipped,
            },
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReportBuilder:
    """Accumulates outcomes in arrival order and folds them into a Report.

    Deterministic for a fixed outcome sequence; performs no I/O.
    """

    def __init__(
        self,
        *,
        cutoff: datetime,
        mode: RunMode,
        source: str,
        total_examined: int,
        total_stale: int,
        started_at: datetime | None = None,
    ) -> None:
        self._cutoff = cutoff
        self._mode = mode
        self._source = source
        self._total_examined = total_examined
        self._total_stale = total_stale
        self._started_at = started_at
        self._outcomes: list[ActionOutcome] = []

    def add(self, outcome: ActionOutcome) -> None:
        self._outcomes.append(outcome)

    def extend(self, outcomes: Iterable[ActionOutcome]) -> None:
        for outcome in outcomes:
            self.add(outcome)

    @property
    def outcome_count(self) -> int:
        return len(self._outcomes)

    def build(self, *, complete: bool = True, finished_at: datetime | None = None) -> Report:
        counts = {status: 0 for status in OutcomeStatus}
        for outcome in self._outcomes:
            counts[outcome.status] += 1
        return Report(
            cutoff=self._cutoff,
            mode=self._mode,
            source=self._source,
            outcomes=tuple(self._outcomes),
            total_examined=self._total_examined,
            total_stale=self._total_stale,
            total_acted_on=counts[OutcomeStatus.SUCCEEDED],
            total_failed=counts[OutcomeStatus.FAILED],
            total_skipped=counts[OutcomeStatus.SKIPPED],
            complete=complete,
            started_at=self._started_at,
            finished_at=finished_at or _utc_now(),
        )


# ---------------------------------------------------------------------------
# Report-only workflow
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SurveyItem:
    identifier: str
    display_name: str
    kind: CandidateKind
    last_activity: datetime
    stale: bool
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "identifier": self.identifier,
            "display_name": self.display_name,
            "kind": self.kind.value,
            "last_activity": self.last_activity.isoformat(),
            "stale": self.stale,
        }
        payload.update(self.details)
        return payload


@dataclass(frozen=True)
class StalenessReport:
    """Every examined candidate with its staleness, without acting on any."""

    cutoff: datetime
    source: str
    items: tuple[SurveyItem, ...]

    @property
    def stale_items(self) -> tuple[SurveyItem, ...]:
        return tuple(item for item in self.items if item.stale)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "cutoff": self.cutoff.isoformat(),
            "summary": {
                "examined": len(self.items),
                "stale": len(self.stale_items),
            },
            "items": [item.to_dict() for item in self.items],
        }


# ---------------------------------------------------------------------------
# Schema validation and writing
# ---------------------------------------------------------------------------

REPORT_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["source", "cutoff", "mode", "complete", "summary", "outcomes"],
    "properties": {
        "source": {"type": "string"},
        "cutoff": {"type": "string"},
        "mode": {"enum": [mode.value for mode in RunMode]},
        "complete": {"type": "boolean"},
        "started_at": {"type": ["string", "null"]},
        "finished_at": {"type": ["string", "null"]},
        "summary": {
            "type": "object",
            "required": ["examined", "stale", "acted_on", "failed", "skipped"],
            "additionalProperties": {"type": "integer", "minimum": 0},
        },
        "outcomes": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["identifier", "display_name", "kind", "status"],
                "properties": {
                    "identifier": {"type": "string"},
                    "display_name": {"type": "string"},
                    "kind": {"enum": [kind.value for kind in CandidateKind]},
                    "status": {"enum": [status.value for status in OutcomeStatus]},
                    "reason": {"type": ["string", "null"]},
                    "attempts": {"type": "integer", "minimum": 0},
                },
            },
        },
    },
}


class ReportSchemaError(StaleRefsError):
    """A serialized report does not match :data:`REPORT_SCHEMA`."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Report failed schema validation: " + "; ".join(errors))


def validate_report(payload: dict[str, Any]) -> None:
    validator = Draft202012Validator(REPORT_SCHEMA)
    errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
    if errors:
        raise ReportSchemaError(
            [f"{'/'.join(str(p) for p in err.path) or '<root>'}: {err.message}" for err in errors]
        )


def write_report(
    report: Report | StalenessReport,
    path: str | None,
    *,
    print_output: bool = False,
) -> str:
    """Serialize *report* as JSON, write it to *path* and/or stdout.

    Run reports are validated against :data:`REPORT_SCHEMA` first. Returns
    the JSON text.
    """
    payload = report.to_dict()
    if isinstance(report, Report):
        validate_report(payload)
    text = json.dumps(payload, indent=2, sort_keys=True)
    if path:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.write("\n")
        LOG.info("Wrote report to %s", path)
    if print_output:
        print(text)
    return text
