"""Engine core — orchestrates one stale-reference run.

A run moves through a fixed sequence of states::

    CONFIGURED -> ENUMERATING -> CLASSIFYING -> ACTING -> AGGREGATED

No state is skipped. A fatal error while enumerating (bad token, unreadable
repository, pagination that keeps failing) moves the run to ``ABORTED`` and
is re-raised to the caller; no report is produced. Errors while acting are
recorded per candidate and never abort the run.

Usage::

    from stalerefs.engine.core import Engine, parse_cutoff
    from stalerefs.sources.git import LocalBranchSource

    engine = Engine()
    report = engine.run(
        LocalBranchSource("/path/to/repo"),
        parse_cutoff("2024-01-01T00:00:00Z"),
        RunMode.DRY_RUN,
    )
    print(report.summary())
"""

from __future__ import annotations

import contextlib
import enum
import logging
from datetime import datetime, timezone
from typing import Callable, Iterator

from stalerefs import metrics
from stalerefs.engine.candidates import (
    Candidate,
    Classification,
    ManagedSource,
    ReferenceSource,
    RunMode,
    classify,
    describe_source,
)
from stalerefs.engine.errors import FatalError, MalformedCutoff
from stalerefs.engine.executor import ActionExecutor, CancellationToken
from stalerefs.engine.report import Report, ReportBuilder, StalenessReport, SurveyItem

LOG = logging.getLogger("stalerefs.engine.core")

__all__ = [
    "CancellationToken",
    "Engine",
    "EngineState",
    "parse_cutoff",
]


class EngineState(str, enum.Enum):
    CONFIGURED = "configured"
    ENUMERATING = "enumerating"
    CLASSIFYING = "classifying"
    ACTING = "acting"
    AGGREGATED = "aggregated"
    ABORTED = "aborted"


_TRANSITIONS = {
    EngineState.CONFIGURED: {EngineState.ENUMERATING},
    EngineState.ENUMERATING: {EngineState.CLASSIFYING, EngineState.ABORTED},
    EngineState.CLASSIFYING: {EngineState.ACTING, EngineState.AGGREGATED, EngineState.ABORTED},
    EngineState.ACTING: {EngineState.AGGREGATED, EngineState.ABORTED},
    EngineState.AGGREGATED: set(),
    EngineState.ABORTED: set(),
}


def _utc_now() -> datetime:
    """Return current UTC time (extracted for testability)."""
    return datetime.now(timezone.utc)


def parse_cutoff(value: str | datetime) -> datetime:
    """Parse an RFC 3339 timestamp into an offset-aware datetime.

    Accepts a trailing ``Z``. Values without a UTC offset (including plain
    dates) raise :class:`MalformedCutoff`.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedCutoff(f"Not an RFC 3339 timestamp: {value!r}") from exc
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        raise MalformedCutoff(f"Cutoff must include a UTC offset: {value!r}")
    return parsed


class Engine:
    """Wires a source, a cutoff, a mode and an executor into one run.

    Parameters
    ----------
    executor:
        Action executor; defaults to a sequential executor with the default
        retry policy.
    clock:
        Callable returning the current UTC datetime (for testing).
    """

    def __init__(
        self,
        executor: ActionExecutor | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._executor = executor or ActionExecutor()
        self._clock = clock or _utc_now
        self.state = EngineState.CONFIGURED
        self.history: list[EngineState] = [self.state]

    # ---- state machine ----------------------------------------------------

    def _reset(self) -> None:
        self.state = EngineState.CONFIGURED
        self.history = [self.state]

    def _transition(self, new_state: EngineState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid engine transition {self.state.value} -> {new_state.value}"
            )
        LOG.debug("Engine state %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    # ---- public API -------------------------------------------------------

    def run(
        self,
        source: ReferenceSource,
        cutoff: datetime,
        mode: RunMode = RunMode.DRY_RUN,
        cancel: CancellationToken | None = None,
    ) -> Report:
        """Enumerate, classify, act and aggregate.

        Raises
        ------
        FatalError
            When enumeration fails; the run is aborted before classification.
        """
        self._reset()
        cutoff = parse_cutoff(cutoff)
        if not mode.destructive:
            LOG.warning(
                "Running in dry-run mode, which is the default. Nothing will be "
                "deleted or closed; run again with --delete to apply changes."
            )
        label = describe_source(source)
        started_at = self._clock()

        with self._opened(source):
            candidates = self._enumerate(source)

            self._transition(EngineState.CLASSIFYING)
            classification = classify(candidates, cutoff)
            self._log_classification(classification, label)

            self._transition(EngineState.ACTING)
            builder = ReportBuilder(
                cutoff=cutoff,
                mode=mode,
                source=label,
                total_examined=classification.total,
                total_stale=len(classification.stale),
                started_at=started_at,
            )
            result = self._executor.execute(source, classification.stale, mode, cancel)
            builder.extend(result.outcomes)

        self._transition(EngineState.AGGREGATED)
        report = builder.build(complete=not result.cancelled, finished_at=self._clock())
        metrics.mark_run_finished()
        LOG.info("Run finished: %s", report.summary())
        return report

    def survey(self, source: ReferenceSource, cutoff: datetime) -> StalenessReport:
        """Report-only workflow: enumerate and classify, never act."""
        self._reset()
        cutoff = parse_cutoff(cutoff)
        label = describe_source(source)
        with self._opened(source):
            candidates = self._enumerate(source)
        self._transition(EngineState.CLASSIFYING)
        classification = classify(candidates, cutoff)
        self._log_classification(classification, label)
        stale_ids = {candidate.identifier for candidate in classification.stale}
        items = tuple(
            SurveyItem(
                identifier=candidate.identifier,
                display_name=candidate.display_name,
                kind=candidate.kind,
                last_activity=candidate.last_activity,
                stale=candidate.identifier in stale_ids,
                details=dict(candidate.details),
            )
            for candidate in candidates
        )
        self._transition(EngineState.AGGREGATED)
        return StalenessReport(cutoff=cutoff, source=label, items=items)

    # ---- steps ------------------------------------------------------------

    @contextlib.contextmanager
    def _opened(self, source: ReferenceSource) -> Iterator[None]:
        """Hold the source's resource handle for the duration of the run."""
        managed = isinstance(source, ManagedSource)
        self._transition(EngineState.ENUMERATING)
        try:
            if managed:
                source.open()
            try:
                yield
            finally:
                if managed:
                    source.close()
        except FatalError as exc:
            LOG.error("Run aborted: %s", exc)
            self._transition(EngineState.ABORTED)
            raise

    def _enumerate(self, source: ReferenceSource) -> list[Candidate]:
        candidates: list[Candidate] = []
        seen: set[str] = set()
        for candidate in source.enumerate():
            if candidate.identifier in seen:
                LOG.warning(
                    "Duplicate candidate %s (%s) ignored",
                    candidate.identifier,
                    candidate.display_name,
                )
                continue
            seen.add(candidate.identifier)
            candidates.append(candidate)
            metrics.record_examined(candidate.kind.value)
        return candidates

    @staticmethod
    def _log_classification(classification: Classification, label: str) -> None:
        names = "".join(f"\n  - {c.display_name}" for c in classification.stale)
        LOG.info(
            "Found %d eligible of %d total on %s%s",
            len(classification.stale),
            classification.total,
            label,
            ":" + names if names else ".",
        )
