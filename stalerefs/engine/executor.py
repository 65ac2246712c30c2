"""Action executor — applies delete/close per stale candidate.

Guarantees:

- Exactly one :class:`ActionOutcome` per candidate that was started.
- A failure on one candidate never stops the others: every exception from
  ``source.act`` is caught and recorded.
- Transient failures (``NetworkError``, ``RateLimited``) are retried in an
  explicit bounded loop driven by a :class:`RetryPolicy`.
- Outcomes come back in enumeration order, also when a bounded worker pool
  is used (``max_workers > 1``).
- Cancellation is checked between candidates, never mid-call.

Usage::

    from stalerefs.engine.executor import ActionExecutor

    executor = ActionExecutor(policy=RetryPolicy(max_attempts=3))
    result = executor.execute(source, classification.stale, RunMode.DRY_RUN)
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Sequence

from stalerefs import metrics
from stalerefs.engine.candidates import Candidate, ReferenceSource, RunMode
from stalerefs.engine.errors import ActionError
from stalerefs.engine.report import ActionOutcome, OutcomeStatus
from stalerefs.engine.retry import RetryPolicy

LOG = logging.getLogger("stalerefs.engine.executor")

ALREADY_APPLIED = "already applied"


class CancellationToken:
    """Caller-owned flag checked by the executor between candidates."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass(frozen=True)
class ExecutionResult:
    outcomes: tuple[ActionOutcome, ...]
    cancelled: bool = False


class ActionExecutor:
    """Runs ``source.act`` for each candidate with failure isolation.

    Parameters
    ----------
    policy:
        Retry budget and backoff schedule for transient failures.
    sleep:
        Callable used to wait between attempts (replaced in tests).
    max_workers:
        Upper bound on concurrent actions. ``1`` (the default) keeps
        destructive operations sequential.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], None] | None = None,
        max_workers: int = 1,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._policy = policy or RetryPolicy()
        self._sleep = sleep or time.sleep
        self._max_workers = max_workers

    # ---- single candidate -------------------------------------------------

    def act_on(
        self, source: ReferenceSource, candidate: Candidate, mode: RunMode
    ) -> ActionOutcome:
        """Act on one candidate, retrying transient failures. Never raises."""
        destructive = mode.destructive
        attempt = 1
        while True:
            try:
                source.act(candidate, destructive)
            except ActionError as exc:
                if exc.already_applied:
                    LOG.info("%s: %s", candidate.display_name, ALREADY_APPLIED)
                    return self._outcome(
                        candidate, OutcomeStatus.SUCCEEDED, attempt, ALREADY_APPLIED
                    )
                if exc.transient and self._policy.should_retry(attempt):
                    delay = self._policy.delay_for(
                        attempt, getattr(exc, "retry_after", None)
                    )
                    LOG.warning(
                        "Transient failure on %s (attempt %d/%d): %s; retrying in %.1fs",
                        candidate.display_name,
                        attempt,
                        self._policy.max_attempts,
                        exc.reason,
                        delay,
                    )
                    metrics.record_retry()
                    self._sleep(delay)
                    attempt += 1
                    continue
                LOG.warning("Failed to act on %s: %s", candidate.display_name, exc.reason)
                return self._outcome(candidate, OutcomeStatus.FAILED, attempt, exc.reason)
            except Exception as exc:
                LOG.exception("Unexpected error acting on %s", candidate.display_name)
                return self._outcome(
                    candidate,
                    OutcomeStatus.FAILED,
                    attempt,
                    f"{type(exc).__name__}: {exc}",
                )
            if not destructive:
                return self._outcome(candidate, OutcomeStatus.SKIPPED, attempt)
            LOG.info("Acted on %s", candidate.display_name)
            return self._outcome(candidate, OutcomeStatus.SUCCEEDED, attempt)

    @staticmethod
    def _outcome(
        candidate: Candidate,
        status: OutcomeStatus,
        attempts: int,
        reason: str | None = None,
    ) -> ActionOutcome:
        metrics.record_outcome(status.value)
        return ActionOutcome(
            candidate_identifier=candidate.identifier,
            display_name=candidate.display_name,
            status=status,
            kind=candidate.kind,
            reason=reason,
            attempts=attempts,
        )

    # ---- many candidates --------------------------------------------------

    def execute(
        self,
        source: ReferenceSource,
        candidates: Sequence[Candidate],
        mode: RunMode,
        cancel: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Act on *candidates* in order and return their outcomes."""
        if self._max_workers == 1 or len(candidates) <= 1:
            return self._execute_sequential(source, candidates, mode, cancel)
        return self._execute_pooled(source, candidates, mode, cancel)

    def _execute_sequential(
        self,
        source: ReferenceSource,
        candidates: Sequence[Candidate],
        mode: RunMode,
        cancel: CancellationToken | None,
    ) -> ExecutionResult:
        outcomes: list[ActionOutcome] = []
        for candidate in candidates:
            if cancel is not None and cancel.cancelled:
                LOG.warning(
                    "Run cancelled; %d of %d candidates not processed",
                    len(candidates) - len(outcomes),
                    len(candidates),
                )
                return ExecutionResult(outcomes=tuple(outcomes), cancelled=True)
            outcomes.append(self.act_on(source, candidate, mode))
        return ExecutionResult(outcomes=tuple(outcomes))

    def _execute_pooled(
        self,
        source: ReferenceSource,
        candidates: Sequence[Candidate],
        mode: RunMode,
        cancel: CancellationToken | None,
    ) -> ExecutionResult:
        # Completed outcomes are re-sorted into enumeration order.
        results: dict[int, ActionOutcome] = {}
        in_flight: dict[Future, int] = {}
        cancelled = False
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            for index, candidate in enumerate(candidates):
                if cancel is not None and cancel.cancelled:
                    cancelled = True
                    break
                if len(in_flight) >= self._max_workers:
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    for future in done:
                        results[in_flight.pop(future)] = future.result()
                    if cancel is not None and cancel.cancelled:
                        cancelled = True
                        break
                in_flight[pool.submit(self.act_on, source, candidate, mode)] = index
            for future in list(in_flight):
                results[in_flight.pop(future)] = future.result()
        if cancelled:
            LOG.warning(
                "Run cancelled; %d of %d candidates not processed",
                len(candidates) - len(results),
                len(candidates),
            )
        ordered = tuple(results[index] for index in sorted(results))
        return ExecutionResult(outcomes=ordered, cancelled=cancelled)
