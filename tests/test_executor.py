"""Tests for stalerefs.engine.executor — failure isolation, retries, order."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Any

import pytest

from stalerefs.engine.candidates import Candidate, CandidateKind, RunMode
from stalerefs.engine.errors import (
    ActionFailed,
    Forbidden,
    NetworkError,
    NotFound,
    RateLimited,
)
from stalerefs.engine.executor import ActionExecutor, CancellationToken
from stalerefs.engine.report import OutcomeStatus
from stalerefs.engine.retry import RetryPolicy

WHEN = datetime(2023, 6, 1, tzinfo=timezone.utc)


def _candidates(*names: str) -> list[Candidate]:
    return [
        Candidate(name, name, WHEN, CandidateKind.REMOTE_PUSH_REQUEST, source_ref=name)
        for name in names
    ]


class ScriptedSource:
    """Source whose act() follows a per-identifier script of results.

    Each script entry is either ``None`` (success) or an exception to raise.
    Missing identifiers always succeed.
    """

    def __init__(self, script: dict[str, list[Any]] | None = None) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: list[tuple[str, bool]] = []
        self._lock = threading.Lock()

    def enumerate(self):
        return iter(())

    def act(self, candidate: Candidate, destructive: bool) -> None:
        with self._lock:
            self.calls.append((candidate.identifier, destructive))
            steps = self.script.get(candidate.identifier)
            result = steps.pop(0) if steps else None
        if result is not None:
            raise result


@pytest.fixture
def slept():
    return []


@pytest.fixture
def executor(slept):
    return ActionExecutor(RetryPolicy(max_attempts=3, base_seconds=1.0), sleep=slept.append)


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


class TestIsolation:
    def test_one_failure_does_not_stop_the_rest(self, executor):
        source = ScriptedSource({"b": [ActionFailed("boom")]})
        result = executor.execute(source, _candidates("a", "b", "c", "d"), RunMode.DESTRUCTIVE)

        assert [o.candidate_identifier for o in result.outcomes] == ["a", "b", "c", "d"]
        statuses = [o.status for o in result.outcomes]
        assert statuses.count(OutcomeStatus.SUCCEEDED) == 3
        assert statuses.count(OutcomeStatus.FAILED) == 1
        failed = result.outcomes[1]
        assert failed.reason == "ActionFailed: boom"
        assert not result.cancelled

    def test_unexpected_exception_is_recorded(self, executor):
        source = ScriptedSource({"a": [KeyError("oops")]})
        result = executor.execute(source, _candidates("a", "b"), RunMode.DESTRUCTIVE)
        assert result.outcomes[0].status is OutcomeStatus.FAILED
        assert result.outcomes[0].reason.startswith("KeyError")
        assert result.outcomes[1].status is OutcomeStatus.SUCCEEDED

    def test_forbidden_is_not_retried(self, executor, slept):
        source = ScriptedSource({"a": [Forbidden("no scope")]})
        outcome = executor.act_on(source, _candidates("a")[0], RunMode.DESTRUCTIVE)
        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.attempts == 1
        assert slept == []


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


class TestRetries:
    def test_transient_then_success(self, executor, slept):
        source = ScriptedSource({"a": [NetworkError("reset"), NetworkError("reset"), None]})
        outcome = executor.act_on(source, _candidates("a")[0], RunMode.DESTRUCTIVE)
        assert outcome.status is OutcomeStatus.SUCCEEDED
        assert outcome.attempts == 3
        assert slept == pytest.approx([1.0, 2.0])

    def test_retries_exhausted(self, executor, slept):
        source = ScriptedSource({"a": [NetworkError("down")] * 5})
        outcome = executor.act_on(source, _candidates("a")[0], RunMode.DESTRUCTIVE)
        assert outcome.status is OutcomeStatus.FAILED
        assert outcome.attempts == 3
        assert outcome.reason == "NetworkError: down"
        assert len(source.calls) == 3
        assert len(slept) == 2

    def test_rate_limit_honours_retry_after(self, executor, slept):
        source = ScriptedSource({"a": [RateLimited("slow down", retry_after=5), None]})
        outcome = executor.act_on(source, _candidates("a")[0], RunMode.DESTRUCTIVE)
        assert outcome.status is OutcomeStatus.SUCCEEDED
        assert slept == pytest.approx([5.0])


# ---------------------------------------------------------------------------
# Modes and idempotence
# ---------------------------------------------------------------------------


def test_dry_run_skips_and_passes_flag(executor):
    source = ScriptedSource()
    result = executor.execute(source, _candidates("a", "b"), RunMode.DRY_RUN)
    assert all(o.status is OutcomeStatus.SKIPPED for o in result.outcomes)
    assert source.calls == [("a", False), ("b", False)]


def test_already_applied_counts_as_success(executor):
    source = ScriptedSource({"a": [NotFound("gone", already_applied=True)]})
    outcome = executor.act_on(source, _candidates("a")[0], RunMode.DESTRUCTIVE)
    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert outcome.reason == "already applied"


def test_plain_not_found_is_failure(executor):
    source = ScriptedSource({"a": [NotFound("gone")]})
    outcome = executor.act_on(source, _candidates("a")[0], RunMode.DESTRUCTIVE)
    assert outcome.status is OutcomeStatus.FAILED


def test_outcome_carries_display_name_and_kind(executor):
    outcome = executor.act_on(ScriptedSource(), _candidates("x")[0], RunMode.DESTRUCTIVE)
    assert outcome.display_name == "x"
    assert outcome.kind is CandidateKind.REMOTE_PUSH_REQUEST


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellingSource(ScriptedSource):
    def __init__(self, token: CancellationToken, after: int) -> None:
        super().__init__()
        self.token = token
        self.after = after

    def act(self, candidate, destructive):
        super().act(candidate, destructive)
        if len(self.calls) >= self.after:
            self.token.cancel()


def test_cancellation_stops_between_candidates(executor):
    token = CancellationToken()
    source = CancellingSource(token, after=2)
    result = executor.execute(source, _candidates("a", "b", "c", "d"), RunMode.DESTRUCTIVE, token)
    assert result.cancelled
    assert [o.candidate_identifier for o in result.outcomes] == ["a", "b"]
    assert all(o.status is OutcomeStatus.SUCCEEDED for o in result.outcomes)


def test_cancel_before_start_processes_nothing(executor):
    token = CancellationToken()
    token.cancel()
    result = executor.execute(ScriptedSource(), _candidates("a", "b"), RunMode.DESTRUCTIVE, token)
    assert result.cancelled
    assert result.outcomes == ()


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------


class SlowFirstSource(ScriptedSource):
    def act(self, candidate, destructive):
        if candidate.identifier == "a":
            time.sleep(0.05)
        super().act(candidate, destructive)


def test_pool_preserves_enumeration_order(slept):
    executor = ActionExecutor(RetryPolicy(), sleep=slept.append, max_workers=3)
    source = SlowFirstSource({"c": [ActionFailed("nope")]})
    names = ["a", "b", "c", "d", "e"]
    result = executor.execute(source, _candidates(*names), RunMode.DESTRUCTIVE)
    assert [o.candidate_identifier for o in result.outcomes] == names
    assert result.outcomes[2].status is OutcomeStatus.FAILED
    assert sorted(call[0] for call in source.calls) == names


def test_pool_rejects_zero_workers():
    with pytest.raises(ValueError):
        ActionExecutor(max_workers=0)
