"""Tests for stalerefs.engine.candidates — candidates and the classifier."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from stalerefs.engine.candidates import (
    Candidate,
    CandidateKind,
    Classification,
    ManagedSource,
    ReferenceSource,
    RunMode,
    classify,
    describe_source,
    is_stale,
)

CUTOFF = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _candidate(name: str, when: datetime) -> Candidate:
    return Candidate(
        identifier=f"refs/heads/{name}",
        display_name=name,
        last_activity=when,
        kind=CandidateKind.LOCAL_BRANCH,
    )


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class TestClassify:
    def test_partitions_by_cutoff(self):
        old = _candidate("old", CUTOFF - timedelta(days=30))
        new = _candidate("new", CUTOFF + timedelta(days=1))
        result = classify([old, new], CUTOFF)
        assert result.stale == (old,)
        assert result.active == (new,)
        assert result.total == 2

    def test_activity_on_cutoff_is_active(self):
        tie = _candidate("tie", CUTOFF)
        assert not is_stale(tie, CUTOFF)
        result = classify([tie], CUTOFF)
        assert result.stale == ()
        assert result.active == (tie,)

    def test_one_microsecond_before_cutoff_is_stale(self):
        just = _candidate("just", CUTOFF - timedelta(microseconds=1))
        assert is_stale(just, CUTOFF)

    def test_preserves_input_order(self):
        items = [
            _candidate("c", CUTOFF - timedelta(days=1)),
            _candidate("a", CUTOFF + timedelta(days=1)),
            _candidate("b", CUTOFF - timedelta(days=2)),
        ]
        result = classify(items, CUTOFF)
        assert [c.display_name for c in result.stale] == ["c", "b"]
        assert [c.display_name for c in result.active] == ["a"]

    def test_empty_input(self):
        assert classify([], CUTOFF) == Classification()

    def test_offsets_compare_as_instants(self):
        # 2023-12-31T20:00-05:00 is 2024-01-01T01:00Z, after the cutoff.
        eastern = timezone(timedelta(hours=-5))
        late = _candidate("late", datetime(2023, 12, 31, 20, 0, tzinfo=eastern))
        assert not is_stale(late, CUTOFF)


# ---------------------------------------------------------------------------
# Candidate value semantics
# ---------------------------------------------------------------------------


def test_candidate_equality_ignores_backend_handle():
    a = Candidate("1", "one", CUTOFF, CandidateKind.REMOTE_PUSH_REQUEST, source_ref="x")
    b = Candidate("1", "one", CUTOFF, CandidateKind.REMOTE_PUSH_REQUEST, source_ref="y")
    assert a == b


def test_run_mode_from_flag():
    assert RunMode.from_flag(False) is RunMode.DRY_RUN
    assert RunMode.from_flag(True) is RunMode.DESTRUCTIVE
    assert not RunMode.DRY_RUN.destructive
    assert RunMode.DESTRUCTIVE.destructive


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class _PlainSource:
    def enumerate(self):
        return iter(())

    def act(self, candidate, destructive):
        return None


class _ManagedPlainSource(_PlainSource):
    description = "managed:test"

    def open(self):
        pass

    def close(self):
        pass


def test_protocol_checks():
    assert isinstance(_PlainSource(), ReferenceSource)
    assert not isinstance(_PlainSource(), ManagedSource)
    assert isinstance(_ManagedPlainSource(), ManagedSource)


def test_describe_source():
    assert describe_source(_PlainSource()) == "_PlainSource"
    assert describe_source(_ManagedPlainSource()) == "managed:test"
