"""Candidates, the reference-source contract, and the staleness classifier.

A *reference source* is anything that can list candidate references and act
on one of them. Two backends ship with stalerefs (see ``stalerefs.sources``):

- ``LocalBranchSource``: branches under ``refs/heads/`` of a local clone.
- ``RemotePushRequestSource``: open pull/merge requests on GitHub or GitLab.

The engine only ever talks to the :class:`ReferenceSource` protocol, so the
executor and orchestrator stay backend-agnostic.

Usage::

    from stalerefs.engine.candidates import classify

    result = classify(source.enumerate(), cutoff)
    for candidate in result.stale:
        print(candidate.display_name)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Iterator, Protocol, runtime_checkable

LOG = logging.getLogger("stalerefs.engine.candidates")


class CandidateKind(str, enum.Enum):
    """Which backend a candidate came from (for display and reports)."""

    LOCAL_BRANCH = "local_branch"
    REMOTE_PUSH_REQUEST = "remote_push_request"


@dataclass(frozen=True)
class Candidate:
    """One reference eligible for staleness evaluation.

    ``source_ref`` is the backend handle the producing source needs in order
    to act on the candidate; it is never serialized into reports. ``details``
    carries optional backend facts (commit, author, url) for the report-only
    workflow.
    """

    identifier: str
    display_name: str
    last_activity: datetime
    kind: CandidateKind
    source_ref: Any = field(default=None, repr=False, compare=False)
    details: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


# ---------------------------------------------------------------------------
# Source protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class ReferenceSource(Protocol):
    """Capability contract shared by every backend."""

    def enumerate(self) -> Iterator[Candidate]:
        """Lazily yield candidates.

        Not restartable: construct a new source to enumerate again. Raises a
        ``FatalError`` subclass when the backend cannot be listed.
        """
        ...

    def act(self, candidate: Candidate, destructive: bool) -> None:
        """Delete or close *candidate*.

        When *destructive* is false nothing is mutated and the call returns
        immediately. Failures are raised as ``ActionError`` subclasses.
        """
        ...


@runtime_checkable
class ManagedSource(Protocol):
    """Sources holding a resource handle scoped to one run."""

    def open(self) -> None:
        ...

    def close(self) -> None:
        ...


def describe_source(source: object) -> str:
    """Human-readable label for a source, used in reports and logs."""
    return str(getattr(source, "description", "") or type(source).__name__)


# ---------------------------------------------------------------------------
# Staleness classifier (pure)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Classification:
    """Partition of a candidate sequence into stale and active."""

    stale: tuple[Candidate, ...] = ()
    active: tuple[Candidate, ...] = ()

    @property
    def total(self) -> int:
        return len(self.stale) + len(self.active)


def is_stale(candidate: Candidate, cutoff: datetime) -> bool:
    """Stale means last activity strictly before the cutoff.

    A candidate whose activity falls exactly on the cutoff is active.
    """
    return candidate.last_activity < cutoff


def classify(candidates: Iterable[Candidate], cutoff: datetime) -> Classification:
    """Split *candidates* by *cutoff*, preserving input order in both halves."""
    stale: list[Candidate] = []
    active: list[Candidate] = []
    for candidate in candidates:
        if is_stale(candidate, cutoff):
            stale.append(candidate)
        else:
            active.append(candidate)
    return Classification(stale=tuple(stale), active=tuple(active))


class RunMode(str, enum.Enum):
    """Whether a run may mutate external state. Dry-run is the default."""

    DRY_RUN = "dry_run"
    DESTRUCTIVE = "destructive"

    @property
    def destructive(self) -> bool:
        return self is RunMode.DESTRUCTIVE

    @classmethod
    def from_flag(cls, delete: bool) -> "RunMode":
        return cls.DESTRUCTIVE if delete else cls.DRY_RUN
