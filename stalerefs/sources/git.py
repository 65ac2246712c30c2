"""Local branch source — branches of an already-cloned repository.

Talks to the repository through the ``git`` CLI via a :class:`CommandRunner`
so tests can swap in a fake runner. Candidates are the refs under
``refs/heads/``; their last activity is the committer date of the tip
commit. Branches are deleted by full ref name with ``git update-ref -d``,
guarded by the tip commit seen during enumeration.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Iterator, Sequence

from stalerefs.engine.candidates import Candidate, CandidateKind
from stalerefs.engine.errors import (
    ActionFailed,
    RefNotFound,
    RefProtected,
    RepositoryUnreadable,
)

LOG = logging.getLogger("stalerefs.sources.git")

FIELD_SEPARATOR = "\t"
REF_FORMAT = FIELD_SEPARATOR.join(
    [
        "%(refname)",
        "%(refname:lstrip=2)",
        "%(objectname)",
        "%(committerdate:iso-strict)",
        "%(authorname)",
        "%(contents:subject)",
    ]
)


@dataclass
class CommandResult:
    args: Sequence[str] | str
    returncode: int
    stdout: str
    stderr: str


class CommandRunner:
    def run(self, cmd: Sequence[str] | str) -> CommandResult:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
        )
        return CommandResult(
            args=proc.args,
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )


def ensure_tool_available(tool: str) -> bool:
    return shutil.which(tool) is not None


@dataclass(frozen=True)
class LocalRef:
    """Handle needed to delete a branch: full ref name, short name, tip."""

    refname: str
    branch: str
    commit: str


def parse_commit_time(value: str) -> datetime | None:
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed


def parse_ref_line(line: str) -> tuple[LocalRef, datetime | None, str, str] | None:
    # Subjects may contain tabs; split at most five times.
    parts = line.split(FIELD_SEPARATOR, 5)
    if len(parts) != 6:
        return None
    refname, branch, commit, date_str, author, subject = parts
    return LocalRef(refname, branch, commit), parse_commit_time(date_str), author, subject


def parse_divergence(output: str) -> tuple[int, int] | None:
    """Parse ``rev-list --left-right --count`` output into (left, right)."""
    parts = output.split()
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        return None
    return int(parts[0]), int(parts[1])


def is_protected(branch: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(branch, pattern) for pattern in patterns)


class LocalBranchSource:
    """Reference source over ``refs/heads/`` of a local repository.

    Parameters
    ----------
    path:
        Working directory of an existing, writable clone.
    runner:
        Runs git commands; defaults to :class:`CommandRunner`.
    protected:
        Glob patterns of branch names that are never candidates.
    """

    def __init__(
        self,
        path: str,
        runner: CommandRunner | None = None,
        protected: Iterable[str] = (),
    ) -> None:
        self.path = os.path.abspath(path)
        self._runner = runner or CommandRunner()
        self._protected = tuple(protected)
        self._opened = False
        self._head_ref: str | None = None
        self._consumed = False

    @property
    def description(self) -> str:
        return f"local:{self.path}"

    def _git(self, *args: str) -> CommandResult:
        return self._runner.run(["git", "-C", self.path, *args])

    # ---- lifecycle --------------------------------------------------------

    def open(self) -> None:
        if self._opened:
            return
        if not os.path.isdir(self.path):
            raise RepositoryUnreadable(f"Not a directory: {self.path}")
        if not ensure_tool_available("git"):
            raise RepositoryUnreadable("git is required")
        proc = self._git("rev-parse", "--git-dir")
        if proc.returncode != 0:
            raise RepositoryUnreadable(
                f"Cannot open repository at {self.path}: {proc.stderr.strip()}"
            )
        head = self._git("symbolic-ref", "--quiet", "HEAD")
        self._head_ref = head.stdout.strip() if head.returncode == 0 else None
        self._opened = True
        LOG.debug("Opened %s (HEAD=%s)", self.path, self._head_ref)

    def close(self) -> None:
        self._opened = False

    # ---- contract ---------------------------------------------------------

    def enumerate(self) -> Iterator[Candidate]:
        if self._consumed:
            raise RuntimeError("LocalBranchSource can only be enumerated once")
        self._consumed = True
        self.open()
        proc = self._git("for-each-ref", f"--format={REF_FORMAT}", "refs/heads/")
        if proc.returncode != 0:
            raise RepositoryUnreadable(
                f"Cannot list branches in {self.path}: {proc.stderr.strip()}"
            )
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            parsed = parse_ref_line(line)
            if parsed is None:
                LOG.warning("Unparseable ref line: %r", line)
                continue
            ref, commit_time, author, subject = parsed
            if is_protected(ref.branch, self._protected):
                LOG.debug("Skipping protected branch %s", ref.branch)
                continue
            if commit_time is None:
                LOG.warning("Skipping %s: unknown commit date", ref.branch)
                continue
            yield Candidate(
                identifier=ref.refname,
                display_name=ref.branch,
                last_activity=commit_time,
                kind=CandidateKind.LOCAL_BRANCH,
                source_ref=ref,
                details=self._details(ref, author, subject),
            )

    def _details(self, ref: LocalRef, author: str, subject: str) -> dict[str, Any]:
        details: dict[str, Any] = {
            "commit": ref.commit,
            "author": author,
            "message": subject,
        }
        # upstream: commits on HEAD missing from the branch; downstream: the reverse.
        proc = self._git("rev-list", "--left-right", "--count", f"HEAD...{ref.refname}")
        counts = parse_divergence(proc.stdout) if proc.returncode == 0 else None
        if counts is not None:
            details["upstream_diverged"], details["downstream_diverged"] = counts
        return details

    def act(self, candidate: Candidate, destructive: bool) -> None:
        if not destructive:
            return
        ref: LocalRef = candidate.source_ref
        if ref.refname == self._head_ref:
            raise RefProtected(f"{ref.branch} is the checked-out branch")
        if not self._ref_exists(ref.refname):
            # Still-present tip commit means the branch existed here and is gone.
            raise RefNotFound(
                f"{ref.refname} does not exist",
                already_applied=self._commit_exists(ref.commit),
            )
        # Only deletes while the tip is still the enumerated commit.
        proc = self._git("update-ref", "-d", ref.refname, ref.commit)
        if proc.returncode != 0:
            raise ActionFailed(
                proc.stderr.strip() or f"git update-ref -d exited {proc.returncode}"
            )
        LOG.info("Deleted branch %s (was %s)", ref.branch, ref.commit[:12])

    def _ref_exists(self, refname: str) -> bool:
        return self._git("show-ref", "--verify", "--quiet", refname).returncode == 0

    def _commit_exists(self, commit: str) -> bool:
        return self._git("cat-file", "-e", f"{commit}^{{commit}}").returncode == 0
