"""Hosting-platform detection for repository URLs.

Maps an HTTP(S), ``git://`` or ``git@host:owner/repo`` URL to the API base
URL, owner and repository name of a GitHub or GitLab instance.

Resolution order:

1. ``github.com`` / ``gitlab.com`` are known.
2. ``GITHUB_BASE_URL`` / ``GITLAB_BASE_URL`` name a self-hosted API.
3. Otherwise the host is probed: ``/zen`` only exists on GitHub,
   ``/api/v4/version`` only on GitLab.
"""

from __future__ import annotations

import enum
import logging
import os
import urllib.parse
from dataclasses import dataclass

import requests

from stalerefs.engine.errors import UnsupportedProvider

LOG = logging.getLogger("stalerefs.sources.providers")

PROBE_TIMEOUT_SECONDS = 10


class ProviderKind(str, enum.Enum):
    GITHUB = "github"
    GITLAB = "gitlab"


@dataclass(frozen=True)
class ProviderInfo:
    kind: ProviderKind
    base_url: str
    owner: str
    repo: str


def scrub_git_url(url: str) -> str:
    """Turn ``git@host:owner/repo`` into a parseable ``git://host/owner/repo``."""
    if url.startswith("git@"):
        return url.replace(":", "/", 1).replace("git@", "git://", 1)
    return url


def split_owner_repo(path: str) -> tuple[str, str] | None:
    segments = [segment for segment in path.split("/") if segment]
    if len(segments) < 2:
        return None
    owner, repo = segments[0], segments[1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    if not repo:
        return None
    return owner, repo


def _probe(session: requests.Session, url: str, headers: dict[str, str]) -> bool:
    try:
        resp = session.get(url, headers=headers, timeout=PROBE_TIMEOUT_SECONDS)
    except requests.RequestException as exc:
        LOG.debug("Probe %s failed: %s", url, exc)
        return False
    return 200 <= resp.status_code < 300


def detect_provider(
    url: str,
    token: str,
    session: requests.Session | None = None,
) -> ProviderInfo:
    """Resolve *url* to a :class:`ProviderInfo` or raise ``UnsupportedProvider``."""
    parsed = urllib.parse.urlparse(scrub_git_url(url.strip()))
    hostname = (parsed.hostname or "").lower()
    owner_repo = split_owner_repo(parsed.path)
    if not hostname or owner_repo is None:
        raise UnsupportedProvider(url)
    owner, repo = owner_repo

    if hostname in ("github.com", "www.github.com"):
        return ProviderInfo(ProviderKind.GITHUB, "https://api.github.com", owner, repo)
    if hostname in ("gitlab.com", "www.gitlab.com"):
        return ProviderInfo(ProviderKind.GITLAB, "https://gitlab.com", owner, repo)

    github_base = os.getenv("GITHUB_BASE_URL")
    if github_base:
        return ProviderInfo(ProviderKind.GITHUB, github_base.rstrip("/"), owner, repo)
    gitlab_base = os.getenv("GITLAB_BASE_URL")
    if gitlab_base:
        return ProviderInfo(ProviderKind.GITLAB, gitlab_base.rstrip("/"), owner, repo)

    candidate = f"https://{hostname}"
    session = session or requests.Session()
    if _probe(
        session,
        f"{candidate}/zen",
        {
            "Accept": "application/vnd.github.v3+json",
            "Authorization": f"Bearer {token}",
        },
    ):
        return ProviderInfo(ProviderKind.GITHUB, candidate, owner, repo)
    if _probe(session, f"{candidate}/api/v4/version", {"PRIVATE-TOKEN": token}):
        return ProviderInfo(ProviderKind.GITLAB, candidate, owner, repo)
    raise UnsupportedProvider(url)
