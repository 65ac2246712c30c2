"""Reference-source backends and the selector that picks one."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from stalerefs.engine.candidates import ReferenceSource
from stalerefs.sources.git import LocalBranchSource
from stalerefs.sources.hosting import RemotePushRequestSource

if TYPE_CHECKING:
    from stalerefs.config import EngineSettings

__all__ = [
    "LocalBranchSource",
    "RemotePushRequestSource",
    "build_source",
    "is_remote_selector",
]

_URL_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def is_remote_selector(selector: str) -> bool:
    """Remote URLs have a scheme or the ``git@host:`` SSH form; ``file://`` is local."""
    if selector.startswith("file://"):
        return False
    return bool(_URL_RE.match(selector)) or selector.startswith("git@")


def build_source(
    selector: str, token: str | None, settings: "EngineSettings"
) -> ReferenceSource:
    """Construct the source named by *selector* (local path or remote URL)."""
    if is_remote_selector(selector):
        return RemotePushRequestSource(
            selector,
            token or "",
            policy=settings.retry_policy,
            max_pages=settings.max_pages,
            per_page=settings.per_page,
            timeout=settings.request_timeout_seconds,
            include_forks=settings.include_forks,
        )
    path = selector[len("file://"):] if selector.startswith("file://") else selector
    return LocalBranchSource(path, protected=settings.protected_branches)
