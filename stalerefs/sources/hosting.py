"""Remote push-request source — open pull/merge requests on GitHub or GitLab.

The source owns one ``requests.Session`` per run (opened by the engine and
closed when the run returns) and delegates every platform-specific detail
to a small API object:

- :class:`GitHubApi`: REST v3, pagination via the RFC 5988 ``Link`` header,
  close with ``PATCH /pulls/{number}``.
- :class:`GitLabApi`: REST v4, pagination via ``X-Next-Page``, close with
  ``PUT /merge_requests/{iid}``.

HTTP status codes are mapped onto the engine's error taxonomy in
:meth:`RemotePushRequestSource._send`. Page fetches retry transient
failures with the same bounded backoff the executor uses; a page that keeps
failing aborts enumeration, since a partial candidate list would
under-report staleness.
"""

from __future__ import annotations

import logging
import time
import urllib.parse
from datetime import datetime
from typing import Any, Callable, Iterator, Protocol

import requests

from stalerefs.engine.candidates import Candidate, CandidateKind
from stalerefs.engine.errors import (
    ActionError,
    ActionFailed,
    AuthenticationFailed,
    EnumerationFailed,
    Forbidden,
    NetworkError,
    NotFound,
    RateLimited,
)
from stalerefs.engine.retry import RetryPolicy
from stalerefs.sources.providers import ProviderInfo, ProviderKind, detect_provider

LOG = logging.getLogger("stalerefs.sources.hosting")

USER_AGENT = "stalerefs"
DEFAULT_MAX_PAGES = 100
DEFAULT_PER_PAGE = 100
DEFAULT_TIMEOUT_SECONDS = 30


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else None


def _retry_after(resp: requests.Response) -> float | None:
    raw = resp.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _is_rate_limited(resp: requests.Response) -> bool:
    if resp.status_code == 429:
        return True
    return resp.status_code == 403 and (
        resp.headers.get("X-RateLimit-Remaining") == "0"
        or resp.headers.get("RateLimit-Remaining") == "0"
    )


# ---------------------------------------------------------------------------
# Platform APIs
# ---------------------------------------------------------------------------


class HostingApi(Protocol):
    def auth_headers(self, token: str) -> dict[str, str]:
        ...

    def first_page(self) -> tuple[str, dict[str, Any]]:
        ...

    def next_page(self, resp: requests.Response, url: str, params: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
        ...

    def close_request(self, identifier: str) -> tuple[str, str, dict[str, Any]]:
        ...

    def request_url(self, identifier: str) -> str:
        ...

    def is_closed(self, raw: dict[str, Any]) -> bool:
        ...

    def to_candidate(self, raw: dict[str, Any], include_forks: bool) -> Candidate | None:
        ...


class GitHubApi:
    def __init__(self, info: ProviderInfo, per_page: int = DEFAULT_PER_PAGE) -> None:
        self.info = info
        self.per_page = per_page

    @property
    def repo_url(self) -> str:
        return f"{self.info.base_url}/repos/{self.info.owner}/{self.info.repo}"

    def auth_headers(self, token: str) -> dict[str, str]:
        return {
            "Accept": "application/vnd.github.v3+json",
            "Authorization": f"Bearer {token}",
            "User-Agent": USER_AGENT,
        }

    def first_page(self) -> tuple[str, dict[str, Any]]:
        return f"{self.repo_url}/pulls", {"state": "open", "per_page": self.per_page}

    def next_page(self, resp, url, params):
        # The next link already carries every query parameter.
        link = resp.links.get("next", {}).get("url")
        return (link, {}) if link else None

    def close_request(self, identifier: str) -> tuple[str, str, dict[str, Any]]:
        return "PATCH", self.request_url(identifier), {"state": "closed"}

    def request_url(self, identifier: str) -> str:
        return f"{self.repo_url}/pulls/{identifier}"

    def is_closed(self, raw: dict[str, Any]) -> bool:
        return raw.get("state") == "closed"

    def to_candidate(self, raw: dict[str, Any], include_forks: bool) -> Candidate | None:
        number = raw.get("number")
        updated_at = parse_timestamp(raw.get("updated_at"))
        if number is None or updated_at is None:
            LOG.warning("Skipping pull request with missing fields: %r", raw.get("id"))
            return None
        if raw.get("state", "open") != "open":
            return None
        head = raw.get("head") or {}
        base = raw.get("base") or {}
        head_repo = (head.get("repo") or {}).get("id")
        base_repo = (base.get("repo") or {}).get("id")
        if not include_forks and (head_repo is None or head_repo != base_repo):
            LOG.debug("Skipping #%s: opened from a fork", number)
            return None
        return Candidate(
            identifier=str(number),
            display_name=str(raw.get("title") or f"#{number}"),
            last_activity=updated_at,
            kind=CandidateKind.REMOTE_PUSH_REQUEST,
            source_ref=str(number),
            details={
                "url": raw.get("html_url"),
                "source_branch": head.get("ref"),
                "target_branch": base.get("ref"),
                "state": raw.get("state"),
                "author": (raw.get("user") or {}).get("login"),
            },
        )


class GitLabApi:
    def __init__(self, info: ProviderInfo, per_page: int = DEFAULT_PER_PAGE) -> None:
        self.info = info
        self.per_page = per_page

    @property
    def project_url(self) -> str:
        namespace = urllib.parse.quote(f"{self.info.owner}/{self.info.repo}", safe="")
        return f"{self.info.base_url}/api/v4/projects/{namespace}"

    def auth_headers(self, token: str) -> dict[str, str]:
        return {"PRIVATE-TOKEN": token, "User-Agent": USER_AGENT}

    def first_page(self) -> tuple[str, dict[str, Any]]:
        return (
            f"{self.project_url}/merge_requests",
            {"state": "opened", "per_page": self.per_page, "page": 1},
        )

    def next_page(self, resp, url, params):
        raw = (resp.headers.get("X-Next-Page") or "").strip()
        if not raw.isdigit():
            return None
        return url, {**params, "page": int(raw)}

    def close_request(self, identifier: str) -> tuple[str, str, dict[str, Any]]:
        return "PUT", self.request_url(identifier), {"state_event": "close"}

    def request_url(self, identifier: str) -> str:
        return f"{self.project_url}/merge_requests/{identifier}"

    def is_closed(self, raw: dict[str, Any]) -> bool:
        return raw.get("state") in ("closed", "merged")

    def to_candidate(self, raw: dict[str, Any], include_forks: bool) -> Candidate | None:
        iid = raw.get("iid")
        updated_at = parse_timestamp(raw.get("updated_at"))
        if iid is None or updated_at is None:
            LOG.warning("Skipping merge request with missing fields: %r", raw.get("id"))
            return None
        if raw.get("state", "opened") != "opened":
            return None
        if not include_forks and raw.get("source_project_id") != raw.get("target_project_id"):
            LOG.debug("Skipping !%s: opened from a fork", iid)
            return None
        return Candidate(
            identifier=str(iid),
            display_name=str(raw.get("title") or f"!{iid}"),
            last_activity=updated_at,
            kind=CandidateKind.REMOTE_PUSH_REQUEST,
            source_ref=str(iid),
            details={
                "url": raw.get("web_url"),
                "source_branch": raw.get("source_branch"),
                "target_branch": raw.get("target_branch"),
                "state": raw.get("state"),
                "author": (raw.get("author") or {}).get("username"),
            },
        )


def api_for(info: ProviderInfo, per_page: int = DEFAULT_PER_PAGE) -> HostingApi:
    if info.kind is ProviderKind.GITHUB:
        return GitHubApi(info, per_page)
    return GitLabApi(info, per_page)


# ---------------------------------------------------------------------------
# Source
# ---------------------------------------------------------------------------


class RemotePushRequestSource:
    """Reference source over the open push requests of one hosted repository.

    Parameters
    ----------
    url:
        Repository URL (HTTPS, ``git://`` or ``git@host:owner/repo``).
    token:
        Personal access token; read-only for the whole run.
    provider:
        Skip detection and use this provider description.
    session:
        Pre-built ``requests.Session`` (tests pass a fake).
    policy:
        Retry budget for page fetches.
    sleep:
        Wait function between page retries.
    max_pages:
        Safety limit on the number of pages fetched.
    include_forks:
        Also treat requests opened from forks as candidates.
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        provider: ProviderInfo | None = None,
        session: requests.Session | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
        max_pages: int = DEFAULT_MAX_PAGES,
        per_page: int = DEFAULT_PER_PAGE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        include_forks: bool = False,
    ) -> None:
        self.url = url
        self._token = token
        self._provider = provider
        self._session = session
        self._owns_session = session is None
        self._policy = policy or RetryPolicy()
        self._sleep = sleep or time.sleep
        self._max_pages = max_pages
        self._per_page = per_page
        self._timeout = timeout
        self._include_forks = include_forks
        self._api: HostingApi | None = None
        self._consumed = False

    @property
    def description(self) -> str:
        return f"remote:{self.url}"

    # ---- lifecycle --------------------------------------------------------

    def open(self) -> HostingApi:
        if self._api is not None:
            return self._api
        if not self._token:
            raise AuthenticationFailed("An access token is required for remote sources")
        if self._session is None:
            self._session = requests.Session()
        if self._provider is None:
            self._provider = detect_provider(self.url, self._token, self._session)
        self._api = api_for(self._provider, self._per_page)
        self._session.headers.update(self._api.auth_headers(self._token))
        LOG.debug(
            "Using %s API at %s for %s/%s",
            self._provider.kind.value,
            self._provider.base_url,
            self._provider.owner,
            self._provider.repo,
        )
        return self._api

    def close(self) -> None:
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None
        self._api = None

    def _require_api(self) -> HostingApi:
        if self._api is None:
            raise RuntimeError("RemotePushRequestSource is not open")
        return self._api

    # ---- HTTP -------------------------------------------------------------

    def _send(
        self,
        method: str,
        url: str,
        *,
        listing: bool,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> requests.Response:
        """Send one request and map failures onto the error taxonomy."""
        session = self._session
        if session is None:
            raise RuntimeError("RemotePushRequestSource is not open")
        try:
            resp = session.request(
                method, url, params=params or None, json=json, timeout=self._timeout
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise NetworkError(f"{method} {url}: {exc}") from exc
        except requests.RequestException as exc:
            if listing:
                raise EnumerationFailed(f"{method} {url}: {exc}") from exc
            raise ActionFailed(f"{method} {url}: {exc}") from exc

        status = resp.status_code
        if status < 400:
            return resp
        if _is_rate_limited(resp):
            raise RateLimited(f"HTTP {status} from {url}", retry_after=_retry_after(resp))
        if status >= 500:
            raise NetworkError(f"HTTP {status} from {url}")
        if status in (401, 403):
            if listing:
                raise AuthenticationFailed(f"HTTP {status}: token rejected by {url}")
            raise Forbidden(f"HTTP {status}: token lacks scope for {url}")
        if status == 404 and not listing:
            raise NotFound(f"HTTP 404 from {url}")
        if listing:
            raise EnumerationFailed(f"HTTP {status} from {url}")
        raise ActionFailed(f"HTTP {status} from {url}")

    def _fetch_page(self, url: str, params: dict[str, Any]) -> requests.Response:
        attempt = 1
        while True:
            try:
                return self._send("GET", url, listing=True, params=params)
            except (NetworkError, RateLimited) as exc:
                if not self._policy.should_retry(attempt):
                    raise EnumerationFailed(
                        f"Giving up on {url} after {attempt} attempt(s): {exc.reason}"
                    ) from exc
                delay = self._policy.delay_for(attempt, getattr(exc, "retry_after", None))
                LOG.warning(
                    "Page fetch failed (attempt %d/%d): %s; retrying in %.1fs",
                    attempt,
                    self._policy.max_attempts,
                    exc.reason,
                    delay,
                )
                self._sleep(delay)
                attempt += 1

    # ---- contract ---------------------------------------------------------

    def enumerate(self) -> Iterator[Candidate]:
        if self._consumed:
            raise RuntimeError("RemotePushRequestSource can only be enumerated once")
        self._consumed = True
        api = self.open()
        page: tuple[str, dict[str, Any]] | None = api.first_page()
        pages = 0
        while page is not None:
            if pages >= self._max_pages:
                LOG.warning("Stopping after %d pages (safety limit)", self._max_pages)
                return
            url, params = page
            LOG.debug("GET %s %s", url, params)
            resp = self._fetch_page(url, params)
            pages += 1
            try:
                items = resp.json()
            except ValueError as exc:
                raise EnumerationFailed(f"Invalid JSON from {url}") from exc
            if not isinstance(items, list):
                raise EnumerationFailed(f"Expected a JSON list from {url}")
            for raw in items:
                if not isinstance(raw, dict):
                    continue
                candidate = api.to_candidate(raw, self._include_forks)
                if candidate is not None:
                    yield candidate
            page = api.next_page(resp, url, params)

    def act(self, candidate: Candidate, destructive: bool) -> None:
        if not destructive:
            return
        api = self.open()
        identifier = str(candidate.source_ref)
        method, url, payload = api.close_request(identifier)
        try:
            self._send(method, url, listing=False, json=payload)
        except NotFound as exc:
            if self._already_closed(identifier):
                raise NotFound(str(exc), already_applied=True) from exc
            raise
        LOG.info("Closed #%s (%s)", identifier, candidate.display_name)

    def _already_closed(self, identifier: str) -> bool:
        api = self._require_api()
        try:
            resp = self._send("GET", api.request_url(identifier), listing=False)
            raw = resp.json()
        except (ActionError, ValueError):
            return False
        return isinstance(raw, dict) and api.is_closed(raw)
