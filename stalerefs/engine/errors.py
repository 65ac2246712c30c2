"""Error taxonomy for the stale-reference engine.

Errors fall into three groups:

- **Fatal** (:class:`FatalError`): abort the run. Raised by source
  enumeration, cutoff parsing and configuration loading.
- **Per-item** (:class:`ActionError`): raised by ``ReferenceSource.act`` and
  recorded as a ``Failed`` outcome by the executor; never abort a run.
- **Transient**: the subset of per-item errors with ``transient = True``
  (:class:`NetworkError`, :class:`RateLimited`). The executor retries these
  with backoff before recording them.
"""

from __future__ import annotations


class StaleRefsError(Exception):
    """Base class for every error raised by stalerefs."""


# ---------------------------------------------------------------------------
# Fatal / run-aborting
# ---------------------------------------------------------------------------


class FatalError(StaleRefsError):
    """An error that stops the whole run."""


class AuthenticationFailed(FatalError):
    """The access token is missing, invalid, or lacks read scope."""


class RepositoryUnreadable(FatalError):
    """The local repository directory cannot be opened."""


class MalformedCutoff(FatalError):
    """The cutoff is not an RFC 3339 timestamp with an offset."""


class UnsupportedProvider(FatalError):
    """The repository URL does not belong to a supported hosting platform."""

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Unsupported provider for url: {url}")


class EnumerationFailed(FatalError):
    """Listing candidates failed after exhausting transient retries."""


class ConfigError(FatalError):
    """Configuration file failed validation.

    Attributes:
        errors: Individual validation messages.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        bullet_list = "\n  - ".join(errors)
        super().__init__(
            f"Configuration is invalid ({len(errors)} error(s)):\n  - {bullet_list}"
        )


# ---------------------------------------------------------------------------
# Per-item action errors
# ---------------------------------------------------------------------------


class ActionError(StaleRefsError):
    """Acting on one candidate failed.

    Attributes:
        transient: Whether a retry may succeed.
        already_applied: The source detected that the desired end state
            already holds (ref already gone, request already closed).
    """

    transient = False

    def __init__(self, message: str = "", *, already_applied: bool = False) -> None:
        super().__init__(message)
        self.already_applied = already_applied

    @property
    def reason(self) -> str:
        text = str(self)
        name = type(self).__name__
        return f"{name}: {text}" if text else name


class RefNotFound(ActionError):
    """The local ref no longer exists."""


class RefProtected(ActionError):
    """Deleting the ref would remove the checked-out branch."""


class NotFound(ActionError):
    """The remote push request does not exist."""


class Forbidden(ActionError):
    """The token lacks the scope needed to close the push request."""


class ActionFailed(ActionError):
    """Any other non-transient backend failure."""


class NetworkError(ActionError):
    """Transient I/O failure reaching the hosting API."""

    transient = True


class RateLimited(ActionError):
    """The hosting API refused the request because of rate limiting.

    Attributes:
        retry_after: Seconds the server asked us to wait, if it said.
    """

    transient = True

    def __init__(self, message: str = "", *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after
