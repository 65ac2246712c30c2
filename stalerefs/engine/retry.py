"""Bounded exponential backoff.

The policy only computes numbers; callers own the loop so the attempt
counter and the retryable/terminal decision stay visible at the call site::

    attempt = 1
    while True:
        try:
            return do_request()
        except NetworkError:
            if not policy.should_retry(attempt):
                raise
            sleep(policy.delay_for(attempt))
            attempt += 1
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff schedule.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_seconds: Delay after the first failed attempt.
        multiplier: Growth factor applied per further attempt.
        max_seconds: Upper bound for any single delay.
    """

    max_attempts: int = 3
    base_seconds: float = 1.0
    multiplier: float = 2.0
    max_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_seconds < 0 or self.max_seconds < 0:
            raise ValueError("backoff delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after *attempt* failed."""
        return attempt < self.max_attempts

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based).

        A server-provided ``retry_after`` raises the delay but never past
        ``max_seconds``.
        """
        delay = self.base_seconds * (self.multiplier ** (attempt - 1))
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        return min(delay, self.max_seconds)


NO_RETRY = RetryPolicy(max_attempts=1, base_seconds=0.0)
