"""Retry model for outbound GitHub API calls.

Each call runs through a small state machine:

    attempting -> succeeded
               -> attempting     (one immediate retry after a rejected token)
               -> backing_off -> attempting
               -> exhausted      (transient failures used up the budget)
               -> failed         (non-retryable outcome)

Responses are mapped onto an ``Outcome`` by ``classify_status``; the client
decides what to do from the outcome alone.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import StrEnum
from typing import Callable, Mapping, Optional

import httpx


class Outcome(StrEnum):
    """Classification of a single attempt."""

    SUCCESS = "success"
    RETRYABLE = "retryable"
    UNAUTHORIZED = "unauthorized"
    FATAL = "fatal"


class RetryState(StrEnum):
    ATTEMPTING = "attempting"
    BACKING_OFF = "backing_off"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


VALID_TRANSITIONS: dict[str, set[str]] = {
    RetryState.ATTEMPTING: {
        RetryState.ATTEMPTING,
        RetryState.BACKING_OFF,
        RetryState.SUCCEEDED,
        RetryState.EXHAUSTED,
        RetryState.FAILED,
    },
    RetryState.BACKING_OFF: {RetryState.ATTEMPTING},
}


def validate_transition(current: str, target: str) -> None:
    """Enforce the retry state machine.

    Raises ValueError if the transition is not allowed.
    """
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise ValueError(
            f"Invalid retry state transition: {current} -> {target}. "
            f"Allowed transitions from '{current}': {sorted(allowed) or 'none (terminal state)'}"
        )


def _is_rate_limited(headers: httpx.Headers) -> bool:
    return headers.get("x-ratelimit-remaining") == "0" or "retry-after" in headers


def classify_status(status_code: int, headers: Optional[Mapping[str, str]] = None) -> Outcome:
    """Map an HTTP status onto an ``Outcome``.

    GitHub answers both primary and secondary rate limiting with 403 in some
    cases, so a 403 carrying rate-limit headers is retryable rather than an
    authorization failure.
    """
    headers = httpx.Headers(headers or {})

    if 200 <= status_code < 300:
        return Outcome.SUCCESS
    if status_code == 401:
        return Outcome.UNAUTHORIZED
    if status_code == 403:
        return Outcome.RETRYABLE if _is_rate_limited(headers) else Outcome.UNAUTHORIZED
    if status_code == 429 or status_code >= 500:
        return Outcome.RETRYABLE
    return Outcome.FATAL


def retry_after_delay(
    headers: Mapping[str, str],
    now: Optional[datetime] = None,
) -> Optional[float]:
    """Return the server-requested delay in seconds, if the response has one.

    ``Retry-After`` may be delta-seconds or an HTTP-date. Without it, an
    exhausted primary rate limit is waited out until ``x-ratelimit-reset``.
    """
    headers = httpx.Headers(headers)
    if now is None:
        now = datetime.now(timezone.utc)

    retry_after = headers.get("retry-after", "").strip()
    if retry_after:
        if retry_after.isdigit():
            return float(retry_after)
        try:
            when = parsedate_to_datetime(retry_after)
        except (TypeError, ValueError):
            when = None
        if when is not None:
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            return max(0.0, (when - now).total_seconds())

    if headers.get("x-ratelimit-remaining") == "0":
        reset = headers.get("x-ratelimit-reset", "").strip()
        if reset.isdigit():
            return max(0.0, int(reset) - now.timestamp())

    return None


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with multiplicative jitter."""

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    rng: Callable[[], float] = field(default=random.random, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must not be negative")

    def backoff(self, attempt: int, hint: Optional[float] = None) -> float:
        """Delay before the attempt following ``attempt`` (1-based).

        A server-provided hint wins over the computed schedule; both are
        capped at ``max_delay``.
        """
        if hint is not None:
            return min(max(hint, 0.0), self.max_delay)

        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay = min(delay * (0.5 + self.rng()), self.max_delay)
        return delay


class RetryStateMachine:
    """Tracks the state and attempt count of one outbound call."""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy
        self.state = RetryState.ATTEMPTING
        self.attempt = 1
        self.history: list[RetryState] = [RetryState.ATTEMPTING]

    def transition(self, target: RetryState) -> None:
        validate_transition(self.state, target)
        self.state = target
        self.history.append(target)

    def back_off(self) -> bool:
        """Move to ``backing_off``, or to ``exhausted`` once the budget is spent.

        Returns True when another attempt is allowed.
        """
        if self.attempt >= self.policy.max_attempts:
            self.transition(RetryState.EXHAUSTED)
            return False
        self.transition(RetryState.BACKING_OFF)
        return True

    def resume(self) -> None:
        self.transition(RetryState.ATTEMPTING)
        self.attempt += 1
