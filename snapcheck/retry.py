"""
Bounded retry/poll primitive.

The daemon's CLI and HTTP API are eventually consistent, so every check
that observes daemon state goes through poll(): the action is repeated at a
fixed interval until it succeeds or the timeout budget is spent, and the
last result is handed back for the caller to judge.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from snapcheck.errors import PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout budget and fixed poll interval, both in seconds."""

    timeout_seconds: float = 30.0
    interval_seconds: float = 5.0

    def __post_init__(self):
        if self.timeout_seconds < 0:
            raise ValueError(f"timeout_seconds must be >= 0, got {self.timeout_seconds}")
        if self.interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {self.interval_seconds}")

    @property
    def max_attempts(self) -> int:
        """Upper bound on action invocations under this policy."""
        return math.ceil(self.timeout_seconds / self.interval_seconds) + 1


DEFAULT_POLICY = RetryPolicy()


def poll(
    action: Callable[[], T],
    succeeded: Callable[[T], bool],
    policy: RetryPolicy = DEFAULT_POLICY,
    *,
    sleep: Optional[Callable[[float], None]] = None,
    description: Optional[str] = None,
) -> T:
    """
    Invoke action until succeeded(result) or the budget is exhausted.

    Attempts are counted rather than summing slept time, so a zero timeout
    runs the action exactly once and a timeout T with interval I runs it at
    most ceil(T/I) + 1 times even for fractional intervals.

    Args:
        action: Zero-argument callable producing a result
        succeeded: Predicate deciding whether a result ends the polling
        policy: Timeout budget and poll interval
        sleep: Sleep function, defaults to time.sleep
        description: Label used in log messages

    Returns:
        The last result observed, successful or not
    """
    sleep = sleep or time.sleep
    label = description or getattr(action, "__name__", "action")
    result = action()
    attempt = 1

    while not succeeded(result) and attempt < policy.max_attempts:
        elapsed = (attempt - 1) * policy.interval_seconds
        logger.debug(
            f"{label}: attempt {attempt} not yet successful, retrying in {policy.interval_seconds}s",
            extra={"event": "poll_retry", "metadata": {"attempt": attempt, "elapsed": elapsed}},
        )
        sleep(policy.interval_seconds)
        result = action()
        attempt += 1

    if not succeeded(result):
        elapsed = (attempt - 1) * policy.interval_seconds
        logger.warning(
            f"{label}: gave up after {attempt} attempts ({elapsed:g}s)",
            extra={"event": "poll_exhausted", "metadata": {"attempts": attempt}},
        )

    return result


def poll_or_raise(
    action: Callable[[], T],
    succeeded: Callable[[T], bool],
    policy: RetryPolicy = DEFAULT_POLICY,
    *,
    sleep: Optional[Callable[[float], None]] = None,
    description: Optional[str] = None,
) -> T:
    """
    Like poll(), but raise PollTimeoutError if the last result still fails.

    Raises:
        PollTimeoutError: If the action never succeeded within the budget
    """
    result = poll(action, succeeded, policy, sleep=sleep, description=description)
    if not succeeded(result):
        label = description or getattr(action, "__name__", "action")
        raise PollTimeoutError(
            f"{label} did not succeed within {policy.timeout_seconds:g}s",
            last_result=result,
        )
    return result
