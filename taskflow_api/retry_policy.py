"""
Retry policy for failed job attempts.

Pure functions only: the job queue asks `decide()` after every failed
attempt whether the job gets another delivery and how long to wait first.
"""

import enum
from dataclasses import dataclass
from typing import Optional


class BackoffType(str, enum.Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class BackoffOptions:
    type: BackoffType = BackoffType.EXPONENTIAL
    delay: float = 2.0
    multiplier: float = 2.0
    max_delay: Optional[float] = None

    def __post_init__(self):
        if self.delay < 0:
            raise ValueError("backoff delay must be >= 0")
        if self.multiplier < 1:
            raise ValueError("backoff multiplier must be >= 1")
        if self.max_delay is not None and self.max_delay < 0:
            raise ValueError("backoff max_delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before the attempt that follows failed attempt `attempt`."""
        if self.type is BackoffType.FIXED:
            delay = self.delay
        else:
            delay = self.delay * self.multiplier ** (attempt - 1)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0


DEFAULT_BACKOFF = BackoffOptions()


def decide(attempt: int, max_attempts: int, backoff: BackoffOptions = DEFAULT_BACKOFF) -> RetryDecision:
    """
    attempt is the 1-based number of the attempt that just failed, which
    equals the number of failures recorded so far.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    if attempt >= max_attempts:
        return RetryDecision(retry=False)
    return RetryDecision(retry=True, delay=backoff.delay_for(attempt))
