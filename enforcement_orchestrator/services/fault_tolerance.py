"""
Retry and backoff policy.

The retry contract is a small state machine: given how many attempts have
been made and whether the failure is retryable, a RetryPolicy decides to
retry after a computed delay, to stop because the budget is exhausted
(dead letter), or to fail outright.
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..utils.config import RetrySettings


def exponential_backoff(
    base_delay: float,
    exponent: int,
    max_delay: float,
    multiplier: float = 2.0,
    jitter: bool = True,
    rng: Optional[random.Random] = None
) -> float:
    """
    Bounded exponential backoff: ``base * multiplier^exponent * rand(0.5, 1.5)``.

    Args:
        base_delay: Delay for exponent 0, in seconds
        exponent: Number of doublings to apply
        max_delay: Upper bound on the returned delay
        multiplier: Growth factor per step
        jitter: Whether to scale by a random factor in [0.5, 1.5)
        rng: Random source; module random when omitted

    Returns:
        Delay in seconds
    """
    delay = base_delay * (multiplier ** max(0, exponent))
    if jitter:
        delay *= (rng or random).uniform(0.5, 1.5)
    return max(0.0, min(delay, max_delay))


class RetryAction(Enum):
    """What to do after a failed attempt."""
    RETRY = "retry"
    EXHAUSTED = "exhausted"
    FAIL = "fail"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    attempts_made: int
    delay_seconds: float = 0.0

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay=settings.initial_delay,
            max_delay=settings.max_delay,
            exponential_base=settings.exponential_base,
            jitter=settings.jitter
        )

    def compute_delay(self, attempts_made: int, rng: Optional[random.Random] = None) -> float:
        """Delay before the attempt following ``attempts_made`` failed attempts."""
        return exponential_backoff(
            self.initial_delay,
            attempts_made - 1,
            self.max_delay,
            multiplier=self.exponential_base,
            jitter=self.jitter,
            rng=rng
        )

    def decide(
        self,
        attempts_made: int,
        retryable: bool = True,
        rng: Optional[random.Random] = None
    ) -> RetryDecision:
        """
        Decide the next step after a failed attempt.

        Args:
            attempts_made: Attempts made so far, including the one that failed
            retryable: Whether the failure may be retried at all
            rng: Random source for jitter

        Returns:
            RetryDecision with the action and, for retries, the delay
        """
        if not retryable:
            return RetryDecision(RetryAction.FAIL, attempts_made)
        if attempts_made >= self.max_attempts:
            return RetryDecision(RetryAction.EXHAUSTED, attempts_made)
        return RetryDecision(
            RetryAction.RETRY,
            attempts_made,
            delay_seconds=self.compute_delay(attempts_made, rng)
        )
