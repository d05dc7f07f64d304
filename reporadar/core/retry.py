"""
Retry Backoff for Failed Jobs.

When a processor fails and the job still has attempts left, the queue puts
the job back in ``queued`` state with ``run_at`` pushed into the future by
the delay computed here.

Backoff Strategy
----------------
Delay grows exponentially with the number of attempts already made:
``initial_delay_ms * (multiplier ^ (attempts - 1))``

    After attempt 1: 1000 ms
    After attempt 2: 2000 ms
    After attempt 3: 4000 ms
    ... capped at max_delay_ms (30 s by default)

Optional jitter adds 0-25% on top of the capped delay. It is off by default
so that retry timing is predictable for callers polling job status.

The functions here are pure: no sleeping, no queue access.
"""

import random
from dataclasses import dataclass

from reporadar.core.exceptions import ValidationError

DEFAULT_INITIAL_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30_000
DEFAULT_MULTIPLIER = 2.0


def calculate_backoff(
    attempts: int,
    initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    multiplier: float = DEFAULT_MULTIPLIER,
    jitter: bool = False,
) -> float:
    """Calculate the delay before the next attempt, in milliseconds.

    Args:
        attempts: Attempts already made (1 after the first failure)
        initial_delay_ms: Delay after the first failure
        max_delay_ms: Upper bound on the delay
        multiplier: Growth factor per attempt
        jitter: Add 0-25% random variation

    Returns:
        Delay in milliseconds
    """
    if attempts < 1:
        raise ValidationError(f"attempts must be >= 1, got {attempts}")

    delay = initial_delay_ms * (multiplier ** (attempts - 1))
    delay = min(delay, max_delay_ms)

    if jitter:
        delay += delay * 0.25 * random.random()

    return delay


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff settings for job retries."""

    initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS
    multiplier: float = DEFAULT_MULTIPLIER
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.initial_delay_ms < 0:
            raise ValidationError("initial_delay_ms must be >= 0")
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValidationError("max_delay_ms must be >= initial_delay_ms")
        if self.multiplier < 1.0:
            raise ValidationError("multiplier must be >= 1.0")

    def delay_ms(self, attempts: int) -> float:
        """Delay in milliseconds after ``attempts`` attempts have failed."""
        return calculate_backoff(
            attempts,
            self.initial_delay_ms,
            self.max_delay_ms,
            self.multiplier,
            self.jitter,
        )

    def delay_seconds(self, attempts: int) -> float:
        """Delay in seconds after ``attempts`` attempts have failed."""
        return self.delay_ms(attempts) / 1000.0
