"""
Retry and backoff policy for failed jobs.

Pure functions; the job service applies the decision with a conditional
update so concurrent failures of the same attempt cannot both win.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

DEFAULT_BASE_DELAY_SECONDS = 30
MAX_BACKOFF_SECONDS = 3600
# Retries always land strictly after the failure, even with a zero base
MIN_RETRY_DELAY_SECONDS = 1


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failed attempt."""

    terminal: bool
    next_run_at: datetime | None = None
    backoff_seconds: float = 0


def compute_backoff_seconds(
    attempts: int,
    base: float = DEFAULT_BASE_DELAY_SECONDS,
    cap: float = MAX_BACKOFF_SECONDS,
) -> float:
    """
    Exponential backoff: base * 2^(attempts - 1), capped.

    ``attempts`` counts claims made so far, so the first failure waits
    ``base`` seconds, the second ``2 * base`` and so on.
    """
    exponent = max(attempts, 1) - 1
    # Avoid building huge integers for runaway attempt counts
    if exponent >= 64:
        return float(cap)
    return float(min(base * (2**exponent), cap))


def decide_failure(
    attempts: int,
    max_attempts: int,
    now: datetime,
    base: float = DEFAULT_BASE_DELAY_SECONDS,
    cap: float = MAX_BACKOFF_SECONDS,
) -> RetryDecision:
    """Decide whether a failed attempt is retried or terminal."""
    if attempts >= max_attempts:
        return RetryDecision(terminal=True)

    delay = max(compute_backoff_seconds(attempts, base, cap), MIN_RETRY_DELAY_SECONDS)
    return RetryDecision(
        terminal=False,
        next_run_at=now + timedelta(seconds=delay),
        backoff_seconds=delay,
    )
