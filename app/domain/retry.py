import random
from datetime import datetime, timedelta
from typing import Optional

from app.utils.clock import utcnow

def compute_backoff(
    attempt: int,
    base_delay_seconds: int = 60,
    max_delay_seconds: int = 3600,
    jitter: bool = True
) -> float:
    """
    Calculates the delay before the next attempt using exponential backoff.

    Formula:
        delay = min(base * 2 ^ (attempt - 1), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    Args:
        attempt: Number of attempts made so far. attempt=1 means "we failed
                 once, when should we try again?" and yields the base delay.
                 Values below 1 are treated as 1.

    Returns:
        float: delay in seconds. Never exceeds max_delay * 1.1.
    """
    if attempt < 1:
        attempt = 1

    # 2^20 * base is far past any sane max_delay
    safe_exponent = min(attempt - 1, 20)

    delay = base_delay_seconds * (2 ** safe_exponent)

    if delay > max_delay_seconds:
        delay = max_delay_seconds

    if jitter:
        delay += random.uniform(0, delay * 0.1)

    return float(delay)

def calculate_next_run(
    attempt: int,
    base_delay_seconds: int = 60,
    max_delay_seconds: int = 3600,
    jitter: bool = True,
    now: Optional[datetime] = None
) -> datetime:
    """Returns the timestamp at which the next attempt becomes runnable."""
    now = now or utcnow()
    delay = compute_backoff(attempt, base_delay_seconds, max_delay_seconds, jitter)
    return now + timedelta(seconds=delay)
