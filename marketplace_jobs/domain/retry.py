import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal, Optional

from marketplace_jobs.utils.time import utcnow

BackoffType = Literal["exponential", "fixed"]

@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    backoff_type: BackoffType = "exponential"
    delay_seconds: float = 10.0
    max_delay_seconds: float = 3600.0
    jitter: bool = True

def calculate_backoff(attempts: int, policy: RetryPolicy) -> float:
    """
    Seconds to wait before the next attempt.

    Formula (exponential):
        delay = min(base * 2 ^ (attempts - 1), max_delay)
    Fixed backoff always waits `base`. With jitter, up to 10% is added to
    avoid a thundering herd when many jobs fail together.

    Args:
        attempts: Attempts made so far, including the one that just failed.
                  attempts=1 means "we failed once, when should we try again?"
    """
    if attempts < 1:
        attempts = 1

    if policy.backoff_type == "fixed":
        delay = policy.delay_seconds
    else:
        # 2^20 base units is far beyond any max_delay, cap the exponent
        safe_attempts = min(attempts - 1, 20)
        delay = policy.delay_seconds * (2 ** safe_attempts)

    if delay > policy.max_delay_seconds:
        delay = policy.max_delay_seconds

    if policy.jitter:
        delay += random.uniform(0, delay * 0.1)

    return delay

def calculate_next_run(
    attempts: int,
    policy: RetryPolicy,
    now: Optional[datetime] = None,
) -> datetime:
    return (now or utcnow()) + timedelta(seconds=calculate_backoff(attempts, policy))
