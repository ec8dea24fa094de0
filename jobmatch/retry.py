"""
Bounded retry with backoff for fallible zero-argument operations.

The executor knows nothing about what it retries; callers wrap blob
fetches, oracle calls and result upserts with their own policy:

    data = run_with_retry(lambda: storage.get_object(object_key=key), policy=fetch_policy)

Delays grow linearly by default: attempt index x base (500ms, 1000ms, ...).
No delay follows the final attempt.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from jobmatch.errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def linear_backoff_ms(attempt: int, base_delay_ms: int) -> int:
    """Delay before the next try after failed attempt `attempt` (1-indexed)."""
    return max(0, attempt) * max(0, base_delay_ms)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 500
    backoff: Callable[[int, int], int] = linear_backoff_ms
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def delay_ms(self, attempt: int) -> int:
        return self.backoff(attempt, self.base_delay_ms)


def run_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempts = max(1, int(policy.max_attempts))
    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except policy.retry_on as exc:
            last_error = exc
            if attempt == attempts:
                break
            delay_ms = policy.delay_ms(attempt)
            logger.warning(
                "%s attempt %d/%d failed (%s); retrying in %dms",
                label,
                attempt,
                attempts,
                exc,
                delay_ms,
            )
            sleep(delay_ms / 1000.0)
    assert last_error is not None
    raise RetryExhaustedError(attempts=attempts, last_error=last_error) from last_error
