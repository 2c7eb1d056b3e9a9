"""
Retry policy for mutating Graph calls.

Rate limiting (429) and server errors (5xx) are retried with exponential
backoff plus 0-30% jitter, up to MAX_ATTEMPTS attempts in total. Anything
else is raised immediately with the attempt count attached.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import CalendarError


logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
BASE_DELAY_MS = 1000
MAX_DELAY_MS = 10000
JITTER_RATIO = 0.3

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay_ms(attempt: int, rng: Callable[[], float] = random.random) -> float:
    """
    Delay before retry number `attempt` (1-indexed), in milliseconds.

    The exponential part is capped at MAX_DELAY_MS; jitter adds up to
    JITTER_RATIO of it on top.

    Example:
        backoff_delay_ms(1)  # 1000..1300
        backoff_delay_ms(2)  # 2000..2600
    """
    if attempt < 1:
        raise ValueError("attempt is 1-indexed")
    exponential = min(MAX_DELAY_MS, BASE_DELAY_MS * 2 ** (attempt - 1))
    return exponential + rng() * JITTER_RATIO * exponential


class RetryPolicy:
    """
    Runs one logical Graph operation under the transient-error budget.

    sleep and rng are injectable so tests can observe delays without waiting.
    """

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        sleep: Optional[Sleep] = None,
        rng: Callable[[], float] = random.random
    ):
        self.max_attempts = max_attempts
        self.sleep = sleep or asyncio.sleep
        self.rng = rng

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str,
        recover: Optional[Callable[[CalendarError], Awaitable[bool]]] = None
    ) -> T:
        """
        Call operation until it succeeds, fails fatally or the budget runs out.

        Args:
            operation: Zero-argument coroutine function issuing the request
            name: Operation name for logs
            recover: Optional hook for non-transient errors. Returning True
                re-sends immediately; such re-sends do not count against
                the transient budget.

        Raises:
            CalendarError: The last error, with attempts set to the number of sends
        """
        sends = 0
        recovered = 0
        while True:
            sends += 1
            try:
                return await operation()
            except CalendarError as e:
                e.attempts = sends
                if not e.retryable:
                    if recover is not None and await recover(e):
                        recovered += 1
                        continue
                    raise
                counted = sends - recovered
                if counted >= self.max_attempts:
                    raise
                delay = backoff_delay_ms(counted, self.rng)
                logger.warning(
                    "%s: %s (status %s), retrying in %dms (attempt %d of %d)",
                    name, e.kind.value, e.status_code, round(delay), counted, self.max_attempts
                )
                await self.sleep(delay / 1000.0)
