"""
Retry with bounded backoff for transport-level failures.

Only the fetcher uses this: a failed build or test is deterministic, so
retrying it is pointless.
"""

from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackoffStrategy(ABC):
    """Delay calculation between retry attempts."""

    @abstractmethod
    def get_delay(self, attempt: int) -> float:
        """
        Delay in seconds before the next attempt.

        Args:
            attempt: attempt that just failed (1-indexed)
        """
        ...


@dataclass
class NoBackoff(BackoffStrategy):
    def get_delay(self, attempt: int) -> float:
        return 0.0


@dataclass
class ExponentialBackoff(BackoffStrategy):
    """
    delay = base * (multiplier ^ (attempt - 1)), capped at max_delay,
    with optional +/- jitter.

    Example:
        ExponentialBackoff(base=1.0, multiplier=2.0, max_delay=10.0)
        # Attempt 1: ~1s, Attempt 2: ~2s, Attempt 3: ~4s
    """

    base: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0
    jitter: bool = True
    jitter_factor: float = 0.25

    def get_delay(self, attempt: int) -> float:
        delay = min(self.base * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            spread = delay * self.jitter_factor
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay


@dataclass
class RetryPolicy:
    """
    How many times to try, which errors qualify, how long to wait.

    Example:
        policy = RetryPolicy(
            max_attempts=3,
            backoff=ExponentialBackoff(base=1.0),
            retry_on=(TransportError,),
        )
    """

    max_attempts: int = 3
    backoff: BackoffStrategy = field(default_factory=ExponentialBackoff)
    retry_on: tuple[type[BaseException], ...] = (OSError,)
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def should_retry(self, attempt: int, error: BaseException) -> bool:
        if attempt >= self.max_attempts:
            return False
        return isinstance(error, self.retry_on)

    def get_delay(self, attempt: int) -> float:
        return self.backoff.get_delay(attempt)


class RetryExhausted(Exception):
    """All attempts failed with retryable errors."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    operation_name: str = "operation",
) -> T:
    """
    Run `operation`, retrying errors matched by `policy.retry_on`.

    Non-retryable errors propagate unchanged on the first occurrence.
    When every attempt fails with a retryable error, RetryExhausted is
    raised with the last one attached.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except policy.retry_on as e:
            if not policy.should_retry(attempt, e):
                logger.error("%s: failed after %d attempt(s): %s", operation_name, attempt, e)
                raise RetryExhausted(attempt, e) from e
            delay = policy.get_delay(attempt)
            logger.warning(
                "%s: attempt %d/%d failed with %s: %s, retrying in %.2fs",
                operation_name, attempt, policy.max_attempts, type(e).__name__, e, delay,
            )
            policy.sleep(delay)
