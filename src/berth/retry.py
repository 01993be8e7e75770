"""Bounded retry strategies and the readiness poll.

Cluster backends create workloads asynchronously, so ``create`` waits for
the pod to report ready. That wait is an explicit bounded poll: a strategy
decides how many attempts and how long to sleep between them, and the
budget is always a parameter.

Example:
    >>> from berth.retry import ConstantBackoff, poll_until
    >>>
    >>> strategy = ConstantBackoff(max_retries=30, delay=1.0)
    >>> pod = poll_until(lambda: fetch_ready_pod(), strategy=strategy, describe="pod t1 ready")
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from berth.core.errors import Timeout
from berth.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before the next attempt (``attempt`` is zero-based)."""
        ...

    @abstractmethod
    def should_retry(self, attempt: int) -> bool:
        """True if attempt number ``attempt`` (zero-based) may be made."""
        ...


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between attempts."""

    max_retries: int = 30
    delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return self.delay

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) + jitter

    Attributes:
        max_retries: Maximum number of attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier (default: 2)
        jitter: Add randomness to prevent thundering herd
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    max_retries: int = 10
    base_delay: float = 0.5
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        delay = min(
            self.base_delay * (self.multiplier ** attempt),
            self.max_delay,
        )

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0, delay)

        return delay

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries


def poll_until(
    check: Callable[[], T | None],
    *,
    strategy: RetryStrategy,
    describe: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``check`` until it returns something other than ``None``.

    Exceptions raised by ``check`` propagate immediately; a check that
    detects a permanent failure (e.g. image pull error) raises to stop the
    poll early.

    Raises:
        Timeout: when the strategy's budget is exhausted
    """
    attempt = 0
    while strategy.should_retry(attempt):
        result = check()
        if result is not None:
            logger.debug("poll.satisfied", condition=describe, attempts=attempt + 1)
            return result
        delay = strategy.next_delay(attempt)
        attempt += 1
        if strategy.should_retry(attempt):
            logger.debug("poll.waiting", condition=describe, attempt=attempt, delay=delay)
            sleep(delay)

    logger.warning("poll.exhausted", condition=describe, attempts=attempt)
    raise Timeout(f"Gave up waiting for {describe} after {attempt} attempts")


__all__ = [
    "RetryStrategy",
    "ConstantBackoff",
    "ExponentialBackoff",
    "poll_until",
]
