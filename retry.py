"""Bounded retry with exponential backoff for provider calls."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

import structlog

import config
from errors import ProviderTransientError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = config.SYNC_MAX_RETRIES
    base_delay: float = config.SYNC_BACKOFF_BASE_SECONDS
    max_delay: float = config.SYNC_BACKOFF_MAX_SECONDS
    retry_on: Tuple[Type[BaseException], ...] = (ProviderTransientError,)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), doubling up to ``max_delay``."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy = RetryPolicy(),
    *,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """Call ``fn`` until it succeeds or the retry budget is spent.

    Only exceptions listed in ``policy.retry_on`` are retried; anything else
    propagates on the first failure. The last retryable error is re-raised
    once every attempt has failed.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except policy.retry_on as exc:
            attempt += 1
            if attempt > policy.max_retries:
                raise
            delay = policy.backoff(attempt)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            else:
                logger.warning("retry_scheduled", attempt=attempt, delay=delay, error=str(exc))
            sleep(delay)
