"""Bounded retry with exponential backoff."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from ragforge.errors import PipelineError

T = TypeVar("T")

RetryObserver = Callable[[int, BaseException, float], None]


@dataclass(frozen=True)
class RetryConfig:
    """Retry budget and backoff curve; delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0


def is_recoverable(error: BaseException) -> bool:
    """Pipeline errors carry their own flag; anything else is assumed transient."""

    if isinstance(error, PipelineError):
        return error.recoverable
    return True


class RetryPolicy:
    """Run an operation up to ``max_retries + 1`` times."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: Callable[[float], object] = time.sleep,
        recoverable: Callable[[BaseException], bool] = is_recoverable,
    ) -> None:
        self._config = config or RetryConfig()
        self._sleep = sleep
        self._recoverable = recoverable

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def max_attempts(self) -> int:
        return max(self._config.max_retries, 0) + 1

    def delay_before(self, attempt: int) -> float:
        """Wait applied before *attempt* (the first attempt never waits)."""

        if attempt < 2:
            return 0.0
        delay = self._config.base_delay * self._config.backoff_multiplier ** (attempt - 2)
        return min(delay, self._config.max_delay)

    def execute(self, operation: Callable[[], T], *, on_retry: Optional[RetryObserver] = None) -> T:
        """Return the first successful result of *operation*.

        Non-recoverable failures propagate immediately. When the budget is
        exhausted the last failure is re-raised unchanged. *on_retry*
        receives the failed attempt number, its error and the upcoming delay.
        """

        attempt = 1
        while True:
            try:
                return operation()
            except Exception as exc:
                if attempt >= self.max_attempts or not self._recoverable(exc):
                    raise
                delay = self.delay_before(attempt + 1)
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                self._sleep(delay)
                attempt += 1


__all__ = ["RetryConfig", "RetryObserver", "RetryPolicy", "is_recoverable"]
