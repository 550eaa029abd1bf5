"""Retry and circuit-breaker primitives for external calls."""

from .circuit import CircuitBreaker, CircuitSnapshot, CircuitState
from .retry import RetryConfig, RetryObserver, RetryPolicy, is_recoverable

__all__ = [
    "CircuitBreaker",
    "CircuitSnapshot",
    "CircuitState",
    "RetryConfig",
    "RetryObserver",
    "RetryPolicy",
    "is_recoverable",
]
