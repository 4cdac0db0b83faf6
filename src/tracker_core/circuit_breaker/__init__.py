"""Thread- and asyncio-safe circuit breaker.

This package implements the three-state circuit breaker from *Release It!*
for guarding calls into unreliable downstream dependencies.

Key behavior notes:
  - A blocked call is not an error. ``execute`` returns ``False`` and
    ``execute_with_fallback`` returns the caller's fallback value.
  - The wrapped operation's exceptions are recorded and always propagate
    unchanged. The breaker never retries and never times out the operation.
  - Half-open probing is conservative: exactly one trial call is admitted
    after the reset timeout. Its outcome alone closes or re-opens the circuit.
  - Excluded exceptions and cancellation during a trial are neutral: nothing
    is recorded and a later call may attempt a fresh trial.
  - Breakers are obtained by name from a :class:`CircuitBreakerRegistry`
    built once per process.
"""

from tracker_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from tracker_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitBreakerNotFoundError,
)
from tracker_core.circuit_breaker.metrics import BreakerListener
from tracker_core.circuit_breaker.registry import CircuitBreakerRegistry
from tracker_core.circuit_breaker.state import BreakerSnapshot, CircuitState

__all__ = [
    "BreakerListener",
    "BreakerSnapshot",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitBreakerNotFoundError",
    "CircuitBreakerRegistry",
    "CircuitState",
]
