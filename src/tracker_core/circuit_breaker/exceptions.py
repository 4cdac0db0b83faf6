"""Circuit breaker exceptions.

A blocked call is never an exception: ``execute`` returns ``False`` and
``execute_with_fallback`` returns the fallback. Callers only see:
  - the wrapped operation's own exception, unchanged;
  - lookup errors from the registry for unknown breaker names.
"""


class CircuitBreakerError(Exception):
    """Base exception for the circuit breaker package."""


class CircuitBreakerNotFoundError(CircuitBreakerError, LookupError):
    """Raised when a registry lookup names a breaker that was never created.

    Attributes:
        breaker_name: Name that was looked up.
    """

    def __init__(self, breaker_name: str) -> None:
        self.breaker_name = breaker_name
        super().__init__(f"circuit_breaker_not_found: {breaker_name}")
