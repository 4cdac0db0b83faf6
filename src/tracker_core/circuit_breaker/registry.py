"""Named circuit breaker registry.

One registry is built at process start and handed to every call site that
needs a breaker. It holds exactly one breaker per name for its lifetime;
breakers are created lazily and never removed.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from dataclasses import replace
from types import MappingProxyType
from typing import TYPE_CHECKING

from tracker_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from tracker_core.circuit_breaker.exceptions import CircuitBreakerNotFoundError
from tracker_core.circuit_breaker.metrics import BreakerListener
from tracker_core.circuit_breaker.state import BreakerSnapshot
from tracker_core.logging import AnyLogger

if TYPE_CHECKING:
    from tracker_core.settings import ResilienceSettings


class CircuitBreakerRegistry:
    """Process-wide map of breaker name to :class:`CircuitBreaker`."""

    def __init__(
        self,
        *,
        defaults: CircuitBreakerConfig | None = None,
        logger: AnyLogger | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Create an empty registry.

        Args:
            defaults: Configuration used for values omitted from
                :meth:`get_or_create`. Defaults to 5 failures / 60 seconds.
            logger: Logger handed to every breaker the registry creates.
            listeners: Listener hooks attached to every breaker created.
        """
        self._defaults = CircuitBreakerConfig() if defaults is None else defaults
        self._logger = logger
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(
        cls,
        settings: ResilienceSettings,
        *,
        logger: AnyLogger | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> CircuitBreakerRegistry:
        """Build a registry whose defaults come from service settings."""
        return cls(
            defaults=CircuitBreakerConfig(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                reset_timeout=settings.circuit_breaker_reset_timeout_seconds,
            ),
            logger=logger,
            listeners=listeners,
        )

    @property
    def defaults(self) -> CircuitBreakerConfig:
        return self._defaults

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._breakers

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)

    def get_or_create(
        self,
        name: str,
        failure_threshold: int | None = None,
        reset_timeout_seconds: float | None = None,
    ) -> CircuitBreaker:
        """Return the breaker for ``name``, creating it on first request.

        Configuration only applies when the breaker is created. Later calls
        with different values get the existing breaker unchanged.
        """
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    config=self._config_for(failure_threshold, reset_timeout_seconds),
                    logger=self._logger,
                    listeners=self._listeners,
                )
                self._breakers[name] = breaker
            return breaker

    def get(self, name: str) -> CircuitBreaker:
        """Return an existing breaker.

        Raises:
            CircuitBreakerNotFoundError: If no breaker named ``name`` exists.
        """
        with self._lock:
            breaker = self._breakers.get(name)
        if breaker is None:
            raise CircuitBreakerNotFoundError(name)
        return breaker

    def get_all(self) -> Mapping[str, CircuitBreaker]:
        """Return a read-only copy of the name to breaker mapping."""
        with self._lock:
            return MappingProxyType(dict(self._breakers))

    def snapshots(self) -> tuple[BreakerSnapshot, ...]:
        """Return snapshots of every breaker, ordered by name."""
        breakers = self.get_all()
        return tuple(breakers[name].snapshot() for name in sorted(breakers))

    def reset(self, name: str) -> BreakerSnapshot:
        """Manually close breaker ``name`` and return its new snapshot.

        Raises:
            CircuitBreakerNotFoundError: If no breaker named ``name`` exists.
        """
        breaker = self.get(name)
        breaker.reset()
        return breaker.snapshot()

    def _config_for(
        self,
        failure_threshold: int | None,
        reset_timeout_seconds: float | None,
    ) -> CircuitBreakerConfig:
        overrides: dict[str, object] = {}
        if failure_threshold is not None:
            overrides["failure_threshold"] = failure_threshold
        if reset_timeout_seconds is not None:
            overrides["reset_timeout"] = float(reset_timeout_seconds)
        # Each breaker gets its own copy of the defaults.
        return replace(self._defaults, **overrides)
