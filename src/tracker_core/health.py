from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

from tracker_core.circuit_breaker import CircuitBreakerRegistry, CircuitState
from tracker_core.logging import AnyLogger, get_logger, log_info

REASON_READY = "ready"
REASON_CIRCUIT_OPEN = "circuit_open"

HealthCheck = Callable[[], Awaitable["CheckResult"]]


@dataclass(frozen=True)
class CheckResult:
    """Result of one health check."""

    name: str
    ok: bool
    reason: str | None = None
    detail: str = ""
    data: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Freeze check metadata mapping to keep results read-only."""
        frozen_data = MappingProxyType(dict(self.data))
        object.__setattr__(self, "data", frozen_data)


def describe_circuit_breakers(
    registry: CircuitBreakerRegistry,
) -> list[dict[str, object]]:
    """Return one status row per registered breaker, ordered by name."""
    return [snapshot.as_dict() for snapshot in registry.snapshots()]


def reset_circuit_breaker(
    registry: CircuitBreakerRegistry,
    name: str,
    *,
    logger: AnyLogger | None = None,
) -> dict[str, object]:
    """Administratively close one breaker and return its status row.

    Raises:
        CircuitBreakerNotFoundError: If ``name`` is not registered.
    """
    snapshot = registry.reset(name)
    log_info(
        get_logger(__name__) if logger is None else logger,
        "circuit_breaker.admin_reset",
        breaker=name,
    )
    status = snapshot.as_dict()
    status["message"] = "Circuit breaker reset successfully"
    return status


def make_circuit_breaker_check(
    registry: CircuitBreakerRegistry,
    *,
    names: Sequence[str] | None = None,
    name: str = "circuit_breakers",
) -> HealthCheck:
    """Build a health check that fails while any watched breaker is open.

    Args:
        registry: Registry to inspect on each evaluation.
        names: Breakers to watch. ``None`` watches every registered breaker;
            names not yet registered are treated as closed.
        name: Check name reported in the result.
    """
    watched = None if names is None else frozenset(names)

    async def _check() -> CheckResult:
        snapshots = [
            snapshot
            for snapshot in registry.snapshots()
            if watched is None or snapshot.name in watched
        ]
        open_names = tuple(
            snapshot.name
            for snapshot in snapshots
            if snapshot.state == CircuitState.OPEN
        )
        data = {
            "open_breakers": open_names,
            "breakers": tuple(snapshot.as_dict() for snapshot in snapshots),
        }
        if open_names:
            return CheckResult(
                name=name,
                ok=False,
                reason=REASON_CIRCUIT_OPEN,
                detail=f"open={','.join(open_names)}",
                data=data,
            )
        return CheckResult(name=name, ok=True, reason=REASON_READY, data=data)

    _check.__name__ = name
    return _check
