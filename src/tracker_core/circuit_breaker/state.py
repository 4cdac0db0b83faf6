"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def _isoformat(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view of breaker internals useful for health checks/logging.

    Attributes:
        name: Breaker name.
        state: Breaker state when the snapshot was taken.
        failure_count: Consecutive failures since the last success or since
            the breaker last left ``OPEN``.
        failure_threshold: Failures required while ``CLOSED`` before opening.
        reset_timeout: Seconds the breaker stays ``OPEN`` before a trial call.
        last_state_change_at: Timestamp of the most recent transition into
            ``OPEN``, if any.
        last_failure_at: Timestamp of the last recorded failure, if any.
    """

    name: str
    state: CircuitState
    failure_count: int
    failure_threshold: int
    reset_timeout: float
    last_state_change_at: datetime | None
    last_failure_at: datetime | None

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def next_retry_at(self) -> datetime | None:
        """Earliest time a trial call is admitted, while ``OPEN``."""
        if not self.is_open or self.last_state_change_at is None:
            return None
        return self.last_state_change_at + timedelta(seconds=self.reset_timeout)

    def as_dict(self) -> dict[str, object]:
        """Build a JSON-friendly status row for health endpoints."""
        return {
            "name": self.name,
            "state": str(self.state),
            "is_open": self.is_open,
            "failure_count": self.failure_count,
            "last_failure_at": _isoformat(self.last_failure_at),
            "next_retry_at": _isoformat(self.next_retry_at),
        }
