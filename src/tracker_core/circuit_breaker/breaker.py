"""Core circuit breaker implementation."""

import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import partial
from typing import ParamSpec, TypeVar

from tracker_core.circuit_breaker.metrics import BreakerListener
from tracker_core.circuit_breaker.state import BreakerSnapshot, CircuitState
from tracker_core.logging import (
    AnyLogger,
    get_logger,
    log_debug,
    log_info,
    log_warning,
)

T = TypeVar("T")
P = ParamSpec("P")

_Pending = list[Callable[[], None]]

# reason -> (log function, event name)
_TRANSITION_EVENTS = {
    "threshold_reached": (log_warning, "circuit_breaker.opened"),
    "trial_failed": (log_warning, "circuit_breaker.opened"),
    "manual_trip": (log_warning, "circuit_breaker.tripped"),
    "reset_timeout_elapsed": (log_info, "circuit_breaker.half_open"),
    "trial_succeeded": (log_info, "circuit_breaker.closed"),
    "manual_reset": (log_info, "circuit_breaker.reset"),
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _elapsed_since(start: float) -> float:
    return max(time.monotonic() - start, 0.0)


@dataclass(slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Consecutive failures while ``CLOSED`` before opening.
        reset_timeout: Seconds to wait while ``OPEN`` before admitting a trial.
        excluded_exceptions: Exceptions that must not count as failures.
    """

    failure_threshold: int = 5
    reset_timeout: float = 60.0
    excluded_exceptions: tuple[type[Exception], ...] = ()

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")


class CircuitBreaker:
    """Admission gate around calls into one unreliable dependency.

    The breaker only decides whether a call runs. It never retries, never
    times out the operation and never hides the operation's exception.

    All bookkeeping happens under a single ``threading.Lock`` that is released
    before the protected operation runs, so sync callers on a thread pool and
    asyncio callers observe the same state machine.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        logger: AnyLogger | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker.

        Args:
            name: Breaker name, unique within its registry.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            logger: Structured or stdlib logger for state transitions and
                blocked calls. Defaults to this module's structlog logger.
            listeners: Optional listener hooks for breaker events.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._logger = get_logger(__name__) if logger is None else logger
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_state_change_at: datetime | None = None
        self._last_failure_at: datetime | None = None
        # Identity token of the outstanding half-open trial call, if any.
        self._trial: object | None = None

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self.name!r}, state={self._state.value!r})"

    @property
    def state(self) -> CircuitState:
        """Current state, for observability and health checks."""
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def snapshot(self) -> BreakerSnapshot:
        """Return a consistent point-in-time view of this breaker."""
        with self._lock:
            return BreakerSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                failure_threshold=self.config.failure_threshold,
                reset_timeout=self.config.reset_timeout,
                last_state_change_at=self._last_state_change_at,
                last_failure_at=self._last_failure_at,
            )

    def execute(
        self,
        func: Callable[P, object],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> bool:
        """Run ``func`` if the circuit admits it.

        Returns:
            ``True`` when ``func`` ran, ``False`` when the call was blocked.

        Raises:
            Exception: Whatever ``func`` raised, after it was recorded.
        """
        admitted, trial = self._admit()
        if not admitted:
            return False
        self._run(trial, func, *args, **kwargs)
        return True

    async def execute_async(
        self,
        func: Callable[P, Awaitable[object]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> bool:
        """Async variant of :meth:`execute`."""
        admitted, trial = self._admit()
        if not admitted:
            return False
        await self._run_async(trial, func, *args, **kwargs)
        return True

    def execute_with_fallback(
        self,
        func: Callable[P, T],
        fallback: T,
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Run ``func`` and return its result, or ``fallback`` when blocked.

        The fallback only covers blocked calls. If ``func`` runs and raises,
        the failure is recorded and the exception propagates.
        """
        admitted, trial = self._admit()
        if not admitted:
            return fallback
        return self._run(trial, func, *args, **kwargs)

    async def execute_with_fallback_async(
        self,
        func: Callable[P, Awaitable[T]],
        fallback: T,
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Async variant of :meth:`execute_with_fallback`."""
        admitted, trial = self._admit()
        if not admitted:
            return fallback
        return await self._run_async(trial, func, *args, **kwargs)

    def trip(self) -> None:
        """Force the circuit ``OPEN`` now. No-op when already open."""
        pending: _Pending = []
        with self._lock:
            if self._state != CircuitState.OPEN:
                self._trial = None
                self._transition(CircuitState.OPEN, _utcnow(), "manual_trip", pending)
        self._flush(pending)

    def reset(self) -> None:
        """Force the circuit ``CLOSED`` and clear failure history."""
        pending: _Pending = []
        with self._lock:
            self._trial = None
            self._failure_count = 0
            self._last_failure_at = None
            self._last_state_change_at = None
            if self._state != CircuitState.CLOSED:
                self._transition(
                    CircuitState.CLOSED, _utcnow(), "manual_reset", pending
                )
        self._flush(pending)

    def _run(
        self,
        trial: object | None,
        func: Callable[P, T],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        start = time.monotonic()
        try:
            result = func(*args, **kwargs)
        except self.config.excluded_exceptions:
            self._release_trial(trial)
            raise
        except Exception as exc:
            self._record_failure(trial, exc, _elapsed_since(start))
            raise
        except BaseException:
            self._release_trial(trial)
            raise
        self._record_success(trial, _elapsed_since(start))
        return result

    async def _run_async(
        self,
        trial: object | None,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        start = time.monotonic()
        try:
            result = await func(*args, **kwargs)
        except self.config.excluded_exceptions:
            self._release_trial(trial)
            raise
        except Exception as exc:
            self._record_failure(trial, exc, _elapsed_since(start))
            raise
        except BaseException:
            # Cancellation: the trial never resolved, let a later call probe.
            self._release_trial(trial)
            raise
        self._record_success(trial, _elapsed_since(start))
        return result

    def _admit(self) -> tuple[bool, object | None]:
        """Decide admission. Returns ``(admitted, trial_token)``."""
        pending: _Pending = []
        with self._lock:
            admitted, trial = self._admit_locked(_utcnow(), pending)
            if not admitted:
                pending.append(partial(self._emit_call_rejected, self._state))
        self._flush(pending)
        return admitted, trial

    def _admit_locked(
        self, now: datetime, pending: _Pending
    ) -> tuple[bool, object | None]:
        if self._state == CircuitState.CLOSED:
            return True, None

        if self._state == CircuitState.OPEN:
            if not self._reset_timeout_elapsed(now):
                return False, None
            self._failure_count = 0
            self._transition(
                CircuitState.HALF_OPEN, now, "reset_timeout_elapsed", pending
            )

        if self._trial is not None:
            return False, None
        self._trial = object()
        return True, self._trial

    def _reset_timeout_elapsed(self, now: datetime) -> bool:
        opened_at = self._last_state_change_at
        if opened_at is None:
            return True
        return (now - opened_at).total_seconds() >= self.config.reset_timeout

    def _record_success(self, trial: object | None, elapsed: float) -> None:
        pending: _Pending = []
        with self._lock:
            self._failure_count = 0
            if trial is not None and trial is self._trial:
                self._trial = None
                self._transition(
                    CircuitState.CLOSED, _utcnow(), "trial_succeeded", pending
                )
        pending.append(partial(self._emit_call_succeeded, elapsed))
        self._flush(pending)

    def _record_failure(
        self, trial: object | None, exc: Exception, elapsed: float
    ) -> None:
        pending: _Pending = [partial(self._emit_call_failed, exc, elapsed)]
        with self._lock:
            now = _utcnow()
            self._failure_count += 1
            self._last_failure_at = now
            if trial is not None and trial is self._trial:
                self._trial = None
                self._transition(CircuitState.OPEN, now, "trial_failed", pending)
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.config.failure_threshold
            ):
                self._transition(CircuitState.OPEN, now, "threshold_reached", pending)
        self._flush(pending)

    def _release_trial(self, trial: object | None) -> None:
        if trial is None:
            return
        with self._lock:
            if trial is self._trial:
                self._trial = None

    def _transition(
        self,
        new: CircuitState,
        now: datetime,
        reason: str,
        pending: _Pending,
    ) -> None:
        """Change state. Caller holds the lock."""
        old = self._state
        self._state = new
        if new == CircuitState.OPEN:
            self._last_state_change_at = now
        pending.append(
            partial(self._emit_state_change, old, new, reason, self._failure_count)
        )

    @staticmethod
    def _flush(pending: _Pending) -> None:
        for emit in pending:
            emit()

    def _emit_state_change(
        self,
        old: CircuitState,
        new: CircuitState,
        reason: str,
        failure_count: int,
    ) -> None:
        log_fn, event = _TRANSITION_EVENTS[reason]
        log_fn(
            self._logger,
            event,
            breaker=self.name,
            old_state=str(old),
            new_state=str(new),
            reason=reason,
            failure_count=failure_count,
            failure_threshold=self.config.failure_threshold,
            reset_timeout=self.config.reset_timeout,
        )
        for listener in self._listeners:
            try:
                listener.on_state_change(self.name, old, new)
            except Exception as exc:
                self._listener_failed(listener, "on_state_change", exc)

    def _emit_call_rejected(self, state: CircuitState) -> None:
        log_debug(
            self._logger,
            "circuit_breaker.call_blocked",
            breaker=self.name,
            state=str(state),
        )
        for listener in self._listeners:
            try:
                listener.on_call_rejected(self.name)
            except Exception as exc:
                self._listener_failed(listener, "on_call_rejected", exc)

    def _emit_call_succeeded(self, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                listener.on_call_succeeded(self.name, elapsed)
            except Exception as exc:
                self._listener_failed(listener, "on_call_succeeded", exc)

    def _emit_call_failed(self, exc: Exception, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                listener.on_call_failed(self.name, exc, elapsed)
            except Exception as listener_exc:
                self._listener_failed(listener, "on_call_failed", listener_exc)

    def _listener_failed(
        self, listener: BreakerListener, hook: str, exc: Exception
    ) -> None:
        log_warning(
            self._logger,
            "circuit_breaker.listener_failed",
            breaker=self.name,
            listener=listener.__class__.__qualname__,
            hook=hook,
            error=f"{exc.__class__.__name__}: {exc}",
        )
