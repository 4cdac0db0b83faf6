import logging
import threading
from datetime import timedelta

import pytest

from tests.tracker_core.support.fakes import (
    ExplodingListener,
    FakeClock,
    FakeLogger,
    RecordingListener,
)
from tracker_core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)


class _Boom(RuntimeError):
    pass


def _fail() -> None:
    raise _Boom("nope")


def _build(
    *,
    failure_threshold: int = 3,
    reset_timeout: float = 60.0,
    logger: object | None = None,
    **config: object,
) -> CircuitBreaker:
    return CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            reset_timeout=reset_timeout,
            **config,  # type: ignore[arg-type]
        ),
        logger=FakeLogger() if logger is None else logger,  # type: ignore[arg-type]
    )


def _open(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.config.failure_threshold):
        with pytest.raises(_Boom):
            breaker.execute(_fail)
    assert breaker.state == CircuitState.OPEN


def test_new_breaker_starts_closed_with_defaults() -> None:
    breaker = CircuitBreaker("svc", logger=FakeLogger())

    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0
    assert snapshot.failure_threshold == 5
    assert snapshot.reset_timeout == 60.0
    assert snapshot.last_state_change_at is None


def test_execute_runs_operation_and_returns_true() -> None:
    breaker = _build()
    calls: list[int] = []

    assert breaker.execute(calls.append, 1) is True
    assert calls == [1]


def test_execute_with_fallback_returns_result_when_closed() -> None:
    breaker = _build()

    assert breaker.execute_with_fallback(lambda: "fresh", "cached") == "fresh"


def test_threshold_consecutive_failures_open_circuit(clock: FakeClock) -> None:
    breaker = _build(failure_threshold=3)

    for _ in range(2):
        with pytest.raises(_Boom):
            breaker.execute(_fail)
        assert breaker.state == CircuitState.CLOSED

    with pytest.raises(_Boom):
        breaker.execute(_fail)

    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.failure_count == 3
    assert snapshot.last_state_change_at == clock.now()
    assert snapshot.next_retry_at == clock.now() + timedelta(seconds=60)


def test_success_before_threshold_resets_counter() -> None:
    breaker = _build(failure_threshold=3)

    for _ in range(2):
        with pytest.raises(_Boom):
            breaker.execute(_fail)
    assert breaker.failure_count == 2

    assert breaker.execute(lambda: None) is True
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0

    for _ in range(2):
        with pytest.raises(_Boom):
            breaker.execute(_fail)
    assert breaker.state == CircuitState.CLOSED


def test_failure_propagates_unchanged() -> None:
    breaker = _build()
    error = _Boom("original")

    def _raise() -> None:
        raise error

    with pytest.raises(_Boom) as excinfo:
        breaker.execute_with_fallback(_raise, "fallback")
    assert excinfo.value is error


def test_open_circuit_blocks_without_invoking_operation(clock: FakeClock) -> None:
    breaker = _build()
    _open(breaker)
    calls: list[str] = []

    def _op() -> str:
        calls.append("called")
        return "fresh"

    clock.advance(30)
    assert breaker.execute(_op) is False
    assert breaker.execute_with_fallback(_op, "cached") == "cached"
    clock.advance(29.9)
    assert breaker.execute(_op) is False

    assert calls == []
    assert breaker.state == CircuitState.OPEN


def test_single_trial_admitted_after_reset_timeout(clock: FakeClock) -> None:
    breaker = _build()
    _open(breaker)
    seen_states: list[CircuitState] = []
    nested_results: list[bool] = []

    def _trial() -> str:
        seen_states.append(breaker.state)
        nested_results.append(breaker.execute(lambda: None))
        return "ok"

    clock.advance(60)
    assert breaker.execute_with_fallback(_trial, "cached") == "ok"

    assert seen_states == [CircuitState.HALF_OPEN]
    assert nested_results == [False]
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


def test_leaving_open_resets_failure_count(clock: FakeClock) -> None:
    breaker = _build()
    _open(breaker)
    counts: list[int] = []

    clock.advance(60)
    breaker.execute(lambda: counts.append(breaker.failure_count))

    assert counts == [0]


def test_failed_trial_reopens_with_fresh_timestamp(clock: FakeClock) -> None:
    breaker = _build()
    _open(breaker)
    opened_at = breaker.snapshot().last_state_change_at

    clock.advance(61)
    with pytest.raises(_Boom):
        breaker.execute(_fail)

    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.failure_count == 1
    assert opened_at is not None
    assert snapshot.last_state_change_at == opened_at + timedelta(seconds=61)
    clock.advance(59)
    assert breaker.execute(lambda: None) is False


def test_scenario_threshold_three_timeout_sixty(clock: FakeClock) -> None:
    breaker = _build(failure_threshold=3, reset_timeout=60.0)
    start = clock.now()
    invoked: list[str] = []

    _open(breaker)

    clock.advance(30)
    assert breaker.execute_with_fallback(lambda: invoked.append("x"), "fb") == "fb"
    assert invoked == []

    clock.advance(31)

    def _probe() -> None:
        invoked.append("probe")
        raise _Boom("still down")

    with pytest.raises(_Boom):
        breaker.execute_with_fallback(_probe, "fb")

    assert invoked == ["probe"]
    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.last_state_change_at == start + timedelta(seconds=61)


def test_failure_recorded_while_open_keeps_timestamp(clock: FakeClock) -> None:
    breaker = _build()
    tripped_at = clock.now()

    def _slow_failure() -> None:
        breaker.trip()
        clock.advance(10)
        raise _Boom("late")

    with pytest.raises(_Boom):
        breaker.execute(_slow_failure)

    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.failure_count == 1
    assert snapshot.last_state_change_at == tripped_at


def test_trip_opens_from_closed_and_is_idempotent(clock: FakeClock) -> None:
    breaker = _build()

    breaker.trip()
    first = breaker.snapshot()
    clock.advance(5)
    breaker.trip()

    assert first.state == CircuitState.OPEN
    assert breaker.snapshot().last_state_change_at == first.last_state_change_at
    assert breaker.execute(lambda: None) is False


def test_trip_during_trial_discards_trial_outcome(clock: FakeClock) -> None:
    breaker = _build()
    _open(breaker)
    clock.advance(60)

    def _trial() -> None:
        breaker.trip()

    assert breaker.execute(_trial) is True
    assert breaker.state == CircuitState.OPEN


def test_reset_closes_from_open_and_clears_history(clock: FakeClock) -> None:
    breaker = _build()
    _open(breaker)

    breaker.reset()

    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.CLOSED
    assert snapshot.failure_count == 0
    assert snapshot.last_state_change_at is None
    assert snapshot.last_failure_at is None
    assert breaker.execute(lambda: None) is True


def test_reset_from_half_open_releases_trial(clock: FakeClock) -> None:
    breaker = _build()
    _open(breaker)
    clock.advance(60)
    admitted: list[bool] = []

    def _trial() -> None:
        breaker.reset()
        admitted.append(breaker.execute(lambda: None))

    breaker.execute(_trial)

    assert admitted == [True]
    assert breaker.state == CircuitState.CLOSED


def test_excluded_exception_is_not_counted() -> None:
    breaker = _build(failure_threshold=1, excluded_exceptions=(KeyError,))

    def _missing() -> None:
        raise KeyError("missing")

    with pytest.raises(KeyError):
        breaker.execute(_missing)

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


def test_excluded_exception_during_trial_is_neutral(clock: FakeClock) -> None:
    breaker = _build(excluded_exceptions=(KeyError,))
    _open(breaker)
    clock.advance(60)

    def _missing() -> None:
        raise KeyError("missing")

    with pytest.raises(KeyError):
        breaker.execute(_missing)
    assert breaker.state == CircuitState.HALF_OPEN

    assert breaker.execute(lambda: None) is True
    assert breaker.state == CircuitState.CLOSED


def test_concurrent_half_open_call_is_blocked(clock: FakeClock) -> None:
    breaker = _build()
    _open(breaker)
    clock.advance(60)
    started = threading.Event()
    release = threading.Event()
    results: list[bool] = []

    def _trial() -> None:
        started.set()
        assert release.wait(timeout=5)

    thread = threading.Thread(target=lambda: results.append(breaker.execute(_trial)))
    thread.start()
    assert started.wait(timeout=5)

    invoked: list[str] = []
    assert breaker.execute(lambda: invoked.append("second")) is False
    assert invoked == []

    release.set()
    thread.join(timeout=5)
    assert results == [True]
    assert breaker.state == CircuitState.CLOSED


def test_closed_calls_run_in_parallel() -> None:
    breaker = _build()
    barrier = threading.Barrier(2, timeout=5)
    results: list[bool] = []
    lock = threading.Lock()

    def _call() -> None:
        admitted = breaker.execute(barrier.wait)
        with lock:
            results.append(admitted)

    threads = [threading.Thread(target=_call) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert results == [True, True]


def test_state_transitions_are_logged_at_expected_levels(clock: FakeClock) -> None:
    logger = FakeLogger()
    breaker = _build(failure_threshold=1, logger=logger)

    with pytest.raises(_Boom):
        breaker.execute(_fail)
    breaker.execute(lambda: None)
    clock.advance(60)
    breaker.execute(lambda: None)

    assert logger.events("warning") == ["circuit_breaker.opened"]
    assert logger.events("debug") == ["circuit_breaker.call_blocked"]
    assert logger.events("info") == [
        "circuit_breaker.half_open",
        "circuit_breaker.closed",
    ]
    _, _, fields = logger.calls[0]
    assert fields["breaker"] == "svc"
    assert fields["reason"] == "threshold_reached"
    assert fields["new_state"] == "open"


def test_manual_trip_and_reset_are_logged() -> None:
    logger = FakeLogger()
    breaker = _build(logger=logger)

    breaker.trip()
    breaker.reset()
    breaker.reset()

    assert logger.events() == ["circuit_breaker.tripped", "circuit_breaker.reset"]


def test_breaker_accepts_stdlib_logger() -> None:
    records: list[logging.LogRecord] = []

    class _Capture(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    logger = logging.getLogger("tests.tracker_core.breaker.stdlib")
    logger.handlers.clear()
    logger.propagate = False
    logger.setLevel(logging.DEBUG)
    logger.addHandler(_Capture())
    breaker = _build(logger=logger)

    breaker.trip()

    assert [record.getMessage() for record in records] == ["circuit_breaker.tripped"]
    assert records[0].levelno == logging.WARNING
    assert getattr(records[0], "breaker") == "svc"


def test_listeners_receive_events_and_failures_are_isolated(clock: FakeClock) -> None:
    logger = FakeLogger()
    recording = RecordingListener()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=10.0),
        logger=logger,
        listeners=[ExplodingListener(), recording],
    )

    assert breaker.execute(lambda: None) is True
    with pytest.raises(_Boom):
        breaker.execute(_fail)
    assert breaker.execute(lambda: None) is False

    assert recording.events == [
        ("succeeded", "svc"),
        ("failed", ("svc", "_Boom")),
        ("state", ("svc", CircuitState.CLOSED, CircuitState.OPEN)),
        ("rejected", "svc"),
    ]
    assert "circuit_breaker.listener_failed" in logger.events("warning")


def test_config_rejects_invalid_threshold_and_timeout() -> None:
    with pytest.raises(ValueError, match="failure_threshold"):
        CircuitBreakerConfig(failure_threshold=0)
    with pytest.raises(ValueError, match="reset_timeout"):
        CircuitBreakerConfig(reset_timeout=-1.0)
