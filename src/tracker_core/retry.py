"""Exponential backoff for transient dependency failures.

Retrying is the caller's concern and is composed around a circuit breaker,
never inside it. A blocked breaker call is not an exception, so it is never
retried by these helpers.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_never,
    wait_exponential_jitter,
)
from tenacity.retry import retry_base
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from tracker_core.errors import TransientError

WaitStrategy = wait_base | Callable[[RetryCallState], float]

TRANSIENT_ERROR_TYPES: tuple[type[BaseException], ...] = (
    TransientError,
    TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class RetryBackoffPolicy:
    """Retry attempt count and backoff boundaries.

    ``attempts`` counts the first call, so the default allows three retries.
    ``None`` retries forever.
    """

    attempts: int | None = 4
    min_seconds: float = 2.0
    max_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.attempts is not None and self.attempts < 1:
            raise ValueError("attempts must be >= 1 when provided")
        if self.min_seconds < 0:
            raise ValueError("min_seconds must be >= 0")
        if self.max_seconds < 0:
            raise ValueError("max_seconds must be >= 0")
        if self.max_seconds < self.min_seconds:
            raise ValueError("max_seconds must be >= min_seconds")

    def stop(self) -> stop_base:
        if self.attempts is None:
            return stop_never
        return stop_after_attempt(self.attempts)

    def wait(self) -> wait_base:
        return wait_exponential_jitter(initial=self.min_seconds, max=self.max_seconds)


def is_transient_error(exc: BaseException) -> bool:
    """Return whether ``exc`` is a retry-safe dependency failure."""
    return isinstance(exc, TRANSIENT_ERROR_TYPES)


def retry_if_transient() -> retry_base:
    """Tenacity retry predicate matching :func:`is_transient_error`."""
    return retry_if_exception(is_transient_error)


def _retrying_kwargs(
    *,
    retry: retry_base | None,
    policy: RetryBackoffPolicy,
    wait: WaitStrategy | None,
    before_sleep: Callable[[RetryCallState], None] | None,
    reraise: bool,
) -> dict[str, object]:
    kwargs: dict[str, object] = {
        "retry": retry_if_transient() if retry is None else retry,
        "wait": policy.wait() if wait is None else wait,
        "stop": policy.stop(),
        "reraise": reraise,
    }
    if before_sleep is not None:
        kwargs["before_sleep"] = before_sleep
    return kwargs


def build_exponential_jitter_retrying(
    *,
    policy: RetryBackoffPolicy,
    retry: retry_base | None = None,
    wait: WaitStrategy | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> AsyncRetrying:
    """Build an ``AsyncRetrying`` with exponential jitter backoff.

    Retries transient errors unless ``retry`` says otherwise.
    """
    kwargs = _retrying_kwargs(
        retry=retry,
        policy=policy,
        wait=wait,
        before_sleep=before_sleep,
        reraise=reraise,
    )
    if sleep is not None:
        kwargs["sleep"] = sleep
    return AsyncRetrying(**kwargs)  # type: ignore[arg-type]


def build_exponential_jitter_retrying_sync(
    *,
    policy: RetryBackoffPolicy,
    retry: retry_base | None = None,
    wait: WaitStrategy | None = None,
    sleep: Callable[[float], None] | None = None,
    before_sleep: Callable[[RetryCallState], None] | None = None,
    reraise: bool = True,
) -> Retrying:
    """Blocking counterpart of :func:`build_exponential_jitter_retrying`."""
    kwargs = _retrying_kwargs(
        retry=retry,
        policy=policy,
        wait=wait,
        before_sleep=before_sleep,
        reraise=reraise,
    )
    if sleep is not None:
        kwargs["sleep"] = sleep
    return Retrying(**kwargs)  # type: ignore[arg-type]
