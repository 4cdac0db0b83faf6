"""HTTP calls to downstream services behind a circuit breaker.

Each attempt is admitted by the breaker; transient failures (transport
errors, HTTP 408/429/5xx) count against it and are retried with exponential
jitter backoff. Once the breaker blocks, the caller's fallback is returned
and no further attempts are made.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from tenacity import RetryCallState

from tracker_core.circuit_breaker import CircuitBreaker
from tracker_core.errors import TransientError
from tracker_core.logging import AnyLogger, get_logger, log_warning
from tracker_core.retry import (
    RetryBackoffPolicy,
    WaitStrategy,
    build_exponential_jitter_retrying,
)

RETRY_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

T = TypeVar("T")


class DownstreamRequestError(RuntimeError):
    """Base exception for downstream HTTP failures."""

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        response_body: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        """Initialize request-error metadata.

        Args:
            message: Human-readable error message.
            http_status: Optional HTTP status returned by the dependency.
            response_body: Optional response payload text.
            retry_after: Seconds from a ``Retry-After`` header, if sent.
        """
        super().__init__(message)
        self.http_status = http_status
        self.response_body = response_body
        self.retry_after = retry_after


class DownstreamTransientFailure(DownstreamRequestError, TransientError):
    """Raised for retryable downstream failures."""


def parse_retry_after(response: httpx.Response) -> float | None:
    """Return ``Retry-After`` in seconds when sent as an integer."""
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        seconds = int(value.strip())
    except ValueError:
        return None
    return float(max(seconds, 0))


def wait_retry_after(
    policy: RetryBackoffPolicy,
    fallback: WaitStrategy | None = None,
) -> Callable[[RetryCallState], float]:
    """Wait for the server's ``Retry-After`` when given, else back off.

    Server-provided delays are capped at ``policy.max_seconds``.
    """
    backoff = policy.wait() if fallback is None else fallback

    def _wait(retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = None if outcome is None else outcome.exception()
        if isinstance(exc, DownstreamRequestError) and exc.retry_after is not None:
            return min(exc.retry_after, policy.max_seconds)
        return float(backoff(retry_state))

    return _wait


class GuardedHttpClient:
    """``httpx.AsyncClient`` wrapper guarded by one named circuit breaker."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        breaker: CircuitBreaker,
        retry_policy: RetryBackoffPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        """Create a guarded client.

        Args:
            client: Shared async HTTP client.
            breaker: Breaker protecting the downstream dependency.
            retry_policy: Backoff for transient failures. Defaults to
                ``RetryBackoffPolicy()``.
            sleep: Awaitable sleep used between attempts.
            logger: Logger for retry events.
        """
        self._client = client
        self._breaker = breaker
        self._retry_policy = (
            RetryBackoffPolicy() if retry_policy is None else retry_policy
        )
        self._sleep = sleep
        self._logger = get_logger(__name__) if logger is None else logger

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def request(
        self,
        method: str,
        url: str,
        *,
        fallback: T,
        **kwargs: Any,
    ) -> httpx.Response | T:
        """Send one request, returning ``fallback`` if the breaker blocks it.

        Non-transient HTTP errors (for example 404) are returned as responses
        and count as successful calls for the breaker.

        Raises:
            DownstreamTransientFailure: When retries are exhausted.
        """
        retrying = build_exponential_jitter_retrying(
            policy=self._retry_policy,
            wait=wait_retry_after(self._retry_policy),
            sleep=self._sleep,
            before_sleep=self._log_retry,
        )
        async for attempt in retrying:
            with attempt:
                return await self._breaker.execute_with_fallback_async(
                    self._send_once, fallback, method, url, **kwargs
                )

        raise RuntimeError("Downstream retry loop exited unexpectedly.")

    async def get(
        self, url: str, *, fallback: T, **kwargs: Any
    ) -> httpx.Response | T:
        """Send a guarded ``GET``."""
        return await self.request("GET", url, fallback=fallback, **kwargs)

    async def post(
        self, url: str, *, fallback: T, **kwargs: Any
    ) -> httpx.Response | T:
        """Send a guarded ``POST``."""
        return await self.request("POST", url, fallback=fallback, **kwargs)

    async def _send_once(
        self, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise DownstreamTransientFailure(
                f"{exc.__class__.__name__}: {exc}"
            ) from exc

        if response.status_code in RETRY_STATUSES:
            raise DownstreamTransientFailure(
                f"Downstream transient failure (HTTP {response.status_code}).",
                http_status=response.status_code,
                response_body=response.text,
                retry_after=parse_retry_after(response),
            )
        return response

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = None if outcome is None else outcome.exception()
        log_warning(
            self._logger,
            "downstream.retry",
            breaker=self._breaker.name,
            attempt=retry_state.attempt_number,
            max_attempts=self._retry_policy.attempts,
            http_status=getattr(exc, "http_status", None),
            error=None if exc is None else f"{exc.__class__.__name__}: {exc}",
        )
