"""Retry wrapper for outbound calls to the LLM backend."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, NoReturn, Optional, TypeVar

import httpx

from .config import Settings
from .errors import BackendTimeoutError, GatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")
RequestFn = Callable[[float], Awaitable[T]]

BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 10000
TIMEOUT_GROWTH = 1.5

_TIMEOUT_SIGNATURES = ("timeout", "timed out", "etimedout", "econnaborted")


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class AttemptOutcome(Generic[T]):
    """Result of a single attempt: either a value or a classified failure."""

    attempt: int
    timeout_ms: float
    value: Optional[T] = None
    error: Optional[Exception] = None
    kind: Optional[FailureKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RetryState:
    attempt: int = 0
    last_error: Optional[Exception] = None


def classify_failure(exc: Exception) -> FailureKind:
    """Decide whether a failed attempt timed out, may be retried, or is final."""

    if isinstance(exc, GatewayError):
        return FailureKind.FATAL
    if isinstance(exc, httpx.HTTPStatusError) and 400 <= exc.response.status_code < 500:
        return FailureKind.FATAL
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return FailureKind.TIMEOUT
    message = str(exc).lower()
    if any(signature in message for signature in _TIMEOUT_SIGNATURES):
        return FailureKind.TIMEOUT
    return FailureKind.TRANSIENT


def backoff_delay_ms(attempt: int) -> float:
    return min(BACKOFF_BASE_MS * 2 ** (attempt - 1), BACKOFF_CAP_MS)


class RetryingTransport:
    """Run a backend call with bounded retries and growing timeouts.

    ``request_fn`` receives the timeout (milliseconds) for the current attempt.
    Attempts are strictly sequential; cancelling the calling task aborts the
    attempt in flight and stops further retries.
    """

    def __init__(
        self,
        max_retries: int = 3,
        timeout_ms: float = 30000,
        *,
        service: str = "Ollama",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._max_retries = max_retries
        self._timeout_ms = timeout_ms
        self._service = service
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryingTransport":
        return cls(
            max_retries=settings.ollama_max_retries,
            timeout_ms=settings.ollama_timeout_ms,
        )

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def timeout_ms(self) -> float:
        return self._timeout_ms

    def attempt_timeout(self, attempt: int) -> float:
        return self._timeout_ms * TIMEOUT_GROWTH ** (attempt - 1)

    async def _attempt(self, request_fn: RequestFn[T], attempt: int) -> AttemptOutcome[T]:
        timeout_ms = self.attempt_timeout(attempt)
        try:
            value = await request_fn(timeout_ms)
        except Exception as exc:
            return AttemptOutcome(
                attempt=attempt,
                timeout_ms=timeout_ms,
                error=exc,
                kind=classify_failure(exc),
            )
        return AttemptOutcome(attempt=attempt, timeout_ms=timeout_ms, value=value)

    async def send(self, request_fn: RequestFn[T], correlation_id: Optional[str]) -> T:
        state = RetryState()

        for attempt in range(1, self._max_retries + 1):
            state.attempt = attempt
            logger.debug(
                "Request attempt %s/%s",
                attempt,
                self._max_retries,
                extra={
                    "correlation_id": correlation_id,
                    "timeout_ms": self.attempt_timeout(attempt),
                },
            )
            outcome = await self._attempt(request_fn, attempt)
            if outcome.ok:
                if attempt > 1:
                    logger.info(
                        "Request succeeded after %s attempts",
                        attempt,
                        extra={"correlation_id": correlation_id},
                    )
                return outcome.value  # type: ignore[return-value]

            state.last_error = outcome.error
            if outcome.kind is FailureKind.FATAL:
                logger.warning(
                    "Request failed with a non-retryable error",
                    extra={"correlation_id": correlation_id, "error": str(outcome.error)},
                )
                raise outcome.error  # type: ignore[misc]
            if attempt == self._max_retries:
                self._raise_exhausted(outcome, state, correlation_id)

            delay_ms = backoff_delay_ms(attempt)
            logger.warning(
                "Request failed, retrying in %sms (attempt %s/%s)",
                delay_ms,
                attempt,
                self._max_retries,
                extra={
                    "correlation_id": correlation_id,
                    "error": str(outcome.error),
                    "is_timeout": outcome.kind is FailureKind.TIMEOUT,
                    "timeout_ms": outcome.timeout_ms,
                },
            )
            await self._sleep(delay_ms / 1000)

    def _raise_exhausted(
        self,
        outcome: AttemptOutcome[Any],
        state: RetryState,
        correlation_id: Optional[str],
    ) -> NoReturn:
        logger.error(
            "Request failed after %s attempts",
            state.attempt,
            extra={
                "correlation_id": correlation_id,
                "error": str(state.last_error),
                "is_timeout": outcome.kind is FailureKind.TIMEOUT,
            },
        )
        if outcome.kind is FailureKind.TIMEOUT:
            raise BackendTimeoutError(
                f"Request timeout after {self._max_retries} attempts. "
                f"The {self._service} server took too long to respond.",
                correlation_id,
                timeout_ms=self._timeout_ms,
            ) from outcome.error
        raise outcome.error  # type: ignore[misc]
