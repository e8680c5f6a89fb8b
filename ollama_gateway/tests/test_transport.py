from __future__ import annotations

import asyncio
from typing import List

import httpx
import pytest

from ollama_gateway.errors import BackendTimeoutError, ValidationError
from ollama_gateway.transport import (
    FailureKind,
    RetryingTransport,
    backoff_delay_ms,
    classify_failure,
)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FlakyRequest:
    """Fails ``failures`` times with ``error`` and then returns ``value``."""

    def __init__(self, failures: int, error: Exception, value: str = "ok") -> None:
        self.failures = failures
        self.error = error
        self.value = value
        self.timeouts: List[float] = []

    async def __call__(self, timeout_ms: float) -> str:
        self.timeouts.append(timeout_ms)
        if len(self.timeouts) <= self.failures:
            raise self.error
        return self.value


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://ollama.test/api/chat")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"status {status_code}", request=request, response=response)


@pytest.mark.asyncio
@pytest.mark.parametrize("failures", [0, 1, 2])
async def test_recovers_after_transient_failures(failures: int) -> None:
    sleep = RecordingSleep()
    transport = RetryingTransport(max_retries=3, timeout_ms=30000, sleep=sleep)
    request = FlakyRequest(failures, httpx.ConnectError("connection refused"))

    result = await transport.send(request, "cid-1")

    assert result == "ok"
    assert len(request.timeouts) == failures + 1
    assert request.timeouts == [30000, 45000, 67500][: failures + 1]
    assert sleep.delays == [1.0, 2.0][:failures]


@pytest.mark.asyncio
async def test_exhausted_timeouts_raise_timeout_error() -> None:
    sleep = RecordingSleep()
    transport = RetryingTransport(max_retries=3, timeout_ms=5000, sleep=sleep)
    request = FlakyRequest(10, httpx.ReadTimeout("timed out"))

    with pytest.raises(BackendTimeoutError) as exc_info:
        await transport.send(request, "cid-timeout")

    assert len(request.timeouts) == 3
    assert exc_info.value.timeout_ms == 5000
    assert exc_info.value.correlation_id == "cid-timeout"
    assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_transient_failures_reraise_last_error() -> None:
    transport = RetryingTransport(max_retries=2, sleep=RecordingSleep())
    request = FlakyRequest(10, httpx.ConnectError("connection refused"))

    with pytest.raises(httpx.ConnectError):
        await transport.send(request, "cid-2")

    assert len(request.timeouts) == 2


@pytest.mark.asyncio
async def test_validation_errors_are_never_retried() -> None:
    transport = RetryingTransport(max_retries=3, sleep=RecordingSleep())
    request = FlakyRequest(10, ValidationError("bad input", "cid-3"))

    with pytest.raises(ValidationError):
        await transport.send(request, "cid-3")

    assert len(request.timeouts) == 1


@pytest.mark.asyncio
async def test_client_errors_from_backend_are_not_retried() -> None:
    transport = RetryingTransport(max_retries=3, sleep=RecordingSleep())
    request = FlakyRequest(10, _status_error(404))

    with pytest.raises(httpx.HTTPStatusError):
        await transport.send(request, "cid-4")

    assert len(request.timeouts) == 1


@pytest.mark.asyncio
async def test_server_errors_from_backend_are_retried() -> None:
    transport = RetryingTransport(max_retries=3, sleep=RecordingSleep())
    request = FlakyRequest(1, _status_error(503))

    assert await transport.send(request, "cid-5") == "ok"
    assert len(request.timeouts) == 2


@pytest.mark.asyncio
async def test_cancellation_stops_retries() -> None:
    started = asyncio.Event()
    calls: List[float] = []

    async def hang(timeout_ms: float) -> str:
        calls.append(timeout_ms)
        started.set()
        await asyncio.Event().wait()
        return "never"

    transport = RetryingTransport(max_retries=3, sleep=RecordingSleep())
    task = asyncio.create_task(transport.send(hang, "cid-6"))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(calls) == 1


def test_backoff_doubles_and_caps() -> None:
    assert [backoff_delay_ms(attempt) for attempt in range(1, 7)] == [
        1000,
        2000,
        4000,
        8000,
        10000,
        10000,
    ]


def test_attempt_timeout_grows_by_half() -> None:
    transport = RetryingTransport(timeout_ms=1000)
    assert transport.attempt_timeout(1) == 1000
    assert transport.attempt_timeout(2) == 1500
    assert transport.attempt_timeout(3) == 2250


@pytest.mark.parametrize(
    "error, kind",
    [
        (httpx.ReadTimeout("timed out"), FailureKind.TIMEOUT),
        (httpx.ConnectTimeout("connect"), FailureKind.TIMEOUT),
        (asyncio.TimeoutError(), FailureKind.TIMEOUT),
        (RuntimeError("connect ETIMEDOUT 10.0.0.1:11434"), FailureKind.TIMEOUT),
        (RuntimeError("socket hang up"), FailureKind.TRANSIENT),
        (httpx.ConnectError("refused"), FailureKind.TRANSIENT),
        (_status_error(500), FailureKind.TRANSIENT),
        (_status_error(400), FailureKind.FATAL),
        (ValidationError("bad"), FailureKind.FATAL),
    ],
)
def test_classify_failure(error: Exception, kind: FailureKind) -> None:
    assert classify_failure(error) is kind


def test_max_retries_must_be_positive() -> None:
    with pytest.raises(ValueError):
        RetryingTransport(max_retries=0)


@pytest.mark.asyncio
async def test_single_attempt_budget_reports_first_failure() -> None:
    sleep = RecordingSleep()
    transport = RetryingTransport(max_retries=1, timeout_ms=2000, sleep=sleep)

    with pytest.raises(BackendTimeoutError) as exc_info:
        await transport.send(FlakyRequest(1, httpx.ReadTimeout("timed out")), "cid-7")
    assert exc_info.value.timeout_ms == 2000

    with pytest.raises(httpx.ConnectError):
        await transport.send(FlakyRequest(1, httpx.ConnectError("refused")), "cid-8")
    assert sleep.delays == []
