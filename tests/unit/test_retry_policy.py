"""
Unit tests for the retry policy.
"""

import asyncio
import errno
import random

import pytest

from pipeline_coordinator.models import ErrorCategory, ErrorClassification, RetrySettings
from pipeline_coordinator.orchestration.errors import (
    PermanentExecutionError,
    StageCancelled,
    TransientExecutionError,
)
from pipeline_coordinator.orchestration.retry_policy import RetryPolicy, categorize_error
from tests.fixtures.executors import RecordingSleep


class HTTPStatusError(Exception):
    def __init__(self, status_code: int, message: str = "request failed"):
        super().__init__(message)
        self.status_code = status_code


class _Response:
    def __init__(self, status_code: int):
        self.status_code = status_code


class ResponseError(Exception):
    def __init__(self, status_code: int):
        super().__init__("upstream error")
        self.response = _Response(status_code)


class CodedError(Exception):
    def __init__(self, code: str):
        super().__init__("socket failure")
        self.code = code


@pytest.mark.parametrize(
    "error",
    [
        ConnectionError("connection reset by peer"),
        asyncio.TimeoutError(),
        TimeoutError("read timed out"),
        HTTPStatusError(429),
        HTTPStatusError(503),
        ResponseError(502),
        CodedError("ECONNRESET"),
        OSError(errno.ECONNREFUSED, "refused"),
        RuntimeError("Rate limit exceeded, slow down"),
        TransientExecutionError("provider overloaded"),
    ],
)
def test_transient_errors(error):
    """Network, timeout, rate-limit and 5xx failures are retryable."""
    assert RetryPolicy().classify(error) == ErrorClassification.TRANSIENT


@pytest.mark.parametrize(
    "error",
    [
        ValueError("malformed record"),
        KeyError("doi"),
        HTTPStatusError(401),
        HTTPStatusError(404),
        HTTPStatusError(422),
        RuntimeError("something odd"),
        PermanentExecutionError("bad input"),
        StageCancelled("stop"),
    ],
)
def test_permanent_errors(error):
    assert RetryPolicy().classify(error) == ErrorClassification.PERMANENT


def test_explicit_classification_beats_heuristics():
    """An executor's explicit classification wins over message heuristics."""
    error = PermanentExecutionError("network timeout while validating")
    assert RetryPolicy().classify(error) == ErrorClassification.PERMANENT


def test_categorize_error():
    assert categorize_error(HTTPStatusError(429)) == ErrorCategory.RATE_LIMIT
    assert categorize_error(HTTPStatusError(403)) == ErrorCategory.AUTH_ERROR
    assert categorize_error(HTTPStatusError(408)) == ErrorCategory.TIMEOUT
    assert categorize_error(HTTPStatusError(500)) == ErrorCategory.SERVER_ERROR
    assert categorize_error(HTTPStatusError(400)) == ErrorCategory.VALIDATION_ERROR
    assert categorize_error(ConnectionResetError()) == ErrorCategory.NETWORK_ERROR
    assert categorize_error(CodedError("ETIMEDOUT")) == ErrorCategory.TIMEOUT
    assert categorize_error(RuntimeError("Invalid API key")) == ErrorCategory.AUTH_ERROR
    assert categorize_error(StageCancelled("stop")) == ErrorCategory.CANCELLED
    assert categorize_error(RuntimeError("odd")) == ErrorCategory.UNKNOWN
    assert (
        categorize_error(TransientExecutionError("x", category=ErrorCategory.RATE_LIMIT))
        == ErrorCategory.RATE_LIMIT
    )


def test_custom_transient_predicate():
    class QuotaError(Exception):
        pass

    policy = RetryPolicy()
    assert not policy.is_transient(QuotaError("quota"))
    policy.add_transient_predicate(lambda e: isinstance(e, QuotaError))
    assert policy.is_transient(QuotaError("quota"))


def test_custom_transient_status_codes():
    policy = RetryPolicy(transient_status_codes=[503])
    assert policy.is_transient(HTTPStatusError(503))
    assert not policy.is_transient(HTTPStatusError(500))


def test_backoff_is_bounded():
    """min(base*2^k, max) <= delay <= min(1.25*base*2^k, max)."""
    policy = RetryPolicy(base_delay=1.0, max_delay=30.0, rng=random.Random(11))
    for attempt in range(12):
        exponential = 1.0 * 2**attempt
        for _ in range(20):
            delay = policy.next_delay(attempt)
            assert min(exponential, 30.0) <= delay <= min(exponential * 1.25, 30.0)


def test_backoff_without_jitter_is_exact():
    policy = RetryPolicy(base_delay=0.5, max_delay=10.0, jitter_ratio=0.0)
    assert policy.next_delay(0) == 0.5
    assert policy.next_delay(1) == 1.0
    assert policy.next_delay(3) == 4.0
    assert policy.next_delay(10) == 10.0
    assert policy.next_delay(2, base=2.0, max_delay=5.0) == 5.0


def test_backoff_handles_large_attempts():
    policy = RetryPolicy(max_delay=30.0)
    assert policy.next_delay(500) == 30.0


def test_negative_attempt_rejected():
    with pytest.raises(ValueError):
        RetryPolicy().next_delay(-1)


def test_invalid_construction():
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=-1)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay=0)


def test_should_retry():
    policy = RetryPolicy(max_retries=3)
    error = ConnectionError("reset")
    assert policy.should_retry(error, 0)
    assert policy.should_retry(error, 2)
    assert not policy.should_retry(error, 3)
    assert not policy.should_retry(ValueError("bad"), 0)


def test_from_settings_with_overrides():
    settings = RetrySettings(max_retries=5, base_delay=2.0, max_delay=60.0, jitter_ratio=0.1)
    sleep = RecordingSleep()
    policy = RetryPolicy.from_settings(settings, sleep=sleep)
    assert policy.max_retries == 5
    assert policy.base_delay == 2.0
    assert policy.max_delay == 60.0
    assert policy.jitter_ratio == 0.1


@pytest.mark.asyncio
async def test_retrying_recovers_from_transient_errors() -> None:
    sleep = RecordingSleep()
    policy = RetryPolicy(max_retries=3, sleep=sleep, rng=random.Random(1))
    calls = []

    async for attempt in policy.retrying():
        with attempt:
            calls.append(attempt.retry_state.attempt_number)
            if len(calls) < 3:
                raise ConnectionError("connection reset")

    assert calls == [1, 2, 3]
    assert len(sleep.delays) == 2
    assert 1.0 <= sleep.delays[0] <= 1.25
    assert 2.0 <= sleep.delays[1] <= 2.5


@pytest.mark.asyncio
async def test_retrying_stops_after_budget() -> None:
    sleep = RecordingSleep()
    policy = RetryPolicy(max_retries=2, sleep=sleep)
    calls = 0

    with pytest.raises(ConnectionError):
        async for attempt in policy.retrying():
            with attempt:
                calls += 1
                raise ConnectionError("connection reset")

    assert calls == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_retrying_does_not_retry_permanent_errors() -> None:
    sleep = RecordingSleep()
    policy = RetryPolicy(max_retries=3, sleep=sleep)
    calls = 0

    with pytest.raises(ValueError):
        async for attempt in policy.retrying():
            with attempt:
                calls += 1
                raise ValueError("malformed")

    assert calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_before_sleep_sees_computed_delay() -> None:
    sleep = RecordingSleep()
    policy = RetryPolicy(max_retries=1, jitter_ratio=0.0, sleep=sleep)
    seen = []

    async def before_sleep(retry_state) -> None:
        seen.append((retry_state.attempt_number, retry_state.next_action.sleep))

    async for attempt in policy.retrying(before_sleep=before_sleep):
        with attempt:
            if attempt.retry_state.attempt_number == 1:
                raise TimeoutError("timed out")

    assert seen == [(1, 1.0)]
    assert sleep.delays == [1.0]
