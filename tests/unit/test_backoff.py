"""
Unit tests for the shared retry/backoff loop.
"""
import pytest

from ghostkey.base.config import RetryConfig
from ghostkey.errors import Cancelled
from ghostkey.net.backoff import BackoffPolicy, CancellationToken, run_with_backoff


class Transient(Exception):
    pass


class Fatal(Exception):
    pass


class GaveUp(Exception):
    def __init__(self, attempts):
        super().__init__(f"gave up after {attempts}")
        self.attempts = attempts


def _flaky(failures, result="ok", exc=Transient):
    calls = []

    async def operation(attempt):
        calls.append(attempt)
        if len(calls) <= failures:
            raise exc(f"failure {len(calls)}")
        return result

    return operation, calls


def test_delay_schedule_is_capped():
    policy = BackoffPolicy(max_attempts=6, base_delay=1.0, max_delay=10.0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [2.0, 4.0, 8.0, 10.0, 10.0]


def test_policy_from_config_clamps():
    policy = BackoffPolicy.from_config(RetryConfig(max_attempts=0, base_delay=-1, max_delay=5))
    assert policy.max_attempts == 1
    assert policy.base_delay == 0.0
    assert policy.max_delay == 5.0


@pytest.mark.anyio
async def test_succeeds_after_transient_failures(sleeps):
    operation, calls = _flaky(failures=2)
    result = await run_with_backoff(
        operation,
        policy=BackoffPolicy(3, 0.5, 10.0),
        is_retryable=lambda e: isinstance(e, Transient),
        on_exhausted=lambda e, n: GaveUp(n),
        sleep=sleeps,
    )
    assert result == "ok"
    assert calls == [1, 2, 3]
    assert sleeps.delays == [1.0, 2.0]


@pytest.mark.anyio
async def test_exhaustion_raises_built_error_without_final_sleep(sleeps):
    operation, calls = _flaky(failures=10)
    with pytest.raises(GaveUp) as exc_info:
        await run_with_backoff(
            operation,
            policy=BackoffPolicy(4, 1.0, 10.0),
            is_retryable=lambda e: isinstance(e, Transient),
            on_exhausted=lambda e, n: GaveUp(n),
            sleep=sleeps,
        )
    assert exc_info.value.attempts == 4
    assert isinstance(exc_info.value.__cause__, Transient)
    assert len(calls) == 4
    assert sleeps.delays == [2.0, 4.0, 8.0]


@pytest.mark.anyio
async def test_fatal_error_propagates_immediately(sleeps):
    operation, calls = _flaky(failures=1, exc=Fatal)
    with pytest.raises(Fatal):
        await run_with_backoff(
            operation,
            policy=BackoffPolicy(3, 1.0, 10.0),
            is_retryable=lambda e: isinstance(e, Transient),
            on_exhausted=lambda e, n: GaveUp(n),
            sleep=sleeps,
        )
    assert calls == [1]
    assert sleeps.delays == []


@pytest.mark.anyio
async def test_retry_events_observed(sleeps):
    events = []
    operation, _ = _flaky(failures=2)
    await run_with_backoff(
        operation,
        policy=BackoffPolicy(3, 1.0, 10.0),
        is_retryable=lambda e: True,
        on_exhausted=lambda e, n: GaveUp(n),
        label="fetch",
        sleep=sleeps,
        on_retry=events.append,
    )
    assert [(e.label, e.attempt, e.max_attempts, e.delay) for e in events] == [
        ("fetch", 1, 3, 2.0),
        ("fetch", 2, 3, 4.0),
    ]


class TestCancellation:
    @pytest.mark.anyio
    async def test_cancelled_before_first_attempt(self, sleeps):
        token = CancellationToken()
        token.cancel("user closed the page")
        operation, calls = _flaky(failures=0)

        with pytest.raises(Cancelled) as exc_info:
            await run_with_backoff(
                operation,
                policy=BackoffPolicy(3, 1.0, 10.0),
                is_retryable=lambda e: True,
                on_exhausted=lambda e, n: GaveUp(n),
                sleep=sleeps,
                cancel=token,
            )
        assert calls == []
        assert exc_info.value.details["reason"] == "user closed the page"

    @pytest.mark.anyio
    async def test_cancelled_between_attempts_skips_sleep(self, sleeps):
        token = CancellationToken()
        operation, calls = _flaky(failures=5)

        with pytest.raises(Cancelled):
            await run_with_backoff(
                operation,
                policy=BackoffPolicy(3, 1.0, 10.0),
                is_retryable=lambda e: True,
                on_exhausted=lambda e, n: GaveUp(n),
                sleep=sleeps,
                cancel=token,
                on_retry=lambda event: token.cancel(),
            )
        assert calls == [1]
        assert sleeps.delays == []
