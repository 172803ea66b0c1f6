import asyncio
import itertools
import time

import pytest

from pagewright.clock import Lifeline
from pagewright.errors import ProbeFailure, SessionDisconnected, TimeoutExceeded
from pagewright.models import RetryPolicy
from pagewright.retry import retry


def test_intervals_grow_exponentially_up_to_the_cap() -> None:
    policy = RetryPolicy(poll_interval_ms=20, max_poll_interval_ms=100, backoff_factor=2.0)
    intervals = list(itertools.islice(policy.intervals(), 6))
    assert intervals == pytest.approx([0.02, 0.04, 0.08, 0.1, 0.1, 0.1])


def test_requested_interval_above_cap_stays_constant() -> None:
    policy = RetryPolicy(poll_interval_ms=100, max_poll_interval_ms=100)
    assert list(itertools.islice(policy.intervals(), 3)) == pytest.approx([0.1, 0.1, 0.1])


def test_predicate_true_at_350ms_resolves_before_450ms() -> None:
    async def scenario():
        started = time.monotonic()

        def probe() -> float:
            return time.monotonic() - started

        result = await retry(probe, lambda elapsed: elapsed >= 0.35, timeout_ms=1000, poll_interval_ms=100)
        return result, (time.monotonic() - started) * 1000

    result, elapsed_ms = asyncio.run(scenario())
    assert 350 <= elapsed_ms < 480
    assert result.value >= 0.35


def test_success_stops_polling_immediately() -> None:
    calls = []

    async def scenario():
        def probe() -> int:
            calls.append(time.monotonic())
            return len(calls)

        result = await retry(probe, lambda count: count == 3, timeout_ms=1000, poll_interval_ms=10)
        await asyncio.sleep(0.1)
        return result

    result = asyncio.run(scenario())
    assert result.attempts == 3
    assert result.value == 3
    assert len(calls) == 3


def test_async_probe_and_predicate_are_awaited() -> None:
    async def probe() -> str:
        return "ready"

    async def predicate(value: str) -> bool:
        return value == "ready"

    result = asyncio.run(retry(probe, predicate, timeout_ms=100))
    assert result.value == "ready"
    assert result.attempts == 1


def test_timeout_is_close_to_the_deadline() -> None:
    async def scenario():
        started = time.monotonic()
        with pytest.raises(TimeoutExceeded) as excinfo:
            await retry(lambda: False, bool, timeout_ms=200, poll_interval_ms=20, describe=lambda _: "still false")
        return excinfo.value, (time.monotonic() - started) * 1000

    error, elapsed_ms = asyncio.run(scenario())
    assert 195 <= elapsed_ms < 400
    assert error.last_reason == "still false"
    assert error.attempts >= 2
    assert "timeout 200ms exceeded (still false)" in str(error)


def test_timeout_keeps_the_last_concrete_reason() -> None:
    responses = iter([ProbeFailure("element not attached"), ProbeFailure("element not attached")])

    def probe() -> str:
        failure = next(responses, None)
        if failure is not None:
            raise failure
        return "hidden"

    def describe(value: str) -> str:
        return f"element not visible ({value})"

    with pytest.raises(TimeoutExceeded) as excinfo:
        asyncio.run(retry(probe, lambda value: value == "shown", timeout_ms=120, poll_interval_ms=10, describe=describe))
    assert excinfo.value.last_reason == "element not visible (hidden)"
    assert excinfo.value.details["last_reason"] == "element not visible (hidden)"


def test_unexpected_probe_error_propagates_at_once() -> None:
    calls = []

    def probe() -> None:
        calls.append(1)
        raise KeyError("boom")

    with pytest.raises(KeyError):
        asyncio.run(retry(probe, timeout_ms=1000))
    assert calls == [1]


def test_hanging_probe_cannot_outlive_the_deadline() -> None:
    async def probe() -> bool:
        await asyncio.sleep(10)
        return True

    async def scenario():
        started = time.monotonic()
        with pytest.raises(TimeoutExceeded) as excinfo:
            await retry(probe, timeout_ms=100)
        return excinfo.value, time.monotonic() - started

    error, elapsed = asyncio.run(scenario())
    assert elapsed < 1.0
    assert error.last_reason == "probe did not answer before the deadline"


def test_tripped_lifeline_aborts_retry_before_deadline() -> None:
    async def scenario():
        lifeline = Lifeline("document-1")
        asyncio.get_running_loop().call_later(0.05, lifeline.trip, "document document-1 closed")
        started = time.monotonic()
        with pytest.raises(SessionDisconnected) as excinfo:
            await retry(lambda: False, bool, timeout_ms=5000, poll_interval_ms=20, lifeline=lifeline)
        return excinfo.value, time.monotonic() - started

    error, elapsed = asyncio.run(scenario())
    assert elapsed < 0.5
    assert error.node_id == "document-1"
    assert "closed" in str(error)


def test_already_tripped_lifeline_never_polls() -> None:
    calls = []
    lifeline = Lifeline("session-1")
    lifeline.trip("gone")

    with pytest.raises(SessionDisconnected):
        asyncio.run(retry(lambda: calls.append(1), timeout_ms=1000, lifeline=lifeline))
    assert calls == []
