"""Tests for the circuit breaker and retry helpers."""

from __future__ import annotations

import asyncio

import pytest

from relay.utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, CircuitState
from relay.utils.retry import retry_with_backoff


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


async def _failing():
    raise ValueError("boom")


async def _ok():
    return "ok"


async def _fail_times(cb: CircuitBreaker, n: int) -> None:
    for _ in range(n):
        with pytest.raises(ValueError):
            await cb.call(_failing)


class TestCircuitBreaker:
    def _run(self, coro):
        return asyncio.run(coro)

    def test_starts_closed(self):
        cb = CircuitBreaker("feed", failure_threshold=3)
        assert cb.state is CircuitState.CLOSED
        assert cb.failure_count == 0

    def test_opens_at_threshold(self):
        cb = CircuitBreaker("feed", failure_threshold=3)
        self._run(_fail_times(cb, 2))
        assert cb.state is CircuitState.CLOSED
        self._run(_fail_times(cb, 1))
        assert cb.state is CircuitState.OPEN

    def test_open_circuit_rejects_until_timeout(self):
        clock = _Clock()
        cb = CircuitBreaker("feed", failure_threshold=1, recovery_timeout=60, clock=clock)

        async def _scenario():
            await _fail_times(cb, 1)
            clock.now += 59
            with pytest.raises(CircuitBreakerOpenError):
                await cb.call(_ok)
            clock.now += 2
            return await cb.call(_ok)

        assert self._run(_scenario()) == "ok"
        assert cb.state is CircuitState.CLOSED

    def test_failed_probe_reopens(self):
        clock = _Clock()
        cb = CircuitBreaker("discord", failure_threshold=1, recovery_timeout=10, clock=clock)

        async def _scenario():
            await _fail_times(cb, 1)
            clock.now += 11
            await _fail_times(cb, 1)

        self._run(_scenario())
        assert cb.state is CircuitState.OPEN

    def test_success_resets_failure_count(self):
        cb = CircuitBreaker("feed", failure_threshold=5)

        async def _scenario():
            await _fail_times(cb, 3)
            await cb.call(_ok)

        self._run(_scenario())
        assert cb.failure_count == 0

    def test_half_open_allows_limited_probes(self):
        clock = _Clock()
        cb = CircuitBreaker("feed", failure_threshold=1, recovery_timeout=1, half_open_max_calls=1, clock=clock)
        gate = asyncio.Event()

        async def _slow():
            await gate.wait()
            return "probe"

        async def _scenario():
            await _fail_times(cb, 1)
            clock.now += 2
            probe = asyncio.create_task(cb.call(_slow))
            await asyncio.sleep(0)
            with pytest.raises(CircuitBreakerOpenError):
                await cb.call(_ok)
            gate.set()
            return await probe

        assert self._run(_scenario()) == "probe"
        assert cb.state is CircuitState.CLOSED


class TestRetry:
    @pytest.fixture(autouse=True)
    def _no_sleep(self, monkeypatch):
        delays = []

        async def _record(delay):
            delays.append(delay)

        monkeypatch.setattr("relay.utils.retry.asyncio.sleep", _record)
        return delays

    def test_retries_then_succeeds(self, _no_sleep):
        calls = []

        @retry_with_backoff(max_retries=3, backoff_factor=2.0, exceptions=(ConnectionError,), jitter=0)
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("down")
            return "up"

        assert asyncio.run(flaky()) == "up"
        assert len(calls) == 3
        assert _no_sleep == [1.0, 2.0]

    def test_gives_up_after_max_retries(self, _no_sleep):
        calls = []

        @retry_with_backoff(max_retries=2, exceptions=(ConnectionError,), jitter=0)
        async def always_down():
            calls.append(1)
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            asyncio.run(always_down())
        assert len(calls) == 3

    def test_other_exceptions_are_not_retried(self, _no_sleep):
        calls = []

        @retry_with_backoff(max_retries=5, exceptions=(ConnectionError,))
        async def broken():
            calls.append(1)
            raise KeyError("bug")

        with pytest.raises(KeyError):
            asyncio.run(broken())
        assert len(calls) == 1
        assert _no_sleep == []
