"""Tests for with_retry (tenacity-backed exponential backoff)."""

from __future__ import annotations

import logging

import pytest

from lister.errors import ExhaustedRetries, ListerError, TransactionFailure
from lister.utils.retry import with_retry


class Recorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.delays.append(seconds)


def flaky(failures: int, value: str = "ok"):
    calls = {"n": 0}

    async def action() -> str:
        calls["n"] += 1
        if calls["n"] <= failures:
            raise TransactionFailure(f"nonce too low #{calls['n']}")
        return value

    return action, calls


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_first_try_success_never_sleeps(self):
        rec = Recorder()
        action, calls = flaky(0)
        assert await with_retry(action, max_attempts=3, initial_delay=3, sleep=rec.sleep) == "ok"
        assert calls["n"] == 1
        assert rec.delays == []

    @pytest.mark.asyncio
    async def test_k_failures_then_success(self, caplog):
        caplog.set_level(logging.WARNING, logger="lister.retry")
        rec = Recorder()
        action, calls = flaky(3)

        result = await with_retry(
            action, max_attempts=5, initial_delay=2.0, operation="listing #1", sleep=rec.sleep
        )

        assert result == "ok"
        assert calls["n"] == 4
        assert rec.delays == [2.0, 4.0, 8.0]
        failures = [r for r in caplog.records if "failed for listing #1" in r.getMessage()]
        assert len(failures) == 3
        assert "Attempt 1/5" in failures[0].getMessage()
        assert "nonce too low #1" in failures[0].getMessage()

    @pytest.mark.asyncio
    async def test_always_failing_exhausts_exactly(self):
        rec = Recorder()
        action, calls = flaky(100)

        with pytest.raises(ExhaustedRetries) as exc_info:
            await with_retry(action, max_attempts=3, initial_delay=3.0, sleep=rec.sleep)

        assert calls["n"] == 3
        assert rec.delays == [3.0, 6.0]
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TransactionFailure)
        assert "nonce too low #3" in str(exc_info.value.last_error)

    @pytest.mark.asyncio
    async def test_final_failure_is_logged(self, caplog):
        caplog.set_level(logging.WARNING, logger="lister.retry")
        action, _ = flaky(100)
        with pytest.raises(ExhaustedRetries):
            await with_retry(action, max_attempts=2, initial_delay=1.0, sleep=Recorder().sleep)
        assert sum("Attempt" in r.getMessage() for r in caplog.records) == 2

    @pytest.mark.asyncio
    async def test_single_attempt(self):
        rec = Recorder()
        action, calls = flaky(1)
        with pytest.raises(ExhaustedRetries):
            await with_retry(action, max_attempts=1, initial_delay=3.0, sleep=rec.sleep)
        assert calls["n"] == 1
        assert rec.delays == []

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_immediately(self, caplog):
        caplog.set_level(logging.WARNING, logger="lister.retry")
        calls = {"n": 0}

        async def action() -> None:
            calls["n"] += 1
            raise ListerError("bad listing parameters", retryable=False)

        with pytest.raises(ListerError, match="bad listing parameters"):
            await with_retry(
                action, max_attempts=4, initial_delay=1.0, operation="listing #2",
                sleep=Recorder().sleep,
            )
        assert calls["n"] == 1
        messages = [r.getMessage() for r in caplog.records]
        assert messages == ["Attempt 1/4 failed for listing #2: bad listing parameters"]

    # ── Lambda actions (how the scheduler calls it) ──────────────────

    @pytest.mark.asyncio
    async def test_lambda_returning_coroutine_is_awaited(self):
        sent: list[str] = []

        async def create_listing(token: str) -> str:
            sent.append(token)
            return f"0x{token}"

        result = await with_retry(lambda: create_listing("ab"), sleep=Recorder().sleep)

        assert result == "0xab"
        assert sent == ["ab"]

    @pytest.mark.asyncio
    async def test_lambda_retried_until_success(self):
        rec = Recorder()
        action, calls = flaky(2, value="receipt")

        result = await with_retry(lambda: action(), max_attempts=3, initial_delay=3.0, sleep=rec.sleep)

        assert result == "receipt"
        assert calls["n"] == 3
        assert rec.delays == [3.0, 6.0]

    @pytest.mark.asyncio
    async def test_invalid_max_attempts(self):
        action, _ = flaky(0)
        with pytest.raises(ValueError):
            await with_retry(action, max_attempts=0)
