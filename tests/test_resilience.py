"""Tests for retry and polling helpers."""

import pytest

from tachyon_ops.utils.resilience import RetryConfig, async_retry, calculate_backoff, poll_until


class TestCalculateBackoff:
    def test_exponential_growth(self):
        config = RetryConfig(base_delay=1.0, max_delay=30.0)
        assert [calculate_backoff(i, config) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        config = RetryConfig(base_delay=10.0, max_delay=15.0)
        assert calculate_backoff(3, config) == 15.0

    def test_jitter_stays_in_range(self):
        config = RetryConfig(base_delay=2.0, jitter=True)
        for _ in range(20):
            assert 1.0 <= calculate_backoff(0, config) <= 3.0

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)


class TestAsyncRetry:
    """Tests for async_retry()."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, recording_sleep):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OSError("connection refused")
            return "ok"

        result = await async_retry(flaky, RetryConfig(max_attempts=3), sleep=recording_sleep)

        assert result == "ok"
        assert len(calls) == 3
        assert recording_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_raises_last_error_when_exhausted(self, no_sleep):
        async def always_fails():
            raise OSError("down")

        with pytest.raises(OSError, match="down"):
            await async_retry(always_fails, RetryConfig(max_attempts=2), sleep=no_sleep)

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_final_failure(self, recording_sleep):
        errors = [OSError("refused"), OSError("reset"), OSError("timed out")]
        calls = []

        async def failing():
            calls.append(1)
            raise errors[len(calls) - 1]

        with pytest.raises(OSError) as exc_info:
            await async_retry(failing, RetryConfig(max_attempts=3), sleep=recording_sleep)

        assert exc_info.value is errors[-1]
        assert len(calls) == 3
        assert recording_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_single_attempt_does_not_sleep(self, recording_sleep):
        async def down():
            raise OSError("down")

        with pytest.raises(OSError, match="down"):
            await async_retry(down, RetryConfig(max_attempts=1), sleep=recording_sleep)

        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self, recording_sleep):
        calls = []

        async def bad_config():
            calls.append(1)
            raise ValueError("bad url")

        config = RetryConfig(max_attempts=5, retryable_exceptions=(OSError,))
        with pytest.raises(ValueError):
            await async_retry(bad_config, config, sleep=recording_sleep)

        assert len(calls) == 1
        assert recording_sleep.delays == []


class TestPollUntil:
    """Tests for poll_until()."""

    @pytest.mark.asyncio
    async def test_returns_on_first_success(self, recording_sleep):
        async def ready():
            return True

        assert await poll_until(ready, RetryConfig(max_attempts=5), 60, sleep=recording_sleep) == (True, 1)
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_exhausts_attempt_budget(self, recording_sleep):
        async def never():
            return False

        met, attempts = await poll_until(
            never, RetryConfig(max_attempts=4, base_delay=1.0), 3600, sleep=recording_sleep
        )

        assert (met, attempts) == (False, 4)
        assert recording_sleep.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_sleep_is_clipped_to_deadline(self, recording_sleep):
        now = [0.0]

        async def sleep(delay):
            await recording_sleep(delay)
            now[0] += delay

        checks = []

        async def never():
            checks.append(now[0])
            return False

        met, _ = await poll_until(
            never,
            RetryConfig(max_attempts=10, base_delay=4.0),
            timeout_seconds=5.0,
            sleep=sleep,
            clock=lambda: now[0],
        )

        assert not met
        assert recording_sleep.delays == [4.0, 1.0]
        # Final check happens exactly at the deadline
        assert checks == [0.0, 4.0, 5.0]
