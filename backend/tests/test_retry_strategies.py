"""Tests for run retry strategies."""

import pytest

from campaign.retry_strategies import RetryStrategy, execute_with_retry
from core.exceptions import PermanentDeliveryError, TransientDeliveryError


async def no_sleep(_seconds):
    return None


# ─── RetryStrategy creation ───

@pytest.mark.unit
class TestRetryStrategyCreation:
    def test_exponential_strategy(self):
        s = RetryStrategy.exponential(max_retries=5, base_delay=1.0, max_delay=60.0)
        assert s.max_retries == 5
        assert s.max_delay == 60.0
        assert s.jitter is True

    def test_defaults(self):
        s = RetryStrategy.exponential()
        assert s.max_retries == 3
        assert s.base_delay == 1.0


# ─── Delay computation ───

@pytest.mark.unit
class TestDelayComputation:
    def test_exponential_delay_no_jitter(self):
        s = RetryStrategy.exponential(base_delay=1.0, jitter=False)
        assert [s.compute_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_deferred_backoff_is_two_four_eight_minutes(self):
        s = RetryStrategy.exponential(max_retries=3, base_delay=120.0, max_delay=960.0, jitter=False)
        assert [s.compute_delay(n) for n in (1, 2, 3)] == [120.0, 240.0, 480.0]

    def test_max_delay_cap(self):
        s = RetryStrategy.exponential(base_delay=10.0, max_delay=30.0, jitter=False)
        assert s.compute_delay(5) == 30.0  # 10 * 16 = 160, capped at 30

    def test_exponential_with_jitter_in_range(self):
        s = RetryStrategy.exponential(base_delay=10.0, jitter=True, max_delay=100.0)
        for _ in range(50):
            # base=10, jitter_range=0.25 → between 7.5 and 12.5
            assert 7.5 <= s.compute_delay(1) <= 12.5


# ─── Should retry ───

@pytest.mark.unit
class TestShouldRetry:
    def test_exceeds_max_retries(self):
        s = RetryStrategy.exponential(max_retries=3)
        assert s.should_retry(3) is False
        assert s.should_retry(2) is True

    def test_zero_retries_never_retries(self):
        assert RetryStrategy.exponential(max_retries=0).should_retry(0, TimeoutError()) is False

    def test_no_error_always_retries(self):
        assert RetryStrategy.exponential(max_retries=5).should_retry(1, None) is True

    def test_timeout_error_retried(self):
        assert RetryStrategy.exponential().should_retry(1, TimeoutError("timeout")) is True

    def test_connection_error_retried(self):
        assert RetryStrategy.exponential().should_retry(1, ConnectionError("refused")) is True

    def test_delivery_errors_follow_their_retryable_flag(self):
        s = RetryStrategy.exponential()
        assert s.should_retry(1, TransientDeliveryError("503")) is True
        assert s.should_retry(1, PermanentDeliveryError("bad address")) is False

    def test_other_errors_not_retried(self):
        assert RetryStrategy.exponential().should_retry(1, KeyError("node")) is False


# ─── Execute with retry ───

@pytest.mark.unit
class TestExecuteWithRetry:
    async def test_success_first_attempt(self):
        call_count = 0

        async def func():
            nonlocal call_count
            call_count += 1
            return 42

        result = await execute_with_retry(func, RetryStrategy.exponential(max_retries=3), sleep=no_sleep)
        assert result == 42
        assert call_count == 1

    async def test_retries_on_failure(self):
        call_count = 0

        async def func():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise TransientDeliveryError("provider unavailable")
            return "ok"

        result = await execute_with_retry(
            func, RetryStrategy.exponential(max_retries=5, base_delay=30.0), sleep=no_sleep
        )
        assert result == "ok"
        assert call_count == 3

    async def test_exhausts_retries(self):
        call_count = 0

        async def func():
            nonlocal call_count
            call_count += 1
            raise TimeoutError("always timeout")

        with pytest.raises(TimeoutError):
            await execute_with_retry(func, RetryStrategy.exponential(max_retries=3), sleep=no_sleep)
        assert call_count == 3

    async def test_no_retry_on_non_retryable(self):
        call_count = 0

        async def func():
            nonlocal call_count
            call_count += 1
            raise PermanentDeliveryError("rejected")

        with pytest.raises(PermanentDeliveryError):
            await execute_with_retry(func, RetryStrategy.exponential(max_retries=5), sleep=no_sleep)
        assert call_count == 1

    async def test_sleeps_between_attempts(self):
        waits = []

        async def record_sleep(seconds):
            waits.append(seconds)

        async def func():
            if len(waits) < 2:
                raise ConnectionError("refused")
            return "done"

        s = RetryStrategy.exponential(max_retries=5, base_delay=5.0, jitter=False)
        assert await execute_with_retry(func, s, sleep=record_sleep) == "done"
        assert waits == [5.0, 10.0]
