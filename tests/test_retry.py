"""
Tests for the retry policy.
"""

import pytest


class TestBackoff:
    """Tests for backoff helpers."""

    def test_fixed(self):
        """Test fixed backoff."""
        from mediashrink.retry import fixed

        backoff = fixed(15.0)
        assert [backoff(n) for n in (1, 2, 5)] == [15.0, 15.0, 15.0]

    def test_exponential(self):
        """Test exponential backoff doubling from the base."""
        from mediashrink.retry import exponential

        backoff = exponential(2.0)
        assert [backoff(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


class TestRetryPolicy:
    """Tests for RetryPolicy.call."""

    def test_success_first_time(self):
        """Test that a successful call is not retried."""
        from mediashrink.retry import RetryPolicy

        calls = []
        policy = RetryPolicy(max_attempts=3, sleep=calls.append)
        assert policy.call(lambda: "ok") == "ok"
        assert calls == []

    def test_retries_then_succeeds(self):
        """Test that transient errors are retried with the backoff delay."""
        from mediashrink.retry import RetryPolicy, fixed

        sleeps = []
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise PermissionError("busy")
            return 42

        hooks = []
        policy = RetryPolicy(max_attempts=5, backoff=fixed(5.0), sleep=sleeps.append)
        assert policy.call(flaky, on_retry=lambda n, e: hooks.append(n)) == 42
        assert len(attempts) == 3
        assert sleeps == [5.0, 5.0]
        assert hooks == [1, 2]

    def test_exhausted_raises_last(self):
        """Test that the last error propagates once attempts run out."""
        from mediashrink.retry import RetryPolicy

        attempts = []

        def always_fails():
            attempts.append(1)
            raise OSError(f"attempt {len(attempts)}")

        policy = RetryPolicy(max_attempts=3, sleep=lambda s: None)
        with pytest.raises(OSError, match="attempt 3"):
            policy.call(always_fails)
        assert len(attempts) == 3

    def test_non_retryable_propagates_immediately(self):
        """Test that errors outside the predicate are not retried."""
        from mediashrink.retry import RetryPolicy

        attempts = []

        def bad():
            attempts.append(1)
            raise ValueError("bug")

        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=5, sleep=lambda s: None).call(bad)
        assert len(attempts) == 1

    def test_custom_predicate(self):
        """Test a predicate built from exception types."""
        from mediashrink.retry import RetryPolicy, retry_on

        attempts = []

        def fn():
            attempts.append(1)
            raise KeyError("x")

        policy = RetryPolicy(max_attempts=2, retryable=retry_on(KeyError), sleep=lambda s: None)
        with pytest.raises(KeyError):
            policy.call(fn)
        assert len(attempts) == 2

    def test_zero_delay_does_not_sleep(self):
        """Test that a zero delay skips sleeping."""
        from mediashrink.retry import RetryPolicy

        sleeps = []
        RetryPolicy(sleep=sleeps.append).wait(1)
        assert sleeps == []
