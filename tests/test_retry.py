"""Tests for minicluster.retry module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from minicluster.exceptions import ManagerError, RetriableError
from minicluster.retry import RetryPolicy, retry_after


def _flaky(failures: int, result="ok"):
    """Operation that raises RetriableError ``failures`` times, then returns ``result``."""
    calls = {"count": 0}

    def _op():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise RetriableError(ManagerError(f"failure {calls['count']}"))
        return result

    return _op, calls


class TestRetryAfter:
    def test_first_success_does_not_sleep(self):
        op, calls = _flaky(0)
        with patch("minicluster.retry.time.sleep") as mock_sleep:
            assert retry_after(3, op, 1) == "ok"
        assert calls["count"] == 1
        mock_sleep.assert_not_called()

    def test_two_failures_then_success_sleeps_twice(self):
        op, calls = _flaky(2, result=42)
        with patch("minicluster.retry.time.sleep") as mock_sleep:
            assert retry_after(3, op, 1) == 42
        assert calls["count"] == 3
        assert mock_sleep.call_count == 2
        mock_sleep.assert_called_with(1)

    def test_always_failing_raises_last_error_after_all_attempts(self):
        op, calls = _flaky(10)
        with patch("minicluster.retry.time.sleep") as mock_sleep:
            with pytest.raises(RetriableError, match="failure 3"):
                retry_after(3, op, 1)
        assert calls["count"] == 3
        assert mock_sleep.call_count == 2

    def test_non_retriable_error_propagates_immediately(self):
        op = MagicMock(side_effect=ManagerError("permanent"))
        with patch("minicluster.retry.time.sleep") as mock_sleep:
            with pytest.raises(ManagerError, match="permanent"):
                retry_after(5, op, 1)
        op.assert_called_once()
        mock_sleep.assert_not_called()

    def test_custom_retry_on(self):
        op = MagicMock(side_effect=[OSError("flaky"), "done"])
        with patch("minicluster.retry.time.sleep"):
            assert retry_after(2, op, 0, retry_on=(OSError,)) == "done"
        assert op.call_count == 2

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            retry_after(0, lambda: None, 1)


class TestRetryPolicy:
    def test_run_delegates(self):
        op, calls = _flaky(1)
        policy = RetryPolicy(attempts=2, interval=0.5)
        with patch("minicluster.retry.time.sleep") as mock_sleep:
            assert policy.run(op) == "ok"
        assert calls["count"] == 2
        mock_sleep.assert_called_once_with(0.5)

    def test_policy_is_frozen(self):
        policy = RetryPolicy(attempts=2, interval=1)
        with pytest.raises(AttributeError):
            policy.attempts = 3  # type: ignore[misc]
