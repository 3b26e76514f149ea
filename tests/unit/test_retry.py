import pytest

from spice.common.context import CancelContext, Cancelled
from spice.common.retry import MaxRetriesExceeded, RetryableError, RetryOptions, with_retry

NO_WAIT = RetryOptions(max_attempts=3, initial_delay=0.0, multiplier=2.0, max_delay=0.0)


@pytest.mark.unit
class TestWithRetry:

    def test_returns_first_success(self, mocker):
        operation = mocker.Mock(side_effect=[RuntimeError("boom"), "ok"])

        assert with_retry(CancelContext(), operation, NO_WAIT) == "ok"
        assert operation.call_count == 2

    def test_gives_up_after_max_attempts(self, mocker):
        error = RuntimeError("still down")
        operation = mocker.Mock(side_effect=error)

        with pytest.raises(MaxRetriesExceeded) as exc_info:
            with_retry(CancelContext(), operation, NO_WAIT)

        assert operation.call_count == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.__cause__ is error

    def test_non_retryable_error_propagates_at_once(self, mocker):
        operation = mocker.Mock(side_effect=RetryableError("bad key", retryable=False))

        with pytest.raises(RetryableError, match="bad key"):
            with_retry(CancelContext(), operation, NO_WAIT)

        assert operation.call_count == 1

    def test_cancelled_before_first_attempt(self, mocker):
        ctx = CancelContext()
        ctx.cancel()
        operation = mocker.Mock()

        with pytest.raises(Cancelled):
            with_retry(ctx, operation, NO_WAIT)

        operation.assert_not_called()

    def test_cancel_during_backoff_aborts(self, mocker):
        ctx = CancelContext()

        def fail_and_cancel():
            ctx.cancel()
            raise RuntimeError("boom")

        operation = mocker.Mock(side_effect=fail_and_cancel)
        options = RetryOptions(max_attempts=5, initial_delay=30.0)

        with pytest.raises(Cancelled):
            with_retry(ctx, operation, options)

        assert operation.call_count == 1

    def test_backoff_grows_and_is_capped(self, mocker):
        ctx = CancelContext()
        wait = mocker.patch.object(ctx, "wait", return_value=False)
        operation = mocker.Mock(side_effect=RuntimeError("boom"))
        options = RetryOptions(max_attempts=4, initial_delay=0.5, multiplier=2.0, max_delay=1.5)

        with pytest.raises(MaxRetriesExceeded):
            with_retry(ctx, operation, options)

        assert [c.args[0] for c in wait.call_args_list] == [0.5, 1.0, 1.5]

    def test_without_context_sleeps(self, mocker):
        sleep = mocker.patch("spice.common.retry.time.sleep")
        operation = mocker.Mock(side_effect=[RuntimeError("boom"), 42])

        assert with_retry(None, operation, RetryOptions(initial_delay=0.25)) == 42
        sleep.assert_called_once_with(0.25)
