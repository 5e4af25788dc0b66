"""Tests for the transient-error retry wrapper."""

import pytest

from backend.app.bank_integration.retry import is_transient_error, with_retry


class Flaky:
    """Fails with the given errors in order, then returns "ok"."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestIsTransientError:

    @pytest.mark.parametrize("message", [
        "Connection terminated unexpectedly",
        "read ECONNRESET",
        "sorry, too many clients already",
        "remaining connection slots are reserved",
        "Tenant or user not found",
    ])
    def test_transient_messages(self, message):
        assert is_transient_error(Exception(message))

    def test_other_errors_are_not_transient(self):
        assert not is_transient_error(ValueError("duplicate key value violates unique constraint"))


class TestWithRetry:

    async def test_succeeds_after_two_transient_failures(self):
        fn = Flaky(ConnectionError("connection reset by peer"), ConnectionError("ETIMEDOUT"))

        assert await with_retry(fn, retries=2, delay=0) == "ok"
        assert fn.calls == 3

    async def test_reraises_last_transient_error_after_all_attempts(self):
        errors = [ConnectionError(f"Connection terminated #{i}") for i in range(3)]
        fn = Flaky(*errors)

        with pytest.raises(ConnectionError) as exc_info:
            await with_retry(fn, retries=2, delay=0)

        assert exc_info.value is errors[2]
        assert fn.calls == 3

    async def test_non_transient_error_is_raised_immediately(self):
        fn = Flaky(ValueError("bad input"))

        with pytest.raises(ValueError, match="bad input"):
            await with_retry(fn, retries=2, delay=0)

        assert fn.calls == 1

    async def test_on_retry_runs_before_each_retry(self):
        rollbacks = []

        async def rollback():
            rollbacks.append(True)

        fn = Flaky(ConnectionError("timeout"))
        await with_retry(fn, retries=2, delay=0, on_retry=rollback)

        assert len(rollbacks) == 1
