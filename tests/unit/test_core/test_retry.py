# SPDX-License-Identifier: LGPL-3.0-or-later
import pytest

from snap2vm.core.retry import poll_until, retry_operation


@pytest.mark.unit
class TestPollUntil:
    def test_returns_first_hit(self):
        sleeps = []
        seen = []

        def check(n):
            seen.append(n)
            return "ds" if n == 3 else None

        assert poll_until(check, attempts=5, delay_s=10, sleep=sleeps.append) == "ds"
        assert seen == [1, 2, 3]
        assert sleeps == [10, 10]

    def test_gives_up_after_attempts(self):
        sleeps = []

        assert poll_until(lambda n: None, attempts=4, delay_s=1.5, sleep=sleeps.append) is None
        # no sleep after the final attempt
        assert sleeps == [1.5, 1.5, 1.5]

    def test_zero_attempts_still_checks_once(self):
        calls = []
        poll_until(lambda n: calls.append(n), attempts=0, delay_s=1, sleep=lambda s: None)
        assert calls == [1]

    def test_check_errors_propagate(self):
        def check(n):
            raise RuntimeError("vCenter gone")

        with pytest.raises(RuntimeError):
            poll_until(check, attempts=3, delay_s=0, sleep=lambda s: None)


@pytest.mark.unit
class TestRetryOperation:
    def test_retries_then_succeeds(self):
        attempts = []
        sleeps = []

        def op():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("reset")
            return "ok"

        result = retry_operation(
            op,
            max_attempts=3,
            base_backoff_s=1.0,
            jitter_s=0,
            exceptions=(ConnectionError,),
            sleep=sleeps.append,
        )

        assert result == "ok"
        assert sleeps == [1.0, 2.0]

    def test_reraises_last_error(self):
        def op():
            raise ConnectionError("still down")

        with pytest.raises(ConnectionError, match="still down"):
            retry_operation(op, max_attempts=2, jitter_s=0, exceptions=(ConnectionError,), sleep=lambda s: None)

    def test_other_errors_not_retried(self):
        calls = []

        def op():
            calls.append(1)
            raise ValueError("bad request")

        with pytest.raises(ValueError):
            retry_operation(op, max_attempts=5, exceptions=(ConnectionError,), sleep=lambda s: None)
        assert len(calls) == 1

    def test_backoff_capped(self):
        sleeps = []

        def op():
            raise ConnectionError()

        with pytest.raises(ConnectionError):
            retry_operation(
                op,
                max_attempts=5,
                base_backoff_s=10,
                max_backoff_s=25,
                jitter_s=0,
                exceptions=(ConnectionError,),
                sleep=sleeps.append,
            )
        assert sleeps == [10, 20, 25, 25]
