"""
Tests for the bounded retry loop.
"""

from unittest.mock import Mock

import pytest

from utils.errors import UpstreamError, UpstreamTimeout
from utils.retry import retry_call


class TestRetryCall:
    @pytest.fixture
    def sleep(self):
        return Mock()

    def test_success_first_try(self, sleep):
        fn = Mock(return_value=42)
        assert retry_call(fn, sleep=sleep) == 42
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_recovers_after_timeouts(self, sleep):
        fn = Mock(side_effect=[UpstreamTimeout("t"), UpstreamTimeout("t"), "ok"])
        assert retry_call(fn, max_attempts=3, delay_s=1.0, sleep=sleep) == "ok"
        assert fn.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 1.0]

    def test_budget_exhausted_raises_last(self, sleep):
        errors = [UpstreamTimeout("a"), UpstreamTimeout("b"), UpstreamTimeout("c")]
        fn = Mock(side_effect=errors)
        with pytest.raises(UpstreamTimeout, match="c"):
            retry_call(fn, max_attempts=3, sleep=sleep)
        assert fn.call_count == 3
        assert sleep.call_count == 2

    def test_bad_request_fails_fast(self, sleep):
        fn = Mock(side_effect=UpstreamError("bad bbox", status_code=400))
        with pytest.raises(UpstreamError):
            retry_call(fn, max_attempts=3, sleep=sleep)
        assert fn.call_count == 1
        sleep.assert_not_called()

    def test_rate_limit_is_retried(self, sleep):
        fn = Mock(side_effect=[UpstreamError("slow down", status_code=429), "ok"])
        assert retry_call(fn, sleep=sleep) == "ok"

    def test_server_error_is_retried(self, sleep):
        fn = Mock(side_effect=[UpstreamError("oops", status_code=503), "ok"])
        assert retry_call(fn, sleep=sleep) == "ok"

    def test_backoff_multiplies_delay(self, sleep):
        fn = Mock(side_effect=[UpstreamError("x"), UpstreamError("x"), UpstreamError("x"), "ok"])
        retry_call(fn, max_attempts=4, delay_s=1.0, backoff=2.0, sleep=sleep)
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 4.0]

    def test_other_exceptions_propagate(self, sleep):
        fn = Mock(side_effect=KeyError("boom"))
        with pytest.raises(KeyError):
            retry_call(fn, sleep=sleep)
        assert fn.call_count == 1

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            retry_call(Mock(), max_attempts=0)

    def test_single_attempt_reraises_same_error(self, sleep):
        err = UpstreamTimeout("only")
        with pytest.raises(UpstreamTimeout) as exc:
            retry_call(Mock(side_effect=err), max_attempts=1, sleep=sleep)
        assert exc.value is err
        sleep.assert_not_called()
