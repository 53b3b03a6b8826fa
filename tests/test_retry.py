import pytest

from jira_mirror.core.exceptions import AuthError, ConfigurationError, RateLimitedError, TransientFetchError
from jira_mirror.sync.retry import RetryAborted, RetryPolicy, call_with_retry

NO_JITTER = RetryPolicy(max_attempts=4, base_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=0.0)


class Flaky:
    def __init__(self, failures):
        self.failures = list(failures)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "page"


def test_backoff_grows_exponentially_and_caps():
    assert [NO_JITTER.delay_for(a) for a in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_retry_after_wins_when_longer():
    assert NO_JITTER.delay_for(0, retry_after=30.0) == 30.0
    assert NO_JITTER.delay_for(3, retry_after=0.5) == 5.0


def test_transient_failures_are_retried():
    waits = []
    func = Flaky([TransientFetchError("reset"), RateLimitedError("slow down", retry_after=7)])
    assert call_with_retry(func, NO_JITTER, wait=lambda s: waits.append(s) or False) == "page"
    assert func.calls == 3
    assert waits == [1.0, 7.0]


def test_exhausted_retries_reraise_last_error():
    func = Flaky([TransientFetchError(str(i)) for i in range(10)])
    with pytest.raises(TransientFetchError, match="3"):
        call_with_retry(func, NO_JITTER, wait=lambda s: False)
    assert func.calls == NO_JITTER.max_attempts


def test_non_transient_errors_are_not_retried():
    func = Flaky([AuthError("bad token")])
    with pytest.raises(AuthError):
        call_with_retry(func, NO_JITTER, wait=lambda s: False)
    assert func.calls == 1


def test_interrupted_wait_aborts():
    func = Flaky([TransientFetchError("reset")])
    with pytest.raises(RetryAborted):
        call_with_retry(func, NO_JITTER, wait=lambda s: True)


def test_invalid_policy_rejected():
    with pytest.raises(ConfigurationError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ConfigurationError):
        RetryPolicy(jitter=2.0)
