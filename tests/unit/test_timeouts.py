"""Deadline watchdog and backoff helpers."""

import time

import pytest

from inboxrules.utils.backoff import exponential_backoff, retry
from inboxrules.utils.deadline import DeadlineExceeded, call_with_timeout


def test_call_with_timeout_returns_value():
    assert call_with_timeout(lambda x, y=0: x + y, 2, y=3, timeout_s=1) == 5


def test_call_with_timeout_reraises_in_caller():
    def boom():
        raise KeyError("missing")

    with pytest.raises(KeyError):
        call_with_timeout(boom, timeout_s=1)


def test_call_with_timeout_gives_up_at_deadline():
    with pytest.raises(DeadlineExceeded):
        call_with_timeout(time.sleep, 0.5, timeout_s=0.05)


def test_no_deadline_runs_inline():
    assert call_with_timeout(lambda: "inline", timeout_s=None) == "inline"


def test_backoff_grows_and_is_capped():
    delays = [exponential_backoff(base=1, factor=2, cap=5, failures=n) for n in range(5)]
    assert delays == [1, 2, 4, 5, 5]


def test_retry_only_retries_listed_errors():
    calls = []

    def flaky():
        calls.append(1)
        raise ValueError("permanent")

    with pytest.raises(ValueError):
        retry(flaky, retry_on=(KeyError,), attempts=3, sleep=lambda _: None)
    assert len(calls) == 1


def test_retry_reports_each_retry():
    attempts = iter([KeyError("a"), KeyError("b"), "done"])
    seen = []

    def flaky():
        item = next(attempts)
        if isinstance(item, Exception):
            raise item
        return item

    result = retry(
        flaky,
        retry_on=(KeyError,),
        attempts=3,
        base=0.5,
        sleep=lambda _: None,
        on_retry=lambda attempt, error, delay: seen.append((attempt, delay)),
    )
    assert result == "done"
    assert seen == [(1, 0.5), (2, 1.0)]
