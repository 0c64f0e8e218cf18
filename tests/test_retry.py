from __future__ import annotations

import pytest

from jobrunner.utils.retry import (
    PermanentError,
    RetryExhaustedError,
    RetryPolicy,
    TransientError,
    call_with_retry,
    error_for_status,
)


class _Flaky:
    def __init__(self, failures: list[Exception], result: str = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


def test_transient_errors_are_retried_with_linear_delay() -> None:
    sleeps: list[float] = []
    fn = _Flaky([TransientError("529"), TransientError("503"), TransientError("429")])
    policy = RetryPolicy(max_attempts=4, base_delay_s=2.0, max_delay_s=30.0, backoff="linear")

    assert call_with_retry(fn, policy=policy, sleep=sleeps.append) == "ok"
    assert fn.calls == 4
    assert sleeps == [2.0, 4.0, 6.0]


def test_exponential_backoff_is_capped() -> None:
    sleeps: list[float] = []
    fn = _Flaky([TransientError("x")] * 4)
    policy = RetryPolicy(max_attempts=5, base_delay_s=2.0, max_delay_s=5.0, backoff="exponential")

    call_with_retry(fn, policy=policy, sleep=sleeps.append)
    assert sleeps == [2.0, 4.0, 5.0, 5.0]


def test_permanent_error_fails_without_retry() -> None:
    sleeps: list[float] = []
    fn = _Flaky([PermanentError("404", status_code=404)])

    with pytest.raises(PermanentError):
        call_with_retry(fn, policy=RetryPolicy(), sleep=sleeps.append)
    assert fn.calls == 1
    assert sleeps == []


def test_exhausted_retries_raise_distinguishable_error() -> None:
    fn = _Flaky([TransientError("overloaded", status_code=529)] * 10)

    with pytest.raises(RetryExhaustedError) as e:
        call_with_retry(fn, policy=RetryPolicy(max_attempts=4), sleep=lambda _s: None)
    assert fn.calls == 4
    assert e.value.attempts == 4
    assert isinstance(e.value.last_error, TransientError)
    assert e.value.last_error.status_code == 529


def test_unexpected_exceptions_propagate_unchanged() -> None:
    fn = _Flaky([KeyError("boom")])
    with pytest.raises(KeyError):
        call_with_retry(fn, policy=RetryPolicy(), sleep=lambda _s: None)
    assert fn.calls == 1


@pytest.mark.parametrize(
    ("status", "expected"),
    [(429, TransientError), (503, TransientError), (529, TransientError), (400, PermanentError), (404, PermanentError)],
)
def test_error_for_status(status: int, expected: type) -> None:
    err = error_for_status(status, f"HTTP {status}", policy=RetryPolicy())
    assert isinstance(err, expected)
    assert err.status_code == status
