from __future__ import annotations

import pytest

from certrenew_libs.errors import PollTimeoutError, ResourceLookupError
from certrenew_libs.k8s.kubernetes import KubernetesApiError
from certrenew_libs.k8s.polling import PollPolicy


class FakeSleep:
    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def get_check(results: list):
    """Returns a check that goes through the given results, raising the ones that are exceptions."""
    remaining = list(results)
    calls = []

    def _check() -> bool:
        calls.append(True)
        result = remaining.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    return _check, calls


def test_PollPolicy_defaults():
    policy = PollPolicy()

    assert policy.max_attempts == 30
    assert policy.interval_seconds == 10


@pytest.mark.parametrize(
    "kwargs", [{"max_attempts": 0}, {"max_attempts": -1}, {"interval_seconds": -0.1}], ids=["zero", "negative", "sleep"]
)
def test_PollPolicy_invalid(kwargs):
    with pytest.raises(ValueError):
        PollPolicy(**kwargs)


def test_wait_for_first_attempt_does_not_sleep():
    sleep = FakeSleep()
    check, calls = get_check([True])

    attempts = PollPolicy(max_attempts=3, interval_seconds=5, sleep=sleep).wait_for(check, "something")

    assert attempts == 1
    assert len(calls) == 1
    assert sleep.calls == []


def test_wait_for_sleeps_between_attempts():
    sleep = FakeSleep()
    check, calls = get_check([False, False, True])

    attempts = PollPolicy(max_attempts=5, interval_seconds=5, sleep=sleep).wait_for(check, "something")

    assert attempts == 3
    assert sleep.calls == [5, 5]


def test_wait_for_gives_up_after_max_attempts():
    sleep = FakeSleep()
    check, calls = get_check([False] * 30)

    with pytest.raises(PollTimeoutError) as exc:
        PollPolicy(sleep=sleep).wait_for(check, "pod cert-renew-cp1-00001")

    assert len(calls) == 30
    # no sleep after the last attempt
    assert sleep.calls == [10] * 29
    assert exc.value.attempts == 30
    assert exc.value.what == "pod cert-renew-cp1-00001"
    assert "cert-renew-cp1-00001" in str(exc.value)


def test_wait_for_tolerates_api_errors(caplog):
    sleep = FakeSleep()
    check, calls = get_check(
        [KubernetesApiError("connection refused"), ResourceLookupError("unable to read node"), True]
    )

    attempts = PollPolicy(max_attempts=3, interval_seconds=1, sleep=sleep).wait_for(check, "node cp1 to be ready")

    assert attempts == 3
    assert "connection refused" in caplog.text


def test_wait_for_tolerated_errors_still_count():
    check, calls = get_check([KubernetesApiError("boom")] * 2)

    with pytest.raises(PollTimeoutError):
        PollPolicy(max_attempts=2, interval_seconds=0, sleep=FakeSleep()).wait_for(check, "something")

    assert len(calls) == 2


def test_wait_for_propagates_other_errors():
    check, calls = get_check([RuntimeError("unexpected"), True])

    with pytest.raises(RuntimeError):
        PollPolicy(max_attempts=3, interval_seconds=0, sleep=FakeSleep()).wait_for(check, "something")

    assert len(calls) == 1
