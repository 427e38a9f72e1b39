import pytest

from yeelight_lan_bridge.backoff import AttemptOutcome, RetryDecision, RetryPolicy


def test_default_deadlines_double_per_attempt() -> None:
    policy = RetryPolicy()
    deadlines = [attempt.deadline for attempt in policy.attempts()]
    assert deadlines == pytest.approx([0.1, 0.2, 0.4, 0.8, 1.6, 3.2])
    assert policy.max_attempts == 6
    assert policy.worst_case() == pytest.approx(6.3)


def test_deadline_outside_budget_rejected() -> None:
    with pytest.raises(IndexError):
        RetryPolicy(retries=2).deadline(3)


def test_invalid_policy_rejected() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(retries=-1)
    with pytest.raises(ValueError):
        RetryPolicy(timeout=0)


def test_transient_failures_retry_until_exhausted() -> None:
    state = RetryPolicy(retries=2, timeout=0.05).start()
    assert state.record(AttemptOutcome.TRANSIENT) is RetryDecision.RETRY
    assert state.current.index == 1
    assert state.current.deadline == pytest.approx(0.1)
    assert state.record(AttemptOutcome.TRANSIENT) is RetryDecision.RETRY
    assert state.record(AttemptOutcome.TRANSIENT) is RetryDecision.EXHAUSTED
    assert state.finished
    assert state.attempts_made == 3


def test_unreachable_aborts_immediately() -> None:
    state = RetryPolicy().start()
    assert state.record(AttemptOutcome.UNREACHABLE) is RetryDecision.ABORT
    assert state.finished
    assert state.attempts_made == 1


def test_device_rejection_is_not_retried() -> None:
    state = RetryPolicy().start()
    assert state.record(AttemptOutcome.TRANSIENT) is RetryDecision.RETRY
    assert state.record(AttemptOutcome.REJECTED) is RetryDecision.REJECTED
    assert state.finished


def test_success_after_retry() -> None:
    state = RetryPolicy().start()
    state.record(AttemptOutcome.TRANSIENT)
    assert state.record(AttemptOutcome.SUCCESS) is RetryDecision.DONE
    assert state.history == [AttemptOutcome.TRANSIENT, AttemptOutcome.SUCCESS]


def test_recording_after_finish_rejected() -> None:
    state = RetryPolicy(retries=0).start()
    assert state.record(AttemptOutcome.TRANSIENT) is RetryDecision.EXHAUSTED
    with pytest.raises(RuntimeError):
        state.record(AttemptOutcome.SUCCESS)
