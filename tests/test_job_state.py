import pytest

from essence.services.job_state import (
    JobStatus,
    allowed_sources,
    can_transition,
    is_terminal,
)


@pytest.mark.parametrize('terminal', [
    JobStatus.SUCCEEDED,
    JobStatus.FAILED,
    JobStatus.SUBMISSION_FAILED,
    JobStatus.INVALID_INPUT,
])
def test_terminal_statuses_never_move(terminal):
    assert is_terminal(terminal)
    for target in JobStatus:
        assert not can_transition(terminal, target)


def test_forward_progress_through_webhook_statuses():
    assert can_transition('pending', 'submitted')
    assert can_transition('submitted', 'starting')
    assert can_transition('starting', 'processing')
    assert can_transition('processing', 'succeeded')
    assert can_transition('submitted', 'failed')


def test_no_backward_transitions():
    assert not can_transition('processing', 'starting')
    assert not can_transition('starting', 'submitted')
    assert not can_transition('submitted', 'pending')


def test_webhook_statuses_need_a_submitted_job():
    assert not can_transition('pending', 'processing')
    assert not can_transition('pending', 'succeeded')


def test_local_failures_only_before_the_provider_reports():
    assert can_transition('pending', 'submission_failed')
    assert can_transition('submitted', 'invalid_input')
    assert not can_transition('processing', 'submission_failed')


def test_allowed_sources_for_processing():
    assert allowed_sources(JobStatus.PROCESSING) == {
        JobStatus.SUBMITTED,
        JobStatus.STARTING,
        JobStatus.PROCESSING,
    }
    assert allowed_sources(JobStatus.SUBMITTED) == {JobStatus.PENDING}
