from enum import Enum


class JobKind(str, Enum):
    TRAINING = 'training'
    GENERATION = 'generation'


class JobStatus(str, Enum):
    PENDING = 'pending'
    SUBMITTED = 'submitted'
    STARTING = 'starting'
    PROCESSING = 'processing'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    SUBMISSION_FAILED = 'submission_failed'
    INVALID_INPUT = 'invalid_input'


class RegistrationStatus(str, Enum):
    PENDING = 'pending'
    REGISTERED = 'registered'
    FAILED = 'failed'


TERMINAL_STATUSES = frozenset({
    JobStatus.SUCCEEDED,
    JobStatus.FAILED,
    JobStatus.SUBMISSION_FAILED,
    JobStatus.INVALID_INPUT,
})

# statuses a provider webhook may move a job out of
WEBHOOK_SOURCE_STATUSES = frozenset({
    JobStatus.SUBMITTED,
    JobStatus.STARTING,
    JobStatus.PROCESSING,
})

# statuses a local failure (submission / input validation) may move a job out of
LOCAL_FAILURE_SOURCE_STATUSES = frozenset({
    JobStatus.PENDING,
    JobStatus.SUBMITTED,
})

_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.SUBMITTED: 1,
    JobStatus.STARTING: 2,
    JobStatus.PROCESSING: 3,
}


def rank(status: JobStatus) -> int:
    return _RANK.get(JobStatus(status), 4)


def is_terminal(status: JobStatus | str) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES


def can_transition(current: JobStatus | str, target: JobStatus | str) -> bool:
    """
    Forward-only transition check.

    Terminal jobs never move. Webhook targets are only reachable from
    submitted/starting/processing, local failures only from pending/submitted,
    and pending -> submitted is the single submission step.
    """
    current = JobStatus(current)
    target = JobStatus(target)

    if current in TERMINAL_STATUSES:
        return False

    if target == JobStatus.SUBMITTED:
        return current == JobStatus.PENDING

    if target in (JobStatus.SUBMISSION_FAILED, JobStatus.INVALID_INPUT):
        return current in LOCAL_FAILURE_SOURCE_STATUSES

    if target in (JobStatus.STARTING, JobStatus.PROCESSING):
        return current in WEBHOOK_SOURCE_STATUSES and rank(target) >= rank(current)

    if target in (JobStatus.SUCCEEDED, JobStatus.FAILED):
        return current in WEBHOOK_SOURCE_STATUSES

    return False


def allowed_sources(target: JobStatus | str) -> set[JobStatus]:
    """All statuses from which `target` may be entered."""
    return {s for s in JobStatus if can_transition(s, target)}
