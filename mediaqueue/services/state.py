"""
State transition table for ProcessingJob.status.

    pending ──claim──▶ processing ──last stage──▶ completed
                           │
                           ├──retryable failure──▶ retrying ──deadline──▶ processing
                           └──terminal / budget spent──▶ failed

Any non-terminal state may move to cancelled. Completed, failed and
cancelled are terminal: nothing leaves them.
"""

from typing import FrozenSet, Set, Tuple

from mediaqueue.models.job import JobStatus
from mediaqueue.services.errors import InvalidStateTransition

_TRANSITIONS: Set[Tuple[JobStatus, JobStatus]] = {
    (JobStatus.PENDING, JobStatus.PROCESSING),
    (JobStatus.RETRYING, JobStatus.PROCESSING),
    (JobStatus.PROCESSING, JobStatus.COMPLETED),
    (JobStatus.PROCESSING, JobStatus.RETRYING),
    (JobStatus.PROCESSING, JobStatus.FAILED),
    (JobStatus.PENDING, JobStatus.CANCELLED),
    (JobStatus.PROCESSING, JobStatus.CANCELLED),
    (JobStatus.RETRYING, JobStatus.CANCELLED),
}


def can_transition(current: JobStatus | str, target: JobStatus | str) -> bool:
    return (JobStatus(current), JobStatus(target)) in _TRANSITIONS


def sources_for(target: JobStatus) -> FrozenSet[str]:
    """Statuses a job may be in for a conditional update into ``target`` to apply."""
    return frozenset(src.value for src, dst in _TRANSITIONS if dst == target)


def validate_transition(current: JobStatus | str, target: JobStatus | str) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransition(JobStatus(current).value, JobStatus(target).value)


CANCELLABLE_STATUSES = sources_for(JobStatus.CANCELLED)
