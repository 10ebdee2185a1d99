from enum import Enum


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

VALID_TRANSITIONS = {
    JobStatus.PENDING: [JobStatus.PROCESSING],
    # processing -> pending covers both a retry and crash recovery
    JobStatus.PROCESSING: [JobStatus.COMPLETED, JobStatus.PENDING, JobStatus.FAILED],
    JobStatus.COMPLETED: [],
    JobStatus.FAILED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_status: JobStatus, to_status: JobStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status.value} -> {to_status.value}")


def can_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_status, [])
    return to_status in allowed


def transition(from_status: JobStatus, to_status: JobStatus) -> JobStatus:
    """Perform status transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    return to_status


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def start_processing(current: JobStatus) -> JobStatus:
    return transition(current, JobStatus.PROCESSING)


def complete(current: JobStatus) -> JobStatus:
    return transition(current, JobStatus.COMPLETED)


def schedule_retry(current: JobStatus) -> JobStatus:
    return transition(current, JobStatus.PENDING)


def fail(current: JobStatus) -> JobStatus:
    return transition(current, JobStatus.FAILED)
