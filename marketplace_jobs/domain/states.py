from enum import StrEnum

class JobStatus(StrEnum):
    PENDING = "PENDING"       # Created or healed, waiting for a worker
    RUNNING = "RUNNING"       # Leased; handler executing
    COMPLETED = "COMPLETED"   # Handler reported success
    FAILED = "FAILED"         # Terminal failure, no further automatic retry
    RETRYING = "RETRYING"     # Failed, waiting for backoff before the next dequeue

class EntryState(StrEnum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

# Statuses that count as "in flight" for dedupe and roadmap decisions
ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.RETRYING)

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({
        JobStatus.RUNNING,
        JobStatus.FAILED,  # removed by an operator before dispatch
    }),
    JobStatus.RUNNING: frozenset({
        JobStatus.COMPLETED,
        JobStatus.RETRYING,
        JobStatus.FAILED,
        JobStatus.PENDING,  # stuck-job recovery
    }),
    JobStatus.RETRYING: frozenset({
        JobStatus.RUNNING,
        JobStatus.FAILED,
        JobStatus.PENDING,  # stuck-job recovery
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[JobStatus(current)]
