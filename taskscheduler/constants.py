"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import IntEnum


class JobStatus(IntEnum):
    """
    Job lifecycle states. The integer values are stored as-is.

    State transitions:
    - WAITING -> PROCESSING (collected by a dispatcher)
    - PROCESSING -> POSTPONED (scheduled in the future)
    - POSTPONED -> PROCESSING (due, collected from the local queue)
    - PROCESSING -> DONE (handler returned)
    - PROCESSING -> FAILED (handler raised)
    - PROCESSING -> CANCELED (termination signal)
    - WAITING/POSTPONED -> CANCELED (canceled by the producer)
    """

    WAITING = 0
    POSTPONED = 1
    PROCESSING = 2
    DONE = 3
    FAILED = 4
    CANCELED = 5


# Statuses a dispatcher cursor follows
PENDING_STATUSES: tuple[JobStatus, ...] = (JobStatus.WAITING, JobStatus.POSTPONED)

# Statuses that stamp the `ended` column
ENDED_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.POSTPONED, JobStatus.DONE, JobStatus.FAILED, JobStatus.CANCELED}
)

# Default job options
DEFAULT_INTERVAL = -1
DEFAULT_RETRY = 0
DEFAULT_RETRY_INTERVAL = 300

# Inert record seeded into empty queue collections
PLACEHOLDER_JOB_CLASS = "dummy"

# Table holding capacity information for queue collections
COLLECTION_REGISTRY_TABLE = "queue_collections"

# How often the dispatcher tries to provision the store before giving up
PROVISION_ATTEMPTS = 3

# Metrics names
METRIC_JOBS_SUBMITTED = "jobs_submitted_total"
METRIC_JOBS_COLLECTED = "jobs_collected_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LOCAL_QUEUE_SIZE = "local_queue_size"
METRIC_CURSOR_RESTARTS = "cursor_restarts_total"

# Trace span names
SPAN_EXECUTE_JOB = "execute_job"
