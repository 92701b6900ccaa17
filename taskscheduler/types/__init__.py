"""
Type definitions for the task scheduler.
Contains input/output type definitions shared across modules.
"""

from taskscheduler.types.job import (
    JobOptions,
    JobRecord,
    utc_now,
)

__all__ = [
    "JobOptions",
    "JobRecord",
    "utc_now",
]
