"""
Exception hierarchy for the task scheduler.
"""

from typing import Any


class TaskSchedulerError(Exception):
    """Base exception for the task scheduler."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class InvalidJob(TaskSchedulerError):
    """Raised when a job class cannot be resolved to a usable handler."""


class JobNotFound(TaskSchedulerError):
    """Raised when a job id does not exist in the queue collection."""


class StoreError(TaskSchedulerError):
    """Base class for queue store failures."""


class CollectionMissing(StoreError):
    """Raised when the queue collection does not exist."""


class CollectionNotCapped(StoreError):
    """Raised when the queue collection exists but is not capped."""


class CursorError(StoreError):
    """Raised when a cursor fails to read from the queue collection."""
