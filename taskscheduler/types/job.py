"""
Job-related type definitions for internal use.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskscheduler.constants import (
    DEFAULT_INTERVAL,
    DEFAULT_RETRY,
    DEFAULT_RETRY_INTERVAL,
    JobStatus,
)


def utc_now() -> datetime:
    """Current time as a naive UTC datetime, the format stored in the queue."""
    return datetime.now(UTC).replace(tzinfo=None)


class JobOptions(BaseModel):
    """
    Scheduling options for a new job.

    - at: earliest execution time (datetime or unix timestamp), None for now
    - interval: recurrence in seconds, negative for a one-shot job
    - retry: remaining retry budget, zero or negative disables retries
    - retry_interval: seconds to wait before a retry attempt
    """

    model_config = ConfigDict(extra="forbid")

    at: datetime | None = None
    interval: int = DEFAULT_INTERVAL
    retry: int = DEFAULT_RETRY
    retry_interval: int = Field(default=DEFAULT_RETRY_INTERVAL, ge=0)

    @field_validator("at", mode="before")
    @classmethod
    def _coerce_at(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("at must be a datetime or a unix timestamp")
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, UTC).replace(tzinfo=None)
        if isinstance(value, datetime) and value.tzinfo is not None:
            return value.astimezone(UTC).replace(tzinfo=None)
        return value

    @classmethod
    def after(cls, seconds: int, **kwargs: Any) -> "JobOptions":
        """Options scheduled `seconds` from now."""
        return cls(at=utc_now() + timedelta(seconds=seconds), **kwargs)


@dataclass(frozen=True)
class JobRecord:
    """
    Snapshot of one row of the queue collection.

    Snapshots are never written back; every change goes through a
    conditional status update on the store.
    """

    seq: int
    id: UUID
    job_class: str
    data: Any
    status: JobStatus | None
    at: datetime | None
    interval: int
    retry: int
    retry_interval: int
    created: datetime | None = None
    started: datetime | None = None
    ended: datetime | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "JobRecord":
        """Build a snapshot from a result row mapping."""
        status = row["status"]
        return cls(
            seq=row["seq"],
            id=row["id"],
            job_class=row["job_class"],
            data=row["data"],
            status=JobStatus(status) if status is not None else None,
            at=row["at"],
            interval=row["interval"],
            retry=row["retry"],
            retry_interval=row["retry_interval"],
            created=row["created"],
            started=row["started"],
            ended=row["ended"],
        )

    def is_due(self, now: datetime | None = None) -> bool:
        """Check if the scheduled time has elapsed."""
        if self.at is None:
            return True
        return self.at <= (now or utc_now())

    @property
    def has_retry(self) -> bool:
        """Check if a failure should spawn a retry."""
        return self.retry > 0

    @property
    def is_recurring(self) -> bool:
        """Check if the job spawns its next occurrence."""
        return self.interval >= 0
