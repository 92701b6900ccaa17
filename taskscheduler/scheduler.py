"""
Job producer.

The scheduler appends job records to the queue collection and reads them
back. Dispatchers use it to create retry and recurrence successors.
"""

import logging
from collections.abc import Iterable
from typing import Any
from uuid import UUID

from taskscheduler.config import get_settings
from taskscheduler.constants import JobStatus
from taskscheduler.db import JobRepository, get_session_context
from taskscheduler.exceptions import JobNotFound
from taskscheduler.observability.metrics import get_metrics
from taskscheduler.types.job import JobOptions, JobRecord

logger = logging.getLogger(__name__)


class Scheduler:
    """
    Creates and reads job records of one queue collection.

    The collection is provisioned as a capped collection on first use
    when it does not exist yet.
    """

    def __init__(
        self,
        collection: str | None = None,
        queue_size: int | None = None,
    ):
        """
        Initialize the scheduler.

        Args:
            collection: Queue collection name. Defaults to settings.
            queue_size: Capacity of the collection in bytes. Defaults to settings.
        """
        settings = get_settings()

        self._collection = collection or settings.queue_collection
        self._queue_size = queue_size or settings.queue_size_bytes
        self._provisioned = False
        self._metrics = get_metrics()

    def get_collection(self) -> str:
        """Get the queue collection name."""
        return self._collection

    def get_queue_size(self) -> int:
        """Get the queue collection capacity in bytes."""
        return self._queue_size

    async def add_job(
        self,
        job_class: str,
        data: Any = None,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> UUID:
        """
        Add a job to the queue.

        Args:
            job_class: Handler key of the job.
            data: Payload passed to the handler, must be JSON serializable.
            options: Scheduling options.

        Returns:
            The id of the new job.
        """
        if options is None:
            options = JobOptions()
        elif isinstance(options, dict):
            options = JobOptions.model_validate(options)

        async with get_session_context() as session:
            repo = JobRepository(session, self._collection)

            if not self._provisioned:
                await repo.create_collection(self._queue_size)
                self._provisioned = True

            job = await repo.insert_job(
                job_class,
                data,
                at=options.at,
                interval=options.interval,
                retry=options.retry,
                retry_interval=options.retry_interval,
            )

        self._metrics.record_job_submitted(job_class)

        logger.debug(
            "Added job to queue",
            extra={
                "job_id": str(job.id),
                "job_class": job_class,
                "at": job.at.isoformat() if job.at else None,
                "interval": job.interval,
                "retry": job.retry,
            },
        )
        return job.id

    async def get_job(self, job_id: UUID) -> JobRecord:
        """
        Get a job by ID.

        Raises:
            JobNotFound: If no job with this id exists.
        """
        async with get_session_context() as session:
            job = await JobRepository(session, self._collection).get_job(job_id)

        if job is None:
            raise JobNotFound(f"job [{job_id}] not found", {"job_id": str(job_id)})

        return job

    async def get_jobs(
        self,
        statuses: Iterable[JobStatus] | None = None,
    ) -> list[JobRecord]:
        """
        List jobs in insertion order.

        Args:
            statuses: Optional status filter.
        """
        async with get_session_context() as session:
            return await JobRepository(session, self._collection).list_jobs(statuses)

    async def cancel_job(self, job_id: UUID) -> bool:
        """
        Cancel a job that has not started yet.

        Jobs already processing cannot be interrupted by the producer.

        Returns:
            True if the job was canceled by this call.

        Raises:
            JobNotFound: If no job with this id exists.
        """
        async with get_session_context() as session:
            repo = JobRepository(session, self._collection)

            for from_status in (JobStatus.WAITING, JobStatus.POSTPONED):
                if await repo.transition(job_id, JobStatus.CANCELED, from_status):
                    logger.info("Canceled job", extra={"job_id": str(job_id)})
                    return True

            if await repo.get_job(job_id) is None:
                raise JobNotFound(f"job [{job_id}] not found", {"job_id": str(job_id)})

        return False
