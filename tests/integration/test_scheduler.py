"""
Integration tests for the job producer.
"""

from datetime import timedelta
from uuid import UUID, uuid4

import pytest
from pydantic import ValidationError

from taskscheduler.config import get_settings
from taskscheduler.constants import JobStatus
from taskscheduler.db import get_session_context
from taskscheduler.db.repository import JobRepository
from taskscheduler.exceptions import JobNotFound
from taskscheduler.scheduler import Scheduler
from taskscheduler.types.job import JobOptions, utc_now


class TestAddJob:
    """Tests for adding jobs."""

    async def test_add_job_defaults(self, scheduler: Scheduler):
        """Test a job added without options."""
        job_id = await scheduler.add_job("tests.success", {"message": "hello"})

        assert isinstance(job_id, UUID)
        job = await scheduler.get_job(job_id)
        assert job.job_class == "tests.success"
        assert job.data == {"message": "hello"}
        assert job.status == JobStatus.WAITING
        assert job.at is None
        assert job.interval == -1
        assert job.retry == 0
        assert job.retry_interval == 300

    async def test_add_job_provisions_capped_collection(self, scheduler: Scheduler):
        """Test the first job creates a capped collection."""
        await scheduler.add_job("tests.success")

        async with get_session_context() as session:
            repo = JobRepository(session, scheduler.get_collection())
            assert await repo.collection_exists() is True
            assert await repo.is_capped() is True
            info = await repo.get_collection_info()
            assert info.size == scheduler.get_queue_size()

    async def test_add_job_with_options(self, scheduler: Scheduler):
        """Test scheduling options are stored."""
        at = utc_now() + timedelta(minutes=5)

        job_id = await scheduler.add_job(
            "tests.success",
            options=JobOptions(at=at, interval=60, retry=3, retry_interval=10),
        )

        job = await scheduler.get_job(job_id)
        assert job.at == at
        assert job.interval == 60
        assert job.retry == 3
        assert job.retry_interval == 10

    async def test_add_job_with_dict_options(self, scheduler: Scheduler):
        """Test options given as a mapping with a unix timestamp."""
        job_id = await scheduler.add_job("tests.success", options={"at": 0, "retry": 1})

        job = await scheduler.get_job(job_id)
        assert job.at.year == 1970
        assert job.retry == 1

    async def test_add_job_invalid_options(self, scheduler: Scheduler):
        """Test invalid options are rejected."""
        with pytest.raises(ValidationError):
            await scheduler.add_job("tests.success", options={"retry_interval": -5})

    async def test_collection_settings(self, database: str, collection: str):
        """Test the collection name and capacity accessors."""
        scheduler = Scheduler(collection=collection, queue_size=4096)

        assert scheduler.get_collection() == collection
        assert scheduler.get_queue_size() == 4096

    async def test_collection_defaults_from_settings(self, database: str, monkeypatch):
        """Test the collection falls back to configuration."""
        monkeypatch.setenv("QUEUE_COLLECTION", "configured_queue")
        monkeypatch.setenv("QUEUE_SIZE_BYTES", "2048")
        get_settings.cache_clear()

        scheduler = Scheduler()

        assert scheduler.get_collection() == "configured_queue"
        assert scheduler.get_queue_size() == 2048


class TestReadJobs:
    """Tests for reading jobs back."""

    async def test_get_job_not_found(self, scheduler: Scheduler):
        """Test reading an unknown id."""
        await scheduler.add_job("tests.success")

        with pytest.raises(JobNotFound):
            await scheduler.get_job(uuid4())

    async def test_get_jobs(self, scheduler: Scheduler):
        """Test listing jobs in insertion order with a status filter."""
        first = await scheduler.add_job("tests.success")
        second = await scheduler.add_job("tests.success")
        await scheduler.cancel_job(second)

        all_jobs = await scheduler.get_jobs()
        canceled = await scheduler.get_jobs([JobStatus.CANCELED])

        assert [job.id for job in all_jobs] == [first, second]
        assert [job.id for job in canceled] == [second]


class TestCancelJob:
    """Tests for canceling jobs."""

    async def test_cancel_waiting_job(self, scheduler: Scheduler):
        """Test canceling a job that has not started."""
        job_id = await scheduler.add_job("tests.success")

        assert await scheduler.cancel_job(job_id) is True
        assert await scheduler.cancel_job(job_id) is False

        job = await scheduler.get_job(job_id)
        assert job.status == JobStatus.CANCELED
        assert job.ended is not None

    async def test_cancel_postponed_job(self, scheduler: Scheduler):
        """Test canceling a postponed job."""
        job_id = await scheduler.add_job("tests.success")
        async with get_session_context() as session:
            repo = JobRepository(session, scheduler.get_collection())
            await repo.transition(job_id, JobStatus.PROCESSING, JobStatus.WAITING)
            await repo.transition(job_id, JobStatus.POSTPONED, JobStatus.PROCESSING)

        assert await scheduler.cancel_job(job_id) is True

    async def test_cancel_processing_job(self, scheduler: Scheduler):
        """Test a running job cannot be canceled by the producer."""
        job_id = await scheduler.add_job("tests.success")
        async with get_session_context() as session:
            repo = JobRepository(session, scheduler.get_collection())
            await repo.transition(job_id, JobStatus.PROCESSING, JobStatus.WAITING)

        assert await scheduler.cancel_job(job_id) is False
        assert (await scheduler.get_job(job_id)).status == JobStatus.PROCESSING

    async def test_cancel_unknown_job(self, scheduler: Scheduler):
        """Test canceling an unknown id."""
        await scheduler.add_job("tests.success")

        with pytest.raises(JobNotFound):
            await scheduler.cancel_job(uuid4())
