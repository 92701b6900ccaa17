"""
Unit tests for the local queue of postponed jobs.
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from taskscheduler.constants import JobStatus
from taskscheduler.types.job import JobRecord
from taskscheduler.worker.local_queue import LocalQueue

NOW = datetime(2024, 1, 1, 12, 0, 0)


def make_job(at: datetime | None, seq: int = 1) -> JobRecord:
    return JobRecord(
        seq=seq,
        id=uuid4(),
        job_class="tests.success",
        data=None,
        status=JobStatus.POSTPONED,
        at=at,
        interval=-1,
        retry=0,
        retry_interval=300,
    )


class TestLocalQueue:
    """Tests for LocalQueue."""

    @pytest.fixture
    def queue(self) -> LocalQueue:
        return LocalQueue()

    def test_pop_due_in_schedule_order(self, queue: LocalQueue):
        """Test due jobs come out earliest first."""
        late = make_job(NOW - timedelta(seconds=1))
        early = make_job(NOW - timedelta(seconds=10))
        queue.push(late)
        queue.push(early)

        assert queue.pop_due(NOW) == [early, late]
        assert len(queue) == 0

    def test_future_jobs_stay_queued(self, queue: LocalQueue):
        """Test jobs scheduled after now are kept."""
        due = make_job(NOW)
        future = make_job(NOW + timedelta(minutes=5))
        queue.push(future)
        queue.push(due)

        assert queue.pop_due(NOW) == [due]
        assert len(queue) == 1
        assert future.id in queue

    def test_push_deduplicates_by_id(self, queue: LocalQueue):
        """Test a job id is held at most once."""
        job = make_job(NOW)

        assert queue.push(job) is True
        assert queue.push(job) is False
        assert len(queue) == 1

    def test_push_again_after_pop(self, queue: LocalQueue):
        """Test a popped job can be queued again."""
        job = make_job(NOW)
        queue.push(job)
        queue.pop_due(NOW)

        assert job.id not in queue
        assert queue.push(job) is True

    def test_job_without_schedule_is_due(self, queue: LocalQueue):
        """Test a job without `at` is due immediately."""
        job = make_job(None)
        queue.push(job)

        assert queue.pop_due(NOW) == [job]

    def test_iterates_in_schedule_order(self, queue: LocalQueue):
        """Test iteration does not consume the queue."""
        jobs = [make_job(NOW + timedelta(seconds=s)) for s in (30, 10, 20)]
        for job in jobs:
            queue.push(job)

        assert [job.at for job in queue] == sorted(job.at for job in jobs)
        assert len(queue) == 3
