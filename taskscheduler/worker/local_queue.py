"""
Process-local queue of postponed jobs.
"""

import heapq
import itertools
from collections.abc import Iterator
from datetime import datetime
from uuid import UUID

from taskscheduler.types.job import JobRecord


class LocalQueue:
    """
    Postponed job snapshots ordered by their scheduled time.

    Owned by exactly one dispatcher and never shared, so there is no
    locking. A job id is held at most once; a dispatcher re-reading its
    collection after a cursor restart sees the same postponed jobs again.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[datetime, int, JobRecord]] = []
        self._ids: set[UUID] = set()
        self._counter = itertools.count()

    def push(self, job: JobRecord) -> bool:
        """
        Add a postponed job.

        Returns:
            False if the job is already queued.
        """
        if job.id in self._ids:
            return False

        at = job.at or datetime.min
        heapq.heappush(self._heap, (at, next(self._counter), job))
        self._ids.add(job.id)
        return True

    def pop_due(self, now: datetime) -> list[JobRecord]:
        """Remove and return every job scheduled at or before `now`, earliest first."""
        due: list[JobRecord] = []
        while self._heap and self._heap[0][0] <= now:
            _, _, job = heapq.heappop(self._heap)
            self._ids.discard(job.id)
            due.append(job)
        return due

    def __len__(self) -> int:
        return len(self._heap)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._ids

    def __iter__(self) -> Iterator[JobRecord]:
        return iter([job for _, _, job in sorted(self._heap)])
