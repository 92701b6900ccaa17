"""
Job repository for database operations.
Implements the data access patterns of a queue collection.
"""

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Table, delete, func, inspect, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from taskscheduler.constants import (
    ENDED_STATUSES,
    PLACEHOLDER_JOB_CLASS,
    JobStatus,
)
from taskscheduler.db.models import QueueCollection, get_queue_table
from taskscheduler.exceptions import CollectionMissing
from taskscheduler.types.job import JobRecord, utc_now

logger = logging.getLogger(__name__)


def record_size(values: dict[str, Any]) -> int:
    """Approximate the stored size of a record in bytes."""
    return len(json.dumps(values, default=str, sort_keys=True).encode("utf-8"))


class JobRepository:
    """
    Repository for one queue collection.

    Implements atomic operations for:
    - Collection provisioning (create, convert to capped)
    - Job insertion with capacity eviction
    - Conditional status transitions
    - Ordered reads for cursors
    """

    def __init__(self, session: AsyncSession, collection: str):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            collection: The queue collection name.
        """
        self._session = session
        self._collection = collection
        self._table: Table = get_queue_table(collection)

    @property
    def table(self) -> Table:
        """The queue table."""
        return self._table

    async def collection_exists(self) -> bool:
        """Check if the queue table exists."""
        conn = await self._session.connection()
        return await conn.run_sync(
            lambda sync_conn: inspect(sync_conn).has_table(self._collection)
        )

    async def get_collection_info(self) -> QueueCollection | None:
        """Get the registry entry of the collection."""
        return await self._session.get(QueueCollection, self._collection)

    async def is_capped(self) -> bool:
        """Check if the collection is registered as capped."""
        info = await self.get_collection_info()
        return info is not None and info.capped

    async def create_collection(self, size: int, capped: bool = True) -> bool:
        """
        Create the queue table.

        Args:
            size: Capacity in bytes for capped collections.
            capped: Whether to register the collection as capped.

        Returns:
            True if the table was created, False if it already existed.
        """
        if await self.collection_exists():
            return False

        conn = await self._session.connection()
        await conn.run_sync(self._table.create, checkfirst=True)

        if capped:
            await self._register(size)

        logger.info(
            "Created queue collection",
            extra={"collection": self._collection, "capped": capped, "size": size},
        )
        return True

    async def convert_to_capped(self, size: int) -> int:
        """
        Register an existing collection as capped and trim it to size.

        Args:
            size: Capacity in bytes.

        Returns:
            Number of records evicted by the conversion.

        Raises:
            CollectionMissing: If the table does not exist.
        """
        if not await self.collection_exists():
            raise CollectionMissing(
                f"queue collection [{self._collection}] does not exist",
                {"collection": self._collection},
            )

        await self._register(size)
        return await self.trim(size)

    async def _register(self, size: int) -> None:
        info = await self.get_collection_info()
        if info is None:
            self._session.add(
                QueueCollection(name=self._collection, capped=True, size=size)
            )
        else:
            info.capped = True
            info.size = size
        await self._session.flush()

    async def insert_job(
        self,
        job_class: str,
        data: Any,
        status: JobStatus | None = JobStatus.WAITING,
        at: datetime | None = None,
        interval: int = -1,
        retry: int = 0,
        retry_interval: int = 0,
    ) -> JobRecord:
        """
        Append a record to the collection.

        Capped collections evict their oldest records when the new
        record pushes them over capacity.

        Returns:
            The inserted record.
        """
        values: dict[str, Any] = {
            "id": uuid4(),
            "job_class": job_class,
            "data": data,
            "status": int(status) if status is not None else None,
            "at": at,
            "interval": interval,
            "retry": retry,
            "retry_interval": retry_interval,
            "created": utc_now(),
            "started": None,
            "ended": None,
        }
        values["size"] = record_size(values)

        await self.lock_appends()
        stmt = insert(self._table).values(**values).returning(self._table)
        result = await self._session.execute(stmt)
        record = JobRecord.from_row(result.mappings().one())

        info = await self.get_collection_info()
        if info is not None and info.capped:
            await self.trim(info.size, keep_seq=record.seq)

        return record

    async def lock_appends(self) -> None:
        """
        Serialize appends to the collection until the transaction ends.

        Cursors only look past the highest `seq` they have read, so a
        record must never commit after a record with a higher `seq`.
        PostgreSQL hands out sequence values at insert time, hence the
        transaction-level advisory lock. SQLite transactions already
        start with the write lock held.
        """
        if self._session.bind.dialect.name != "postgresql":
            return

        await self._session.execute(
            select(func.pg_advisory_xact_lock(func.hashtext(self._collection)))
        )

    async def insert_placeholder(self) -> JobRecord:
        """Insert the inert record that keeps a following cursor alive."""
        return await self.insert_job(PLACEHOLDER_JOB_CLASS, None, status=None)

    async def trim(self, size: int, keep_seq: int | None = None) -> int:
        """
        Evict the oldest records until the collection fits into `size` bytes.

        Args:
            size: Capacity in bytes.
            keep_seq: A record that must survive, usually the newest one.

        Returns:
            Number of evicted records.
        """
        total_stmt = select(func.coalesce(func.sum(self._table.c.size), 0))
        total = (await self._session.execute(total_stmt)).scalar() or 0
        if total <= size:
            return 0

        rows = await self._session.execute(
            select(self._table.c.seq, self._table.c.size).order_by(self._table.c.seq)
        )

        last_seq: int | None = None
        evicted = 0
        for seq, row_size in rows.all():
            if total <= size or seq == keep_seq:
                break
            total -= row_size
            last_seq = seq
            evicted += 1

        if last_seq is None:
            return 0

        await self._session.execute(
            delete(self._table).where(self._table.c.seq <= last_seq)
        )

        logger.info(
            f"Evicted {evicted} records from capped collection",
            extra={"collection": self._collection, "size": size},
        )
        return evicted

    async def is_empty(self) -> bool:
        """Check if the collection holds no records at all."""
        stmt = select(self._table.c.seq).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is None

    async def get_seq_bounds(self) -> tuple[int | None, int | None]:
        """Get the lowest and highest `seq` in the collection."""
        stmt = select(func.min(self._table.c.seq), func.max(self._table.c.seq))
        low, high = (await self._session.execute(stmt)).one()
        return low, high

    async def get_job(self, job_id: UUID) -> JobRecord | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The record or None if not found.
        """
        stmt = select(self._table).where(self._table.c.id == job_id)
        row = (await self._session.execute(stmt)).mappings().one_or_none()
        return JobRecord.from_row(row) if row is not None else None

    async def list_jobs(
        self,
        statuses: Iterable[JobStatus] | None = None,
    ) -> list[JobRecord]:
        """
        List jobs in insertion order, skipping the placeholder record.

        Args:
            statuses: Optional status filter.

        Returns:
            The matching records.
        """
        stmt = select(self._table).where(self._table.c.status.is_not(None))
        if statuses is not None:
            stmt = stmt.where(self._table.c.status.in_([int(s) for s in statuses]))
        stmt = stmt.order_by(self._table.c.seq)

        result = await self._session.execute(stmt)
        return [JobRecord.from_row(row) for row in result.mappings().all()]

    async def fetch_batch(
        self,
        statuses: Iterable[JobStatus],
        after_seq: int | None,
        limit: int,
        upper_seq: int | None = None,
    ) -> list[JobRecord]:
        """
        Read the next records in insertion order.

        Args:
            statuses: Statuses to match.
            after_seq: Exclusive lower bound, None to start at the beginning.
            limit: Maximum number of records.
            upper_seq: Optional inclusive upper bound.

        Returns:
            The matching records ordered by `seq`.
        """
        stmt = select(self._table).where(
            self._table.c.status.in_([int(s) for s in statuses])
        )
        if after_seq is not None:
            stmt = stmt.where(self._table.c.seq > after_seq)
        if upper_seq is not None:
            stmt = stmt.where(self._table.c.seq <= upper_seq)
        stmt = stmt.order_by(self._table.c.seq).limit(limit)

        result = await self._session.execute(stmt)
        return [JobRecord.from_row(row) for row in result.mappings().all()]

    async def transition(
        self,
        job_id: UUID,
        status: JobStatus,
        from_status: JobStatus,
    ) -> bool:
        """
        Atomically move a job from `from_status` to `status`.

        This is the only primitive dispatchers synchronize on: the update
        matches the row only while it still carries the expected status,
        so exactly one of several racing callers sees a modified row.

        Args:
            job_id: The job UUID.
            status: The target status.
            from_status: The status the job must currently have.

        Returns:
            True if this call performed the transition.
        """
        now = utc_now()
        values: dict[str, Any] = {"status": int(status)}

        if status == JobStatus.PROCESSING:
            values["started"] = now
        if status in ENDED_STATUSES:
            values["ended"] = now

        stmt = (
            update(self._table)
            .where(
                self._table.c.id == job_id,
                self._table.c.status == int(from_status),
            )
            .values(**values)
        )

        result = await self._session.execute(stmt)
        return result.rowcount == 1
