"""
Cursor over a queue collection.

A following (tailable) cursor keeps its position after it has read every
matching record and picks up records appended later, the way a log is
tailed. A bounded cursor reads a snapshot and terminates.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taskscheduler.constants import PENDING_STATUSES, JobStatus
from taskscheduler.db.connection import get_session_context
from taskscheduler.db.repository import JobRepository
from taskscheduler.exceptions import CollectionMissing, CollectionNotCapped, CursorError
from taskscheduler.types.job import JobRecord

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class QueueCursor:
    """
    Cursor over the pending records of a queue collection.

    A following cursor dies when:
    - it is opened on a collection that holds no records at all
    - its collection disappears
    - capacity eviction removed records it had not examined yet

    A bounded cursor dies once it has read every record that existed
    when it was opened.
    """

    def __init__(
        self,
        collection: str,
        tailable: bool = True,
        statuses: tuple[JobStatus, ...] = PENDING_STATUSES,
        batch_size: int = 100,
        poll_interval: float = 0.1,
        await_timeout: float = 1.0,
        session_factory: SessionFactory = get_session_context,
    ):
        """
        Initialize the cursor. Call `open()` before reading.

        Args:
            collection: The queue collection name.
            tailable: Follow the collection instead of reading a snapshot.
            statuses: Statuses to match.
            batch_size: Records read per query.
            poll_interval: Seconds between polls while awaiting data.
            await_timeout: Seconds `advance()` waits for new data.
            session_factory: Context manager factory yielding sessions.
        """
        self.collection = collection
        self.tailable = tailable
        self._statuses = statuses
        self._batch_size = batch_size
        self._poll_interval = poll_interval
        self._await_timeout = await_timeout
        self._session_factory = session_factory

        self._batch: list[JobRecord] = []
        self._index = 0
        self._position: int | None = None
        self._upper_seq: int | None = None
        self._scanned: int | None = None
        self._evicted = False
        self._dead = False

    @property
    def current(self) -> JobRecord | None:
        """The record under the cursor, None if none is available."""
        if self._index < len(self._batch):
            return self._batch[self._index]
        return None

    @property
    def dead(self) -> bool:
        """Whether the cursor can never return another record."""
        return self._dead

    async def open(self) -> "QueueCursor":
        """
        Position the cursor on the first matching record.

        Raises:
            CollectionMissing: If the collection does not exist.
            CollectionNotCapped: If a following cursor is opened on a
                collection that is not capped.
        """
        async with self._session_factory() as session:
            repo = JobRepository(session, self.collection)

            if not await repo.collection_exists():
                raise CollectionMissing(
                    f"queue collection [{self.collection}] does not exist",
                    {"collection": self.collection},
                )

            if self.tailable and not await repo.is_capped():
                raise CollectionNotCapped(
                    f"queue collection [{self.collection}] is not capped",
                    {"collection": self.collection},
                )

            _, high = await repo.get_seq_bounds()

        if high is None:
            # Nothing to read, and nothing to position a following cursor on
            self._dead = True
            return self

        if not self.tailable:
            self._upper_seq = high

        await self._fetch()
        if not self.tailable and self.current is None:
            self._dead = True

        return self

    async def advance(self, await_data: bool = True) -> None:
        """
        Move to the next matching record.

        When the buffered records are exhausted the next batch is read.
        A following cursor with `await_data` then polls until a new record
        matches or the await timeout elapses.

        Raises:
            CursorError: If the collection cannot be read.
        """
        if self._dead:
            return

        if self._index < len(self._batch):
            self._index += 1
            if self.current is not None:
                return

        await self._fetch()
        if self.current is not None:
            return

        if not self.tailable:
            self._dead = True
            return

        if await_data:
            deadline = time.monotonic() + self._await_timeout
            while time.monotonic() < deadline:
                await asyncio.sleep(self._poll_interval)
                await self._fetch()
                if self.current is not None:
                    return

        await self._check_alive()

    async def to_list(self) -> list[JobRecord]:
        """Drain the records currently available without awaiting new ones."""
        records: list[JobRecord] = []
        while self.current is not None:
            records.append(self.current)
            await self.advance(await_data=False)
        return records

    async def _fetch(self) -> None:
        try:
            async with self._session_factory() as session:
                repo = JobRepository(session, self.collection)
                # Bounds first: every record up to `high` has committed
                # before the batch is read
                low, high = await repo.get_seq_bounds()
                batch = await repo.fetch_batch(
                    self._statuses,
                    after_seq=self._position,
                    limit=self._batch_size,
                    upper_seq=self._upper_seq,
                )
        except SQLAlchemyError as e:
            raise CursorError(
                f"failed to read queue collection [{self.collection}]",
                {"collection": self.collection, "error": str(e)},
            ) from e

        horizon = self._horizon()
        if self.tailable and horizon is not None and low is not None and low > horizon + 1:
            self._evicted = True

        self._batch = batch
        self._index = 0
        if batch:
            self._position = batch[-1].seq
        elif high is not None:
            # Nothing up to `high` is pending, eviction below it loses nothing
            self._scanned = max(high, self._scanned or high)

    def _horizon(self) -> int | None:
        """Highest `seq` this cursor has examined."""
        known = [seq for seq in (self._position, self._scanned) if seq is not None]
        return max(known) if known else None

    async def _check_alive(self) -> None:
        try:
            async with self._session_factory() as session:
                repo = JobRepository(session, self.collection)
                if not await repo.collection_exists():
                    logger.warning(
                        "Queue collection disappeared under the cursor",
                        extra={"collection": self.collection},
                    )
                    self._dead = True
                    return

                low, _ = await repo.get_seq_bounds()
        except SQLAlchemyError as e:
            raise CursorError(
                f"failed to read queue collection [{self.collection}]",
                {"collection": self.collection, "error": str(e)},
            ) from e

        if low is None or self._evicted:
            logger.warning(
                "Records the cursor had not examined were evicted from the capped collection",
                extra={"collection": self.collection, "position": self._horizon()},
            )
            self._dead = True
