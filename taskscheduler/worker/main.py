"""
Queue dispatcher process.

The dispatcher follows the queue collection, collects jobs through
conditional status updates so that exactly one of many concurrent
dispatchers executes a job, and handles postponed, retried and
recurring jobs.
"""

import asyncio
import inspect
import logging
import os
import signal
import time
from dataclasses import replace
from datetime import timedelta
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from taskscheduler.config import get_settings
from taskscheduler.constants import PROVISION_ATTEMPTS, JobStatus
from taskscheduler.db import (
    JobRepository,
    QueueCursor,
    close_db,
    get_engine,
    get_session_context,
    init_db,
)
from taskscheduler.exceptions import (
    CollectionMissing,
    CollectionNotCapped,
    CursorError,
    InvalidJob,
    StoreError,
)
from taskscheduler.observability.logging import bind_context, setup_logging
from taskscheduler.observability.metrics import get_metrics, setup_metrics
from taskscheduler.observability.tracing import (
    instrument_sqlalchemy,
    job_span,
    setup_tracing,
)
from taskscheduler.scheduler import Scheduler
from taskscheduler.types.job import JobOptions, JobRecord, utc_now
from taskscheduler.worker.handlers import HandlerResolver, JobHandler, get_handler
from taskscheduler.worker.local_queue import LocalQueue

logger = logging.getLogger(__name__)


class QueueDispatcher:
    """
    Dispatcher executing the jobs of one queue collection.

    Features:
    - Atomic job collection through conditional status updates
    - Following cursor with automatic store provisioning
    - Local queue for postponed jobs
    - Retries and recurring jobs through successor records
    - Rescheduling of the running job on SIGTERM/SIGINT

    Jobs run one after another on the event loop; throughput scales by
    running more dispatcher processes.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        resolver: HandlerResolver | None = None,
        dispatcher_id: str | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        await_timeout: float | None = None,
        restart_delay: float | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            scheduler: Producer used to read the collection settings and
                to create successor jobs.
            resolver: Optional callable returning a handler instance for a
                job class. Defaults to the handler registry.
            dispatcher_id: Unique identifier. Defaults to hostname + PID.
            batch_size: Records read per cursor query.
            poll_interval: Seconds between cursor polls while idle.
            await_timeout: Seconds the cursor waits for new records.
            restart_delay: Seconds to wait before restarting a failed cursor.
        """
        settings = get_settings()

        self.scheduler = scheduler
        self.collection = scheduler.get_collection()
        self.dispatcher_id = (
            dispatcher_id
            or settings.dispatcher_id
            or f"{os.uname().nodename}-{os.getpid()}"
        )
        self.batch_size = batch_size or settings.dispatcher_batch_size
        self.poll_interval = poll_interval or settings.dispatcher_poll_interval_seconds
        self.await_timeout = await_timeout or settings.dispatcher_await_timeout_seconds
        self.restart_delay = restart_delay or settings.dispatcher_restart_delay_seconds

        self.current_job: JobRecord | None = None
        self.local_queue = LocalQueue()

        self._resolver = resolver
        self._task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._metrics = get_metrics()

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def run_forever(self) -> None:
        """
        Follow the queue collection until the task is cancelled.

        Every time the cursor dies or fails, the store is checked and a
        fresh cursor is opened.
        """
        self._task = asyncio.current_task()

        logger.info(
            "Dispatcher starting",
            extra={"dispatcher_id": self.dispatcher_id, "collection": self.collection},
        )

        while True:
            cursor = await self.get_cursor()
            await self._follow(cursor)

    async def _follow(self, cursor: QueueCursor) -> None:
        """Process records from a following cursor until it needs replacing."""
        while True:
            await self.process_local_queue()

            if cursor.current is None:
                if cursor.dead:
                    logger.error(
                        "Job queue cursor is dead, is it a capped collection?",
                        extra={"collection": self.collection},
                    )
                    self._metrics.record_cursor_restart("dead")
                    await self.create_queue()
                    return

                if not await self._retrieve_next_job(cursor):
                    return

                continue

            job = cursor.current
            advanced = await self._retrieve_next_job(cursor, await_data=False)
            await self.queue_job(job)

            if not advanced:
                return

    async def run_once(self, limit: int | None = None) -> bool:
        """
        Process the jobs currently in the queue without waiting for new ones.

        Args:
            limit: Maximum number of records to dispatch in this call.

        Returns:
            True if more records may be pending, False once the queue
            has been drained.
        """
        cursor = await self.get_cursor(tailable=False)
        dispatched = 0

        while True:
            await self.process_local_queue()

            if cursor.current is None:
                if cursor.dead:
                    logger.debug(
                        "All jobs were processed",
                        extra={"collection": self.collection},
                    )
                    return False

                return True

            if limit is not None and dispatched >= limit:
                return True

            job = cursor.current
            await cursor.advance(await_data=False)
            await self.queue_job(job)
            dispatched += 1

    async def _retrieve_next_job(self, cursor: QueueCursor, await_data: bool = True) -> bool:
        """
        Advance a following cursor.

        Returns:
            False if the cursor failed and the loop has to restart.
        """
        try:
            await cursor.advance(await_data=await_data)
        except CursorError:
            logger.exception(
                "Job queue cursor failed to retrieve next job, restarting",
                extra={"collection": self.collection},
            )
            self._metrics.record_cursor_restart("error")
            await asyncio.sleep(self.restart_delay)
            return False

        return True

    # ------------------------------------------------------------------
    # Store provisioning
    # ------------------------------------------------------------------

    async def get_cursor(self, tailable: bool = True) -> QueueCursor:
        """
        Open a cursor over the pending jobs, provisioning the store if needed.

        A missing collection is created; a collection that is not capped
        is converted. Any other failure propagates.

        Args:
            tailable: Follow the collection instead of reading a snapshot.
        """
        for _ in range(PROVISION_ATTEMPTS):
            cursor = QueueCursor(
                self.collection,
                tailable=tailable,
                batch_size=self.batch_size,
                poll_interval=self.poll_interval,
                await_timeout=self.await_timeout,
            )

            try:
                return await cursor.open()
            except CollectionMissing:
                await self.create_queue()
            except CollectionNotCapped:
                await self.convert_queue()

        raise StoreError(
            f"queue collection [{self.collection}] could not be provisioned",
            {"collection": self.collection, "attempts": PROVISION_ATTEMPTS},
        )

    async def create_queue(self) -> None:
        """
        Create the capped queue collection and seed it with a placeholder.

        The placeholder is required because a following cursor opened on
        an empty collection is dead. An existing collection is left
        alone unless it is empty.
        """
        logger.info(
            "Create new queue",
            extra={"collection": self.collection, "size": self.scheduler.get_queue_size()},
        )

        try:
            async with get_session_context() as session:
                repo = JobRepository(session, self.collection)
                created = await repo.create_collection(self.scheduler.get_queue_size())
                if created or await repo.is_empty():
                    await repo.insert_placeholder()
        except SQLAlchemyError:
            # Another dispatcher may have won the race to create it
            if not await self._collection_exists():
                raise
            logger.debug(
                "Queue collection was created concurrently",
                extra={"collection": self.collection},
            )

    async def convert_queue(self) -> None:
        """Convert the existing queue collection into a capped collection."""
        logger.info(
            "Convert existing queue collection into a capped collection",
            extra={"collection": self.collection, "size": self.scheduler.get_queue_size()},
        )

        async with get_session_context() as session:
            repo = JobRepository(session, self.collection)
            await repo.convert_to_capped(self.scheduler.get_queue_size())
            await repo.insert_placeholder()

    async def _collection_exists(self) -> bool:
        async with get_session_context() as session:
            return await JobRepository(session, self.collection).collection_exists()

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def collect_job(
        self,
        job_id: UUID,
        status: JobStatus,
        from_status: JobStatus = JobStatus.WAITING,
    ) -> bool:
        """
        Try to take a job by moving it from `from_status` to `status`.

        Returns:
            True if this dispatcher won the job.
        """
        async with get_session_context() as session:
            collected = await JobRepository(session, self.collection).transition(
                job_id, status, from_status
            )

        if collected:
            logger.debug(
                f"Job updated to status [{status.name}]",
                extra={"job_id": str(job_id)},
            )
            if status == JobStatus.PROCESSING:
                self._metrics.record_job_collected(self.dispatcher_id)
        else:
            logger.debug(
                f"Job is already collected, expected status [{from_status.name}]",
                extra={"job_id": str(job_id)},
            )

        return collected

    async def update_job(
        self,
        job_id: UUID,
        status: JobStatus,
        from_status: JobStatus = JobStatus.PROCESSING,
    ) -> bool:
        """
        Move a collected job on to its next status.

        Returns:
            False if the job was no longer in `from_status`.
        """
        async with get_session_context() as session:
            updated = await JobRepository(session, self.collection).transition(
                job_id, status, from_status
            )

        if not updated:
            logger.warning(
                f"Job left status [{from_status.name}] before it could be set to [{status.name}]",
                extra={"job_id": str(job_id)},
            )

        return updated

    # ------------------------------------------------------------------
    # Job handling
    # ------------------------------------------------------------------

    async def queue_job(self, job: JobRecord) -> bool:
        """
        Dispatch a record read from the cursor.

        A waiting job is collected and processed. A postponed job goes to
        the local queue until it is due. Anything else belongs to another
        dispatcher.
        """
        if await self.collect_job(job.id, JobStatus.PROCESSING):
            await self.process_job(job)
        elif job.status == JobStatus.POSTPONED:
            if self.local_queue.push(job):
                logger.debug(
                    "Found postponed job to requeue",
                    extra={"job_id": str(job.id), "job_class": job.job_class},
                )
                self._update_local_queue_size()

        return True

    async def process_local_queue(self) -> bool:
        """Collect and process the postponed jobs that are now due."""
        due = self.local_queue.pop_due(utc_now())
        if due:
            self._update_local_queue_size()

        for job in due:
            logger.info(
                "Postponed job can now be executed",
                extra={"job_id": str(job.id), "job_class": job.job_class},
            )

            job = replace(job, at=None)
            if await self.collect_job(job.id, JobStatus.PROCESSING, JobStatus.POSTPONED):
                await self.process_job(job)

        return True

    async def process_job(self, job: JobRecord) -> UUID:
        """
        Process a collected job.

        Returns:
            The id of the successor job if one was created, else the job id.
        """
        if not job.is_due():
            if await self.update_job(job.id, JobStatus.POSTPONED):
                self.local_queue.push(job)
                self._update_local_queue_size()

            logger.debug(
                "Execution of job is postponed",
                extra={
                    "job_id": str(job.id),
                    "job_class": job.job_class,
                    "at": job.at.isoformat() if job.at else None,
                },
            )
            return job.id

        logger.debug(
            "Execute job",
            extra={"job_id": str(job.id), "job_class": job.job_class, "params": job.data},
        )

        self.current_job = job
        start_time = time.monotonic()

        try:
            completed = await self.execute_job(job)
        except Exception:
            self.current_job = None
            logger.exception(
                "Failed to execute job",
                extra={"job_id": str(job.id), "job_class": job.job_class},
            )

            failed = await self.update_job(job.id, JobStatus.FAILED)
            self._metrics.record_job_completed(
                job.job_class, JobStatus.FAILED.name.lower(), time.monotonic() - start_time
            )

            if not failed:
                return job.id

            if job.has_retry:
                logger.debug(
                    f"Failed job has [{job.retry}] retries left",
                    extra={"job_id": str(job.id), "retry_interval": job.retry_interval},
                )

                return await self.scheduler.add_job(
                    job.job_class,
                    job.data,
                    JobOptions(
                        at=utc_now() + timedelta(seconds=job.retry_interval),
                        interval=job.interval,
                        retry=job.retry - 1,
                        retry_interval=job.retry_interval,
                    ),
                )
        else:
            self.current_job = None
            self._metrics.record_job_completed(
                job.job_class, JobStatus.DONE.name.lower(), time.monotonic() - start_time
            )

            if not completed:
                return job.id

        if job.is_recurring:
            logger.debug(
                f"Job has an interval of [{job.interval}s]",
                extra={"job_id": str(job.id)},
            )

            return await self.scheduler.add_job(
                job.job_class,
                job.data,
                JobOptions(
                    at=utc_now() + timedelta(seconds=job.interval),
                    interval=job.interval,
                    retry=job.retry,
                    retry_interval=job.retry_interval,
                ),
            )

        return job.id

    async def execute_job(self, job: JobRecord) -> bool:
        """
        Run the handler of a job and mark the job done.

        Handler exceptions propagate unchanged.

        Returns:
            True if the job was marked done.

        Raises:
            InvalidJob: If the handler cannot be resolved, lacks the job
                handler capabilities, or does not report a boolean.
        """
        handler = self._resolve_handler(job.job_class)
        handler.set_data(job.data)
        handler.set_id(job.id)

        with job_span(job.id, job.job_class, self.dispatcher_id):
            result = handler.run()
            if inspect.isawaitable(result):
                result = await result

        if not isinstance(result, bool):
            raise InvalidJob(
                f"job [{job.job_class}] must report a boolean result",
                {"job_id": str(job.id), "result": repr(result)},
            )

        logger.info(
            "Job completed",
            extra={"job_id": str(job.id), "job_class": job.job_class, "result": result},
        )

        return await self.update_job(job.id, JobStatus.DONE)

    def _resolve_handler(self, job_class: str) -> JobHandler:
        if self._resolver is not None:
            instance = self._resolver(job_class)
        else:
            factory = get_handler(job_class)
            if factory is None:
                raise InvalidJob(
                    f"job class [{job_class}] does not exist",
                    {"job_class": job_class},
                )
            instance = factory()

        if not isinstance(instance, JobHandler):
            raise InvalidJob(
                f"job class [{job_class}] must implement the job handler interface",
                {"job_class": job_class},
            )

        return instance

    def _update_local_queue_size(self) -> None:
        self._metrics.update_local_queue_size(self.dispatcher_id, len(self.local_queue))

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def catch_signals(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Reschedule the running job and stop on SIGTERM and SIGINT."""
        loop = loop or asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.schedule_cleanup, sig)

    def schedule_cleanup(self, sig: int) -> asyncio.Task:
        """
        Start `cleanup()` for a signal unless one is already running.

        The task is kept on the dispatcher so it is not garbage collected
        before it finishes.

        Returns:
            The running cleanup task.
        """
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self.cleanup(sig))
        return self._cleanup_task

    async def cleanup(self, sig: int) -> None:
        """Reschedule the running job, then stop the dispatcher."""
        await self.handle_signal(sig)
        self.stop()

    def stop(self) -> None:
        """Cancel the task running the dispatcher loop."""
        logger.info("Dispatcher stopping", extra={"dispatcher_id": self.dispatcher_id})
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def handle_signal(self, sig: int) -> UUID | None:
        """
        Cancel the running job and schedule a replacement.

        Returns:
            The id of the replacement job, None if no job was running.
        """
        if self.current_job is None:
            logger.debug(
                f"Received signal [{sig}], no job is currently processing, exit now",
                extra={"dispatcher_id": self.dispatcher_id},
            )
            return None

        job = self.current_job
        self.current_job = None

        logger.debug(
            f"Received signal [{sig}], reschedule current processing job",
            extra={"job_id": str(job.id), "job_class": job.job_class},
        )

        if not await self.update_job(job.id, JobStatus.CANCELED):
            return None

        return await self.scheduler.add_job(
            job.job_class,
            job.data,
            JobOptions(
                at=utc_now() + timedelta(seconds=job.retry_interval),
                interval=job.interval,
                retry=job.retry - 1,
                retry_interval=job.retry_interval,
            ),
        )


async def run_async() -> None:
    """Run the dispatcher asynchronously."""
    settings = get_settings()

    setup_logging()
    setup_metrics(settings.prometheus_port)
    setup_tracing()
    await init_db()
    instrument_sqlalchemy(get_engine().sync_engine)

    dispatcher = QueueDispatcher(Scheduler())
    bind_context(dispatcher_id=dispatcher.dispatcher_id)

    # Handle shutdown signals
    dispatcher.catch_signals()

    try:
        await dispatcher.run_forever()
    except asyncio.CancelledError:
        logger.info("Dispatcher stopped", extra={"dispatcher_id": dispatcher.dispatcher_id})
    finally:
        await close_db()


def run() -> None:
    """Run the dispatcher."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
