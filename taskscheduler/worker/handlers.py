"""
Job handlers registry and implementations.

A handler is instantiated per execution, receives the job data and id,
and reports a boolean outcome from `run()`. Raising marks the job failed.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

logger = logging.getLogger(__name__)


@runtime_checkable
class JobHandler(Protocol):
    """Capabilities every job handler must provide."""

    def set_data(self, data: Any) -> "JobHandler": ...

    def get_data(self) -> Any: ...

    def set_id(self, job_id: UUID) -> "JobHandler": ...

    def get_id(self) -> UUID: ...

    def run(self) -> bool | Awaitable[bool]: ...


class AbstractJob:
    """
    Base class for job handlers.

    Subclasses implement `run()`, sync or async, and read their input
    through `self.data`.
    """

    def __init__(self) -> None:
        self.data: Any = None
        self.id: UUID | None = None

    def set_data(self, data: Any) -> "AbstractJob":
        self.data = data
        return self

    def get_data(self) -> Any:
        return self.data

    def set_id(self, job_id: UUID) -> "AbstractJob":
        self.id = job_id
        return self

    def get_id(self) -> UUID:
        if self.id is None:
            raise RuntimeError("job id has not been set")
        return self.id

    def run(self) -> bool | Awaitable[bool]:
        raise NotImplementedError


# Type alias for handler factories and injected resolvers
HandlerFactory = Callable[[], Any]
HandlerResolver = Callable[[str], Any]

# Handler registry
_handlers: dict[str, HandlerFactory] = {}


def register_handler(job_class: str) -> Callable[[type], type]:
    """
    Decorator to register a job handler class.

    Args:
        job_class: The job class key this handler processes.

    Returns:
        Decorator function.

    Example:
        @register_handler("send_email")
        class SendEmail(AbstractJob):
            async def run(self) -> bool:
                ...
    """
    def decorator(handler: type) -> type:
        _handlers[job_class] = handler
        logger.debug(f"Registered handler for job class: {job_class}")
        return handler
    return decorator


def get_handler(job_class: str) -> HandlerFactory | None:
    """
    Get the handler factory for a job class.

    Args:
        job_class: The job class key.

    Returns:
        The handler factory or None if not found.
    """
    return _handlers.get(job_class)


def list_handlers() -> list[str]:
    """List all registered job classes."""
    return list(_handlers.keys())


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler("echo")
class EchoJob(AbstractJob):
    """Echo handler for testing; logs its data."""

    async def run(self) -> bool:
        logger.info(
            "Echo job executing",
            extra={"job_id": str(self.id), "data": self.data},
        )
        return True


@register_handler("sleep")
class SleepJob(AbstractJob):
    """
    Sleep handler for testing delays.

    Data should contain:
    - duration_seconds: How long to sleep
    """

    async def run(self) -> bool:
        duration = (self.data or {}).get("duration_seconds", 1)

        logger.info(
            "Sleep job starting",
            extra={"job_id": str(self.id), "duration": duration},
        )

        await asyncio.sleep(duration)
        return True


@register_handler("failing_job")
class FailingJob(AbstractJob):
    """Handler that always fails - for testing retry logic."""

    async def run(self) -> bool:
        raise RuntimeError(f"Intentional failure of job {self.id}")


@register_handler("http_request")
class HttpRequestJob(AbstractJob):
    """
    Make an HTTP request.

    Data should contain:
    - url: The URL to request
    - method: HTTP method (GET, POST, etc.)
    - headers: Optional headers
    - body: Optional request body

    Returns False for non-2xx responses; transport errors raise so
    the job is retried.
    """

    async def run(self) -> bool:
        import httpx

        data = self.data or {}
        url = data.get("url")
        method = data.get("method", "GET").upper()

        if not url:
            raise ValueError("Missing 'url' in job data")

        logger.info(
            "HTTP request job",
            extra={"job_id": str(self.id), "method": method, "url": url},
        )

        async with httpx.AsyncClient() as client:
            response = await client.request(
                method=method,
                url=url,
                headers=data.get("headers", {}),
                json=data.get("body") if method in ["POST", "PUT", "PATCH"] else None,
                timeout=30.0,
            )

        return response.is_success
