"""
Unit tests for job handlers.
"""

from uuid import uuid4

import pytest

from taskscheduler.worker.handlers import (
    AbstractJob,
    EchoJob,
    FailingJob,
    HttpRequestJob,
    JobHandler,
    SleepJob,
    get_handler,
    list_handlers,
    register_handler,
)


class TestHandlerRegistry:
    """Tests for the handler registry."""

    def test_list_handlers(self):
        """Test listing registered handlers."""
        handlers = list_handlers()

        assert "echo" in handlers
        assert "sleep" in handlers
        assert "failing_job" in handlers
        assert "http_request" in handlers

    def test_get_handler_exists(self):
        """Test getting an existing handler."""
        assert get_handler("echo") is EchoJob

    def test_get_handler_not_exists(self):
        """Test getting a non-existent handler."""
        assert get_handler("nonexistent") is None

    def test_register_handler(self):
        """Test registering a new handler class."""

        @register_handler("tests.registered")
        class RegisteredJob(AbstractJob):
            def run(self) -> bool:
                return True

        assert get_handler("tests.registered") is RegisteredJob
        assert "tests.registered" in list_handlers()


class TestAbstractJob:
    """Tests for the handler base class."""

    def test_satisfies_handler_protocol(self):
        """Test that handlers expose the job handler capabilities."""
        assert isinstance(EchoJob(), JobHandler)

    def test_object_without_capabilities(self):
        """Test that arbitrary objects are not job handlers."""
        assert not isinstance(object(), JobHandler)

    def test_data_and_id_accessors(self):
        """Test data and id injection."""
        job_id = uuid4()
        handler = EchoJob().set_data({"message": "hi"}).set_id(job_id)

        assert handler.get_data() == {"message": "hi"}
        assert handler.get_id() == job_id

    def test_get_id_before_set(self):
        """Test reading the id before it was injected."""
        with pytest.raises(RuntimeError):
            EchoJob().get_id()

    def test_run_not_implemented(self):
        """Test the base class has no work to do."""
        with pytest.raises(NotImplementedError):
            AbstractJob().run()


class TestBuiltinHandlers:
    """Tests for built-in handlers."""

    async def test_echo_handler(self):
        """Test the echo handler."""
        handler = EchoJob().set_data({"message": "test"}).set_id(uuid4())

        assert await handler.run() is True

    async def test_sleep_handler(self):
        """Test the sleep handler with a short duration."""
        handler = SleepJob().set_data({"duration_seconds": 0.01}).set_id(uuid4())

        assert await handler.run() is True

    async def test_failing_handler(self):
        """Test the failing job handler."""
        handler = FailingJob().set_id(uuid4())

        with pytest.raises(RuntimeError, match="Intentional failure"):
            await handler.run()

    async def test_http_request_requires_url(self):
        """Test the HTTP handler rejects data without a URL."""
        handler = HttpRequestJob().set_data({"method": "GET"}).set_id(uuid4())

        with pytest.raises(ValueError, match="url"):
            await handler.run()
