"""Tests for AppContext wiring."""

import importlib

import pytest

from api.core.context import AppContext
from tests.fixtures.factories import iter_bytes

SERVICE_MODULES = [
    "api.core.context",
    "api.services.file_service",
    "api.services.backend_config_service",
    "api.services.operation_service",
    "api.services.security_service",
    "api.tasks.operations",
]


@pytest.mark.unit
@pytest.mark.parametrize("module_name", SERVICE_MODULES)
def test_service_module_imports(module_name):
    """Test that every service module imports on the supported interpreters."""
    # Act
    module = importlib.import_module(module_name)

    # Assert
    assert module.__name__ == module_name


@pytest.mark.unit
class TestAppContext:
    """Build and shutdown of the process-wide context."""

    @pytest.mark.asyncio
    async def test_build_loads_default_backend(self, settings, public_resolver, tmp_path):
        """Test that a fresh installation gets a default local backend and a persisted configuration."""
        # Act
        context = await AppContext.build(settings, resolver=public_resolver)

        # Assert
        try:
            assert context.load_report.created_default
            assert context.registry.default_id() == "local"
            assert (tmp_path / "config" / "storage.json").exists()
            await context.files.write("local", "/hello.txt", iter_bytes(b"hi"))
            assert (tmp_path / "storage" / "hello.txt").read_bytes() == b"hi"
        finally:
            await context.close()

    @pytest.mark.asyncio
    async def test_close_releases_subscribers(self, settings, public_resolver):
        """Test that closing the context ends every progress subscription."""
        context = await AppContext.build(settings, resolver=public_resolver)
        subscription = context.hub.subscribe()

        await context.close()

        assert subscription.closed
        assert context.hub.subscriber_count == 0
