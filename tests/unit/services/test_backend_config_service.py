"""Tests for backend configuration and security policy services."""

import pytest

from api.services.backend_config_service import MASK, BackendConfigService, mask_secrets
from api.services.security_service import SecurityService
from api.shared.exceptions import InvalidRequest
from file_storage.config_store import BackendConfigStore
from file_storage.exceptions import Conflict, PermissionDenied
from file_storage.registry import StorageRegistry
from security_module.policy import POLICY_KEY, SecurityPolicyStore
from tests.fixtures.factories import create_backend_config


@pytest.fixture
def service(registry):
    return BackendConfigService(registry)


@pytest.fixture
def security(registry):
    return SecurityService(registry)


@pytest.mark.unit
class TestMaskSecrets:
    """Secret parameters are never displayed."""

    def test_secret_values_are_masked(self):
        """Test that only non-empty secret parameters are replaced."""
        config = create_backend_config(
            "ftp-1", "ftp", {"host": "ftp.example.com", "username": "bob", "password": "hunter2", "access_key": ""}
        )

        record = mask_secrets(config)

        assert record["config"] == {"host": "ftp.example.com", "username": "bob", "password": MASK, "access_key": ""}
        assert record["type"] == "ftp"


@pytest.mark.unit
class TestBackendConfigService:
    """List, add, remove and test configurations."""

    def test_supported_kinds(self, service):
        """Test that every adapter kind and alias is advertised."""
        assert service.supported_kinds() == sorted(
            ["local", "s3", "gdrive", "onedrive", "ftp", "sftp", "webdav", "nfs", "redis", "rdb"]
        )

    def test_list_marks_default(self, service):
        """Test that the generated local backend is listed as default."""
        records = service.list_configs()

        assert [(r["id"], r["is_default"]) for r in records] == [("local", True)]

    @pytest.mark.asyncio
    async def test_list_without_default(self, settings, public_resolver, redis_backend):
        """Test that listing works when no backend is flagged default and local is absent."""
        # Arrange
        policy = SecurityPolicyStore(settings.security.policy_path)
        await policy.load()
        registry = StorageRegistry(
            BackendConfigStore(settings.storage.config_path), policy, settings.storage, resolver=public_resolver
        )
        await registry.register("cache", redis_backend)

        # Act
        records = BackendConfigService(registry).list_configs()

        # Assert
        assert [(r["id"], r["is_default"]) for r in records] == [("cache", False)]

    @pytest.mark.asyncio
    async def test_add_from_record(self, service, registry, tmp_path):
        """Test adding a backend from a persisted-format record."""
        # Arrange
        data = {"id": "archive", "type": "local", "config": {"root_path": str(tmp_path / "archive")}}

        # Act
        record = await service.add(data)

        # Assert
        assert record["id"] == "archive"
        assert registry.get("archive").kind == "local"
        assert {r["id"] for r in service.list_configs()} == {"local", "archive"}

    @pytest.mark.asyncio
    async def test_add_duplicate(self, service, tmp_path):
        """Test that a duplicate id is a conflict."""
        with pytest.raises(Conflict):
            await service.add({"id": "local", "type": "local", "config": {"root_path": str(tmp_path / "x")}})

    @pytest.mark.asyncio
    async def test_add_invalid_record(self, service):
        """Test that a record failing validation is an invalid request."""
        with pytest.raises(InvalidRequest, match="Invalid backend configuration"):
            await service.add({"id": "  ", "type": "local"})

    @pytest.mark.asyncio
    async def test_remove_default_refused(self, service):
        """Test that the local backend cannot be removed."""
        with pytest.raises(PermissionDenied):
            await service.remove("local")

    @pytest.mark.asyncio
    async def test_test_connection_reports_invalid_record(self, service):
        """Test that an unparseable record is reported, not raised."""
        result = await service.test_connection({"type": "local"})

        assert result["success"] is False
        assert "Invalid backend configuration" in result["message"]

    @pytest.mark.asyncio
    async def test_test_connection_does_not_register(self, service, registry, tmp_path):
        """Test that a successful check leaves the registry unchanged."""
        result = await service.test_connection(
            {"id": "probe", "type": "local", "config": {"root_path": str(tmp_path / "probe")}}
        )

        assert result["success"] is True
        assert result["details"]["kind"] == "local"
        assert [c.id for c in registry.list_all()] == ["local"]


@pytest.mark.unit
class TestSecurityService:
    """Policy toggle and endpoint diagnostics."""

    def test_default_policy(self, security):
        """Test that local addresses are blocked by default."""
        config = security.get_config()

        assert config[POLICY_KEY] is False
        assert config["blockedRanges"]

    @pytest.mark.asyncio
    async def test_validate_blocked_endpoint(self, security):
        """Test that a loopback endpoint is reported with its category."""
        result = await security.validate_endpoint("http://127.0.0.1:8080/dav")

        assert result["valid"] is False
        assert result["category"] == "loopback"
        assert result["address"] == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_validate_malformed_endpoint(self, security):
        """Test that an endpoint without a host is invalid."""
        result = await security.validate_endpoint("")

        assert result["valid"] is False
        assert "category" not in result

    @pytest.mark.asyncio
    async def test_validate_public_hostname(self, security):
        """Test that a hostname is checked through the resolver."""
        result = await security.validate_endpoint("https://dav.example.com")

        assert result == {"endpoint": "https://dav.example.com", "valid": True, "addresses": ["93.184.216.34"]}

    @pytest.mark.asyncio
    async def test_allow_local_addresses(self, security, settings):
        """Test that enabling the override is persisted and takes effect."""
        # Act
        config = await security.set_allow_local_addresses(True)
        result = await security.validate_endpoint("http://10.0.0.5")

        # Assert
        assert config[POLICY_KEY] is True
        assert result["valid"] is True
        assert POLICY_KEY in open(settings.security.policy_path, encoding="utf-8").read()
