"""Tests for backend configuration records, their store and the backend factory."""

import json

import pytest
from cryptography.fernet import Fernet
from pydantic import ValidationError

from file_storage import factory
from file_storage.backends.ftp import FTPStorageBackend
from file_storage.backends.gdrive import GoogleDriveBackend
from file_storage.backends.local import LocalStorageBackend
from file_storage.backends.nfs import NFSStorageBackend
from file_storage.backends.onedrive import OneDriveBackend
from file_storage.backends.redis_kv import RedisStorageBackend
from file_storage.backends.s3 import S3StorageBackend
from file_storage.backends.sftp import SFTPStorageBackend
from file_storage.backends.webdav import WebDAVStorageBackend
from file_storage.config_store import BackendConfig, BackendConfigStore
from file_storage.exceptions import EndpointBlocked, InvalidEndpoint, Unsupported
from security_module.encryption import ParameterEncryption
from security_module.endpoint_validator import EndpointValidator
from tests.fixtures.factories import create_backend_config, create_backend_record

OAUTH = {"client_id": "cid", "client_secret": "cs", "refresh_token": "rt"}


@pytest.mark.unit
class TestBackendConfig:
    """Persisted field names and validation."""

    def test_record_field_names(self):
        """Test that records use type/config while code uses kind/parameters."""
        config = BackendConfig.model_validate(create_backend_record("s3-main", "s3", bucket="media"))

        assert config.kind == "s3"
        assert config.parameters == {"bucket": "media"}
        assert config.to_record()["type"] == "s3"
        assert config.to_record()["config"] == {"bucket": "media"}

    @pytest.mark.parametrize("record", [{"id": " ", "type": "local"}, {"id": "x"}, {"type": "local"}])
    def test_invalid_records(self, record):
        """Test that blank ids and missing fields are rejected."""
        with pytest.raises(ValidationError):
            BackendConfig.model_validate(record)


@pytest.mark.unit
class TestBackendConfigStore:
    """JSON persistence with optional encryption of secrets."""

    @pytest.mark.asyncio
    async def test_missing_file_reads_as_none(self, tmp_path):
        """Test that a missing file is distinguishable from an empty list."""
        store = BackendConfigStore(tmp_path / "storage.json")

        assert await store.read_records() is None

    @pytest.mark.asyncio
    async def test_save_and_read_back(self, tmp_path):
        """Test that saved configurations read back unchanged."""
        store = BackendConfigStore(tmp_path / "nested" / "storage.json")
        configs = [create_backend_config("a"), create_backend_config("b", is_default=True)]

        await store.save(configs)
        records = await store.read_records()

        assert [store.decode(r) for r in records] == configs

    @pytest.mark.asyncio
    async def test_non_array_file_is_rejected(self, tmp_path):
        """Test that a JSON object instead of an array is an error."""
        path = tmp_path / "storage.json"
        path.write_text('{"id": "local"}')

        with pytest.raises(ValueError):
            await BackendConfigStore(path).read_records()

    @pytest.mark.asyncio
    async def test_secrets_encrypted_at_rest(self, tmp_path):
        """Test that passwords never hit the disk in clear text."""
        # Arrange
        path = tmp_path / "storage.json"
        store = BackendConfigStore(path, ParameterEncryption(Fernet.generate_key().decode()))
        config = create_backend_config("ftp-1", "ftp", {"host": "ftp.example.com", "password": "hunter2"})

        # Act
        await store.save([config])
        raw = path.read_text()
        decoded = store.decode(json.loads(raw)[0])

        # Assert
        assert "hunter2" not in raw
        assert "ftp.example.com" in raw
        assert decoded.parameters["password"] == "hunter2"


@pytest.mark.unit
class TestBuildBackend:
    """Kind to adapter mapping (construction only, nothing is connected)."""

    @pytest.mark.parametrize(
        "kind,parameters,expected",
        [
            ("nfs", {"server": "nfs.example.com", "export_path": "/exp", "mount_point": "MNT"}, NFSStorageBackend),
            ("s3", {"bucket": "media", "region": "eu-west-1"}, S3StorageBackend),
            ("gdrive", OAUTH, GoogleDriveBackend),
            ("onedrive", OAUTH, OneDriveBackend),
            ("ftp", {"host": "ftp.example.com"}, FTPStorageBackend),
            ("sftp", {"host": "sftp.example.com", "username": "deploy"}, SFTPStorageBackend),
            ("webdav", {"base_url": "https://dav.example.com/remote.php/dav"}, WebDAVStorageBackend),
            ("redis", {"address": "cache.example.com:6379"}, RedisStorageBackend),
            ("rdb", {}, RedisStorageBackend),
        ],
    )
    def test_kind_selects_adapter(self, kind, parameters, expected, settings, tmp_path):
        """Test that each supported kind builds its adapter type."""
        if "mount_point" in parameters:
            parameters = {**parameters, "mount_point": str(tmp_path / "mnt")}

        backend = factory.build_backend(create_backend_config("x", kind, parameters), settings.storage)

        assert isinstance(backend, expected)
        assert backend.kind == ("redis" if kind == "rdb" else kind)

    def test_local_defaults_to_configured_root(self, settings):
        """Test that a local config without root_path uses the default local root."""
        backend = factory.build_backend(create_backend_config("l", "local"), settings.storage)

        assert isinstance(backend, LocalStorageBackend)
        assert backend.base.name == "storage"

    def test_chunk_size_follows_settings(self, settings):
        """Test that adapters stream with the configured transfer buffer."""
        backend = factory.build_backend(create_backend_config("s", "s3", {"bucket": "b"}), settings.storage)

        assert backend.chunk_size == settings.storage.transfer_buffer_size

    @pytest.mark.parametrize(
        "kind,parameters",
        [("s3", {}), ("ftp", {"port": 21}), ("sftp", {"host": "h"}), ("webdav", {}), ("gdrive", {"client_id": "x"})],
    )
    def test_missing_required_parameter(self, kind, parameters, settings):
        """Test that missing parameters raise InvalidEndpoint naming the key."""
        with pytest.raises(InvalidEndpoint, match="Missing required parameter"):
            factory.build_backend(create_backend_config("x", kind, parameters), settings.storage)

    def test_endpoint_of(self):
        """Test which parameter is the network endpoint per kind."""
        assert factory.endpoint_of("s3", {}) is None
        assert factory.endpoint_of("s3", {"endpoint": "http://minio:9000"}) == "http://minio:9000"
        assert factory.endpoint_of("webdav", {"base_url": "https://dav"}) == "https://dav"
        assert factory.endpoint_of("redis", {}) == "localhost:6379"
        assert factory.endpoint_of("local", {"root_path": "/srv"}) is None


@pytest.mark.unit
class TestCreateBackend:
    """Validation ordering and connection."""

    @pytest.mark.asyncio
    async def test_unknown_kind_is_unsupported(self, settings):
        """Test that an unknown kind fails before anything is built."""
        with pytest.raises(Unsupported):
            await factory.create_backend(create_backend_config("x", "tape"), EndpointValidator(), settings.storage)

    @pytest.mark.asyncio
    async def test_blocked_endpoint_never_builds_adapter(self, settings, monkeypatch):
        """Test that the endpoint check runs before construction."""
        # Arrange
        def fail_build(*args, **kwargs):
            raise AssertionError("adapter must not be constructed")

        monkeypatch.setattr(factory, "build_backend", fail_build)
        config = create_backend_config("minio", "s3", {"bucket": "b", "endpoint": "http://127.0.0.1:9000"})

        # Act & Assert
        with pytest.raises(EndpointBlocked):
            await factory.create_backend(config, EndpointValidator(), settings.storage)

    @pytest.mark.asyncio
    async def test_failed_connect_closes_adapter(self, settings, monkeypatch):
        """Test that an adapter whose connect fails is closed and the error propagates."""
        closed = []

        class Broken(LocalStorageBackend):
            async def connect(self):
                raise OSError("mount failed")

            async def close(self):
                closed.append(True)

        monkeypatch.setattr(factory, "build_backend", lambda config, settings=None: Broken(settings.default_local_root))

        with pytest.raises(OSError):
            await factory.create_backend(create_backend_config("l", "local"), EndpointValidator(), settings.storage)

        assert closed == [True]

    @pytest.mark.asyncio
    async def test_local_backend_is_ready(self, settings):
        """Test building and connecting a local adapter."""
        backend = await factory.create_backend(
            create_backend_config("l", "local", {"root_path": settings.storage.default_local_root}),
            EndpointValidator(),
            settings.storage,
        )

        assert await backend.list("/") == []
