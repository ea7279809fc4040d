"""Shared test fixtures for all tests."""

import pytest
import pytest_asyncio

from tests.fixtures.fakes import FakeRedis, FakeS3Client


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Settings with every persisted path under tmp_path."""
    from config.settings import Settings

    monkeypatch.chdir(tmp_path)
    return Settings(
        storage={
            "config_path": str(tmp_path / "config" / "storage.json"),
            "default_local_root": str(tmp_path / "storage"),
            "staging_dir": str(tmp_path / "staging"),
            "transfer_buffer_size": 64 * 1024,
            "archive_buffer_size": 4 * 1024,
        },
        security={"policy_path": str(tmp_path / "config" / "security.json")},
        progress={"throttle_ms": 0},
    )


@pytest.fixture
def public_resolver():
    """Resolver mapping every hostname to a public address."""

    async def resolve(host: str) -> list[str]:
        return ["93.184.216.34"]

    return resolve


@pytest.fixture
def local_backend(tmp_path):
    """LocalStorageBackend rooted at a fresh directory."""
    from file_storage.backends.local import LocalStorageBackend

    return LocalStorageBackend(tmp_path / "local", chunk_size=1024)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_backend(fake_redis):
    from file_storage.backends.redis_kv import RedisStorageBackend

    return RedisStorageBackend(namespace="test", chunk_size=1000, client=fake_redis)


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def s3_backend(fake_s3):
    from file_storage.backends.s3 import S3StorageBackend

    return S3StorageBackend(bucket=fake_s3.bucket, prefix="tenant", chunk_size=1000, client=fake_s3)


@pytest.fixture
def nfs_backend(tmp_path):
    """NFS adapter on a pre-mounted directory (mount commands are never run)."""
    from file_storage.backends.nfs import NFSStorageBackend

    return NFSStorageBackend(
        server="nfs.example.com",
        export_path="/exports/data",
        mount_point=str(tmp_path / "mnt"),
        chunk_size=1024,
    )


@pytest_asyncio.fixture
async def registry(settings, public_resolver):
    """Registry loaded with the generated default local backend."""
    from file_storage.config_store import BackendConfigStore
    from file_storage.registry import StorageRegistry
    from security_module.policy import SecurityPolicyStore

    policy = SecurityPolicyStore(settings.security.policy_path)
    await policy.load()
    registry = StorageRegistry(
        BackendConfigStore(settings.storage.config_path),
        policy,
        settings.storage,
        resolver=public_resolver,
    )
    await registry.load_configuration()
    yield registry
    await registry.close_all()
