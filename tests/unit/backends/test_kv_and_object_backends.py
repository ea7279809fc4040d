"""Tests for the Redis key-value and S3 object-store adapters."""

import pytest
from botocore.exceptions import ClientError

from file_storage.backends.redis_kv import RedisStorageBackend
from file_storage.backends.s3 import translate_client_error
from file_storage.exceptions import Conflict, NotFound, PermissionDenied, QuotaExceeded, Transient
from tests.fixtures.factories import iter_bytes, read_file, write_file
from tests.fixtures.fakes import FakeRedis


@pytest.mark.unit
class TestRedisBackend:
    """Chunked content, metadata and size limit."""

    @pytest.mark.asyncio
    async def test_content_split_into_chunks(self, redis_backend, fake_redis):
        """Test that a file larger than chunk_size is stored in several keys."""
        await write_file(redis_backend, "/blob.bin", b"x" * 2500)

        assert len(fake_redis.data_keys()) == 3

    @pytest.mark.asyncio
    async def test_overwrite_removes_previous_generation(self, redis_backend, fake_redis):
        """Test that old chunks are dropped once the new content is visible."""
        # Arrange
        await write_file(redis_backend, "/blob.bin", b"a" * 2500)

        # Act
        await write_file(redis_backend, "/blob.bin", b"b" * 500)

        # Assert
        assert len(fake_redis.data_keys()) == 1
        assert await read_file(redis_backend, "/blob.bin") == b"b" * 500

    @pytest.mark.asyncio
    async def test_max_file_size_enforced_without_leaking_chunks(self, fake_redis):
        """Test that an oversized write fails and leaves no chunk keys behind."""
        backend = RedisStorageBackend(namespace="t", chunk_size=100, max_file_size=250, client=fake_redis)

        with pytest.raises(QuotaExceeded):
            await backend.write("/big.bin", iter_bytes(b"z" * 1000, 100))

        assert fake_redis.data_keys() == []
        assert not await backend.exists("/big.bin")

    @pytest.mark.asyncio
    async def test_write_under_file_conflicts(self, redis_backend):
        """Test that a file cannot become a parent directory."""
        await write_file(redis_backend, "/file.txt", b"x")

        with pytest.raises(Conflict):
            await write_file(redis_backend, "/file.txt/child.txt", b"y")

    @pytest.mark.asyncio
    async def test_move_keeps_chunks(self, redis_backend, fake_redis):
        """Test that a move re-points metadata without rewriting content."""
        await write_file(redis_backend, "/a.bin", b"q" * 2500)
        keys_before = set(fake_redis.data_keys())

        await redis_backend.move("/a.bin", "/b/a.bin")

        assert set(fake_redis.data_keys()) == keys_before
        assert await read_file(redis_backend, "/b/a.bin") == b"q" * 2500

    @pytest.mark.asyncio
    async def test_move_into_itself_conflicts(self, redis_backend):
        """Test that a directory cannot be moved below itself."""
        await redis_backend.make_container("/dir")

        with pytest.raises(Conflict):
            await redis_backend.move("/dir", "/dir/sub")

    @pytest.mark.asyncio
    async def test_space_with_maxmemory(self):
        """Test that maxmemory is reported as total space."""
        backend = RedisStorageBackend(client=FakeRedis(maxmemory=10_000))
        await write_file(backend, "/a.bin", b"x" * 1000)

        space = await backend.available_and_total_space()

        assert space.total == 10_000
        assert 0 < space.available < 10_000

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self, fake_redis):
        """Test that two namespaces on one server do not see each other's files."""
        first = RedisStorageBackend(namespace="one", client=fake_redis)
        second = RedisStorageBackend(namespace="two", client=fake_redis)

        await write_file(first, "/shared.txt", b"1")

        assert not await second.exists("/shared.txt")


@pytest.mark.unit
class TestS3Backend:
    """Key mapping, directory emulation and error translation."""

    @pytest.mark.asyncio
    async def test_keys_are_scoped_under_prefix(self, s3_backend, fake_s3):
        """Test that objects land under the configured prefix."""
        await write_file(s3_backend, "/docs/a.txt", b"data")

        assert list(fake_s3.objects) == ["tenant/docs/a.txt"]

    @pytest.mark.asyncio
    async def test_make_container_writes_marker(self, s3_backend, fake_s3):
        """Test that empty directories are kept with a trailing-slash marker."""
        await s3_backend.make_container("/empty")

        assert "tenant/empty/" in fake_s3.objects
        assert (await s3_backend.stat("/empty")).is_dir

    @pytest.mark.asyncio
    async def test_stat_reports_content_type(self, s3_backend):
        """Test that the stored content type is exposed on the descriptor."""
        await write_file(s3_backend, "/page.html", b"<html></html>")

        entry = await s3_backend.stat("/page.html")

        assert entry.content_type == "text/html"

    @pytest.mark.asyncio
    async def test_copy_is_server_side(self, s3_backend, fake_s3):
        """Test that copy uses the managed copy instead of re-uploading."""
        await write_file(s3_backend, "/a.txt", b"data")
        fake_s3.calls.clear()

        await s3_backend.copy("/a.txt", "/b.txt")

        assert fake_s3.calls == ["copy"]

    @pytest.mark.asyncio
    async def test_connect_checks_bucket(self, fake_s3):
        """Test that connect fails with NotFound for a missing bucket."""
        from file_storage.backends.s3 import S3StorageBackend

        backend = S3StorageBackend(bucket="other-bucket", client=fake_s3)

        with pytest.raises(NotFound):
            await backend.connect()

    @pytest.mark.asyncio
    async def test_delete_missing_raises_not_found(self, s3_backend):
        """Test deleting a path with no object and no children."""
        with pytest.raises(NotFound):
            await s3_backend.delete("/ghost")

    @pytest.mark.asyncio
    async def test_delete_root_refused(self, s3_backend, fake_s3):
        """Test that deleting the root keeps every object under the prefix."""
        # Arrange
        await write_file(s3_backend, "/keep/a.txt", b"a")
        await write_file(s3_backend, "/b.txt", b"b")

        # Act / Assert
        with pytest.raises(PermissionDenied):
            await s3_backend.delete("/")
        assert sorted(fake_s3.objects) == ["tenant/b.txt", "tenant/keep/a.txt"]

    @pytest.mark.parametrize(
        "code,status,expected",
        [
            ("NoSuchKey", 404, NotFound),
            ("AccessDenied", 403, PermissionDenied),
            ("SlowDown", 503, Transient),
        ],
    )
    def test_translate_client_error(self, code, status, expected):
        """Test mapping of S3 error codes onto the taxonomy."""
        error = ClientError(
            {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
            "GetObject",
        )

        assert isinstance(translate_client_error(error, "/x"), expected)
