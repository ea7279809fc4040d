"""Capability contract properties checked against every offline-testable adapter."""

import pytest

from file_storage.exceptions import NotFound
from tests.fixtures.factories import SAMPLE_TREE, populate, read_file, snapshot, write_file

BACKENDS = ["local_backend", "nfs_backend", "redis_backend", "s3_backend"]


@pytest.fixture(params=BACKENDS)
def backend(request):
    return request.getfixturevalue(request.param)


@pytest.mark.unit
class TestContractRoundTrip:
    """write/read/list/delete behave identically on every adapter."""

    @pytest.mark.asyncio
    async def test_write_then_read_returns_same_bytes(self, backend):
        """Test that read returns exactly what was written and stat reports its size."""
        # Arrange
        data = b"0123456789" * 1000

        # Act
        written = await write_file(backend, "/docs/report.txt", data, chunk_size=777)
        content = await read_file(backend, "/docs/report.txt")
        entry = await backend.stat("/docs/report.txt")

        # Assert
        assert written == len(data)
        assert content == data
        assert entry.size == len(data)
        assert entry.name == "report.txt"
        assert not entry.is_dir

    @pytest.mark.asyncio
    async def test_empty_file_round_trip(self, backend):
        """Test writing and reading a zero-byte file."""
        await write_file(backend, "/empty.bin", b"")

        assert await read_file(backend, "/empty.bin") == b""
        assert (await backend.stat("/empty.bin")).size == 0

    @pytest.mark.asyncio
    async def test_overwrite_replaces_content(self, backend):
        """Test that writing an existing path overwrites it instead of conflicting."""
        await write_file(backend, "/a.txt", b"first version, longer")

        await write_file(backend, "/a.txt", b"second")

        assert await read_file(backend, "/a.txt") == b"second"
        assert (await backend.stat("/a.txt")).size == 6

    @pytest.mark.asyncio
    async def test_list_returns_direct_children_prefixed_by_directory(self, backend):
        """Test that list(D) returns exactly the N direct children, each under D."""
        # Arrange
        await populate(backend)

        # Act
        entries = await backend.list("/project")

        # Assert
        assert sorted(e.name for e in entries) == ["data.bin", "empty.txt", "nested", "readme.txt"]
        assert all(e.path.startswith("/project/") for e in entries)
        assert [e.name for e in entries if e.is_dir] == ["nested"]

    @pytest.mark.asyncio
    async def test_list_missing_directory_raises_not_found(self, backend):
        """Test that listing a missing directory raises NotFound."""
        with pytest.raises(NotFound):
            await backend.list("/missing")

    @pytest.mark.asyncio
    async def test_stat_missing_raises_not_found(self, backend):
        """Test that stat of a missing entry raises NotFound."""
        with pytest.raises(NotFound):
            await backend.stat("/nope.txt")

    @pytest.mark.asyncio
    async def test_read_missing_raises_before_first_chunk(self, backend):
        """Test that read failures surface when awaited, not while iterating."""
        with pytest.raises(NotFound):
            await backend.read("/nope.txt")

    @pytest.mark.asyncio
    async def test_make_container_creates_empty_directory(self, backend):
        """Test that make_container creates a directory that survives while empty."""
        await backend.make_container("/inbox/2024")

        entry = await backend.stat("/inbox/2024")
        children = await backend.list("/inbox/2024")

        assert entry.is_dir
        assert children == []
        assert [e.name for e in await backend.list("/inbox")] == ["2024"]

    @pytest.mark.asyncio
    async def test_make_container_is_idempotent(self, backend):
        """Test that creating an existing directory is not an error."""
        await backend.make_container("/dir")

        await backend.make_container("/dir")

        assert (await backend.stat("/dir")).is_dir

    @pytest.mark.asyncio
    async def test_delete_directory_is_recursive(self, backend):
        """Test that deleting a directory removes everything below it."""
        await populate(backend)

        await backend.delete("/project")

        assert not await backend.exists("/project")
        assert not await backend.exists("/project/nested/deep/notes.md")

    @pytest.mark.asyncio
    async def test_delete_file(self, backend):
        """Test that deleting a file leaves its siblings untouched."""
        await populate(backend)

        await backend.delete("/project/readme.txt")

        assert not await backend.exists("/project/readme.txt")
        assert await backend.exists("/project/data.bin")

    @pytest.mark.asyncio
    async def test_copy_directory_within_backend(self, backend):
        """Test that copy duplicates a tree and leaves the source in place."""
        await populate(backend)

        await backend.copy("/project", "/backup")

        copied = await snapshot(backend, "/backup")
        expected = {path.replace("/project/", "/backup/", 1): data for path, data in SAMPLE_TREE.items()}
        assert copied == expected
        assert await backend.exists("/project/readme.txt")

    @pytest.mark.asyncio
    async def test_copy_reports_progress(self, backend):
        """Test that copy with a callback ends with done == total."""
        await populate(backend)
        calls: list[tuple[int, int]] = []

        await backend.copy("/project", "/copy", on_progress=lambda done, total: calls.append((done, total)))

        total = sum(len(data) for data in SAMPLE_TREE.values())
        assert calls
        assert calls[-1] == (total, total)

    @pytest.mark.asyncio
    async def test_move_file_within_backend(self, backend):
        """Test that move removes the source and keeps the bytes at the destination."""
        await write_file(backend, "/a.txt", b"payload")

        await backend.move("/a.txt", "/archive/a.txt")

        assert not await backend.exists("/a.txt")
        assert await read_file(backend, "/archive/a.txt") == b"payload"

    @pytest.mark.asyncio
    async def test_move_directory_within_backend(self, backend):
        """Test moving a whole tree."""
        await populate(backend)

        await backend.move("/project", "/moved")

        assert not await backend.exists("/project")
        assert await read_file(backend, "/moved/nested/deep/notes.md") == SAMPLE_TREE["/project/nested/deep/notes.md"]

    @pytest.mark.asyncio
    async def test_total_size_and_search(self, backend):
        """Test the helpers built on the primitives."""
        await populate(backend)

        total = await backend.total_size("/project")
        found = await backend.search("/", "NOTES")

        assert total == sum(len(data) for data in SAMPLE_TREE.values())
        assert [e.path for e in found] == ["/project/nested/deep/notes.md"]

    @pytest.mark.asyncio
    async def test_space_uses_sentinel_not_zero(self, backend):
        """Test that unknown space is reported as the sentinel, never as zero."""
        space = await backend.available_and_total_space()

        if space.known:
            assert space.total > 0
            assert space.available >= 0
        else:
            assert space.total == -1
            assert space.available == -1
