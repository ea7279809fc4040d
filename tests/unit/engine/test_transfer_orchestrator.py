"""Tests for TransferOrchestrator: native and cross-backend copy/move."""

import os

import pytest
import pytest_asyncio

from file_storage.exceptions import Conflict, NotFound, PermissionDenied
from progress_module.cancellation import CancellationToken, OperationCancelled
from tests.fixtures.factories import SAMPLE_TREE, populate, snapshot, write_file
from transfer_module.orchestrator import TransferOrchestrator

TOTAL_BYTES = sum(len(data) for data in SAMPLE_TREE.values())


def rebased(tree: dict[str, bytes], old: str, new: str) -> dict[str, bytes]:
    return {path.replace(old, new, 1): data for path, data in tree.items()}


@pytest_asyncio.fixture
async def orchestrator(registry, redis_backend, s3_backend, nfs_backend):
    """Orchestrator over local (default), redis, s3 and nfs backends."""
    await registry.register("redis", redis_backend)
    await registry.register("s3", s3_backend)
    await registry.register("nfs", nfs_backend)
    return TransferOrchestrator(registry)


@pytest.mark.unit
class TestCrossBackendCopy:
    """Streaming copies between different adapter kinds."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "src_id,dst_id",
        [("local", "s3"), ("s3", "redis"), ("redis", "local"), ("local", "nfs"), ("nfs", "redis")],
    )
    async def test_tree_arrives_byte_identical(self, orchestrator, registry, src_id, dst_id):
        """Test that a copied tree matches the source on the destination, file by file."""
        # Arrange
        await populate(registry.get(src_id))

        # Act
        result = await orchestrator.copy(src_id, "/project", dst_id, "/incoming/project")

        # Assert
        assert await snapshot(registry.get(dst_id), "/incoming/project") == rebased(
            SAMPLE_TREE, "/project/", "/incoming/project/"
        )
        assert await snapshot(registry.get(src_id), "/project") == SAMPLE_TREE
        assert (result.files, result.directories, result.bytes) == (4, 3, TOTAL_BYTES)
        assert result.native is False

    @pytest.mark.asyncio
    async def test_empty_directories_are_created(self, orchestrator, registry):
        """Test that directories without files still exist on the destination."""
        await registry.get("local").make_container("/project/empty-dir")

        await orchestrator.copy("local", "/project", "redis", "/copy")

        assert (await registry.get("redis").stat("/copy/empty-dir")).is_dir

    @pytest.mark.asyncio
    async def test_single_file(self, orchestrator, registry):
        """Test copying one file to a new name on another backend."""
        await write_file(registry.get("s3"), "/in/a.txt", b"hello")

        result = await orchestrator.copy("s3", "/in/a.txt", "local", "/out/b.txt")

        assert (result.files, result.directories, result.bytes) == (1, 0, 5)
        assert (registry.get("local").base / "out" / "b.txt").read_bytes() == b"hello"

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_ends_at_total(self, orchestrator, registry):
        """Test that progress starts at zero, never decreases and ends at done == total."""
        # Arrange
        await populate(registry.get("local"))
        calls: list[tuple[int, int]] = []

        # Act
        await orchestrator.copy("local", "/project", "s3", "/p", on_progress=lambda d, t: calls.append((d, t)))

        # Assert
        assert calls[0] == (0, TOTAL_BYTES)
        assert calls[-1] == (TOTAL_BYTES, TOTAL_BYTES)
        done_values = [done for done, _ in calls]
        assert done_values == sorted(done_values)

    @pytest.mark.asyncio
    async def test_missing_source_raises_not_found(self, orchestrator):
        """Test that a missing source fails before anything is written."""
        with pytest.raises(NotFound):
            await orchestrator.copy("local", "/ghost", "redis", "/x")

    @pytest.mark.asyncio
    async def test_unknown_backend_raises_not_found(self, orchestrator):
        """Test that an unregistered backend id is NotFound."""
        with pytest.raises(NotFound):
            await orchestrator.copy("local", "/", "tape", "/x")

    @pytest.mark.asyncio
    async def test_unreadable_symlink_becomes_warning(self, orchestrator, registry):
        """Test that a dangling link is skipped with a warning instead of failing the copy."""
        # Arrange
        local = registry.get("local")
        await write_file(local, "/src/real.txt", b"data")
        os.symlink("missing.txt", local.base / "src" / "dangling.txt")

        # Act
        result = await orchestrator.copy("local", "/src", "redis", "/dst")

        # Assert
        assert result.files == 1
        assert len(result.warnings) == 1
        assert "dangling.txt" in result.warnings[0]

    @pytest.mark.asyncio
    async def test_cancellation_stops_at_chunk_boundary(self, orchestrator, registry):
        """Test that a cancelled token raises OperationCancelled and stops reading."""
        # Arrange
        await write_file(registry.get("local"), "/big.bin", b"x" * 256 * 1024)
        token = CancellationToken("op-1")
        progress: list[int] = []

        def on_progress(done: int, total: int) -> None:
            progress.append(done)
            if done > 0:
                token.cancel("user request")

        # Act
        with pytest.raises(OperationCancelled) as exc_info:
            await orchestrator.copy("local", "/big.bin", "s3", "/big.bin", on_progress=on_progress, token=token)

        # Assert
        assert exc_info.value.reason == "user request"
        assert max(progress) < 256 * 1024
        assert not await registry.get("s3").exists("/big.bin")


@pytest.mark.unit
class TestSameBackendTransfers:
    """Native operations and their guards."""

    @pytest.mark.asyncio
    async def test_native_copy(self, orchestrator, registry):
        """Test that a same-backend copy delegates to the adapter."""
        await populate(registry.get("redis"))

        result = await orchestrator.copy("redis", "/project", "redis", "/backup")

        assert result.native is True
        assert await snapshot(registry.get("redis"), "/backup") == rebased(SAMPLE_TREE, "/project/", "/backup/")

    @pytest.mark.asyncio
    async def test_copy_onto_itself_conflicts(self, orchestrator):
        """Test that identical source and destination is rejected."""
        with pytest.raises(Conflict):
            await orchestrator.copy("local", "/a", "local", "/a/")

    @pytest.mark.asyncio
    async def test_copy_into_own_subtree_conflicts(self, orchestrator):
        """Test that a directory cannot be copied below itself."""
        with pytest.raises(Conflict):
            await orchestrator.copy("local", "/project", "local", "/project/nested/copy")

    @pytest.mark.asyncio
    async def test_native_move_reports_completion(self, orchestrator, registry):
        """Test that a native move reports done == total once."""
        await populate(registry.get("local"))
        calls: list[tuple[int, int]] = []

        result = await orchestrator.move(
            "local", "/project", "local", "/moved", on_progress=lambda d, t: calls.append((d, t))
        )

        assert result.native is True
        assert calls == [(TOTAL_BYTES, TOTAL_BYTES)]
        assert not await registry.get("local").exists("/project")


@pytest.mark.unit
class TestCrossBackendMove:
    """Copy then delete-source."""

    @pytest.mark.asyncio
    async def test_move_removes_source(self, orchestrator, registry):
        """Test that after a move the source is gone and the destination is complete."""
        await populate(registry.get("s3"))

        result = await orchestrator.move("s3", "/project", "redis", "/project")

        assert result.move is True
        assert result.warnings == []
        assert not await registry.get("s3").exists("/project")
        assert await snapshot(registry.get("redis"), "/project") == SAMPLE_TREE

    @pytest.mark.asyncio
    async def test_failed_source_delete_is_a_warning(self, orchestrator, registry, monkeypatch):
        """Test that a failed delete leaves both copies and reports a warning."""
        # Arrange
        source = registry.get("redis")
        await populate(source)

        async def refuse(path: str) -> None:
            raise PermissionDenied("read-only source", path)

        monkeypatch.setattr(source, "delete", refuse)

        # Act
        result = await orchestrator.move("redis", "/project", "local", "/project")

        # Assert
        assert len(result.warnings) == 1
        assert "failed to delete source" in result.warnings[0]
        assert await snapshot(source, "/project") == SAMPLE_TREE
        assert await snapshot(registry.get("local"), "/project") == SAMPLE_TREE

    @pytest.mark.asyncio
    async def test_moving_root_is_refused(self, orchestrator):
        """Test that a backend root cannot be moved away."""
        with pytest.raises(PermissionDenied):
            await orchestrator.move("local", "/", "redis", "/everything")
