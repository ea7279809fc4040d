"""Copy and move across storage backends"""

from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from file_storage import paths
from file_storage.backends.base import ProgressCallback, StorageBackend
from file_storage.entry import EntryDescriptor, EntryKind
from file_storage.exceptions import Conflict, NotFound, PermissionDenied, StorageError, Unsupported
from file_storage.registry import StorageRegistry
from logger import format_details, format_size, get_logger
from progress_module.cancellation import CancellationToken

logger = get_logger(__name__)


@dataclass
class TransferResult:
    """Outcome of one copy or move."""

    src_id: str
    src_path: str
    dst_id: str
    dst_path: str
    move: bool = False
    native: bool = False
    files: int = 0
    directories: int = 0
    bytes: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "src_id": self.src_id,
            "src_path": self.src_path,
            "dst_id": self.dst_id,
            "dst_path": self.dst_path,
            "move": self.move,
            "native": self.native,
            "files": self.files,
            "directories": self.directories,
            "bytes": self.bytes,
            "warnings": list(self.warnings),
        }


class _Transfer:
    """State of one cross-backend transfer: byte counter, progress and cancellation."""

    def __init__(
        self,
        result: TransferResult,
        total: int,
        on_progress: ProgressCallback | None,
        token: CancellationToken | None,
    ):
        self.result = result
        self.total = total
        self.on_progress = on_progress
        self.token = token

    def checkpoint(self) -> None:
        if self.token is not None:
            self.token.raise_if_cancelled()

    def advance(self, n: int) -> None:
        self.result.bytes += n
        if self.on_progress:
            self.on_progress(self.result.bytes, self.total)

    async def relay(self, stream: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        async for chunk in stream:
            self.checkpoint()
            self.advance(len(chunk))
            yield chunk


async def close_stream(stream: Any) -> None:
    """Close an adapter read stream that may not have been fully consumed."""
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


class TransferOrchestrator:
    """
    Copy/move by ``(backend id, path)`` pairs.

    Same-backend operations delegate to the adapter's native implementation.
    Cross-backend operations stream each file from a source read straight
    into a destination write, recursing into directories.
    """

    def __init__(self, registry: StorageRegistry):
        self.registry = registry

    async def copy(
        self,
        src_id: str,
        src_path: str,
        dst_id: str,
        dst_path: str,
        on_progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ) -> TransferResult:
        src, dst = self.registry.get(src_id), self.registry.get(dst_id)
        src_path, dst_path = paths.normalize(src_path), paths.normalize(dst_path)
        result = TransferResult(src_id, src_path, dst_id, dst_path)

        if src_id == dst_id:
            self._check_same_backend(src_path, dst_path)
            if token is not None:
                token.raise_if_cancelled()
            await src.copy(src_path, dst_path, on_progress)
            result.native = True
            logger.info(f"Copied natively: {src_id}:{src_path} → {dst_path}")
            return result

        await self._copy_across(src, dst, result, on_progress, token)
        logger.info(
            f"Copied {src_id}:{src_path} → {dst_id}:{dst_path} | "
            f"{format_details(files=result.files, dirs=result.directories, size=format_size(result.bytes))}"
        )
        return result

    async def move(
        self,
        src_id: str,
        src_path: str,
        dst_id: str,
        dst_path: str,
        on_progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ) -> TransferResult:
        """
        Move a file or directory.

        Across backends this is copy then delete-source; a failed delete
        leaves the data duplicated and is reported in ``result.warnings``.
        """
        src, dst = self.registry.get(src_id), self.registry.get(dst_id)
        src_path, dst_path = paths.normalize(src_path), paths.normalize(dst_path)
        result = TransferResult(src_id, src_path, dst_id, dst_path, move=True)

        if src_id == dst_id:
            self._check_same_backend(src_path, dst_path)
            if token is not None:
                token.raise_if_cancelled()
            total = await src.total_size(src_path) if on_progress else 0
            await src.move(src_path, dst_path)
            if on_progress:
                on_progress(total, total)
            result.native = True
            logger.info(f"Moved natively: {src_id}:{src_path} → {dst_path}")
            return result

        if paths.is_root(src_path):
            raise PermissionDenied("Refusing to move storage root", src_path)

        await self._copy_across(src, dst, result, on_progress, token)
        try:
            await src.delete(src_path)
        except StorageError as e:
            warning = f"Copied to {dst_id}:{dst_path} but failed to delete source {src_id}:{src_path}: {e}"
            result.warnings.append(warning)
            logger.warning(warning)

        logger.info(
            f"Moved {src_id}:{src_path} → {dst_id}:{dst_path} | "
            f"{format_details(files=result.files, size=format_size(result.bytes), warnings=len(result.warnings))}"
        )
        return result

    @staticmethod
    def _check_same_backend(src_path: str, dst_path: str) -> None:
        if src_path == dst_path:
            raise Conflict("Source and destination are the same", dst_path)
        if paths.is_within(dst_path, src_path):
            raise Conflict("Cannot copy a directory into itself", dst_path)

    async def _copy_across(
        self,
        src: StorageBackend,
        dst: StorageBackend,
        result: TransferResult,
        on_progress: ProgressCallback | None,
        token: CancellationToken | None,
    ) -> None:
        entry = await src.stat(result.src_path)
        total = await src.total_size(result.src_path) if on_progress else 0
        transfer = _Transfer(result, total, on_progress, token)
        if on_progress:
            on_progress(0, total)
        await self._copy_entry(src, dst, entry, result.dst_path, transfer)

    async def _copy_entry(
        self,
        src: StorageBackend,
        dst: StorageBackend,
        entry: EntryDescriptor,
        dst_path: str,
        transfer: _Transfer,
    ) -> None:
        transfer.checkpoint()
        if entry.is_dir:
            await dst.make_container(dst_path)
            transfer.result.directories += 1
            # Directories first, otherwise in listing order
            for child in sorted(await src.list(entry.path), key=lambda e: not e.is_dir):
                await self._copy_entry(src, dst, child, paths.join(dst_path, child.name), transfer)
            return

        try:
            stream = await src.read(entry.path)
        except (NotFound, Unsupported, PermissionDenied) as e:
            if entry.kind != EntryKind.SYMLINK:
                raise
            warning = f"Skipped unreadable symlink {entry.path}: {e}"
            transfer.result.warnings.append(warning)
            logger.warning(warning)
            return

        try:
            await dst.write(dst_path, transfer.relay(stream))
        finally:
            await close_stream(stream)
        transfer.result.files += 1
