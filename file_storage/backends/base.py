"""Capability contract implemented by every storage backend adapter"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any

from file_storage import paths
from file_storage.entry import EntryDescriptor, SpaceInfo
from file_storage.exceptions import NotFound
from file_storage.streams import DEFAULT_CHUNK_SIZE, counted

ProgressCallback = Callable[[int, int], None]


class StorageBackend(ABC):
    """
    Abstract storage backend: one uniform set of file operations.

    All paths are relative to the adapter's configured root and are normalized
    with ``file_storage.paths.normalize`` before use. Adapters wrap their
    backend-native errors into ``file_storage.exceptions``.
    """

    kind: str = ""

    def __init__(self, root_path: str = "/", chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._root_path = root_path
        self.chunk_size = chunk_size

    @property
    def root_path(self) -> str:
        return self._root_path

    # --- Lifecycle ---

    async def connect(self) -> None:
        """Open sessions / verify reachability. Called once by the factory."""

    async def close(self) -> None:
        """Release connections and sessions owned by the adapter."""

    def info(self) -> dict[str, Any]:
        """Diagnostic description of the adapter (no secrets)."""
        return {"kind": self.kind, "root_path": self.root_path}

    # --- Contract ---

    @abstractmethod
    async def list(self, path: str) -> list[EntryDescriptor]:
        """
        List direct children of a directory.

        Raises:
            NotFound: If the directory doesn't exist
        """

    @abstractmethod
    async def stat(self, path: str) -> EntryDescriptor:
        """
        Describe a single entry.

        Raises:
            NotFound: If the entry doesn't exist
        """

    @abstractmethod
    async def read(self, path: str) -> AsyncIterator[bytes]:
        """
        Open a file for streaming.

        Failures surface when awaited, before the first chunk is produced.

        Raises:
            NotFound: If the file doesn't exist
            Transient: On retryable backend failure
        """

    @abstractmethod
    async def write(self, path: str, stream: AsyncIterable[bytes]) -> int:
        """
        Write a file from a byte stream, creating parent containers as needed.

        Existing files are overwritten.

        Returns:
            Number of bytes written
        """

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a file, or a directory recursively."""

    @abstractmethod
    async def make_container(self, path: str) -> None:
        """Create a directory (and missing parents). Existing directory is not an error."""

    @abstractmethod
    async def available_and_total_space(self) -> SpaceInfo:
        """Free/total bytes, ``UNKNOWN_SPACE`` for values the backend cannot report."""

    async def move(self, src: str, dst: str) -> None:
        """Move within this backend. Default: streaming copy then delete."""
        await self.copy(src, dst)
        await self.delete(src)

    async def copy(self, src: str, dst: str, on_progress: ProgressCallback | None = None) -> None:
        """Copy within this backend. Default: stream through read/write, recursing into directories."""
        entry = await self.stat(src)
        total = await self.total_size(src) if on_progress else 0
        done = 0

        def advance(n: int) -> None:
            nonlocal done
            done += n
            if on_progress:
                on_progress(done, total)

        await self._copy_entry(entry, paths.normalize(dst), advance)

    async def _copy_entry(self, entry: EntryDescriptor, dst: str, advance: Callable[[int], None]) -> None:
        if entry.is_dir:
            await self.make_container(dst)
            for child in sorted(await self.list(entry.path), key=lambda e: not e.is_dir):
                await self._copy_entry(child, paths.join(dst, child.name), advance)
            return
        await self.write(dst, counted(await self.read(entry.path), advance))

    # --- Helpers built on the contract ---

    async def exists(self, path: str) -> bool:
        try:
            await self.stat(path)
        except NotFound:
            return False
        return True

    async def walk(self, path: str, max_depth: int | None = None) -> AsyncIterator[EntryDescriptor]:
        """Yield every entry below ``path`` depth-first (directories before their children)."""
        await self.stat(path)
        pending: list[tuple[str, int]] = [(paths.normalize(path), 0)]
        while pending:
            current, depth = pending.pop()
            for entry in await self.list(current):
                yield entry
                if entry.is_dir and (max_depth is None or depth + 1 < max_depth):
                    pending.append((entry.path, depth + 1))

    async def total_size(self, path: str) -> int:
        entry = await self.stat(path)
        if not entry.is_dir:
            return entry.size
        total = 0
        async for child in self.walk(path):
            if not child.is_dir:
                total += child.size
        return total

    async def search(self, path: str, query: str, max_depth: int | None = 10) -> list[EntryDescriptor]:
        """Case-insensitive substring match on entry names below ``path``."""
        needle = query.lower()
        return [entry async for entry in self.walk(path, max_depth) if needle in entry.name.lower()]
