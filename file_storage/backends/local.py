"""Local filesystem storage backend"""

from __future__ import annotations

import asyncio
import errno
import os
import shutil
import stat as stat_module
import uuid
from collections.abc import AsyncIterable, AsyncIterator
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from file_storage import paths
from file_storage.backends.base import ProgressCallback, StorageBackend
from file_storage.entry import EntryDescriptor, EntryKind, SpaceInfo, make_entry
from file_storage.exceptions import (
    Conflict,
    NotFound,
    PermissionDenied,
    QuotaExceeded,
    StorageError,
    Unsupported,
)
from file_storage.streams import DEFAULT_CHUNK_SIZE
from logger import get_logger

logger = get_logger(__name__)


def translate_os_error(exc: OSError, path: str) -> StorageError:
    """Wrap an OSError into the storage taxonomy."""
    match exc.errno:
        case errno.ENOENT | errno.ENOTDIR:
            return NotFound("Not found", path)
        case errno.EACCES | errno.EPERM | errno.EROFS:
            return PermissionDenied(exc.strerror or "Permission denied", path)
        case errno.EEXIST | errno.ENOTEMPTY:
            return Conflict(exc.strerror or "Already exists", path)
        case errno.EISDIR:
            return Unsupported("Is a directory", path)
        case errno.ENOSPC | errno.EDQUOT:
            return QuotaExceeded(exc.strerror or "No space left on device", path)
        case _:
            return StorageError(exc.strerror or str(exc), path)


class LocalStorageBackend(StorageBackend):
    """Local filesystem storage backend confined to a root directory"""

    kind = "local"

    def __init__(
        self,
        root_path: Path | str = "storage",
        max_size_gb: float | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        create_root: bool = True,
    ):
        self.base = Path(root_path).expanduser()
        if create_root:
            self.base.mkdir(parents=True, exist_ok=True)
        self.base = self.base.resolve()
        self.max_size_gb = max_size_gb
        super().__init__(str(self.base), chunk_size)

    def info(self) -> dict[str, Any]:
        return {**super().info(), "max_size_gb": self.max_size_gb}

    # --- Root containment ---

    def resolve(self, path: str, follow_last: bool = True) -> Path:
        """
        Map a backend path onto the local filesystem.

        The result is canonicalized (symlinks resolved) and must stay inside
        the root, otherwise PermissionDenied is raised.
        """
        rel = paths.relative(path)
        candidate = self.base / rel if rel else self.base
        if follow_last or not rel:
            resolved = candidate.resolve()
        else:
            resolved = candidate.parent.resolve() / candidate.name
        if resolved != self.base and not resolved.is_relative_to(self.base):
            logger.warning(f"Path escapes storage root: path={path} | root={self.base}")
            raise PermissionDenied("Path escapes storage root", path)
        return resolved

    def _to_backend_path(self, full: Path) -> str:
        return paths.normalize(full.relative_to(self.base).as_posix())

    def _describe(self, full: Path) -> EntryDescriptor:
        st = full.lstat()
        link_target = None
        kind = EntryKind.FILE
        if stat_module.S_ISLNK(st.st_mode):
            kind = EntryKind.SYMLINK
            link_target = os.readlink(full)
        elif stat_module.S_ISDIR(st.st_mode):
            kind = EntryKind.DIRECTORY
        return make_entry(
            self._to_backend_path(full),
            size=0 if kind == EntryKind.DIRECTORY else st.st_size,
            modified_at=st.st_mtime,
            kind=kind,
            permissions=stat_module.filemode(st.st_mode),
            link_target=link_target,
        )

    # --- Contract ---

    async def list(self, path: str) -> list[EntryDescriptor]:
        full = self.resolve(path)

        def _scan() -> list[EntryDescriptor]:
            if not full.is_dir():
                raise NotFound("Not a directory", path)
            entries = []
            with os.scandir(full) as it:
                for item in it:
                    try:
                        entries.append(self._describe(Path(item.path)))
                    except FileNotFoundError:
                        continue  # removed while listing
            return entries

        try:
            return await asyncio.to_thread(_scan)
        except OSError as e:
            raise translate_os_error(e, path) from e

    async def stat(self, path: str) -> EntryDescriptor:
        full = self.resolve(path, follow_last=False)
        try:
            return await asyncio.to_thread(self._describe, full)
        except OSError as e:
            raise translate_os_error(e, path) from e

    async def read(self, path: str) -> AsyncIterator[bytes]:
        full = self.resolve(path)
        try:
            f = await aiofiles.open(full, "rb")
        except OSError as e:
            raise translate_os_error(e, path) from e
        return self._iter_open_file(f)

    async def _iter_open_file(self, f) -> AsyncIterator[bytes]:
        try:
            while chunk := await f.read(self.chunk_size):
                yield chunk
        finally:
            await f.close()

    async def write(self, path: str, stream: AsyncIterable[bytes]) -> int:
        if paths.is_root(path):
            raise Conflict("Cannot write to storage root", path)
        full = self.resolve(path)
        if full.is_dir():
            raise Conflict("A directory exists at this path", path)

        limit = None
        if self.max_size_gb:
            limit = int(self.max_size_gb * 1024**3) - await asyncio.to_thread(self._get_total_size)

        temp = full.with_name(f".{full.name}.{uuid.uuid4().hex[:8]}.part")
        written = 0
        try:
            await aiofiles.os.makedirs(full.parent, exist_ok=True)
            async with aiofiles.open(temp, "wb") as f:
                async for chunk in stream:
                    written += len(chunk)
                    if limit is not None and written > limit:
                        raise QuotaExceeded(
                            f"Quota exceeded: {self.max_size_gb}GB limit would be exceeded",
                            path,
                        )
                    await f.write(chunk)
            await aiofiles.os.replace(temp, full)
        except OSError as e:
            raise translate_os_error(e, path) from e
        finally:
            if temp.exists():
                temp.unlink(missing_ok=True)
        return written

    async def delete(self, path: str) -> None:
        full = self.resolve(path, follow_last=False)
        if full == self.base:
            raise PermissionDenied("Refusing to delete storage root", path)
        try:
            if full.is_dir() and not full.is_symlink():
                await asyncio.to_thread(shutil.rmtree, full)
            else:
                await aiofiles.os.remove(full)
        except OSError as e:
            raise translate_os_error(e, path) from e
        logger.debug(f"Deleted: {path}")

    async def make_container(self, path: str) -> None:
        full = self.resolve(path)
        try:
            await aiofiles.os.makedirs(full, exist_ok=True)
        except FileExistsError as e:
            raise Conflict("A file exists at this path", path) from e
        except OSError as e:
            raise translate_os_error(e, path) from e

    async def move(self, src: str, dst: str) -> None:
        source = self.resolve(src, follow_last=False)
        target = self.resolve(dst, follow_last=False)
        if source == self.base:
            raise PermissionDenied("Refusing to move storage root", src)
        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            await asyncio.to_thread(shutil.move, source, target)
        except OSError as e:
            raise translate_os_error(e, src) from e

    async def copy(self, src: str, dst: str, on_progress: ProgressCallback | None = None) -> None:
        if on_progress is not None:
            # Streaming copy reports byte progress
            await super().copy(src, dst, on_progress)
            return
        source = self.resolve(src)
        target = self.resolve(dst)

        def _copy() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
            else:
                shutil.copy2(source, target)

        try:
            await asyncio.to_thread(_copy)
        except OSError as e:
            raise translate_os_error(e, src) from e

    async def available_and_total_space(self) -> SpaceInfo:
        usage = await asyncio.to_thread(shutil.disk_usage, self.base)
        if not self.max_size_gb:
            return SpaceInfo(available=usage.free, total=usage.total)
        quota = int(self.max_size_gb * 1024**3)
        used = await asyncio.to_thread(self._get_total_size)
        return SpaceInfo(available=max(min(quota - used, usage.free), 0), total=quota, details={"used": used})

    # --- Quota helpers ---

    def _get_total_size(self) -> int:
        """Calculate total storage size (used for quota checks)"""
        return sum(
            file_path.stat().st_size
            for file_path in self.base.rglob("*")
            if file_path.is_file() and not self._should_skip_file(file_path)
        )

    def _should_skip_file(self, file_path: Path) -> bool:
        """Check if file should be skipped during size calculation"""
        try:
            file_path.stat()
            return False
        except OSError:
            return True
