"""
Archive engine: builds and unpacks zip/tar archives over storage backends.

Archives are staged in a local temporary file (zip and tar need seeks that
adapters are not required to support); member payloads stream through
fixed-size buffers so no whole file is held in memory.
"""

import asyncio
import contextlib
import os
import posixpath
import tarfile
import tempfile
import time
import zipfile
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import IO, Any

from archive_module.formats import ArchiveFormat, detect_format, has_extension, strip_extension
from file_storage import paths
from file_storage.backends.base import ProgressCallback, StorageBackend
from file_storage.entry import EntryDescriptor
from file_storage.exceptions import StorageError
from file_storage.registry import StorageRegistry
from file_storage.streams import DEFAULT_CHUNK_SIZE, iter_file, iter_sync_file, spool, write_to_file
from logger import format_details, format_size, get_logger
from progress_module.cancellation import CancellationToken
from transfer_module.orchestrator import close_stream

logger = get_logger(__name__)

DEFAULT_BUFFER_SIZE = 32 * 1024
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


@dataclass
class ArchiveResult:
    """Outcome of one compress or decompress."""

    storage_id: str
    archive_path: str
    output_path: str
    format: ArchiveFormat
    files: int = 0
    directories: int = 0
    bytes: int = 0
    archive_size: int = 0
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "storage_id": self.storage_id,
            "archive_path": self.archive_path,
            "output_path": self.output_path,
            "format": str(self.format),
            "files": self.files,
            "directories": self.directories,
            "bytes": self.bytes,
            "archive_size": self.archive_size,
            "skipped": list(self.skipped),
        }


@dataclass
class _Member:
    entry: EntryDescriptor
    name: str


def safe_member_path(base: str, name: str) -> str | None:
    """
    Destination path of archive member ``name`` under ``base``.

    Returns None for names that are absolute or climb above ``base``.
    """
    name = name.replace("\\", "/")
    if name.startswith("/") or (len(name) > 1 and name[1] == ":"):
        return None
    depth = 0
    parts: list[str] = []
    for segment in name.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            depth -= 1
            if depth < 0:
                return None
            parts.pop()
            continue
        depth += 1
        parts.append(segment)
    if not parts:
        return None
    return paths.join(base, *parts)


def _zip_date_time(modified_at: float) -> tuple[int, int, int, int, int, int]:
    if modified_at <= 0:
        return _ZIP_EPOCH
    stamp = time.localtime(modified_at)
    if stamp.tm_year < 1980:
        return _ZIP_EPOCH
    return stamp[:6]


class _Progress:
    def __init__(self, total: int, on_progress: ProgressCallback | None, token: CancellationToken | None):
        self.total = total
        self.done = 0
        self.on_progress = on_progress
        self.token = token

    def checkpoint(self) -> None:
        if self.token is not None:
            self.token.raise_if_cancelled()

    def advance(self, n: int) -> None:
        self.done += n
        if self.on_progress:
            self.on_progress(self.done, self.total)

    async def relay(self, stream: AsyncIterable[bytes], buffer_size: int) -> AsyncIterator[bytes]:
        """Pass a stream through in slices of at most ``buffer_size``, counting bytes."""
        async for chunk in stream:
            for offset in range(0, len(chunk), buffer_size):
                self.checkpoint()
                piece = chunk[offset : offset + buffer_size]
                self.advance(len(piece))
                yield piece


class ArchiveEngine:
    """Compress backend entries into an archive and unpack archives onto backends."""

    def __init__(
        self,
        registry: StorageRegistry,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        upload_chunk_size: int = DEFAULT_CHUNK_SIZE,
        staging_dir: str | None = None,
    ):
        self.registry = registry
        self.buffer_size = buffer_size
        self.upload_chunk_size = upload_chunk_size
        self.staging_dir = staging_dir or None

    def _staging_file(self, suffix: str) -> str:
        fd, path = tempfile.mkstemp(prefix="archive_", suffix=suffix, dir=self.staging_dir)
        os.close(fd)
        return path

    # --- Compress ---

    async def compress(
        self,
        storage_id: str,
        sources: list[str],
        output_path: str,
        archive_format: ArchiveFormat | str | None = None,
        output_storage_id: str | None = None,
        on_progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ) -> ArchiveResult:
        """
        Build an archive from ``sources`` on ``storage_id``.

        The archive is written to ``output_path`` on ``output_storage_id``
        (same backend by default). The format comes from ``archive_format`` or,
        when omitted, from the output extension; a missing extension is appended.

        Raises:
            Unsupported: If the format cannot be determined
            NotFound: If a source doesn't exist
        """
        if not sources:
            raise StorageError("No sources to compress")
        source = self.registry.get(storage_id)
        output_id = output_storage_id or storage_id
        target = self.registry.get(output_id)

        output_path = paths.normalize(output_path)
        if archive_format is None:
            fmt = detect_format(output_path)
        else:
            fmt = ArchiveFormat.parse(archive_format)
            if not has_extension(output_path, fmt):
                output_path += fmt.extension

        members = await self._collect(source, sources, skip=output_path if output_id == storage_id else None)
        total = sum(m.entry.size for m in members if not m.entry.is_dir)
        progress = _Progress(total, on_progress, token)
        result = ArchiveResult(storage_id, output_path, output_path, fmt)
        if on_progress:
            on_progress(0, total)

        staging = self._staging_file(fmt.extension)
        try:
            if fmt is ArchiveFormat.ZIP:
                await self._write_zip(source, members, staging, progress, result)
            else:
                await self._write_tar(source, members, staging, fmt, progress, result)
            progress.checkpoint()
            result.archive_size = await target.write(output_path, iter_file(staging, self.upload_chunk_size))
        finally:
            await asyncio.to_thread(_remove_quietly, staging)

        result.bytes = progress.done
        logger.info(
            f"Archive created: {output_id}:{output_path} | "
            f"{format_details(format=fmt, files=result.files, dirs=result.directories)} • "
            f"size={format_size(result.archive_size)}"
        )
        return result

    async def _collect(self, backend: StorageBackend, sources: list[str], skip: str | None) -> list[_Member]:
        """Every entry below ``sources``, directories before their contents, named relative to each source's parent."""
        members: list[_Member] = []
        seen: set[str] = set()

        async def visit(entry: EntryDescriptor, name: str) -> None:
            if skip is not None and entry.path == skip:
                return
            if name:
                if name in seen:
                    logger.warning(f"Duplicate archive member skipped: {name}")
                    return
                seen.add(name)
                members.append(_Member(entry, name))
            if entry.is_dir:
                for child in sorted(await backend.list(entry.path), key=lambda e: (not e.is_dir, e.name)):
                    await visit(child, posixpath.join(name, child.name) if name else child.name)

        for source_path in sources:
            entry = await backend.stat(source_path)
            await visit(entry, entry.name if not paths.is_root(entry.path) else "")
        return members

    async def _write_zip(
        self,
        backend: StorageBackend,
        members: list[_Member],
        staging: str,
        progress: _Progress,
        result: ArchiveResult,
    ) -> None:
        archive = zipfile.ZipFile(staging, "w", compression=zipfile.ZIP_DEFLATED, allowZip64=True)
        try:
            for member in members:
                progress.checkpoint()
                name = member.name + "/" if member.entry.is_dir else member.name
                info = zipfile.ZipInfo(name, date_time=_zip_date_time(member.entry.modified_at))
                if member.entry.is_dir:
                    info.external_attr = (0o40755 << 16) | 0x10
                    await asyncio.to_thread(archive.writestr, info, b"")
                    result.directories += 1
                    continue
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = 0o644 << 16
                handle = await asyncio.to_thread(archive.open, info, "w", force_zip64=True)
                try:
                    await self._pump(backend, member.entry, handle, progress)
                finally:
                    await asyncio.to_thread(handle.close)
                result.files += 1
        finally:
            await asyncio.to_thread(archive.close)

    async def _pump(self, backend: StorageBackend, entry: EntryDescriptor, handle: IO[bytes], progress: _Progress):
        stream = await backend.read(entry.path)
        try:
            async for piece in progress.relay(stream, self.buffer_size):
                await asyncio.to_thread(handle.write, piece)
        finally:
            await close_stream(stream)

    async def _write_tar(
        self,
        backend: StorageBackend,
        members: list[_Member],
        staging: str,
        fmt: ArchiveFormat,
        progress: _Progress,
        result: ArchiveResult,
    ) -> None:
        archive = tarfile.open(staging, f"w:{fmt.tar_mode}")
        try:
            for member in members:
                progress.checkpoint()
                info = tarfile.TarInfo(member.name)
                info.mtime = int(member.entry.modified_at) if member.entry.modified_at > 0 else int(time.time())
                if member.entry.is_dir:
                    info.type = tarfile.DIRTYPE
                    info.mode = 0o755
                    await asyncio.to_thread(archive.addfile, info)
                    result.directories += 1
                    continue
                # Tar headers carry the size up front: spool the member first
                stream = await backend.read(member.entry.path)
                try:
                    spooled, size = await spool(progress.relay(stream, self.buffer_size))
                finally:
                    await close_stream(stream)
                try:
                    info.size = size
                    info.mode = 0o644
                    await asyncio.to_thread(archive.addfile, info, spooled)
                finally:
                    spooled.close()
                result.files += 1
        finally:
            await asyncio.to_thread(archive.close)

    # --- Decompress ---

    async def decompress(
        self,
        storage_id: str,
        archive_path: str,
        output_path: str,
        create_subfolder: bool = False,
        output_storage_id: str | None = None,
        on_progress: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ) -> ArchiveResult:
        """
        Unpack ``archive_path`` into ``output_path``.

        With ``create_subfolder`` the contents land in a directory named after
        the archive. Members escaping the destination and non-regular tar
        members are skipped with a warning.

        Raises:
            Unsupported: If the archive extension is not a supported format
        """
        source = self.registry.get(storage_id)
        output_id = output_storage_id or storage_id
        target = self.registry.get(output_id)
        archive_path = paths.normalize(archive_path)
        fmt = detect_format(archive_path)

        destination = paths.normalize(output_path)
        if create_subfolder:
            destination = paths.join(destination, strip_extension(paths.basename(archive_path)))
        result = ArchiveResult(storage_id, archive_path, destination, fmt)

        staging = self._staging_file(fmt.extension)
        try:
            stream = await source.read(archive_path)
            try:
                await write_to_file(stream, staging)
            finally:
                await close_stream(stream)
            await target.make_container(destination)
            if fmt is ArchiveFormat.ZIP:
                await self._extract_zip(target, staging, destination, on_progress, token, result)
            else:
                await self._extract_tar(target, staging, destination, on_progress, token, result)
        finally:
            await asyncio.to_thread(_remove_quietly, staging)

        logger.info(
            f"Archive extracted: {storage_id}:{archive_path} → {output_id}:{destination} | "
            f"{format_details(files=result.files, dirs=result.directories, skipped=len(result.skipped))}"
        )
        return result

    def _skip(self, result: ArchiveResult, name: str, reason: str) -> None:
        result.skipped.append(name)
        logger.warning(f"Archive member skipped: {name} | reason={reason}")

    async def _extract_zip(
        self,
        target: StorageBackend,
        staging: str,
        destination: str,
        on_progress: ProgressCallback | None,
        token: CancellationToken | None,
        result: ArchiveResult,
    ) -> None:
        try:
            archive = await asyncio.to_thread(zipfile.ZipFile, staging)
        except zipfile.BadZipFile as e:
            raise StorageError(f"Corrupt zip archive: {e}", result.archive_path) from e
        try:
            infos = archive.infolist()
            progress = _Progress(sum(i.file_size for i in infos if not i.is_dir()), on_progress, token)
            if on_progress:
                on_progress(0, progress.total)
            for info in infos:
                progress.checkpoint()
                member_path = safe_member_path(destination, info.filename)
                if member_path is None:
                    self._skip(result, info.filename, "path escapes destination")
                    continue
                if info.is_dir():
                    await target.make_container(member_path)
                    result.directories += 1
                    continue
                handle = await asyncio.to_thread(archive.open, info)
                try:
                    stream = iter_sync_file(handle, self.buffer_size)
                    await target.write(member_path, progress.relay(stream, self.buffer_size))
                finally:
                    handle.close()
                result.files += 1
            result.bytes = progress.done
        finally:
            archive.close()

    async def _extract_tar(
        self,
        target: StorageBackend,
        staging: str,
        destination: str,
        on_progress: ProgressCallback | None,
        token: CancellationToken | None,
        result: ArchiveResult,
    ) -> None:
        try:
            archive = await asyncio.to_thread(tarfile.open, staging, "r:*")
        except tarfile.TarError as e:
            raise StorageError(f"Corrupt tar archive: {e}", result.archive_path) from e
        try:
            members = await asyncio.to_thread(archive.getmembers)
            progress = _Progress(sum(m.size for m in members if m.isfile()), on_progress, token)
            if on_progress:
                on_progress(0, progress.total)
            for member in members:
                progress.checkpoint()
                member_path = safe_member_path(destination, member.name)
                if member_path is None:
                    self._skip(result, member.name, "path escapes destination")
                    continue
                if member.isdir():
                    await target.make_container(member_path)
                    result.directories += 1
                    continue
                if not member.isfile():
                    self._skip(result, member.name, "not a regular file")
                    continue
                handle = await asyncio.to_thread(archive.extractfile, member)
                try:
                    stream = iter_sync_file(handle, self.buffer_size)
                    await target.write(member_path, progress.relay(stream, self.buffer_size))
                finally:
                    handle.close()
                result.files += 1
            result.bytes = progress.done
        finally:
            archive.close()


def _remove_quietly(path: str) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.unlink(path)
