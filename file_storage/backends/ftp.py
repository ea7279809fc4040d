"""FTP / FTPS storage backend (ftplib)"""

from __future__ import annotations

import asyncio
import ftplib
import os
import tempfile
from collections.abc import AsyncIterable, AsyncIterator, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from file_storage import paths
from file_storage.backends.base import ProgressCallback, StorageBackend
from file_storage.entry import EntryDescriptor, EntryKind, SpaceInfo, make_entry
from file_storage.exceptions import Conflict, NotFound, PermissionDenied, StorageError, Transient
from file_storage.streams import DEFAULT_CHUNK_SIZE, iter_file, write_to_file
from logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_MONTHS = {
    m: i for i, m in enumerate(("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"), 1)
}


def translate_ftp_error(exc: Exception, path: str | None = None) -> StorageError:
    """Wrap ftplib/socket errors into the storage taxonomy."""
    message = str(exc)
    if isinstance(exc, ftplib.error_perm):
        code = message[:3]
        if code == "530":
            return PermissionDenied(message, path)
        if code == "550":
            if "denied" in message.lower() or "permission" in message.lower():
                return PermissionDenied(message, path)
            return NotFound(message, path)
        if code in ("553", "532"):
            return PermissionDenied(message, path)
        if code == "552":
            return StorageError(message, path)
        return StorageError(message, path)
    if isinstance(exc, ftplib.error_temp | OSError | EOFError):
        return Transient(message or exc.__class__.__name__, path)
    return StorageError(message, path)


def parse_mlsd_time(value: str | None) -> float:
    if not value:
        return 0.0
    try:
        return datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=UTC).timestamp()
    except ValueError:
        return 0.0


def parse_list_line(line: str) -> tuple[str, dict[str, str]] | None:
    """Parse one Unix-style ``LIST`` line into MLSD-like facts."""
    parts = line.split(None, 8)
    if len(parts) < 9 or parts[0][0] not in "-dl":
        return None
    mode, size, month, day, year_or_time, name = parts[0], parts[4], parts[5], parts[6], parts[7], parts[8]
    facts = {"unix.mode": mode, "size": size, "type": {"d": "dir", "l": "OS.unix=symlink"}.get(mode[0], "file")}
    if mode[0] == "l" and " -> " in name:
        name, facts["target"] = name.split(" -> ", 1)
    try:
        month_no = _MONTHS[month.lower()[:3]]
        if ":" in year_or_time:
            hour, minute = year_or_time.split(":")
            year = datetime.now(UTC).year
            stamp = datetime(year, month_no, int(day), int(hour), int(minute), tzinfo=UTC)
        else:
            stamp = datetime(int(year_or_time), month_no, int(day), tzinfo=UTC)
        facts["modify"] = stamp.strftime("%Y%m%d%H%M%S")
    except (KeyError, ValueError):
        pass
    return name, facts


class FTPStorageBackend(StorageBackend):
    """
    FTP server behind a single control connection.

    ftplib is blocking and not thread-safe, so every operation runs in a worker
    thread while holding ``_lock``. A streaming read or write holds the lock
    until its data connection is closed.
    """

    kind = "ftp"

    def __init__(
        self,
        host: str,
        port: int = 21,
        username: str = "anonymous",
        password: str = "",
        root_path: str = "/",
        passive: bool = True,
        use_tls: bool = False,
        timeout: int = 30,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        super().__init__(paths.normalize(root_path), chunk_size)
        self.host = host
        self.port = int(port)
        self.username = username
        self.password = password
        self.passive = passive
        self.use_tls = use_tls
        self.timeout = timeout
        self._ftp: ftplib.FTP | None = None
        self._lock = asyncio.Lock()
        self._mlsd_supported = True

    def info(self) -> dict[str, Any]:
        return {**super().info(), "host": self.host, "port": self.port, "username": self.username, "tls": self.use_tls}

    def _remote(self, path: str) -> str:
        return paths.join(self.root_path, path)

    # --- Connection ---

    def _connect_sync(self) -> ftplib.FTP:
        ftp = ftplib.FTP_TLS() if self.use_tls else ftplib.FTP()
        ftp.connect(self.host, self.port, timeout=self.timeout)
        ftp.login(self.username, self.password)
        if isinstance(ftp, ftplib.FTP_TLS):
            ftp.prot_p()
        ftp.set_pasv(self.passive)
        return ftp

    def _ensure_sync(self) -> ftplib.FTP:
        if self._ftp is not None:
            try:
                self._ftp.voidcmd("NOOP")
                return self._ftp
            except (ftplib.Error, OSError, EOFError):
                logger.debug(f"FTP connection lost, reconnecting: {self.host}")
                self._ftp = None
        self._ftp = self._connect_sync()
        return self._ftp

    async def _run(self, fn: Callable[[ftplib.FTP], T], path: str | None = None) -> T:
        async with self._lock:
            try:
                return await asyncio.to_thread(lambda: fn(self._ensure_sync()))
            except (ftplib.Error, OSError, EOFError) as e:
                raise translate_ftp_error(e, path) from e

    async def connect(self) -> None:
        welcome = await self._run(lambda ftp: ftp.getwelcome())
        logger.info(f"FTP connected: {self.host}:{self.port} | {welcome[:60]}")

    async def close(self) -> None:
        async with self._lock:
            ftp, self._ftp = self._ftp, None
            if ftp is None:
                return
            try:
                await asyncio.to_thread(ftp.quit)
            except (ftplib.Error, OSError, EOFError):
                ftp.close()

    # --- Listing ---

    def _list_sync(self, ftp: ftplib.FTP, remote: str) -> list[tuple[str, dict[str, str]]]:
        if self._mlsd_supported:
            try:
                return [
                    (name, facts)
                    for name, facts in ftp.mlsd(remote, facts=["type", "size", "modify", "unix.mode"])
                    if facts.get("type") not in ("cdir", "pdir") and name not in (".", "..")
                ]
            except ftplib.error_perm as e:
                if not str(e).startswith(("500", "502")):
                    raise
                self._mlsd_supported = False
        lines: list[str] = []
        ftp.retrlines(f"LIST {remote}", lines.append)
        return [parsed for line in lines if (parsed := parse_list_line(line)) and parsed[0] not in (".", "..")]

    def _entry(self, path: str, facts: dict[str, str]) -> EntryDescriptor:
        kind = EntryKind.FILE
        fact_type = facts.get("type", "file").lower()
        if fact_type == "dir":
            kind = EntryKind.DIRECTORY
        elif "symlink" in fact_type:
            kind = EntryKind.SYMLINK
        return make_entry(
            path,
            size=0 if kind == EntryKind.DIRECTORY else int(facts.get("size") or 0),
            modified_at=parse_mlsd_time(facts.get("modify")),
            kind=kind,
            permissions=facts.get("unix.mode", ""),
            link_target=facts.get("target"),
        )

    async def list(self, path: str) -> list[EntryDescriptor]:
        remote = self._remote(path)

        def _list(ftp: ftplib.FTP) -> list[tuple[str, dict[str, str]]]:
            ftp.cwd(remote)  # NotFound for missing or non-directory paths
            return self._list_sync(ftp, remote)

        items = await self._run(_list, path)
        return [self._entry(paths.join(path, name), facts) for name, facts in items]

    async def stat(self, path: str) -> EntryDescriptor:
        if paths.is_root(path):
            return make_entry("/", kind=EntryKind.DIRECTORY)
        name = paths.basename(path)
        items = await self._run(lambda ftp: self._list_sync(ftp, self._remote(paths.parent(path))), path)
        for item_name, facts in items:
            if item_name == name:
                return self._entry(path, facts)
        raise NotFound("Not found", path)

    # --- Streaming ---

    async def read(self, path: str) -> AsyncIterator[bytes]:
        await self._lock.acquire()
        try:
            conn = await asyncio.to_thread(self._open_data_sync, f"RETR {self._remote(path)}")
        except (ftplib.Error, OSError, EOFError) as e:
            self._lock.release()
            raise translate_ftp_error(e, path) from e
        except BaseException:
            self._lock.release()
            raise
        return self._iter_retr(conn, path)

    def _open_data_sync(self, command: str):
        ftp = self._ensure_sync()
        ftp.voidcmd("TYPE I")
        return ftp.transfercmd(command)

    async def _iter_retr(self, conn, path: str) -> AsyncIterator[bytes]:
        try:
            while chunk := await asyncio.to_thread(conn.recv, self.chunk_size):
                yield chunk
            conn.close()
            await asyncio.to_thread(self._ftp.voidresp)
        except (ftplib.Error, OSError, EOFError) as e:
            raise translate_ftp_error(e, path) from e
        finally:
            conn.close()
            self._lock.release()

    async def write(self, path: str, stream: AsyncIterable[bytes]) -> int:
        if paths.is_root(path):
            raise Conflict("Cannot write to server root", path)
        await self.make_container(paths.parent(path))
        written = 0
        async with self._lock:
            try:
                conn = await asyncio.to_thread(self._open_data_sync, f"STOR {self._remote(path)}")
                try:
                    async for chunk in stream:
                        await asyncio.to_thread(conn.sendall, chunk)
                        written += len(chunk)
                finally:
                    conn.close()
                await asyncio.to_thread(self._ftp.voidresp)
            except (ftplib.Error, OSError, EOFError) as e:
                raise translate_ftp_error(e, path) from e
        return written

    # --- Mutations ---

    def _delete_tree_sync(self, ftp: ftplib.FTP, remote: str) -> None:
        for name, facts in self._list_sync(ftp, remote):
            child = paths.join(remote, name)
            if facts.get("type", "").lower() == "dir":
                self._delete_tree_sync(ftp, child)
            else:
                ftp.delete(child)
        ftp.rmd(remote)

    async def delete(self, path: str) -> None:
        if paths.is_root(path):
            raise PermissionDenied("Refusing to delete server root", path)
        entry = await self.stat(path)
        remote = self._remote(path)
        if entry.is_dir:
            await self._run(lambda ftp: self._delete_tree_sync(ftp, remote), path)
        else:
            await self._run(lambda ftp: ftp.delete(remote), path)

    async def make_container(self, path: str) -> None:
        def _mkdirs(ftp: ftplib.FTP) -> None:
            current = self.root_path
            for segment in paths.segments(path):
                current = paths.join(current, segment)
                try:
                    ftp.mkd(current)
                except ftplib.error_perm:
                    # Already exists; cwd fails if it is a file
                    try:
                        ftp.cwd(current)
                    except ftplib.error_perm as e:
                        raise Conflict("A file exists at this path", path) from e

        await self._run(_mkdirs, path)

    async def move(self, src: str, dst: str) -> None:
        await self.make_container(paths.parent(dst))
        await self._run(lambda ftp: ftp.rename(self._remote(src), self._remote(dst)), src)

    async def copy(self, src: str, dst: str, on_progress: ProgressCallback | None = None) -> None:
        """FTP has no server-side copy; files go through a local temp file."""
        entry = await self.stat(src)
        total = await self.total_size(src) if on_progress else 0
        done = 0

        async def _copy(entry: EntryDescriptor, dst: str) -> None:
            nonlocal done
            if entry.is_dir:
                await self.make_container(dst)
                for child in await self.list(entry.path):
                    await _copy(child, paths.join(dst, child.name))
                return
            # One control connection: download fully before uploading
            fd, temp_path = tempfile.mkstemp(prefix="ftp_copy_")
            os.close(fd)
            try:
                await write_to_file(await self.read(entry.path), temp_path)
                done += await self.write(dst, iter_file(temp_path, self.chunk_size))
            finally:
                os.unlink(temp_path)
            if on_progress:
                on_progress(done, total)

        await _copy(entry, paths.normalize(dst))

    async def available_and_total_space(self) -> SpaceInfo:
        return SpaceInfo()
