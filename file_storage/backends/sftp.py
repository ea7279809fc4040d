"""SFTP storage backend (paramiko)"""

from __future__ import annotations

import asyncio
import stat as stat_module
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any, TypeVar

import paramiko

from file_storage import paths
from file_storage.backends.base import StorageBackend
from file_storage.backends.local import translate_os_error
from file_storage.entry import EntryDescriptor, EntryKind, SpaceInfo, make_entry
from file_storage.exceptions import Conflict, PermissionDenied, StorageError, Transient
from file_storage.streams import DEFAULT_CHUNK_SIZE
from logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def translate_sftp_error(exc: Exception, path: str | None = None) -> StorageError:
    if isinstance(exc, paramiko.AuthenticationException):
        return PermissionDenied(f"SFTP authentication failed: {exc}", path)
    if isinstance(exc, paramiko.SSHException | EOFError | ConnectionError | TimeoutError):
        return Transient(f"SFTP connection error: {exc}", path)
    if isinstance(exc, OSError) and exc.errno is not None:
        return translate_os_error(exc, path or "")
    if isinstance(exc, OSError):
        # paramiko raises IOError without errno for generic SSH_FX_FAILURE
        return StorageError(str(exc) or "SFTP operation failed", path)
    return StorageError(str(exc), path)


class SFTPStorageBackend(StorageBackend):
    """
    SFTP server over one SSH session.

    Requests are serialized through ``_lock``; streaming reads and writes take
    the lock per chunk so concurrent operations interleave on the channel.
    """

    kind = "sftp"

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "",
        password: str | None = None,
        private_key_path: str | None = None,
        known_hosts_path: str | None = None,
        root_path: str = "/",
        timeout: int = 30,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        super().__init__(paths.normalize(root_path), chunk_size)
        self.host = host
        self.port = int(port)
        self.username = username
        self.password = password
        self.private_key_path = private_key_path
        self.known_hosts_path = known_hosts_path
        self.timeout = timeout
        self._ssh: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None
        self._lock = asyncio.Lock()

    def info(self) -> dict[str, Any]:
        return {**super().info(), "host": self.host, "port": self.port, "username": self.username}

    def _remote(self, path: str) -> str:
        return paths.join(self.root_path, path)

    # --- Connection ---

    def _connect_sync(self) -> paramiko.SFTPClient:
        ssh = paramiko.SSHClient()
        if self.known_hosts_path:
            ssh.load_host_keys(self.known_hosts_path)
            ssh.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            logger.warning(f"No known_hosts configured for {self.host}; accepting host key on first use")
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        ssh.connect(
            self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            key_filename=self.private_key_path,
            timeout=self.timeout,
            allow_agent=False,
            look_for_keys=False,
        )
        self._ssh = ssh
        self._sftp = ssh.open_sftp()
        return self._sftp

    def _ensure_sync(self) -> paramiko.SFTPClient:
        transport = self._ssh.get_transport() if self._ssh else None
        if self._sftp is not None and transport is not None and transport.is_active():
            return self._sftp
        return self._connect_sync()

    async def _run(self, fn: Callable[[paramiko.SFTPClient], T], path: str | None = None) -> T:
        async with self._lock:
            try:
                return await asyncio.to_thread(lambda: fn(self._ensure_sync()))
            except (paramiko.SSHException, OSError, EOFError) as e:
                raise translate_sftp_error(e, path) from e

    async def connect(self) -> None:
        await self._run(lambda sftp: sftp.stat(self.root_path), self.root_path)
        logger.info(f"SFTP connected: {self.username}@{self.host}:{self.port}")

    async def close(self) -> None:
        async with self._lock:
            sftp, ssh = self._sftp, self._ssh
            self._sftp = self._ssh = None
            if sftp is not None:
                await asyncio.to_thread(sftp.close)
            if ssh is not None:
                await asyncio.to_thread(ssh.close)

    # --- Descriptors ---

    def _entry(self, path: str, attrs: paramiko.SFTPAttributes, link_target: str | None = None) -> EntryDescriptor:
        mode = attrs.st_mode or 0
        kind = EntryKind.FILE
        if stat_module.S_ISDIR(mode):
            kind = EntryKind.DIRECTORY
        elif stat_module.S_ISLNK(mode):
            kind = EntryKind.SYMLINK
        return make_entry(
            path,
            size=0 if kind == EntryKind.DIRECTORY else (attrs.st_size or 0),
            modified_at=attrs.st_mtime or 0,
            kind=kind,
            permissions=stat_module.filemode(mode) if mode else "",
            link_target=link_target,
        )

    async def list(self, path: str) -> list[EntryDescriptor]:
        items = await self._run(lambda sftp: sftp.listdir_attr(self._remote(path)), path)
        return [self._entry(paths.join(path, attrs.filename), attrs) for attrs in items]

    async def stat(self, path: str) -> EntryDescriptor:
        remote = self._remote(path)

        def _stat(sftp: paramiko.SFTPClient) -> tuple[paramiko.SFTPAttributes, str | None]:
            attrs = sftp.lstat(remote)
            target = sftp.readlink(remote) if stat_module.S_ISLNK(attrs.st_mode or 0) else None
            return attrs, target

        attrs, target = await self._run(_stat, path)
        return self._entry(path, attrs, target)

    # --- Streaming ---

    async def read(self, path: str) -> AsyncIterator[bytes]:
        remote = self._remote(path)

        def _open(sftp: paramiko.SFTPClient) -> paramiko.SFTPFile:
            handle = sftp.open(remote, "rb")
            handle.prefetch()
            return handle

        handle = await self._run(_open, path)
        return self._iter_handle(handle, path)

    async def _iter_handle(self, handle: paramiko.SFTPFile, path: str) -> AsyncIterator[bytes]:
        try:
            while chunk := await self._run(lambda _: handle.read(self.chunk_size), path):
                yield chunk
        finally:
            await asyncio.to_thread(handle.close)

    async def write(self, path: str, stream: AsyncIterable[bytes]) -> int:
        if paths.is_root(path):
            raise Conflict("Cannot write to server root", path)
        await self.make_container(paths.parent(path))
        remote = self._remote(path)

        def _open(sftp: paramiko.SFTPClient) -> paramiko.SFTPFile:
            handle = sftp.open(remote, "wb")
            handle.set_pipelined(True)
            return handle

        handle = await self._run(_open, path)
        written = 0
        try:
            async for chunk in stream:
                await self._run(lambda _, data=chunk: handle.write(data), path)
                written += len(chunk)
        finally:
            await self._run(lambda _: handle.close(), path)
        return written

    # --- Mutations ---

    def _delete_tree_sync(self, sftp: paramiko.SFTPClient, remote: str) -> None:
        for attrs in sftp.listdir_attr(remote):
            child = paths.join(remote, attrs.filename)
            if stat_module.S_ISDIR(attrs.st_mode or 0):
                self._delete_tree_sync(sftp, child)
            else:
                sftp.remove(child)
        sftp.rmdir(remote)

    async def delete(self, path: str) -> None:
        if paths.is_root(path):
            raise PermissionDenied("Refusing to delete server root", path)
        entry = await self.stat(path)
        remote = self._remote(path)
        if entry.is_dir:
            await self._run(lambda sftp: self._delete_tree_sync(sftp, remote), path)
        else:
            await self._run(lambda sftp: sftp.remove(remote), path)

    async def make_container(self, path: str) -> None:
        def _mkdirs(sftp: paramiko.SFTPClient) -> None:
            current = self.root_path
            for segment in paths.segments(path):
                current = paths.join(current, segment)
                try:
                    attrs = sftp.stat(current)
                except FileNotFoundError:
                    sftp.mkdir(current)
                    continue
                if not stat_module.S_ISDIR(attrs.st_mode or 0):
                    raise Conflict("A file exists at this path", current)

        await self._run(_mkdirs, path)

    async def move(self, src: str, dst: str) -> None:
        await self.make_container(paths.parent(dst))
        await self._run(lambda sftp: sftp.posix_rename(self._remote(src), self._remote(dst)), src)

    async def available_and_total_space(self) -> SpaceInfo:
        return SpaceInfo()
