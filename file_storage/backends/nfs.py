"""NFS storage backend: mounts the export locally, then behaves like local storage"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable
from pathlib import Path
from typing import Any

from file_storage.backends.base import ProgressCallback
from file_storage.backends.local import LocalStorageBackend
from file_storage.exceptions import PermissionDenied, StorageError, Transient
from logger import format_details, get_logger

logger = get_logger(__name__)


class NFSStorageBackend(LocalStorageBackend):
    """
    Network filesystem mounted at ``mount_point``.

    ``connect()`` mounts ``server:export`` unless the mount is already present;
    ``close()`` unmounts only what this adapter mounted. A read-only export
    rejects every mutation with PermissionDenied before touching the mount.
    """

    kind = "nfs"

    def __init__(
        self,
        server: str,
        export_path: str,
        mount_point: str,
        read_only: bool = False,
        options: str = "",
        mount_timeout: int = 60,
        **kwargs,
    ):
        self.server = server
        self.export_path = export_path
        self.mount_point = Path(mount_point)
        self.read_only = read_only
        self.extra_options = options
        self.mount_timeout = mount_timeout
        self._mounted_by_us = False
        super().__init__(root_path=mount_point, **kwargs)

    @property
    def source(self) -> str:
        return f"{self.server}:{self.export_path}"

    def info(self) -> dict[str, Any]:
        return {
            **super().info(),
            "server": self.server,
            "export_path": self.export_path,
            "mount_point": str(self.mount_point),
            "read_only": self.read_only,
            "mounted_by_adapter": self._mounted_by_us,
        }

    # --- Mount lifecycle ---

    async def _run(self, *args: str) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise StorageError(f"Command not available: {args[0]}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.mount_timeout)
        except TimeoutError as e:
            process.kill()
            raise Transient(f"Command timed out after {self.mount_timeout}s: {args[0]}") from e

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip() or f"exit code {process.returncode}"
            raise StorageError(f"{args[0]} failed: {message}", self.source)
        return stdout.decode(errors="replace")

    async def is_mounted(self) -> bool:
        output = await self._run("mount")
        needle = f"{self.source} on {self.mount_point}"
        return any(line.startswith(needle) for line in output.splitlines())

    async def connect(self) -> None:
        if await self.is_mounted():
            logger.info(f"NFS export already mounted | {format_details(source=self.source, at=self.mount_point)}")
            return

        options = ["ro" if self.read_only else "rw", "sync", "hard", "intr"]
        if self.extra_options:
            options.append(self.extra_options)
        await asyncio.to_thread(self.mount_point.mkdir, parents=True, exist_ok=True)
        await self._run("mount", "-t", "nfs", "-o", ",".join(options), self.source, str(self.mount_point))
        self._mounted_by_us = True
        logger.info(f"NFS export mounted | {format_details(source=self.source, at=self.mount_point)}")

    async def close(self) -> None:
        if not self._mounted_by_us:
            return
        try:
            await self._run("umount", str(self.mount_point))
            logger.info(f"NFS export unmounted: {self.mount_point}")
        except StorageError as e:
            logger.warning(f"NFS unmount failed: {self.mount_point} | {e}")
        finally:
            self._mounted_by_us = False

    # --- Mutations respect read-only exports ---

    def _check_writable(self, path: str) -> None:
        if self.read_only:
            raise PermissionDenied("NFS export is mounted read-only", path)

    async def write(self, path: str, stream: AsyncIterable[bytes]) -> int:
        self._check_writable(path)
        return await super().write(path, stream)

    async def delete(self, path: str) -> None:
        self._check_writable(path)
        await super().delete(path)

    async def make_container(self, path: str) -> None:
        self._check_writable(path)
        await super().make_container(path)

    async def move(self, src: str, dst: str) -> None:
        self._check_writable(src)
        await super().move(src, dst)

    async def copy(self, src: str, dst: str, on_progress: ProgressCallback | None = None) -> None:
        self._check_writable(dst)
        await super().copy(src, dst, on_progress)
