"""OneDrive storage backend (Microsoft Graph v1.0)"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any
from urllib.parse import quote

import httpx

from file_storage import paths
from file_storage.backends.base import ProgressCallback
from file_storage.backends.http import HTTPStorageBackend, parse_timestamp
from file_storage.entry import EntryDescriptor, EntryKind, SpaceInfo, make_entry
from file_storage.exceptions import Conflict, NotFound, PermissionDenied, StorageError, Transient, error_from_status
from file_storage.streams import iter_chunks, spool
from logger import get_logger

logger = get_logger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"
SIMPLE_UPLOAD_LIMIT = 4 * 1024 * 1024
_UPLOAD_CHUNK_ALIGN = 320 * 1024
_COPY_POLL_INTERVAL = 1.0
_COPY_TIMEOUT = 600.0


class OneDriveBackend(HTTPStorageBackend):
    """
    OneDrive backend using path-addressed Graph calls.

    ``base_folder`` scopes the adapter to a folder inside the drive. Uploads up
    to 4 MiB use a single PUT, larger ones an upload session.
    """

    kind = "onedrive"

    def __init__(self, base_folder: str = "/", drive_url: str = f"{GRAPH_URL}/me/drive", **kwargs):
        self.base_folder = paths.normalize(base_folder)
        self.drive_url = drive_url.rstrip("/")
        super().__init__(root_path=f"onedrive:{self.base_folder}", **kwargs)

    def info(self) -> dict[str, Any]:
        return {**super().info(), "base_folder": self.base_folder}

    async def connect(self) -> None:
        drive = await self._request_json("GET", self.drive_url)
        logger.info(f"OneDrive connected: drive_type={drive.get('driveType', 'unknown')}")

    # --- Addressing ---

    def _drive_path(self, path: str) -> str:
        return paths.join(self.base_folder, path)

    def _item_url(self, path: str, suffix: str = "") -> str:
        rel = paths.relative(self._drive_path(path))
        if not rel:
            return f"{self.drive_url}/root{'/' + suffix if suffix else ''}"
        encoded = quote(rel)
        return f"{self.drive_url}/root:/{encoded}:/{suffix}" if suffix else f"{self.drive_url}/root:/{encoded}"

    def _entry(self, path: str, item: dict[str, Any]) -> EntryDescriptor:
        modified = parse_timestamp(item.get("lastModifiedDateTime"))
        if "folder" in item:
            return make_entry(path, kind=EntryKind.DIRECTORY, modified_at=modified)
        return make_entry(
            path,
            size=int(item.get("size") or 0),
            modified_at=modified,
            content_type=(item.get("file") or {}).get("mimeType"),
        )

    # --- Contract ---

    async def list(self, path: str) -> list[EntryDescriptor]:
        entries: list[EntryDescriptor] = []
        url: str | None = self._item_url(path, "children")
        while url:
            data = await self._request_json("GET", url, path)
            for item in data.get("value", []):
                entries.append(self._entry(paths.join(path, item["name"]), item))
            url = data.get("@odata.nextLink")
        return entries

    async def stat(self, path: str) -> EntryDescriptor:
        item = await self._request_json("GET", self._item_url(path), path)
        return self._entry(paths.normalize(path), item)

    async def read(self, path: str) -> AsyncIterator[bytes]:
        return await self._stream("GET", self._item_url(path, "content"), path)

    async def write(self, path: str, stream: AsyncIterable[bytes]) -> int:
        if paths.is_root(path):
            raise Conflict("Cannot write to drive root", path)
        spooled, size = await spool(stream)
        try:
            if size <= SIMPLE_UPLOAD_LIMIT:
                await self._request(
                    "PUT",
                    self._item_url(path, "content"),
                    path,
                    params={"@microsoft.graph.conflictBehavior": "replace"},
                    content=spooled.read(),
                )
            else:
                await self._upload_session(path, spooled, size)
        finally:
            spooled.close()
        return size

    async def _upload_session(self, path: str, spooled, size: int) -> None:
        session = await self._request_json(
            "POST",
            self._item_url(path, "createUploadSession"),
            path,
            json={"item": {"@microsoft.graph.conflictBehavior": "replace"}},
        )
        upload_url = session.get("uploadUrl")
        if not upload_url:
            raise StorageError("Upload session was not created", path)

        chunk_size = max(self.chunk_size // _UPLOAD_CHUNK_ALIGN, 1) * _UPLOAD_CHUNK_ALIGN
        offset = 0
        try:
            for chunk in iter_chunks(spooled, chunk_size):
                end = offset + len(chunk) - 1
                try:
                    # The upload URL is pre-authorized; no bearer token
                    response = await self.client.put(
                        upload_url,
                        content=chunk,
                        headers={"Content-Range": f"bytes {offset}-{end}/{size}"},
                    )
                except httpx.TransportError as e:
                    raise Transient(f"Chunk upload failed: {e}", path) from e
                if response.status_code >= 400:
                    message = f"Chunk upload failed: HTTP {response.status_code}"
                    raise error_from_status(response.status_code, message, path)
                offset = end + 1
        except StorageError:
            # Abandon the session so the partial upload is discarded
            with contextlib.suppress(httpx.HTTPError):
                await self.client.delete(upload_url)
            raise

    async def delete(self, path: str) -> None:
        if paths.is_root(path):
            raise PermissionDenied("Refusing to delete drive root", path)
        await self._request("DELETE", self._item_url(path), path)

    async def make_container(self, path: str) -> None:
        current = "/"
        for segment in paths.segments(path):
            child = paths.join(current, segment)
            try:
                item = await self._request_json("GET", self._item_url(child), child)
            except NotFound:
                await self._request_json(
                    "POST",
                    self._item_url(current, "children"),
                    child,
                    json={"name": segment, "folder": {}, "@microsoft.graph.conflictBehavior": "fail"},
                )
            else:
                if "folder" not in item:
                    raise Conflict("A file exists at this path", child)
            current = child

    def _parent_reference(self, path: str) -> dict[str, str]:
        parent = self._drive_path(paths.parent(path))
        return {"path": "/drive/root" if parent == "/" else f"/drive/root:{parent}"}

    async def move(self, src: str, dst: str) -> None:
        await self.make_container(paths.parent(dst))
        await self._request(
            "PATCH",
            self._item_url(src),
            src,
            params={"@microsoft.graph.conflictBehavior": "replace"},
            json={"parentReference": self._parent_reference(dst), "name": paths.basename(dst)},
        )

    async def copy(self, src: str, dst: str, on_progress: ProgressCallback | None = None) -> None:
        total = await self.total_size(src) if on_progress else 0
        await self.make_container(paths.parent(dst))
        response = await self._request(
            "POST",
            self._item_url(src, "copy"),
            src,
            params={"@microsoft.graph.conflictBehavior": "replace"},
            json={"parentReference": self._parent_reference(dst), "name": paths.basename(dst)},
        )
        monitor_url = response.headers.get("Location")
        if monitor_url:
            await self._wait_for_copy(monitor_url, src, total, on_progress)
        if on_progress:
            on_progress(total, total)

    async def _wait_for_copy(
        self, monitor_url: str, path: str, total: int, on_progress: ProgressCallback | None
    ) -> None:
        deadline = time.monotonic() + _COPY_TIMEOUT
        while time.monotonic() < deadline:
            # Monitor URLs are pre-authorized
            response = await self.client.get(monitor_url)
            if response.status_code >= 400:
                raise error_from_status(response.status_code, "Copy monitor failed", path)
            status = response.json() if response.content else {}
            match status.get("status"):
                case "completed":
                    return
                case "failed":
                    raise StorageError(f"Copy failed: {status.get('error', {}).get('message', 'unknown')}", path)
            if on_progress and total:
                on_progress(int(total * float(status.get("percentageComplete", 0)) / 100), total)
            await asyncio.sleep(_COPY_POLL_INTERVAL)
        raise Transient("Copy did not finish in time", path)

    async def available_and_total_space(self) -> SpaceInfo:
        drive = await self._request_json("GET", self.drive_url)
        quota = drive.get("quota") or {}
        if "total" not in quota:
            return SpaceInfo()
        return SpaceInfo(
            available=int(quota.get("remaining", 0)),
            total=int(quota["total"]),
            details={"used": int(quota.get("used", 0)), "state": quota.get("state")},
        )
