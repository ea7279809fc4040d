"""WebDAV storage backend"""

from __future__ import annotations

import base64
import xml.etree.ElementTree as ET
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any
from urllib.parse import quote, unquote, urlparse

from file_storage import paths
from file_storage.backends.base import ProgressCallback
from file_storage.backends.http import HTTPStorageBackend, parse_timestamp
from file_storage.entry import EntryDescriptor, EntryKind, SpaceInfo, make_entry
from file_storage.exceptions import Conflict, NotFound, PermissionDenied, StorageError, Unsupported
from logger import get_logger

logger = get_logger(__name__)

DAV_NS = "{DAV:}"

_PROPFIND_BODY = b"""<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:resourcetype/>
    <d:getcontentlength/>
    <d:getlastmodified/>
    <d:getcontenttype/>
  </d:prop>
</d:propfind>"""

_QUOTA_BODY = b"""<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:quota-available-bytes/>
    <d:quota-used-bytes/>
  </d:prop>
</d:propfind>"""


class WebDAVStorageBackend(HTTPStorageBackend):
    """WebDAV server (Nextcloud, ownCloud, Apache mod_dav) with Basic auth"""

    kind = "webdav"

    def __init__(self, base_url: str, username: str = "", password: str = "", **kwargs):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self._base_path = unquote(urlparse(self.base_url).path).rstrip("/")
        super().__init__(root_path=self.base_url, **kwargs)

    def info(self) -> dict[str, Any]:
        return {**super().info(), "base_url": self.base_url, "username": self.username}

    async def _auth_headers(self) -> dict[str, str]:
        if not self.username:
            return {}
        token = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
        return {"Authorization": f"Basic {token}"}

    def _url(self, path: str, collection: bool = False) -> str:
        url = self.base_url + quote(paths.normalize(path))
        if collection and not url.endswith("/"):
            url += "/"
        return url

    def _path_from_href(self, href: str) -> str:
        href_path = unquote(urlparse(href).path)
        if self._base_path and href_path.startswith(self._base_path):
            href_path = href_path[len(self._base_path) :]
        return paths.normalize(href_path)

    async def connect(self) -> None:
        await self._propfind("/", depth="0")
        logger.info(f"WebDAV server reachable: {self.base_url}")

    # --- PROPFIND ---

    async def _propfind(self, path: str, depth: str, body: bytes = _PROPFIND_BODY) -> ET.Element:
        response = await self._request(
            "PROPFIND",
            self._url(path, collection=depth == "1"),
            path,
            content=body,
            headers={"Depth": depth, "Content-Type": "application/xml; charset=utf-8"},
        )
        try:
            return ET.fromstring(response.content)
        except ET.ParseError as e:
            raise StorageError(f"Malformed PROPFIND response: {e}", path) from e

    def _parse_response(self, node: ET.Element) -> EntryDescriptor | None:
        href = node.findtext(f"{DAV_NS}href")
        if href is None:
            return None
        prop = None
        for propstat in node.findall(f"{DAV_NS}propstat"):
            status = propstat.findtext(f"{DAV_NS}status") or ""
            if " 200 " in status or status.endswith(" 200"):
                prop = propstat.find(f"{DAV_NS}prop")
                break
        if prop is None:
            return None

        path = self._path_from_href(href)
        modified = parse_timestamp(prop.findtext(f"{DAV_NS}getlastmodified"))
        resource_type = prop.find(f"{DAV_NS}resourcetype")
        if resource_type is not None and resource_type.find(f"{DAV_NS}collection") is not None:
            return make_entry(path, kind=EntryKind.DIRECTORY, modified_at=modified)
        return make_entry(
            path,
            size=int(prop.findtext(f"{DAV_NS}getcontentlength") or 0),
            modified_at=modified,
            content_type=prop.findtext(f"{DAV_NS}getcontenttype") or None,
        )

    # --- Contract ---

    async def list(self, path: str) -> list[EntryDescriptor]:
        root = await self._propfind(path, depth="1")
        target = paths.normalize(path)
        entries = []
        for node in root.findall(f"{DAV_NS}response"):
            entry = self._parse_response(node)
            if entry is None or entry.path == target:
                continue
            entries.append(entry)
        if not entries:
            # Depth 1 on a file returns only the file itself
            if not (await self.stat(path)).is_dir:
                raise NotFound("Not a directory", path)
        return entries

    async def stat(self, path: str) -> EntryDescriptor:
        root = await self._propfind(path, depth="0")
        for node in root.findall(f"{DAV_NS}response"):
            entry = self._parse_response(node)
            if entry is not None:
                return entry
        raise NotFound("Not found", path)

    async def read(self, path: str) -> AsyncIterator[bytes]:
        return await self._stream("GET", self._url(path), path)

    async def write(self, path: str, stream: AsyncIterable[bytes]) -> int:
        if paths.is_root(path):
            raise Conflict("Cannot write to collection root", path)
        await self.make_container(paths.parent(path))
        written = 0

        async def _body() -> AsyncIterator[bytes]:
            nonlocal written
            async for chunk in stream:
                written += len(chunk)
                yield chunk

        await self._request("PUT", self._url(path), path, content=_body())
        return written

    async def delete(self, path: str) -> None:
        if paths.is_root(path):
            raise PermissionDenied("Refusing to delete collection root", path)
        await self._request("DELETE", self._url(path), path)

    async def make_container(self, path: str) -> None:
        current = "/"
        for segment in paths.segments(path):
            current = paths.join(current, segment)
            try:
                await self._request("MKCOL", self._url(current, collection=True), current)
            except Unsupported:
                # 405: something already exists at this path
                if not (await self.stat(current)).is_dir:
                    raise Conflict("A file exists at this path", current) from None

    def _transfer_headers(self, dst: str, depth: str | None = None) -> dict[str, str]:
        headers = {"Destination": self._url(dst), "Overwrite": "T"}
        if depth:
            headers["Depth"] = depth
        return headers

    async def move(self, src: str, dst: str) -> None:
        await self.make_container(paths.parent(dst))
        await self._request("MOVE", self._url(src), src, headers=self._transfer_headers(dst))

    async def copy(self, src: str, dst: str, on_progress: ProgressCallback | None = None) -> None:
        total = await self.total_size(src) if on_progress else 0
        await self.make_container(paths.parent(dst))
        await self._request("COPY", self._url(src), src, headers=self._transfer_headers(dst, depth="infinity"))
        if on_progress:
            on_progress(total, total)

    async def available_and_total_space(self) -> SpaceInfo:
        try:
            root = await self._propfind("/", depth="0", body=_QUOTA_BODY)
        except Unsupported:
            return SpaceInfo()
        available = root.findtext(f".//{DAV_NS}quota-available-bytes")
        used = root.findtext(f".//{DAV_NS}quota-used-bytes")
        if not available or not used:
            return SpaceInfo()
        try:
            available_bytes, used_bytes = int(available), int(used)
        except ValueError:
            return SpaceInfo()
        if available_bytes < 0:
            # Servers report negative values for "unlimited"
            return SpaceInfo(details={"used": used_bytes})
        return SpaceInfo(available=available_bytes, total=available_bytes + used_bytes, details={"used": used_bytes})
