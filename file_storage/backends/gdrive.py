"""Google Drive storage backend (Drive REST API v3)"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from file_storage import paths
from file_storage.backends.base import ProgressCallback
from file_storage.backends.http import HTTPStorageBackend, parse_timestamp
from file_storage.entry import EntryDescriptor, EntryKind, SpaceInfo, guess_content_type, make_entry
from file_storage.exceptions import Conflict, NotFound, PermissionDenied, StorageError
from file_storage.streams import iter_chunks, spool
from logger import get_logger

logger = get_logger(__name__)

API_URL = "https://www.googleapis.com/drive/v3"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
FOLDER_MIME = "application/vnd.google-apps.folder"
_FILE_FIELDS = "id,name,mimeType,size,modifiedTime,parents"
_UPLOAD_CHUNK_ALIGN = 256 * 1024

# Google-native documents have no binary content; they are exported
EXPORT_FORMATS = {
    "application/vnd.google-apps.document": (
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        ".docx",
    ),
    "application/vnd.google-apps.spreadsheet": (
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        ".xlsx",
    ),
    "application/vnd.google-apps.presentation": (
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        ".pptx",
    ),
    "application/vnd.google-apps.drawing": ("image/png", ".png"),
}


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveBackend(HTTPStorageBackend):
    """
    Google Drive backend addressed by path.

    Drive is id-based; each path is resolved by walking names from
    ``root_folder_id``. Ids are looked up per call, never cached, so
    descriptors always reflect the drive.
    """

    kind = "gdrive"

    def __init__(self, root_folder_id: str = "root", **kwargs):
        super().__init__(root_path=f"gdrive://{root_folder_id}", **kwargs)
        self.root_folder_id = root_folder_id

    def info(self) -> dict[str, Any]:
        return {**super().info(), "root_folder_id": self.root_folder_id}

    async def connect(self) -> None:
        about = await self._request_json("GET", f"{API_URL}/about", params={"fields": "user"})
        logger.info(f"Google Drive connected: user={about.get('user', {}).get('emailAddress', 'unknown')}")

    # --- Id resolution ---

    async def _find_child(self, parent_id: str, name: str) -> dict[str, Any] | None:
        query = f"'{_quote(parent_id)}' in parents and name = '{_quote(name)}' and trashed = false"
        data = await self._request_json(
            "GET",
            f"{API_URL}/files",
            params={"q": query, "fields": f"files({_FILE_FIELDS})", "pageSize": 10},
        )
        files = data.get("files", [])
        return files[0] if files else None

    async def _resolve(self, path: str) -> dict[str, Any]:
        """Metadata of the item at ``path``; NotFound if any segment is missing."""
        current: dict[str, Any] = {"id": self.root_folder_id, "name": "", "mimeType": FOLDER_MIME}
        for segment in paths.segments(path):
            if current["mimeType"] != FOLDER_MIME:
                raise NotFound("Not found", path)
            child = await self._find_child(current["id"], segment)
            if child is None:
                raise NotFound("Not found", path)
            current = child
        return current

    def _entry(self, path: str, item: dict[str, Any]) -> EntryDescriptor:
        mime = item.get("mimeType", "")
        if mime == FOLDER_MIME:
            return make_entry(path, kind=EntryKind.DIRECTORY, modified_at=parse_timestamp(item.get("modifiedTime")))
        if mime in EXPORT_FORMATS:
            mime = EXPORT_FORMATS[mime][0]
        return make_entry(
            path,
            size=int(item.get("size") or 0),
            modified_at=parse_timestamp(item.get("modifiedTime")),
            content_type=mime or None,
        )

    # --- Contract ---

    async def list(self, path: str) -> list[EntryDescriptor]:
        folder = await self._resolve(path)
        if folder["mimeType"] != FOLDER_MIME:
            raise NotFound("Not a directory", path)

        entries: list[EntryDescriptor] = []
        params: dict[str, Any] = {
            "q": f"'{_quote(folder['id'])}' in parents and trashed = false",
            "fields": f"nextPageToken,files({_FILE_FIELDS})",
            "pageSize": 1000,
        }
        while True:
            data = await self._request_json("GET", f"{API_URL}/files", path, params=params)
            for item in data.get("files", []):
                entries.append(self._entry(paths.join(path, item["name"]), item))
            token = data.get("nextPageToken")
            if not token:
                return entries
            params["pageToken"] = token

    async def stat(self, path: str) -> EntryDescriptor:
        return self._entry(paths.normalize(path), await self._resolve(path))

    async def read(self, path: str) -> AsyncIterator[bytes]:
        item = await self._resolve(path)
        mime = item.get("mimeType", "")
        if mime == FOLDER_MIME:
            raise StorageError("Cannot read a directory", path)
        if mime in EXPORT_FORMATS:
            return await self._stream(
                "GET",
                f"{API_URL}/files/{item['id']}/export",
                path,
                params={"mimeType": EXPORT_FORMATS[mime][0]},
            )
        return await self._stream("GET", f"{API_URL}/files/{item['id']}", path, params={"alt": "media"})

    async def write(self, path: str, stream: AsyncIterable[bytes]) -> int:
        if paths.is_root(path):
            raise Conflict("Cannot write to drive root", path)
        parent_id = await self._ensure_folder(paths.parent(path))
        existing = await self._find_child(parent_id, paths.basename(path))
        if existing and existing.get("mimeType") == FOLDER_MIME:
            raise Conflict("A directory exists at this path", path)

        spooled, size = await spool(stream)
        try:
            session_url = await self._start_upload(path, parent_id, existing, size)
            await self._upload_chunks(session_url, spooled, size, path)
        finally:
            spooled.close()
        return size

    async def _start_upload(self, path: str, parent_id: str, existing: dict | None, size: int) -> str:
        headers = {
            "X-Upload-Content-Type": guess_content_type(path),
            "X-Upload-Content-Length": str(size),
        }
        if existing:
            response = await self._request(
                "PATCH",
                f"{UPLOAD_URL}/files/{existing['id']}",
                path,
                params={"uploadType": "resumable"},
                json={},
                headers=headers,
            )
        else:
            response = await self._request(
                "POST",
                f"{UPLOAD_URL}/files",
                path,
                params={"uploadType": "resumable"},
                json={"name": paths.basename(path), "parents": [parent_id]},
                headers=headers,
            )
        location = response.headers.get("Location")
        if not location:
            raise StorageError("Upload session was not created", path)
        return location

    async def _upload_chunks(self, session_url: str, spooled, size: int, path: str) -> None:
        if size == 0:
            await self._request("PUT", session_url, path, content=b"", headers={"Content-Range": "bytes */0"})
            return
        chunk_size = max(self.chunk_size // _UPLOAD_CHUNK_ALIGN, 1) * _UPLOAD_CHUNK_ALIGN
        offset = 0
        for chunk in iter_chunks(spooled, chunk_size):
            end = offset + len(chunk) - 1
            await self._request(
                "PUT",
                session_url,
                path,
                content=chunk,
                headers={"Content-Range": f"bytes {offset}-{end}/{size}"},
            )
            offset = end + 1

    async def _ensure_folder(self, path: str) -> str:
        """Id of the folder at ``path``, creating missing segments."""
        folder_id = self.root_folder_id
        for segment in paths.segments(path):
            child = await self._find_child(folder_id, segment)
            if child is None:
                child = await self._request_json(
                    "POST",
                    f"{API_URL}/files",
                    path,
                    json={"name": segment, "mimeType": FOLDER_MIME, "parents": [folder_id]},
                    params={"fields": "id"},
                )
            elif child.get("mimeType") != FOLDER_MIME:
                raise Conflict("A file exists at this path", path)
            folder_id = child["id"]
        return folder_id

    async def delete(self, path: str) -> None:
        if paths.is_root(path):
            raise PermissionDenied("Refusing to delete drive root", path)
        item = await self._resolve(path)
        await self._request("DELETE", f"{API_URL}/files/{item['id']}", path)

    async def make_container(self, path: str) -> None:
        await self._ensure_folder(path)

    async def move(self, src: str, dst: str) -> None:
        item = await self._resolve(src)
        new_parent = await self._ensure_folder(paths.parent(dst))
        existing = await self._find_child(new_parent, paths.basename(dst))
        if existing and existing["id"] != item["id"]:
            await self._request("DELETE", f"{API_URL}/files/{existing['id']}", dst)
        await self._request(
            "PATCH",
            f"{API_URL}/files/{item['id']}",
            src,
            params={
                "addParents": new_parent,
                "removeParents": ",".join(item.get("parents", [])),
                "fields": "id",
            },
            json={"name": paths.basename(dst)},
        )

    async def copy(self, src: str, dst: str, on_progress: ProgressCallback | None = None) -> None:
        item = await self._resolve(src)
        total = await self.total_size(src) if on_progress else 0
        done = 0

        async def _copy(item: dict[str, Any], dst: str) -> None:
            nonlocal done
            if item["mimeType"] == FOLDER_MIME:
                # No native folder copy in Drive
                await self._ensure_folder(dst)
                for child in (await self._children(item["id"])):
                    await _copy(child, paths.join(dst, child["name"]))
                return
            parent_id = await self._ensure_folder(paths.parent(dst))
            await self._request_json(
                "POST",
                f"{API_URL}/files/{item['id']}/copy",
                src,
                json={"name": paths.basename(dst), "parents": [parent_id]},
                params={"fields": "id"},
            )
            done += int(item.get("size") or 0)
            if on_progress:
                on_progress(done, total)

        await _copy(item, paths.normalize(dst))

    async def _children(self, folder_id: str) -> list[dict[str, Any]]:
        children: list[dict[str, Any]] = []
        params: dict[str, Any] = {
            "q": f"'{_quote(folder_id)}' in parents and trashed = false",
            "fields": f"nextPageToken,files({_FILE_FIELDS})",
            "pageSize": 1000,
        }
        while True:
            data = await self._request_json("GET", f"{API_URL}/files", params=params)
            children.extend(data.get("files", []))
            if not data.get("nextPageToken"):
                return children
            params["pageToken"] = data["nextPageToken"]

    async def available_and_total_space(self) -> SpaceInfo:
        about = await self._request_json("GET", f"{API_URL}/about", params={"fields": "storageQuota"})
        quota = about.get("storageQuota", {})
        usage = int(quota.get("usage") or 0)
        if not quota.get("limit"):
            # Unlimited plans report no limit
            return SpaceInfo(details={"used": usage})
        limit = int(quota["limit"])
        return SpaceInfo(available=max(limit - usage, 0), total=limit, details={"used": usage})
