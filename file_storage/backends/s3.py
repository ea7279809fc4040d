"""S3-compatible storage backend (AWS S3 / MinIO)"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Callable
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from file_storage import paths
from file_storage.backends.base import ProgressCallback, StorageBackend
from file_storage.entry import EntryDescriptor, EntryKind, SpaceInfo, guess_content_type, make_entry
from file_storage.exceptions import NotFound, PermissionDenied, StorageError, Transient
from file_storage.streams import DEFAULT_CHUNK_SIZE, spool
from logger import get_logger

logger = get_logger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
_DENIED_CODES = {"403", "AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "AllAccessDisabled"}
_TRANSIENT_CODES = {"SlowDown", "RequestTimeout", "ServiceUnavailable", "InternalError", "503", "500"}
_DELETE_BATCH = 1000


def translate_client_error(exc: ClientError, path: str | None = None) -> StorageError:
    """Wrap a botocore ClientError into the storage taxonomy."""
    response = getattr(exc, "response", {}) or {}
    status_code = (response.get("ResponseMetadata") or {}).get("HTTPStatusCode")
    error_code = str((response.get("Error") or {}).get("Code") or "")
    message = str((response.get("Error") or {}).get("Message") or error_code or exc)
    if status_code == 404 or error_code in _NOT_FOUND_CODES:
        return NotFound(message, path)
    if status_code == 403 or error_code in _DENIED_CODES:
        return PermissionDenied(message, path)
    if error_code in _TRANSIENT_CODES or (status_code or 0) >= 500:
        return Transient(message, path)
    return StorageError(message, path)


class S3StorageBackend(StorageBackend):
    """
    Object storage backend.

    Directories are emulated: a directory exists if any key starts with
    ``<dir>/``; ``make_container`` writes an empty ``<dir>/`` marker object so
    empty directories survive. Every key is scoped under ``prefix``.
    """

    kind = "s3"

    def __init__(
        self,
        *,
        bucket: str,
        region: str | None = None,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        session_token: str | None = None,
        prefix: str = "",
        use_path_style: bool = False,
        verify_ssl: bool = True,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        client: Any = None,
    ):
        super().__init__(root_path=f"s3://{bucket}/{prefix.strip('/')}".rstrip("/"), chunk_size=chunk_size)
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.session_token = session_token
        self.prefix = prefix.strip("/")
        self.use_path_style = use_path_style
        self.verify_ssl = verify_ssl
        self._client = client

    def info(self) -> dict[str, Any]:
        return {
            **super().info(),
            "bucket": self.bucket,
            "region": self.region,
            "endpoint": self.endpoint_url,
            "prefix": self.prefix,
        }

    def _get_client(self):
        if self._client is not None:
            return self._client

        client_kwargs: dict[str, Any] = {
            "service_name": "s3",
            "verify": self.verify_ssl,
        }
        if self.region:
            client_kwargs["region_name"] = self.region
        if self.endpoint_url:
            client_kwargs["endpoint_url"] = self.endpoint_url
        if self.access_key_id:
            client_kwargs["aws_access_key_id"] = self.access_key_id
        if self.secret_access_key:
            client_kwargs["aws_secret_access_key"] = self.secret_access_key
        if self.session_token:
            client_kwargs["aws_session_token"] = self.session_token

        addressing_style = "path" if self.use_path_style else "auto"
        client_kwargs["config"] = Config(signature_version="s3v4", s3={"addressing_style": addressing_style})

        self._client = boto3.client(**client_kwargs)
        return self._client

    async def _call(self, fn: Callable[..., Any], *args, path: str | None = None, **kwargs) -> Any:
        """Run a blocking boto3 call in a worker thread, translating its errors."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ClientError as e:
            raise translate_client_error(e, path) from e
        except BotoCoreError as e:
            raise Transient(f"S3 request failed: {e}", path) from e

    # --- Key mapping ---

    def _key(self, path: str) -> str:
        rel = paths.relative(path)
        if self.prefix:
            return f"{self.prefix}/{rel}" if rel else self.prefix
        return rel

    def _dir_key(self, path: str) -> str:
        key = self._key(path)
        return f"{key}/" if key else ""

    def _path_from_key(self, key: str) -> str:
        if self.prefix:
            key = key[len(self.prefix) :]
        return paths.normalize(key)

    # --- Lifecycle ---

    async def connect(self) -> None:
        await self._call(self._get_client().head_bucket, Bucket=self.bucket, path=self.root_path)
        logger.info(f"S3 bucket reachable: {self.bucket}")

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None and hasattr(client, "close"):
            await asyncio.to_thread(client.close)

    # --- Listing helpers ---

    def _list_keys_sync(self, prefix: str, delimiter: str | None, max_keys: int | None = None) -> tuple[list, list]:
        client = self._get_client()
        objects: list[dict] = []
        prefixes: list[str] = []
        kwargs: dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix}
        if delimiter:
            kwargs["Delimiter"] = delimiter
        if max_keys:
            kwargs["MaxKeys"] = max_keys
        while True:
            page = client.list_objects_v2(**kwargs)
            objects.extend(page.get("Contents", []))
            prefixes.extend(p["Prefix"] for p in page.get("CommonPrefixes", []))
            if max_keys or not page.get("IsTruncated"):
                return objects, prefixes
            kwargs["ContinuationToken"] = page["NextContinuationToken"]

    def _file_entry(self, obj: dict) -> EntryDescriptor:
        path = self._path_from_key(obj["Key"])
        return make_entry(path, size=obj.get("Size", 0), modified_at=obj.get("LastModified"))

    # --- Contract ---

    async def list(self, path: str) -> list[EntryDescriptor]:
        dir_key = self._dir_key(path)
        objects, prefixes = await self._call(self._list_keys_sync, dir_key, "/", path=path)
        if not objects and not prefixes and not paths.is_root(path):
            raise NotFound("Directory not found", path)

        entries = [
            make_entry(self._path_from_key(prefix.rstrip("/")), kind=EntryKind.DIRECTORY) for prefix in prefixes
        ]
        entries.extend(self._file_entry(obj) for obj in objects if obj["Key"] != dir_key)
        return entries

    async def stat(self, path: str) -> EntryDescriptor:
        if paths.is_root(path):
            return make_entry("/", kind=EntryKind.DIRECTORY)
        key = self._key(path)
        try:
            head = await self._call(self._get_client().head_object, Bucket=self.bucket, Key=key, path=path)
        except NotFound:
            objects, _ = await self._call(self._list_keys_sync, self._dir_key(path), None, 1, path=path)
            if not objects:
                raise
            return make_entry(path, kind=EntryKind.DIRECTORY)
        return make_entry(
            path,
            size=head.get("ContentLength", 0),
            modified_at=head.get("LastModified"),
            content_type=head.get("ContentType") or None,
        )

    async def read(self, path: str) -> AsyncIterator[bytes]:
        response = await self._call(
            self._get_client().get_object, Bucket=self.bucket, Key=self._key(path), path=path
        )
        return self._iter_body(response["Body"], path)

    async def _iter_body(self, body, path: str) -> AsyncIterator[bytes]:
        try:
            while chunk := await self._call(body.read, self.chunk_size, path=path):
                yield chunk
        finally:
            body.close()

    async def write(self, path: str, stream: AsyncIterable[bytes]) -> int:
        key = self._key(path)
        spooled, size = await spool(stream)
        try:
            await self._call(
                self._get_client().upload_fileobj,
                spooled,
                self.bucket,
                key,
                ExtraArgs={"ContentType": guess_content_type(path)},
                path=path,
            )
        finally:
            spooled.close()
        logger.debug(f"Uploaded s3://{self.bucket}/{key} ({size} bytes)")
        return size

    async def delete(self, path: str) -> None:
        if paths.is_root(path):
            raise PermissionDenied("Refusing to delete storage root", path)
        client = self._get_client()
        try:
            await self._call(client.head_object, Bucket=self.bucket, Key=self._key(path), path=path)
        except NotFound:
            pass
        else:
            await self._call(client.delete_object, Bucket=self.bucket, Key=self._key(path), path=path)
            return

        objects, _ = await self._call(self._list_keys_sync, self._dir_key(path), None, path=path)
        if not objects:
            raise NotFound("Not found", path)
        keys = [obj["Key"] for obj in objects]
        for start in range(0, len(keys), _DELETE_BATCH):
            batch = [{"Key": key} for key in keys[start : start + _DELETE_BATCH]]
            await self._call(
                client.delete_objects, Bucket=self.bucket, Delete={"Objects": batch, "Quiet": True}, path=path
            )

    async def make_container(self, path: str) -> None:
        if paths.is_root(path):
            return
        await self._call(
            self._get_client().put_object, Bucket=self.bucket, Key=self._dir_key(path), Body=b"", path=path
        )

    async def copy(self, src: str, dst: str, on_progress: ProgressCallback | None = None) -> None:
        client = self._get_client()
        entry = await self.stat(src)
        if entry.is_dir:
            objects, _ = await self._call(self._list_keys_sync, self._dir_key(src), None, path=src)
            pairs = [
                (obj["Key"], self._key(paths.rebase(self._path_from_key(obj["Key"]), src, dst)), obj.get("Size", 0))
                for obj in objects
            ]
            # Keep directory markers
            pairs = [
                (k, d + "/" if k.endswith("/") and not d.endswith("/") else d, s) for k, d, s in pairs
            ]
        else:
            pairs = [(self._key(src), self._key(dst), entry.size)]

        total = sum(size for _, _, size in pairs)
        done = 0
        for src_key, dst_key, size in pairs:
            await self._call(
                client.copy, {"Bucket": self.bucket, "Key": src_key}, self.bucket, dst_key, path=src
            )
            done += size
            if on_progress:
                on_progress(done, total)

    async def move(self, src: str, dst: str) -> None:
        await self.copy(src, dst)
        await self.delete(src)

    async def available_and_total_space(self) -> SpaceInfo:
        return SpaceInfo(details={"bucket": self.bucket})
