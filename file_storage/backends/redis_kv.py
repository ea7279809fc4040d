"""Key-value storage backend: files and directories kept in Redis"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

import redis.asyncio as redis
from redis.exceptions import AuthenticationError, RedisError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from file_storage import paths
from file_storage.backends.base import StorageBackend
from file_storage.entry import EntryDescriptor, EntryKind, SpaceInfo, guess_content_type, make_entry
from file_storage.exceptions import (
    Conflict,
    NotFound,
    PermissionDenied,
    QuotaExceeded,
    StorageError,
    Transient,
    Unsupported,
)
from file_storage.streams import DEFAULT_CHUNK_SIZE
from logger import get_logger

logger = get_logger(__name__)

DEFAULT_NAMESPACE = "fs"
DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024


class RedisStorageBackend(StorageBackend):
    """
    Filesystem emulated on Redis keys.

    Layout under ``namespace``:

    - ``<ns>:meta:<path>``: JSON metadata (type, size, modified_at, content_type, generation, chunks)
    - ``<ns>:children:<path>``: set of child names of a directory
    - ``<ns>:data:<generation>:<n>``: content chunks

    Content is written under a fresh generation id and becomes visible when the
    metadata is switched to it, so an overwrite never exposes a half-written file.
    """

    kind = "redis"

    def __init__(
        self,
        address: str = "localhost:6379",
        password: str | None = None,
        db: int = 0,
        namespace: str = DEFAULT_NAMESPACE,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        client: Any = None,
    ):
        super().__init__(root_path=f"redis://{address}/{db}/{namespace}", chunk_size=chunk_size)
        self.address = address
        self.db = int(db)
        self.namespace = namespace
        self.max_file_size = max_file_size
        if client is None:
            host, _, port = address.rpartition(":") if ":" in address else (address, "", "6379")
            client = redis.Redis(host=host.strip("[]"), port=int(port), password=password or None, db=self.db)
        self._redis = client

    def info(self) -> dict[str, Any]:
        return {
            **super().info(),
            "address": self.address,
            "db": self.db,
            "namespace": self.namespace,
            "max_file_size": self.max_file_size,
        }

    # --- Keys ---

    def _meta_key(self, path: str) -> str:
        return f"{self.namespace}:meta:{paths.normalize(path)}"

    def _children_key(self, path: str) -> str:
        return f"{self.namespace}:children:{paths.normalize(path)}"

    def _data_key(self, generation: str, index: int) -> str:
        return f"{self.namespace}:data:{generation}:{index}"

    def _data_keys(self, meta: dict[str, Any]) -> list[str]:
        generation = meta.get("generation")
        if not generation:
            return []
        return [self._data_key(generation, i) for i in range(int(meta.get("chunks", 0)))]

    # --- Error wrapping ---

    async def _call(self, coro, path: str | None = None):
        try:
            return await coro
        except AuthenticationError as e:
            raise PermissionDenied(f"Redis authentication failed: {e}", path) from e
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise Transient(f"Redis unavailable: {e}", path) from e
        except RedisError as e:
            raise StorageError(f"Redis error: {e}", path) from e

    async def _get_meta(self, path: str) -> dict[str, Any] | None:
        if paths.is_root(path):
            return {"type": "directory", "size": 0, "modified_at": 0}
        raw = await self._call(self._redis.get(self._meta_key(path)), path)
        return json.loads(raw) if raw else None

    async def _require_meta(self, path: str) -> dict[str, Any]:
        meta = await self._get_meta(path)
        if meta is None:
            raise NotFound("Not found", path)
        return meta

    def _entry(self, path: str, meta: dict[str, Any]) -> EntryDescriptor:
        if meta.get("type") == "directory":
            return make_entry(path, kind=EntryKind.DIRECTORY, modified_at=meta.get("modified_at", 0))
        return make_entry(
            path,
            size=meta.get("size", 0),
            modified_at=meta.get("modified_at", 0),
            content_type=meta.get("content_type") or None,
        )

    # --- Lifecycle ---

    async def connect(self) -> None:
        await self._call(self._redis.ping(), self.root_path)
        logger.info(f"Redis storage connected: {self.address} | namespace={self.namespace}")

    async def close(self) -> None:
        await self._redis.aclose()

    # --- Contract ---

    async def list(self, path: str) -> list[EntryDescriptor]:
        meta = await self._require_meta(path)
        if meta.get("type") != "directory":
            raise NotFound("Not a directory", path)
        names = sorted(
            name.decode() if isinstance(name, bytes) else name
            for name in await self._call(self._redis.smembers(self._children_key(path)), path)
        )
        if not names:
            return []
        child_paths = [paths.join(path, name) for name in names]
        raws = await self._call(self._redis.mget([self._meta_key(p) for p in child_paths]), path)
        # Children whose metadata vanished were removed concurrently
        return [self._entry(p, json.loads(raw)) for p, raw in zip(child_paths, raws, strict=True) if raw]

    async def stat(self, path: str) -> EntryDescriptor:
        return self._entry(paths.normalize(path), await self._require_meta(path))

    async def read(self, path: str) -> AsyncIterator[bytes]:
        meta = await self._require_meta(path)
        if meta.get("type") == "directory":
            raise Unsupported("Cannot read a directory", path)
        return self._iter_chunks(self._data_keys(meta), path)

    async def _iter_chunks(self, keys: list[str], path: str) -> AsyncIterator[bytes]:
        for key in keys:
            chunk = await self._call(self._redis.get(key), path)
            if chunk is None:
                raise Transient("File changed while reading", path)
            yield chunk

    async def write(self, path: str, stream: AsyncIterable[bytes]) -> int:
        if paths.is_root(path):
            raise Conflict("Cannot write to storage root", path)
        existing = await self._get_meta(path)
        if existing and existing.get("type") == "directory":
            raise Conflict("A directory exists at this path", path)
        await self.make_container(paths.parent(path))

        generation = uuid.uuid4().hex
        size = 0
        index = 0
        buffer = bytearray()
        try:
            async for chunk in stream:
                size += len(chunk)
                if size > self.max_file_size:
                    raise QuotaExceeded(
                        f"File exceeds key-value store limit of {self.max_file_size} bytes",
                        path,
                    )
                buffer.extend(chunk)
                while len(buffer) >= self.chunk_size:
                    piece = bytes(buffer[: self.chunk_size])
                    await self._call(self._redis.set(self._data_key(generation, index), piece), path)
                    del buffer[: self.chunk_size]
                    index += 1
            if buffer:
                await self._call(self._redis.set(self._data_key(generation, index), bytes(buffer)), path)
                index += 1
        except BaseException:
            if index:
                await self._redis.delete(*[self._data_key(generation, i) for i in range(index)])
            raise

        meta = {
            "type": "file",
            "size": size,
            "modified_at": time.time(),
            "content_type": guess_content_type(path),
            "generation": generation,
            "chunks": index,
        }
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._meta_key(path), json.dumps(meta))
            pipe.sadd(self._children_key(paths.parent(path)), paths.basename(path))
            await self._call(pipe.execute(), path)

        if existing:
            old_keys = self._data_keys(existing)
            if old_keys:
                await self._call(self._redis.delete(*old_keys), path)
        return size

    async def delete(self, path: str) -> None:
        if paths.is_root(path):
            raise PermissionDenied("Refusing to delete storage root", path)
        meta = await self._require_meta(path)
        if meta.get("type") == "directory":
            for child in await self.list(path):
                await self.delete(child.path)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._meta_key(path), self._children_key(path))
            pipe.srem(self._children_key(paths.parent(path)), paths.basename(path))
            await self._call(pipe.execute(), path)
        data_keys = self._data_keys(meta)
        if data_keys:
            await self._call(self._redis.delete(*data_keys), path)

    async def make_container(self, path: str) -> None:
        current = "/"
        for segment in paths.segments(path):
            child = paths.join(current, segment)
            meta = await self._get_meta(child)
            if meta is None:
                async with self._redis.pipeline(transaction=True) as pipe:
                    pipe.set(self._meta_key(child), json.dumps({"type": "directory", "modified_at": time.time()}))
                    pipe.sadd(self._children_key(current), segment)
                    await self._call(pipe.execute(), child)
            elif meta.get("type") != "directory":
                raise Conflict("A file exists at this path", child)
            current = child

    async def move(self, src: str, dst: str) -> None:
        """Re-point metadata; content chunks are path-independent and stay where they are."""
        if paths.is_root(src):
            raise PermissionDenied("Refusing to move storage root", src)
        meta = await self._require_meta(src)
        src, dst = paths.normalize(src), paths.normalize(dst)
        if src == dst:
            return
        if paths.is_within(dst, src):
            raise Conflict("Cannot move a directory into itself", dst)

        if meta.get("type") == "directory":
            await self.make_container(dst)
            for child in await self.list(src):
                await self.move(child.path, paths.join(dst, child.name))
            await self.delete(src)
            return

        existing = await self._get_meta(dst)
        if existing and existing.get("type") == "directory":
            raise Conflict("A directory exists at this path", dst)
        await self.make_container(paths.parent(dst))
        meta["modified_at"] = time.time()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._meta_key(dst), json.dumps(meta))
            pipe.sadd(self._children_key(paths.parent(dst)), paths.basename(dst))
            pipe.delete(self._meta_key(src))
            pipe.srem(self._children_key(paths.parent(src)), paths.basename(src))
            await self._call(pipe.execute(), src)
        if existing:
            old_keys = self._data_keys(existing)
            if old_keys:
                await self._call(self._redis.delete(*old_keys), dst)

    async def available_and_total_space(self) -> SpaceInfo:
        memory = await self._call(self._redis.info("memory"))
        used = int(memory.get("used_memory", 0))
        maxmemory = int(memory.get("maxmemory", 0))
        if not maxmemory:
            # No maxmemory: bounded only by host RAM
            return SpaceInfo(details={"used": used})
        return SpaceInfo(available=max(maxmemory - used, 0), total=maxmemory, details={"used": used})
