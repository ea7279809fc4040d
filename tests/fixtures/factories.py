"""Factory functions for creating test data."""

from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from file_storage.backends.base import StorageBackend
from file_storage.config_store import BackendConfig

SAMPLE_TREE: dict[str, bytes] = {
    "/project/readme.txt": b"storage engine readme\n",
    "/project/data.bin": bytes(range(256)) * 64,
    "/project/empty.txt": b"",
    "/project/nested/deep/notes.md": b"# notes\n" * 100,
}


async def iter_bytes(data: bytes, chunk_size: int = 1024) -> AsyncIterator[bytes]:
    """Stream an in-memory payload in fixed-size chunks."""
    for offset in range(0, len(data), chunk_size):
        yield data[offset : offset + chunk_size]


async def read_all(stream: AsyncIterable[bytes]) -> bytes:
    buffer = bytearray()
    async for chunk in stream:
        buffer.extend(chunk)
    return bytes(buffer)


def create_backend_config(
    backend_id: str = "local-2",
    kind: str = "local",
    parameters: dict[str, Any] | None = None,
    display_name: str | None = None,
    is_default: bool = False,
) -> BackendConfig:
    """Create a BackendConfig for testing."""
    return BackendConfig(
        id=backend_id,
        kind=kind,
        display_name=display_name or backend_id,
        parameters=parameters or {},
        is_default=is_default,
    )


def create_backend_record(backend_id: str, kind: str, **config: Any) -> dict[str, Any]:
    """Create a raw persisted record (JSON field names)."""
    return {"id": backend_id, "type": kind, "display_name": backend_id, "icon": "", "config": config}


async def write_file(backend: StorageBackend, path: str, data: bytes, chunk_size: int = 1024) -> int:
    return await backend.write(path, iter_bytes(data, chunk_size))


async def read_file(backend: StorageBackend, path: str) -> bytes:
    return await read_all(await backend.read(path))


async def populate(backend: StorageBackend, tree: dict[str, bytes] | None = None) -> dict[str, bytes]:
    """Write every file of ``tree`` (default SAMPLE_TREE) to ``backend``."""
    tree = SAMPLE_TREE if tree is None else tree
    for path, data in tree.items():
        await write_file(backend, path, data)
    return tree


async def snapshot(backend: StorageBackend, path: str = "/") -> dict[str, bytes]:
    """Every file below ``path`` mapped to its content."""
    files = {}
    async for entry in backend.walk(path):
        if not entry.is_dir:
            files[entry.path] = await read_file(backend, entry.path)
    return files
