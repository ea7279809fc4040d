"""File operations on registered backends by (backend id, path)."""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

from api.shared.exceptions import InvalidRequest
from file_storage import paths
from file_storage.entry import EntryDescriptor, SpaceInfo
from file_storage.exceptions import StorageError
from file_storage.registry import StorageRegistry
from logger import format_details, get_logger
from transfer_module.orchestrator import TransferOrchestrator, TransferResult

logger = get_logger()


class FileService:
    """Synchronous (request/response) file operations."""

    def __init__(self, registry: StorageRegistry, orchestrator: TransferOrchestrator) -> None:
        self.registry = registry
        self.orchestrator = orchestrator

    async def list(self, backend_id: str, path: str = "/") -> list[EntryDescriptor]:
        entries = await self.registry.get(backend_id).list(path)
        return sorted(entries, key=lambda e: (not e.is_dir, e.name.lower()))

    async def stat(self, backend_id: str, path: str) -> EntryDescriptor:
        return await self.registry.get(backend_id).stat(path)

    async def read(self, backend_id: str, path: str) -> AsyncIterator[bytes]:
        return await self.registry.get(backend_id).read(path)

    async def write(self, backend_id: str, path: str, stream: AsyncIterable[bytes]) -> EntryDescriptor:
        backend = self.registry.get(backend_id)
        written = await backend.write(path, stream)
        logger.info(f"File written: {backend_id}:{paths.normalize(path)} | bytes={written}")
        return await backend.stat(path)

    async def delete(self, backend_id: str, path: str) -> None:
        await self.registry.get(backend_id).delete(path)
        logger.info(f"Deleted: {backend_id}:{paths.normalize(path)}")

    async def delete_many(self, backend_id: str, base: str, names: list[str]) -> dict[str, Any]:
        """
        Delete several entries of one directory.

        Each name is deleted independently; failures are collected instead of
        aborting the batch.
        """
        if not names:
            raise InvalidRequest("No entries to delete")
        backend = self.registry.get(backend_id)
        deleted: list[str] = []
        failed: list[dict[str, str]] = []
        for name in names:
            if not name or "/" in name or name in (".", ".."):
                failed.append({"name": name, "error": "Invalid entry name"})
                continue
            try:
                await backend.delete(paths.join(base, name))
            except StorageError as e:
                failed.append({"name": name, "error": str(e)})
            else:
                deleted.append(name)

        logger.info(
            f"Batch delete: {backend_id}:{paths.normalize(base)} | "
            f"{format_details(deleted=len(deleted), failed=len(failed))}"
        )
        return {"success": not failed, "deleted": deleted, "failed": failed}

    async def make_container(self, backend_id: str, path: str) -> EntryDescriptor:
        backend = self.registry.get(backend_id)
        await backend.make_container(path)
        return await backend.stat(path)

    async def rename(self, backend_id: str, path: str, new_name: str) -> EntryDescriptor:
        if not new_name or "/" in new_name or new_name in (".", ".."):
            raise InvalidRequest(f"Invalid name: {new_name!r}")
        target = paths.join(paths.parent(path), new_name)
        await self.move(backend_id, path, target)
        return await self.registry.get(backend_id).stat(target)

    async def move(self, backend_id: str, src: str, dst: str) -> TransferResult:
        return await self.orchestrator.move(backend_id, src, backend_id, dst)

    async def copy(self, backend_id: str, src: str, dst: str) -> TransferResult:
        return await self.orchestrator.copy(backend_id, src, backend_id, dst)

    async def transfer(
        self, src_id: str, src_path: str, dst_id: str, dst_path: str, move: bool = False
    ) -> TransferResult:
        """Cross-backend copy/move awaited in the request; large transfers go through OperationService."""
        if move:
            return await self.orchestrator.move(src_id, src_path, dst_id, dst_path)
        return await self.orchestrator.copy(src_id, src_path, dst_id, dst_path)

    async def space(self, backend_id: str) -> SpaceInfo:
        return await self.registry.get(backend_id).available_and_total_space()

    async def search(
        self, backend_id: str, query: str, path: str = "/", max_depth: int | None = 10
    ) -> list[EntryDescriptor]:
        if not query.strip():
            raise InvalidRequest("Search query must not be empty")
        return await self.registry.get(backend_id).search(path, query.strip(), max_depth)
