"""Long-running operations: cross-backend transfer, compress, decompress, cancel.

Every call validates its arguments, schedules the work on the
OperationRunner and returns the operation id immediately.
"""

from typing import Any

from api.shared.exceptions import InvalidRequest
from api.tasks.operations import OperationRunner
from archive_module.engine import ArchiveEngine
from archive_module.formats import ArchiveFormat, detect_format
from file_storage import paths
from file_storage.registry import StorageRegistry
from progress_module.cancellation import CancellationToken
from progress_module.events import OperationKind
from progress_module.hub import ProgressHub
from progress_module.tracker import ProgressTracker
from transfer_module.orchestrator import TransferOrchestrator


class OperationService:
    def __init__(
        self,
        registry: StorageRegistry,
        orchestrator: TransferOrchestrator,
        archive: ArchiveEngine,
        runner: OperationRunner,
        hub: ProgressHub,
    ) -> None:
        self.registry = registry
        self.orchestrator = orchestrator
        self.archive = archive
        self.runner = runner
        self.hub = hub

    def transfer(self, src_id: str, src_path: str, dst_id: str, dst_path: str, move: bool = False) -> str:
        # Unknown ids fail here rather than in the background task
        self.registry.get(src_id)
        self.registry.get(dst_id)
        kind = OperationKind.MOVE if move else OperationKind.COPY
        run = self.orchestrator.move if move else self.orchestrator.copy

        async def work(tracker: ProgressTracker, token: CancellationToken):
            return await run(src_id, src_path, dst_id, dst_path, on_progress=tracker, token=token)

        description = f"{src_id}:{paths.normalize(src_path)} → {dst_id}:{paths.normalize(dst_path)}"
        return self.runner.start(kind, work, description)

    def compress(
        self,
        storage_id: str,
        sources: list[str],
        output_path: str,
        archive_format: str | None = None,
        output_storage_id: str | None = None,
    ) -> str:
        if not sources:
            raise InvalidRequest("No sources to compress")
        self.registry.get(storage_id)
        if output_storage_id:
            self.registry.get(output_storage_id)
        fmt = ArchiveFormat.parse(archive_format) if archive_format else detect_format(output_path)

        async def work(tracker: ProgressTracker, token: CancellationToken):
            return await self.archive.compress(
                storage_id,
                sources,
                output_path,
                fmt,
                output_storage_id=output_storage_id,
                on_progress=tracker,
                token=token,
            )

        description = f"{len(sources)} source(s) on {storage_id} → {paths.normalize(output_path)} ({fmt})"
        return self.runner.start(OperationKind.COMPRESS, work, description)

    def decompress(
        self,
        storage_id: str,
        archive_path: str,
        output_path: str,
        create_subfolder: bool = False,
        output_storage_id: str | None = None,
    ) -> str:
        self.registry.get(storage_id)
        if output_storage_id:
            self.registry.get(output_storage_id)
        fmt = detect_format(archive_path)

        async def work(tracker: ProgressTracker, token: CancellationToken):
            return await self.archive.decompress(
                storage_id,
                archive_path,
                output_path,
                create_subfolder=create_subfolder,
                output_storage_id=output_storage_id,
                on_progress=tracker,
                token=token,
            )

        description = f"{storage_id}:{paths.normalize(archive_path)} ({fmt}) → {paths.normalize(output_path)}"
        return self.runner.start(OperationKind.DECOMPRESS, work, description)

    async def cancel(self, operation_id: str) -> bool:
        self.runner.get(operation_id)
        await self.hub.forward_cancel(operation_id)
        return self.runner.get(operation_id).token.cancelled

    def status(self, operation_id: str) -> dict[str, Any]:
        return self.runner.get(operation_id).to_dict()

    def list_operations(self) -> list[dict[str, Any]]:
        return [handle.to_dict() for handle in self.runner.list_operations()]
