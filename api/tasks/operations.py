"""Background runner for long operations (transfers, archive build/extract).

Each operation runs as an independent asyncio task:
- the caller gets the operation id immediately
- progress is published through the hub by a per-operation tracker
- completion is announced with a notification event, failure with an
  errored sample plus an error event carrying the last byte offset
"""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from api.shared.exceptions import OperationNotFound
from logger import format_details, get_logger, short_operation_id
from progress_module.cancellation import CancellationToken, OperationCancelled
from progress_module.events import UNKNOWN_TOTAL, BroadcastEvent, OperationKind, OperationStatus
from progress_module.hub import ProgressHub
from progress_module.tracker import ProgressTracker

logger = get_logger()

Work = Callable[[ProgressTracker, CancellationToken], Awaitable[Any]]

MAX_FINISHED_OPERATIONS = 500


@dataclass
class OperationHandle:
    """Bookkeeping for one background operation."""

    id: str
    kind: OperationKind
    description: str
    tracker: ProgressTracker
    token: CancellationToken
    created_at: float = field(default_factory=time.time)
    task: asyncio.Task | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def status(self) -> OperationStatus:
        return self.tracker.status

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": str(self.kind),
            "description": self.description,
            "created_at": self.created_at,
            "status": str(self.status),
            "progress": self.tracker.sample.to_payload(),
            "result": self.result,
            "error": self.error,
        }


class OperationRunner:
    """Starts, tracks and cancels background operations."""

    def __init__(self, hub: ProgressHub, throttle_ms: int = 100):
        self.hub = hub
        self.throttle_ms = throttle_ms
        self._operations: dict[str, OperationHandle] = {}
        hub.add_cancel_listener(self.cancel)

    @staticmethod
    def new_operation_id(kind: OperationKind) -> str:
        return f"{kind}-{uuid.uuid4().hex[:12]}"

    def start(self, kind: OperationKind, work: Work, description: str = "", total: int = UNKNOWN_TOTAL) -> str:
        """Schedule ``work`` and return its operation id without waiting."""
        operation_id = self.new_operation_id(kind)
        handle = OperationHandle(
            id=operation_id,
            kind=kind,
            description=description,
            tracker=ProgressTracker(self.hub, operation_id, kind, total, self.throttle_ms),
            token=CancellationToken(operation_id),
        )
        self._prune()
        self._operations[operation_id] = handle
        handle.task = asyncio.create_task(self._run(handle, work), name=operation_id)
        return operation_id

    async def _run(self, handle: OperationHandle, work: Work) -> None:
        with logger.contextualize(operation_id=short_operation_id(handle.id)):
            logger.info(f"Operation started: {handle.kind} | {handle.description}")
            handle.tracker.start()
            try:
                result = await work(handle.tracker, handle.token)
            except OperationCancelled as e:
                handle.tracker.cancel(str(e))
                self.hub.publish(BroadcastEvent.notification(handle.id, "Operation cancelled", status="cancelled"))
            except asyncio.CancelledError:
                handle.tracker.cancel("Operation aborted")
                raise
            except Exception as e:
                # Task boundary: the failure is reported, not propagated
                handle.error = str(e)
                sample = handle.tracker.fail(str(e))
                self.hub.publish(
                    BroadcastEvent.error(
                        handle.id,
                        str(e),
                        error_type=type(e).__name__,
                        bytes_done=sample.bytes_done,
                        bytes_total=sample.bytes_total,
                    )
                )
                logger.error(f"Operation failed: {handle.kind} | {type(e).__name__}: {e}")
            else:
                handle.result = result.to_dict() if hasattr(result, "to_dict") else result
                sample = handle.tracker.complete()
                self.hub.publish(
                    BroadcastEvent.notification(
                        handle.id, "Operation completed", status="completed", result=handle.result
                    )
                )
                logger.info(
                    f"Operation completed: {handle.kind} | "
                    f"{format_details(bytes=sample.bytes_done, seconds=round(sample.elapsed, 2))}"
                )

    def _prune(self) -> None:
        finished = [h for h in self._operations.values() if h.status.is_terminal]
        for handle in finished[: max(len(finished) - MAX_FINISHED_OPERATIONS + 1, 0)]:
            del self._operations[handle.id]

    def get(self, operation_id: str) -> OperationHandle:
        handle = self._operations.get(operation_id)
        if handle is None:
            raise OperationNotFound(operation_id)
        return handle

    def list_operations(self) -> list[OperationHandle]:
        return list(self._operations.values())

    def cancel(self, operation_id: str) -> bool:
        """Request cooperative cancellation. Returns False for unknown or finished operations."""
        handle = self._operations.get(operation_id)
        if handle is None or handle.status.is_terminal:
            return False
        if handle.token.cancel("Cancelled by request"):
            logger.info(f"Cancellation requested: {short_operation_id(operation_id)}")
        return True

    async def wait(self, operation_id: str) -> OperationHandle:
        handle = self.get(operation_id)
        if handle.task is not None:
            await asyncio.shield(handle.task)
        return handle

    async def shutdown(self) -> None:
        """Cancel running operations and wait for their tasks to finish."""
        self.hub.remove_cancel_listener(self.cancel)
        tasks = [h.task for h in self._operations.values() if h.task is not None and not h.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
