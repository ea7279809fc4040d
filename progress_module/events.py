"""Progress samples and broadcast events"""

import time
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

UNKNOWN_TOTAL = -1


class OperationKind(StrEnum):
    COPY = "copy"
    MOVE = "move"
    COMPRESS = "compress"
    DECOMPRESS = "decompress"


class OperationStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not OperationStatus.RUNNING


class EventKind(StrEnum):
    PROGRESS = "progress"
    NOTIFICATION = "notification"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ProgressSample:
    """
    One point-in-time measurement of a long-running operation.

    ``bytes_total`` is ``UNKNOWN_TOTAL`` until the size is known. Derived
    values are computed from the sample itself and never stored.
    """

    operation_id: str
    operation_kind: OperationKind
    bytes_done: int = 0
    bytes_total: int = UNKNOWN_TOTAL
    status: OperationStatus = OperationStatus.RUNNING
    started_at: float = field(default_factory=time.monotonic)
    sampled_at: float = field(default_factory=time.monotonic)
    current_item: str | None = None
    message: str | None = None

    @property
    def total_known(self) -> bool:
        return self.bytes_total >= 0

    @property
    def elapsed(self) -> float:
        return max(self.sampled_at - self.started_at, 0.0)

    @property
    def percentage(self) -> float | None:
        if not self.total_known:
            return None
        if self.bytes_total == 0:
            return 100.0 if self.status == OperationStatus.COMPLETED else 0.0
        return min(self.bytes_done * 100.0 / self.bytes_total, 100.0)

    @property
    def throughput(self) -> float:
        """Average bytes per second since the operation started."""
        elapsed = self.elapsed
        return self.bytes_done / elapsed if elapsed > 0 else 0.0

    @property
    def eta(self) -> float | None:
        """Seconds remaining at the average throughput, None when unknown."""
        if self.status.is_terminal:
            return 0.0 if self.status == OperationStatus.COMPLETED else None
        throughput = self.throughput
        if not self.total_known or throughput <= 0:
            return None
        return max(self.bytes_total - self.bytes_done, 0) / throughput

    def evolve(self, **changes: Any) -> "ProgressSample":
        return replace(self, **changes)

    def to_payload(self) -> dict[str, Any]:
        percentage = self.percentage
        eta = self.eta
        return {
            "operation_id": self.operation_id,
            "operation_kind": str(self.operation_kind),
            "bytes_done": self.bytes_done,
            "bytes_total": self.bytes_total,
            "status": str(self.status),
            "percentage": round(percentage, 2) if percentage is not None else None,
            "throughput": round(self.throughput, 1),
            "eta": round(eta, 1) if eta is not None else None,
            "current_item": self.current_item,
            "message": self.message,
        }


class BroadcastEvent(BaseModel):
    """Envelope fanned out verbatim to every subscriber."""

    kind: EventKind
    operation_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def progress(cls, sample: ProgressSample) -> "BroadcastEvent":
        return cls(kind=EventKind.PROGRESS, operation_id=sample.operation_id, payload=sample.to_payload())

    @classmethod
    def notification(cls, operation_id: str | None, message: str, **extra: Any) -> "BroadcastEvent":
        return cls(kind=EventKind.NOTIFICATION, operation_id=operation_id, payload={"message": message, **extra})

    @classmethod
    def error(cls, operation_id: str | None, message: str, **extra: Any) -> "BroadcastEvent":
        return cls(kind=EventKind.ERROR, operation_id=operation_id, payload={"message": message, **extra})
