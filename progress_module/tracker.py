"""Throttled progress tracking for a single operation"""

import threading
import time
from collections.abc import Callable

from logger import format_status_change, get_logger
from progress_module.events import (
    UNKNOWN_TOTAL,
    BroadcastEvent,
    OperationKind,
    OperationStatus,
    ProgressSample,
)
from progress_module.hub import ProgressHub

logger = get_logger(__name__)


class ProgressTracker:
    """
    Turns byte counters into throttled progress events on a hub.

    The first and the terminal sample are always published; intermediate
    samples are coalesced to at most one per ``throttle_ms``. ``bytes_done``
    never decreases. Callable as an ``on_progress(done, total)`` callback and
    safe to update from worker threads.
    """

    def __init__(
        self,
        hub: ProgressHub,
        operation_id: str,
        operation_kind: OperationKind,
        total: int = UNKNOWN_TOTAL,
        throttle_ms: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.hub = hub
        self.throttle = throttle_ms / 1000
        self._clock = clock
        self._lock = threading.Lock()
        started = clock()
        self._sample = ProgressSample(
            operation_id=operation_id,
            operation_kind=operation_kind,
            bytes_total=total,
            started_at=started,
            sampled_at=started,
        )
        self._last_emit: float | None = None
        self.published = 0

    @property
    def sample(self) -> ProgressSample:
        return self._sample

    @property
    def status(self) -> OperationStatus:
        return self._sample.status

    @property
    def bytes_done(self) -> int:
        return self._sample.bytes_done

    def start(self, total: int | None = None) -> None:
        """Publish the first sample (optionally with a known total)."""
        with self._lock:
            if total is not None:
                self._sample = self._sample.evolve(bytes_total=total)
            self._emit_locked(force=True)

    def set_total(self, total: int) -> None:
        with self._lock:
            self._sample = self._sample.evolve(bytes_total=total)

    def advance(self, delta: int, current_item: str | None = None) -> None:
        with self._lock:
            self._update_locked(self._sample.bytes_done + delta, None, current_item)

    def update(self, done: int, total: int | None = None, current_item: str | None = None) -> None:
        with self._lock:
            self._update_locked(done, total, current_item)

    def __call__(self, done: int, total: int) -> None:
        self.update(done, total if total > 0 else None)

    def _update_locked(self, done: int, total: int | None, current_item: str | None) -> None:
        if self._sample.status.is_terminal:
            return
        changes: dict = {"bytes_done": max(self._sample.bytes_done, done)}
        if total is not None:
            changes["bytes_total"] = total
        if current_item is not None:
            changes["current_item"] = current_item
        self._sample = self._sample.evolve(**changes)
        self._emit_locked(force=False)

    # --- Terminal states ---

    def complete(self, message: str | None = None) -> ProgressSample:
        with self._lock:
            done = self._sample.bytes_done
            total = max(done, self._sample.bytes_total)
            return self._finish_locked(OperationStatus.COMPLETED, message, bytes_done=total, bytes_total=total)

    def fail(self, message: str) -> ProgressSample:
        with self._lock:
            return self._finish_locked(OperationStatus.ERRORED, message)

    def cancel(self, message: str | None = None) -> ProgressSample:
        with self._lock:
            return self._finish_locked(OperationStatus.CANCELLED, message or "Operation cancelled")

    def _finish_locked(self, status: OperationStatus, message: str | None, **changes) -> ProgressSample:
        if self._sample.status.is_terminal:
            return self._sample
        old = self._sample.status
        self._sample = self._sample.evolve(status=status, message=message, **changes)
        self._emit_locked(force=True)
        logger.info(format_status_change(f"Operation {self._sample.operation_id}", old.upper(), status.upper()))
        return self._sample

    def _emit_locked(self, force: bool) -> None:
        now = self._clock()
        if not force and self._last_emit is not None and now - self._last_emit < self.throttle:
            return
        self._sample = self._sample.evolve(sampled_at=now)
        self._last_emit = now
        self.published += 1
        self.hub.publish(BroadcastEvent.progress(self._sample))
