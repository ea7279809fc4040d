"""Progress broadcast: samples, throttled trackers, multicast hub and cancellation"""

from progress_module.cancellation import CancellationToken, OperationCancelled
from progress_module.events import (
    UNKNOWN_TOTAL,
    BroadcastEvent,
    EventKind,
    OperationKind,
    OperationStatus,
    ProgressSample,
)
from progress_module.hub import ProgressHub, Subscription
from progress_module.tracker import ProgressTracker

__all__ = [
    "UNKNOWN_TOTAL",
    "BroadcastEvent",
    "CancellationToken",
    "EventKind",
    "OperationCancelled",
    "OperationKind",
    "OperationStatus",
    "ProgressHub",
    "ProgressSample",
    "ProgressTracker",
    "Subscription",
]
