"""Multi-backend file storage: capability contract, adapters and registry"""

from file_storage.backends.base import ProgressCallback, StorageBackend
from file_storage.backends.local import LocalStorageBackend
from file_storage.entry import EntryDescriptor, EntryKind, SpaceInfo
from file_storage.exceptions import (
    Conflict,
    EndpointBlocked,
    InvalidEndpoint,
    NotFound,
    PermissionDenied,
    QuotaExceeded,
    StorageError,
    Transient,
    Unsupported,
)

__all__ = [
    "Conflict",
    "EndpointBlocked",
    "EntryDescriptor",
    "EntryKind",
    "InvalidEndpoint",
    "LocalStorageBackend",
    "NotFound",
    "PermissionDenied",
    "ProgressCallback",
    "QuotaExceeded",
    "SpaceInfo",
    "StorageBackend",
    "StorageError",
    "Transient",
    "Unsupported",
]
