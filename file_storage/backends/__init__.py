"""Storage backend implementations"""

from file_storage.backends.base import ProgressCallback, StorageBackend
from file_storage.backends.local import LocalStorageBackend

__all__ = [
    "LocalStorageBackend",
    "ProgressCallback",
    "StorageBackend",
]
