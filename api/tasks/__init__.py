"""Background operation tasks"""

from .operations import OperationHandle, OperationRunner

__all__ = ["OperationHandle", "OperationRunner"]
