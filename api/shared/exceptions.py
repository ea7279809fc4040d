"""Service-level exceptions and the unified error payload for the HTTP layer.

All error payloads share one format: {"error": str, "detail": str, "status": int}.
"""

from typing import Any

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

# Taxonomy → (HTTP status, human-readable category); first match wins
_ERROR_STATUS: tuple[tuple[type[Exception], int, str], ...] = (
    (NotFound, 404, "Not found"),
    (PermissionDenied, 403, "Forbidden"),
    (EndpointBlocked, 403, "Endpoint blocked"),
    (InvalidEndpoint, 400, "Invalid endpoint"),
    (Unsupported, 501, "Not implemented"),
    (Conflict, 409, "Conflict"),
    (QuotaExceeded, 507, "Insufficient storage"),
    (Transient, 503, "Service unavailable"),
)


class ServiceError(Exception):
    """Base exception for service-layer request errors."""


class InvalidRequest(ServiceError):
    """Request arguments rejected before touching any backend (HTTP 400)."""


class OperationNotFound(ServiceError):
    """Unknown background operation id (HTTP 404)."""

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Operation {operation_id} not found")


def http_status_for(exc: Exception) -> tuple[int, str]:
    """HTTP status code and error category for an exception raised by a service."""
    if isinstance(exc, InvalidRequest):
        return 400, "Bad request"
    if isinstance(exc, OperationNotFound):
        return 404, "Not found"
    for exc_type, status_code, category in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code, category
    if isinstance(exc, StorageError):
        return 500, "Storage error"
    return 500, "Internal server error"


def error_payload(exc: Exception) -> dict[str, Any]:
    status_code, category = http_status_for(exc)
    payload: dict[str, Any] = {"error": category, "detail": str(exc), "status": status_code}
    if isinstance(exc, StorageError) and exc.path:
        payload["path"] = exc.path
    if isinstance(exc, EndpointBlocked):
        payload["category"] = exc.category
    return payload
