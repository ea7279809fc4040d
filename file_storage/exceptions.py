"""Storage error taxonomy shared by every backend adapter"""


class StorageError(Exception):
    """Base exception for storage operations."""

    def __init__(self, message: str, path: str | None = None):
        self.message = message
        self.path = path
        super().__init__(f"{message}: {path}" if path else message)


class NotFound(StorageError):
    """Entry or configuration does not exist."""


class PermissionDenied(StorageError):
    """Backend refused the operation or the path escapes the adapter root."""


class Unsupported(StorageError):
    """Operation or format is not implemented."""


class Conflict(StorageError):
    """Entry or configuration already exists."""


class Transient(StorageError):
    """Retryable backend or network failure."""


class QuotaExceeded(StorageError):
    """Write would exceed an adapter-side size limit."""


class InvalidEndpoint(StorageError):
    """Endpoint string cannot be parsed or resolved."""


class EndpointBlocked(StorageError):
    """Endpoint resolves into a blocked address range."""

    def __init__(self, endpoint: str, address: str, category: str):
        self.endpoint = endpoint
        self.address = address
        self.category = category
        super().__init__(f"Endpoint resolves to a {category} address ({address}) and local addresses are not allowed")


def error_from_status(status_code: int, message: str, path: str | None = None) -> StorageError:
    """Map an HTTP status returned by a REST backend onto the taxonomy."""
    match status_code:
        case 404 | 410:
            return NotFound(message, path)
        case 401 | 403:
            return PermissionDenied(message, path)
        case 409 | 412:
            return Conflict(message, path)
        case 405 | 501:
            return Unsupported(message, path)
        case 507:
            return QuotaExceeded(message, path)
        case 408 | 429:
            return Transient(message, path)
        case _ if status_code >= 500:
            return Transient(message, path)
        case _:
            return StorageError(message, path)
