"""Endpoint security policy: get/set allowLocalAddresses and validate endpoints."""

from typing import Any

from file_storage.exceptions import EndpointBlocked, InvalidEndpoint
from file_storage.registry import StorageRegistry
from logger import get_logger

logger = get_logger()


class SecurityService:
    def __init__(self, registry: StorageRegistry) -> None:
        self.registry = registry

    def get_config(self) -> dict[str, Any]:
        return self.registry.security_config()

    async def set_allow_local_addresses(self, allow: bool) -> dict[str, Any]:
        await self.registry.set_allow_local_addresses(allow)
        if allow:
            logger.warning("Connections to private and loopback addresses are now allowed")
        return self.registry.security_config()

    async def validate_endpoint(self, endpoint: str) -> dict[str, Any]:
        """Diagnostic check of an endpoint against the current policy; never raises."""
        validator = self.registry.validator
        try:
            addresses = await validator.validate(endpoint)
        except EndpointBlocked as e:
            return {
                "endpoint": endpoint,
                "valid": False,
                "error": str(e),
                "category": e.category,
                "address": e.address,
                "blocked_ranges": validator.blocked_ranges(),
            }
        except InvalidEndpoint as e:
            return {"endpoint": endpoint, "valid": False, "error": str(e)}
        return {"endpoint": endpoint, "valid": True, "addresses": addresses}
