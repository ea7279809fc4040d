"""Backend configuration management: list, add, remove, set default, test connection."""

from typing import Any

from pydantic import ValidationError

from api.shared.exceptions import InvalidRequest
from file_storage.config_store import BackendConfig
from file_storage.factory import SUPPORTED_KINDS
from file_storage.registry import StorageRegistry
from logger import get_logger
from security_module.encryption import SECRET_PARAMETERS

logger = get_logger()

MASK = "********"


def mask_secrets(config: BackendConfig) -> dict[str, Any]:
    """Record with secret parameters replaced by a mask, for display."""
    record = config.to_record()
    record["config"] = {
        key: MASK if key in SECRET_PARAMETERS and value else value for key, value in record["config"].items()
    }
    return record


class BackendConfigService:
    """Service for managing configured storage backends."""

    def __init__(self, registry: StorageRegistry) -> None:
        self.registry = registry

    @staticmethod
    def parse(data: dict[str, Any] | BackendConfig) -> BackendConfig:
        if isinstance(data, BackendConfig):
            return data
        try:
            return BackendConfig.model_validate(data)
        except ValidationError as e:
            raise InvalidRequest(f"Invalid backend configuration: {e.errors()[0]['msg']}") from e

    def supported_kinds(self) -> list[str]:
        return sorted(SUPPORTED_KINDS)

    def list_configs(self) -> list[dict[str, Any]]:
        default_id = self.registry.safe_default_id()
        records = []
        for config in self.registry.list_all():
            record = mask_secrets(config)
            record["is_default"] = config.id == default_id
            records.append(record)
        return records

    def get_config(self, backend_id: str) -> dict[str, Any]:
        return mask_secrets(self.registry.get_config(backend_id))

    async def add(self, data: dict[str, Any] | BackendConfig) -> dict[str, Any]:
        config = await self.registry.add_configuration(self.parse(data))
        return mask_secrets(config)

    async def remove(self, backend_id: str) -> None:
        await self.registry.remove_configuration(backend_id)

    async def set_default(self, backend_id: str) -> None:
        await self.registry.set_default(backend_id)

    async def test_connection(self, data: dict[str, Any] | BackendConfig) -> dict[str, Any]:
        """Connectivity check for a configuration that is not (yet) registered."""
        try:
            config = self.parse(data)
        except InvalidRequest as e:
            return {"success": False, "message": str(e), "details": {}}
        result = await self.registry.test_connection(config)
        logger.info(f"Connection test: kind={config.kind} | success={result['success']}")
        return result
