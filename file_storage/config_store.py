"""Declarative backend configuration records and their JSON persistence"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from security_module.encryption import ParameterEncryption

LOCAL_BACKEND_ID = "local"


class BackendConfig(BaseModel):
    """
    One configured backend.

    Serialized with the persisted field names (``type``, ``config``); Python
    code uses ``kind`` and ``parameters``.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1, description="Unique, stable registry key")
    kind: str = Field(alias="type", min_length=1, description="Selects the adapter type")
    display_name: str = Field(default="", description="Name shown to users")
    icon: str = Field(default="", description="Icon shown to users")
    parameters: dict[str, Any] = Field(default_factory=dict, alias="config", description="Kind-specific parameters")
    is_default: bool = Field(default=False, description="Designated default backend")

    @field_validator("id", "kind")
    @classmethod
    def strip_value(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def default_local_config(root_path: str) -> BackendConfig:
    return BackendConfig(
        id=LOCAL_BACKEND_ID,
        kind="local",
        display_name="Local Storage",
        icon="💾",
        parameters={"root_path": root_path},
        is_default=True,
    )


class BackendConfigStore:
    """JSON array of backend records at ``path``; secret parameters optionally Fernet-encrypted."""

    def __init__(self, path: str | Path, encryption: ParameterEncryption | None = None):
        self.path = Path(path)
        self.encryption = encryption

    def _read_sync(self) -> list[Any] | None:
        if not self.path.exists():
            return None
        data = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        if not isinstance(data, list):
            raise ValueError(f"Backend configuration must be a JSON array: {self.path}")
        return data

    def _write_sync(self, records: list[Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp = self.path.with_suffix(self.path.suffix + ".tmp")
        temp.write_text(json.dumps(records, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(temp, self.path)

    async def read_records(self) -> list[Any] | None:
        """Raw records, or None when the file does not exist yet."""
        return await asyncio.to_thread(self._read_sync)

    def decode(self, record: Any) -> BackendConfig:
        """Validate one raw record and decrypt its secrets (raises on a bad record)."""
        config = BackendConfig.model_validate(record)
        if self.encryption is not None:
            config = config.model_copy(update={"parameters": self.encryption.decrypt_parameters(config.parameters)})
        return config

    def encode(self, config: BackendConfig) -> dict[str, Any]:
        record = config.to_record()
        if self.encryption is not None:
            record["config"] = self.encryption.encrypt_parameters(record["config"])
        return record

    async def save(self, configs: list[BackendConfig], retained: list[Any] | None = None) -> None:
        """Write ``configs`` followed by ``retained`` raw records, which are kept as read."""
        records = [self.encode(config) for config in configs] + list(retained or [])
        await asyncio.to_thread(self._write_sync, records)
