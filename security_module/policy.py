"""Persisted blocked-range policy: one boolean, blocked by default"""

import asyncio
import json
import os
from pathlib import Path

from logger import format_status_change, get_logger

logger = get_logger(__name__)

POLICY_KEY = "allowLocalAddresses"
_LEGACY_KEY = "allowLocalIPs"


class SecurityPolicyStore:
    """JSON record ``{"allowLocalAddresses": false}`` at ``path``, created on first use."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._allow_local_addresses = False
        self._lock = asyncio.Lock()

    @property
    def allow_local_addresses(self) -> bool:
        return self._allow_local_addresses

    def _read_sync(self) -> bool:
        if not self.path.exists():
            self._write_sync(False)
            logger.info(f"Security policy created with local addresses blocked: {self.path}")
            return False
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as e:
            # Unreadable policy falls back to the safe default
            logger.error(f"Security policy unreadable, local addresses blocked: {self.path} | {e}")
            return False
        return bool(data.get(POLICY_KEY, data.get(_LEGACY_KEY, False)))

    def _write_sync(self, allow: bool) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp = self.path.with_suffix(self.path.suffix + ".tmp")
        temp.write_text(json.dumps({POLICY_KEY: allow}, indent=2), encoding="utf-8")
        os.replace(temp, self.path)

    async def load(self) -> bool:
        async with self._lock:
            self._allow_local_addresses = await asyncio.to_thread(self._read_sync)
            return self._allow_local_addresses

    async def set_allow_local_addresses(self, allow: bool) -> None:
        async with self._lock:
            old = self._allow_local_addresses
            await asyncio.to_thread(self._write_sync, allow)
            self._allow_local_addresses = allow
        logger.info(format_status_change("AllowLocalAddresses", str(old), str(allow)))
