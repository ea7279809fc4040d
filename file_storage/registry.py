"""Storage registry: sole owner of live adapters and their declarative configuration"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from config.settings import StorageSettings
from file_storage.backends.base import StorageBackend
from file_storage.config_store import LOCAL_BACKEND_ID, BackendConfig, BackendConfigStore, default_local_config
from file_storage.exceptions import Conflict, EndpointBlocked, NotFound, PermissionDenied, StorageError
from file_storage.factory import create_backend
from logger import format_details, get_logger
from security_module.endpoint_validator import EndpointValidator, Resolver
from security_module.policy import POLICY_KEY, SecurityPolicyStore

logger = get_logger(__name__)


@dataclass
class LoadReport:
    """Outcome of a best-effort configuration load."""

    loaded: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    created_default: bool = False


class StorageRegistry:
    """
    Keyed collection of live adapters plus their configuration records.

    Mutations are serialized by ``_lock``; readers get point-in-time snapshots
    and never see the underlying maps.
    """

    def __init__(
        self,
        store: BackendConfigStore,
        policy: SecurityPolicyStore,
        settings: StorageSettings,
        resolver: Resolver | None = None,
        resolve_timeout: float = 5.0,
    ):
        self.store = store
        self.policy = policy
        self.settings = settings
        self._resolver = resolver
        self._resolve_timeout = resolve_timeout
        self._backends: dict[str, StorageBackend] = {}
        self._configs: dict[str, BackendConfig] = {}
        # raw records skipped at load, written back unchanged on every persist
        self._retained: list[tuple[str, Any]] = []
        self._lock = asyncio.Lock()
        self._validator = self._build_validator(policy.allow_local_addresses)

    def _build_validator(self, allow_local_addresses: bool) -> EndpointValidator:
        return EndpointValidator(allow_local_addresses, resolver=self._resolver, timeout=self._resolve_timeout)

    @property
    def validator(self) -> EndpointValidator:
        return self._validator

    # --- Lookup ---

    def get(self, backend_id: str) -> StorageBackend:
        backend = self._backends.get(backend_id)
        if backend is None:
            raise NotFound(f"Storage {backend_id} not found")
        return backend

    def get_config(self, backend_id: str) -> BackendConfig:
        config = self._configs.get(backend_id)
        if config is None:
            raise NotFound(f"Storage {backend_id} not found")
        return config.model_copy(deep=True)

    def list_all(self) -> list[BackendConfig]:
        return [config.model_copy(deep=True) for config in list(self._configs.values())]

    def default_id(self) -> str:
        for backend_id, config in list(self._configs.items()):
            if config.is_default and backend_id in self._backends:
                return backend_id
        if LOCAL_BACKEND_ID in self._backends:
            return LOCAL_BACKEND_ID
        raise NotFound("No default storage found")

    def safe_default_id(self) -> str | None:
        try:
            return self.default_id()
        except NotFound:
            return None

    def retained_ids(self) -> list[str]:
        """Labels of configuration records that failed to load but are kept on file."""
        return [label for label, _ in self._retained]

    def get_default(self) -> StorageBackend:
        return self.get(self.default_id())

    # --- Mutation ---

    async def register(self, backend_id: str, backend: StorageBackend, config: BackendConfig | None = None) -> None:
        """Register an already-constructed adapter (not persisted unless a config is given)."""
        config = config or BackendConfig(id=backend_id, kind=backend.kind, display_name=backend_id)
        async with self._lock:
            if backend_id in self._backends:
                raise Conflict(f"Storage with ID {backend_id} already exists")
            if config.is_default:
                self._clear_default()
            self._backends[backend_id] = backend
            self._configs[backend_id] = config

    def _clear_default(self) -> None:
        for backend_id, config in self._configs.items():
            if config.is_default:
                self._configs[backend_id] = config.model_copy(update={"is_default": False})
        for position, (label, record) in enumerate(self._retained):
            if isinstance(record, dict) and record.get("is_default"):
                self._retained[position] = (label, {**record, "is_default": False})

    async def set_default(self, backend_id: str) -> None:
        async with self._lock:
            if backend_id not in self._backends:
                raise NotFound(f"Storage {backend_id} not found")
            self._clear_default()
            self._configs[backend_id] = self._configs[backend_id].model_copy(update={"is_default": True})
            await self._persist_locked()
        logger.info(f"Default storage set: {backend_id}")

    async def load_configuration(self) -> LoadReport:
        """
        Load, validate and construct every configured backend.

        Best-effort: a bad entry (malformed record, unknown kind, blocked
        endpoint, connection failure) is logged and skipped, and its raw record
        is kept on file. A missing file is replaced with one default local
        backend record.
        """
        report = LoadReport()
        try:
            records = await self.store.read_records()
        except (OSError, ValueError) as e:
            raise StorageError(f"Backend configuration unreadable: {e}", str(self.store.path)) from e

        if records is None:
            records = [default_local_config(self.settings.default_local_root).to_record()]
            report.created_default = True
            logger.info(f"No backend configuration found, creating default: {self.store.path}")

        for position, record in enumerate(records, 1):
            label = record.get("id", f"#{position}") if isinstance(record, dict) else f"#{position}"
            try:
                config = self.store.decode(record)
            except ValidationError as e:
                self._skip(report, str(label), f"invalid record: {e.errors()[0]['msg']}", record)
                continue
            except ValueError as e:
                self._skip(report, str(label), f"invalid record: {e}", record)
                continue
            if config.id in self._backends or config.id in report.loaded:
                self._skip(report, config.id, "duplicate id")
                continue

            with logger.contextualize(storage_id=config.id, kind=config.kind):
                try:
                    backend = await create_backend(config, self._validator, self.settings)
                except EndpointBlocked as e:
                    self._skip(report, config.id, f"endpoint blocked ({e.category})", record)
                    continue
                except (StorageError, OSError) as e:
                    self._skip(report, config.id, str(e), record)
                    continue

            async with self._lock:
                if config.is_default and any(c.is_default for c in self._configs.values()):
                    logger.warning(f"Multiple default storages configured, keeping first: ignored={config.id}")
                    config = config.model_copy(update={"is_default": False})
                self._backends[config.id] = backend
                self._configs[config.id] = config
            report.loaded.append(config.id)

        if report.created_default:
            await self.persist()

        logger.info(
            f"Storage configuration loaded | "
            f"{format_details(loaded=len(report.loaded), skipped=len(report.skipped), default=self.safe_default_id())}"
        )
        return report

    def _skip(self, report: LoadReport, label: str, reason: str, record: Any = None) -> None:
        report.skipped[label] = reason
        if record is not None:
            self._retained.append((label, record))
        logger.warning(f"Skipping storage configuration: id={label} | reason={reason}")

    async def add_configuration(self, config: BackendConfig) -> BackendConfig:
        """Validate, construct and register a new backend, then persist. Duplicate id raises Conflict."""
        if config.id in self._configs or config.id in self.retained_ids():
            raise Conflict(f"Storage with ID {config.id} already exists")

        with logger.contextualize(storage_id=config.id, kind=config.kind):
            backend = await create_backend(config, self._validator, self.settings)

        async with self._lock:
            if config.id in self._configs:
                await backend.close()
                raise Conflict(f"Storage with ID {config.id} already exists")
            if config.is_default:
                self._clear_default()
            self._backends[config.id] = backend
            self._configs[config.id] = config
            await self._persist_locked()
        logger.info(f"Storage added: id={config.id} | kind={config.kind}")
        return config.model_copy(deep=True)

    async def remove_configuration(self, backend_id: str) -> None:
        """Unregister, persist and close a backend. The local and default backends cannot be removed."""
        async with self._lock:
            if backend_id == LOCAL_BACKEND_ID:
                raise PermissionDenied("Cannot remove local storage")
            config = self._configs.get(backend_id)
            if config is None:
                if backend_id not in self.retained_ids():
                    raise NotFound(f"Storage {backend_id} not found")
                self._retained = [(label, record) for label, record in self._retained if label != backend_id]
                await self._persist_locked()
                logger.info(f"Unloaded storage record removed: {backend_id}")
                return
            if config.is_default:
                raise PermissionDenied(f"Cannot remove default storage {backend_id}; set another default first")
            backend = self._backends.pop(backend_id, None)
            del self._configs[backend_id]
            await self._persist_locked()

        if backend is not None:
            await self._close_backend(backend_id, backend)
        logger.info(f"Storage removed: {backend_id}")

    async def persist(self) -> None:
        async with self._lock:
            await self._persist_locked()

    async def _persist_locked(self) -> None:
        await self.store.save(list(self._configs.values()), [record for _, record in self._retained])

    async def close_all(self) -> None:
        async with self._lock:
            backends = list(self._backends.items())
            self._backends.clear()
        for backend_id, backend in backends:
            await self._close_backend(backend_id, backend)

    async def _close_backend(self, backend_id: str, backend: StorageBackend) -> None:
        try:
            await backend.close()
        except (StorageError, OSError) as e:
            logger.warning(f"Error closing storage {backend_id}: {e}")

    # --- Diagnostics ---

    async def test_connection(self, config: BackendConfig) -> dict[str, Any]:
        """Build and connect a throwaway adapter for ``config``; never raises for backend errors."""
        try:
            backend = await create_backend(config, self._validator, self.settings)
        except EndpointBlocked as e:
            return {"success": False, "message": str(e), "details": {"category": e.category, "address": e.address}}
        except (StorageError, OSError) as e:
            return {"success": False, "message": str(e), "details": {"error_type": type(e).__name__}}

        try:
            space = await backend.available_and_total_space()
            details = {**backend.info(), "space": space.to_dict()}
        except (StorageError, OSError) as e:
            details = {**backend.info(), "space_error": str(e)}
        finally:
            await backend.close()
        return {"success": True, "message": "Connection successful", "details": details}

    # --- Security policy ---

    def security_config(self) -> dict[str, Any]:
        return {
            POLICY_KEY: self._validator.allow_local_addresses,
            "blockedRanges": self._validator.blocked_ranges(),
        }

    async def set_allow_local_addresses(self, allow: bool) -> None:
        await self.policy.set_allow_local_addresses(allow)
        async with self._lock:
            self._validator = self._build_validator(allow)
