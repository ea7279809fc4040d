"""Application context: wires settings, registry, hub, engines and services.

One AppContext per process. The excluded HTTP layer builds it at startup
and closes it at shutdown:

    context = await AppContext.build()
    ...
    await context.close()
"""

from dataclasses import dataclass

from api.services.backend_config_service import BackendConfigService
from api.services.file_service import FileService
from api.services.operation_service import OperationService
from api.services.security_service import SecurityService
from api.tasks.operations import OperationRunner
from archive_module.engine import ArchiveEngine
from config.settings import Settings, get_settings
from file_storage.config_store import BackendConfigStore
from file_storage.registry import LoadReport, StorageRegistry
from logger import format_details, get_logger
from progress_module.hub import ProgressHub
from security_module.encryption import ParameterEncryption
from security_module.endpoint_validator import Resolver
from security_module.policy import SecurityPolicyStore
from transfer_module.orchestrator import TransferOrchestrator

logger = get_logger()


@dataclass
class AppContext:
    """Process-wide collaborators and the services built on them."""

    settings: Settings
    registry: StorageRegistry
    hub: ProgressHub
    orchestrator: TransferOrchestrator
    archive: ArchiveEngine
    runner: OperationRunner
    files: FileService
    backends: BackendConfigService
    security: SecurityService
    operations: OperationService
    load_report: LoadReport | None = None

    @classmethod
    async def build(cls, settings: Settings | None = None, resolver: Resolver | None = None) -> "AppContext":
        """Load the security policy and backend configuration, then wire everything."""
        settings = settings or get_settings()

        policy = SecurityPolicyStore(settings.security.policy_path)
        await policy.load()

        store = BackendConfigStore(settings.storage.config_path, ParameterEncryption.from_settings(settings.security))
        registry = StorageRegistry(
            store,
            policy,
            settings.storage,
            resolver=resolver,
            resolve_timeout=settings.security.resolve_timeout,
        )
        load_report = await registry.load_configuration()

        hub = ProgressHub(settings.progress.subscriber_queue_size)
        orchestrator = TransferOrchestrator(registry)
        archive = ArchiveEngine(
            registry,
            buffer_size=settings.storage.archive_buffer_size,
            upload_chunk_size=settings.storage.transfer_buffer_size,
            staging_dir=settings.storage.staging_dir,
        )
        runner = OperationRunner(hub, settings.progress.throttle_ms)

        logger.info(
            f"{settings.app.name} v{settings.app.version} ready | "
            f"{format_details(backends=len(load_report.loaded), skipped=len(load_report.skipped))}"
        )
        return cls(
            settings=settings,
            registry=registry,
            hub=hub,
            orchestrator=orchestrator,
            archive=archive,
            runner=runner,
            files=FileService(registry, orchestrator),
            backends=BackendConfigService(registry),
            security=SecurityService(registry),
            operations=OperationService(registry, orchestrator, archive, runner, hub),
            load_report=load_report,
        )

    async def close(self) -> None:
        await self.runner.shutdown()
        self.hub.close()
        await self.registry.close_all()
        logger.info(f"{self.settings.app.name} stopped")
