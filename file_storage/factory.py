"""Backend factory: validates the endpoint, then builds and connects the adapter for a kind"""

from typing import Any

from config.settings import StorageSettings, get_settings
from file_storage.backends.base import StorageBackend
from file_storage.config_store import BackendConfig
from file_storage.exceptions import InvalidEndpoint, Unsupported
from logger import get_logger
from security_module.endpoint_validator import EndpointValidator

logger = get_logger(__name__)

SUPPORTED_KINDS = ("local", "nfs", "s3", "gdrive", "onedrive", "ftp", "sftp", "webdav", "redis", "rdb")


def _require(parameters: dict[str, Any], key: str, kind: str) -> Any:
    value = parameters.get(key)
    if value in (None, ""):
        raise InvalidEndpoint(f"Missing required parameter '{key}' for {kind} backend")
    return value


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def endpoint_of(kind: str, parameters: dict[str, Any]) -> str | None:
    """Operator-supplied network endpoint of a configuration, if the kind has one."""
    match kind:
        case "s3":
            # Public AWS endpoint when unset
            return parameters.get("endpoint") or None
        case "ftp" | "sftp":
            return parameters.get("host")
        case "webdav":
            return parameters.get("base_url")
        case "nfs":
            return parameters.get("server")
        case "redis" | "rdb":
            return parameters.get("address") or "localhost:6379"
        case _:
            return None


def build_backend(config: BackendConfig, settings: StorageSettings | None = None) -> StorageBackend:
    """Construct (but do not connect) the adapter for a configuration."""
    settings = settings or get_settings().storage
    p = config.parameters
    chunk_size = settings.transfer_buffer_size
    http_kwargs = {
        "chunk_size": chunk_size,
        "timeout": settings.http_timeout,
        "connect_timeout": settings.http_connect_timeout,
    }

    match config.kind:
        case "local":
            from file_storage.backends.local import LocalStorageBackend

            return LocalStorageBackend(
                root_path=p.get("root_path") or settings.default_local_root,
                max_size_gb=p.get("max_size_gb"),
                chunk_size=chunk_size,
            )

        case "nfs":
            from file_storage.backends.nfs import NFSStorageBackend

            return NFSStorageBackend(
                server=_require(p, "server", "nfs"),
                export_path=p.get("export_path") or _require(p, "export", "nfs"),
                mount_point=_require(p, "mount_point", "nfs"),
                read_only=_as_bool(p.get("read_only")),
                options=p.get("options", ""),
                mount_timeout=settings.mount_timeout,
                chunk_size=chunk_size,
            )

        case "s3":
            from file_storage.backends.s3 import S3StorageBackend

            return S3StorageBackend(
                bucket=_require(p, "bucket", "s3"),
                region=p.get("region"),
                endpoint_url=p.get("endpoint") or None,
                access_key_id=p.get("access_key"),
                secret_access_key=p.get("secret_key"),
                session_token=p.get("session_token"),
                prefix=p.get("prefix", ""),
                use_path_style=_as_bool(p.get("use_path_style")),
                verify_ssl=_as_bool(p.get("verify_ssl"), default=True),
                chunk_size=chunk_size,
            )

        case "gdrive":
            from file_storage.backends.gdrive import GoogleDriveBackend
            from file_storage.backends.oauth import GOOGLE_TOKEN_URL, OAuthTokenProvider

            provider = OAuthTokenProvider(
                token_url=p.get("token_url") or GOOGLE_TOKEN_URL,
                client_id=_require(p, "client_id", "gdrive"),
                client_secret=_require(p, "client_secret", "gdrive"),
                refresh_token=_require(p, "refresh_token", "gdrive"),
                access_token=p.get("access_token"),
            )
            return GoogleDriveBackend(
                root_folder_id=p.get("root_folder_id") or "root",
                token_provider=provider,
                **http_kwargs,
            )

        case "onedrive":
            from file_storage.backends.oauth import MICROSOFT_TOKEN_URL, OAuthTokenProvider
            from file_storage.backends.onedrive import OneDriveBackend

            provider = OAuthTokenProvider(
                token_url=p.get("token_url") or MICROSOFT_TOKEN_URL,
                client_id=_require(p, "client_id", "onedrive"),
                client_secret=_require(p, "client_secret", "onedrive"),
                refresh_token=_require(p, "refresh_token", "onedrive"),
                access_token=p.get("access_token"),
                scope="Files.ReadWrite.All offline_access",
            )
            return OneDriveBackend(
                base_folder=p.get("root_path") or "/",
                token_provider=provider,
                **http_kwargs,
            )

        case "ftp":
            from file_storage.backends.ftp import FTPStorageBackend

            return FTPStorageBackend(
                host=_require(p, "host", "ftp"),
                port=int(p.get("port") or 21),
                username=p.get("username") or "anonymous",
                password=p.get("password") or "",
                root_path=p.get("root_path") or "/",
                passive=_as_bool(p.get("passive"), default=True),
                use_tls=_as_bool(p.get("use_tls")),
                timeout=settings.ftp_timeout,
                chunk_size=chunk_size,
            )

        case "sftp":
            from file_storage.backends.sftp import SFTPStorageBackend

            return SFTPStorageBackend(
                host=_require(p, "host", "sftp"),
                port=int(p.get("port") or 22),
                username=_require(p, "username", "sftp"),
                password=p.get("password"),
                private_key_path=p.get("private_key_path"),
                known_hosts_path=p.get("known_hosts_path"),
                root_path=p.get("root_path") or "/",
                timeout=settings.ftp_timeout,
                chunk_size=chunk_size,
            )

        case "webdav":
            from file_storage.backends.webdav import WebDAVStorageBackend

            return WebDAVStorageBackend(
                base_url=_require(p, "base_url", "webdav"),
                username=p.get("username", ""),
                password=p.get("password", ""),
                **http_kwargs,
            )

        case "redis" | "rdb":
            from file_storage.backends.redis_kv import RedisStorageBackend

            max_mb = int(p.get("max_file_size_mb") or settings.redis_max_file_size_mb)
            return RedisStorageBackend(
                address=p.get("address") or "localhost:6379",
                password=p.get("password"),
                db=int(p.get("db") or 0),
                namespace=p.get("namespace") or "fs",
                max_file_size=max_mb * 1024 * 1024,
                chunk_size=min(chunk_size, settings.redis_chunk_size),
            )

        case _:
            raise Unsupported(f"Unknown storage kind: {config.kind}")


async def create_backend(
    config: BackendConfig,
    validator: EndpointValidator,
    settings: StorageSettings | None = None,
) -> StorageBackend:
    """
    Validate the configuration's endpoint, then build and connect its adapter.

    The endpoint check runs before any connection attempt; a blocked endpoint
    never reaches adapter construction.
    """
    if config.kind not in SUPPORTED_KINDS:
        raise Unsupported(f"Unknown storage kind: {config.kind}")

    endpoint = endpoint_of(config.kind, config.parameters)
    if endpoint is not None:
        await validator.validate(str(endpoint))

    backend = build_backend(config, settings)
    try:
        await backend.connect()
    except BaseException:
        await backend.close()
        raise
    logger.info(f"Storage backend ready: id={config.id} | kind={config.kind} | root={backend.root_path}")
    return backend
