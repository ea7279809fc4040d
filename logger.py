import logging
import os
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from loguru import logger

load_dotenv()

_NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "botocore", "boto3", "s3transfer", "paramiko", "urllib3")


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def wire_client_filter(record):
    """Filter out verbose logs emitted by the storage wire clients."""
    if record["name"].startswith(_NOISY_LOGGERS):
        return record["level"].no >= 30  # Only WARNING and above
    return True


# ---------------------------------------------------------------------------
# Format helpers (two-level separators: | for zones, • for related items)
# ---------------------------------------------------------------------------


def _build_context(record) -> str:
    """Build context zone from extra fields set via logger.contextualize().

    Returns string like: ``Op=transfer-8a5d • Storage=s3-main • Kind=s3``
    or empty string when no context is set.
    """
    extra = record["extra"]
    parts: list[str] = []
    for key, label in [
        ("operation_id", "Op"),
        ("storage_id", "Storage"),
        ("kind", "Kind"),
    ]:
        val = extra.get(key)
        if val is not None:
            parts.append(f"{label}={val}")
    return " • ".join(parts)


def _console_format(record) -> str:
    """Dynamic format for console (colored) with optional context zone."""
    ctx = _build_context(record)
    ctx_zone = f" | {ctx}" if ctx else ""
    return (
        "<green>{time:YY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{extra[module]: <25}</cyan> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan>"
        f"{ctx_zone}"
        " | <level>{message}</level>\n{exception}"
    )


def _file_format(record) -> str:
    """Dynamic format for file (plain text) with optional context zone."""
    ctx = _build_context(record)
    ctx_zone = f" | {ctx}" if ctx else ""
    return (
        "{time:YY-MM-DD HH:mm:ss} | {level: <8} | "
        "{extra[module]: <25} | "
        "{name}:{function}:{line}"
        f"{ctx_zone}"
        " | {message}\n{exception}"
    )


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def setup_logger(log_level: str | None = None, log_file: str | None = None) -> None:
    """Setup logger with two-level separator format and optional JSON sink."""
    console_level = log_level or os.getenv("LOG_LEVEL", "INFO")

    error_log_file = os.getenv("ERROR_LOG_FILE")
    json_log_file = os.getenv("JSON_LOG_FILE")
    if log_file is None:
        log_file = os.getenv("LOG_FILE")

    logger.remove()
    logger.configure(
        extra={
            "module": "app",
            "operation_id": None,
            "storage_id": None,
            "kind": None,
        }
    )

    logger.add(
        sys.stderr,
        format=_console_format,
        level=console_level,
        colorize=True,
        filter=wire_client_filter,
    )

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format=_file_format,
            level="INFO",
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            filter=wire_client_filter,
        )

    if error_log_file:
        Path(error_log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            error_log_file,
            format=_file_format,
            level="ERROR",
            rotation="10 MB",
            retention="14 days",
            compression="zip",
        )

    if json_log_file:
        Path(json_log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            json_log_file,
            serialize=True,
            level="INFO",
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            filter=wire_client_filter,
        )

    # Wire clients log through stdlib logging
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def get_logger(module_name: str | None = None):
    """Get configured logger, optionally bound to a module name."""
    if module_name:
        return logger.bind(module=module_name)
    return logger


def short_operation_id(operation_id: Any) -> str:
    """Compact operation id for log lines: kind prefix plus 8 chars of the suffix."""
    if not operation_id:
        return "unknown"
    kind, sep, suffix = str(operation_id).partition("-")
    return f"{kind}-{suffix[:8]}" if sep else str(operation_id)[:8]


def format_details(**kwargs: Any) -> str:
    """Format key=value pairs joined with • for the details zone.

    Example: "Transfer complete | files=12 • bytes=104857600 • warnings=0"
    """
    if not kwargs:
        return ""
    return " • ".join(f"{k}={v}" for k, v in kwargs.items())


def format_status_change(entity: str, old: str, new: str) -> str:
    """Format a state transition message.

    Example: "Operation: RUNNING → COMPLETED"
    """
    return f"{entity}: {old} → {new}"


def format_size(num_bytes: int) -> str:
    """Human-readable byte count for log lines (binary units)."""
    if num_bytes < 0:
        return "unknown"
    value = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}TB"


setup_logger()
