"""Configuration loader for the compressor gateway - loads from environment variables."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from .app import GatewayConfig
from .engine import ENGINE_MODES
from .operations import OperationKind
from .storage import DEFAULT_MAX_UPLOAD_BYTES

ENGINE_COMMAND_PREFIX = "ENGINE_COMMAND_"


def _bool_from_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _number_from_env(name: str, default: float, cast=float):  # noqa: ANN001
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return cast(value.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def engine_command_env_name(operation: OperationKind) -> str:
    """``convert-pdf-to-word`` -> ``ENGINE_COMMAND_CONVERT_PDF_TO_WORD``."""
    return ENGINE_COMMAND_PREFIX + operation.value.upper().replace("-", "_")


def _engine_commands_from_env() -> Dict[str, str]:
    commands: Dict[str, str] = {}
    for operation in OperationKind:
        value = os.getenv(engine_command_env_name(operation))
        if value and value.strip():
            commands[operation.value] = value.strip()
    return commands


def load_config_from_env(env_file: Optional[str] = None) -> GatewayConfig:
    """
    Load GatewayConfig from environment variables.

    Loads .env file if present and reads configuration values.

    Environment Variables:
        GATEWAY_STORAGE_DIR: Root directory for uploads, staging and artifacts (default: gateway_storage)
        MAX_UPLOAD_BYTES: Maximum upload size in bytes (default: 1073741824 = 1GiB)
        ENGINE_MODE: "subprocess" or "remote" (default: subprocess)
        ENGINE_COMMAND: Engine command line for subprocess mode (default: pdf-engine)
        ENGINE_COMMAND_<OPERATION>: Per-operation override, e.g. ENGINE_COMMAND_CONVERT_WORD_TO_PDF
        ENGINE_TIMEOUT: Seconds before an engine call is abandoned (default: 300)
        REMOTE_ENGINE_URL: Remote processing service base URL (default: http://localhost:8080/api)
        REMOTE_TIMEOUT: Timeout for remote download/delete calls in seconds (default: 30)
        RETENTION_ENABLED: Run the retention sweep (default: true)
        RETENTION_MAX_AGE_SECONDS: Artifact lifetime before the sweep purges it (default: 3600)
        RETENTION_INTERVAL_SECONDS: Delay between sweeps (default: 300)
        HOST: Server host (default: 127.0.0.1)
        PORT: Server port (default: 8765)

    Returns:
        GatewayConfig object with values from environment

    Raises:
        ValueError: A numeric variable is malformed or ENGINE_MODE is unknown
    """
    # Load .env file if it exists
    load_dotenv(env_file)

    engine_mode = os.getenv("ENGINE_MODE", "subprocess").strip().lower()
    if engine_mode not in ENGINE_MODES:
        raise ValueError(f"ENGINE_MODE must be one of {list(ENGINE_MODES)}, got {engine_mode!r}")

    config = GatewayConfig(
        storage_dir=Path(os.getenv("GATEWAY_STORAGE_DIR", "gateway_storage")),
        max_upload_bytes=_number_from_env("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES, int),
        # Engine settings
        engine_mode=engine_mode,
        engine_command=os.getenv("ENGINE_COMMAND", "pdf-engine"),
        engine_commands=_engine_commands_from_env(),
        engine_timeout=_number_from_env("ENGINE_TIMEOUT", 300.0),
        remote_base_url=os.getenv("REMOTE_ENGINE_URL", "http://localhost:8080/api"),
        remote_timeout=_number_from_env("REMOTE_TIMEOUT", 30.0),
        # Retention settings
        retention_enabled=_bool_from_env("RETENTION_ENABLED", True),
        retention_max_age=_number_from_env("RETENTION_MAX_AGE_SECONDS", 3600.0),
        retention_interval=_number_from_env("RETENTION_INTERVAL_SECONDS", 300.0),
        # Server settings
        host=os.getenv("HOST", "127.0.0.1"),
        port=_number_from_env("PORT", 8765, int),
    )

    return config
