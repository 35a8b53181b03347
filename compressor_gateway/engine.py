"""Processing engine contract and strategy selection."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol

from .operations import OperationKind

if TYPE_CHECKING:
    from .app import GatewayConfig
    from .storage import StorageConfig

ENGINE_SUBPROCESS = "subprocess"
ENGINE_REMOTE = "remote"
ENGINE_MODES = (ENGINE_SUBPROCESS, ENGINE_REMOTE)


@dataclass(frozen=True)
class EngineRequest:
    identifier: str
    operation: OperationKind
    level: int
    input_path: Path
    original_filename: str
    content_type: str


@dataclass(frozen=True)
class EngineResult:
    """
    Normalized outcome of a transform.

    Local engines fill ``output_path`` (a staging file the caller moves into the
    artifact store); the remote engine fills ``remote_id`` instead, because the
    remote service keeps the artifact.
    """

    original_size: int
    transformed_size: int
    content_type: str
    output_path: Optional[Path] = None
    remote_id: Optional[str] = None


class ProcessingEngine(Protocol):
    """Capability shared by every engine strategy. Failures raise ``EngineFailure``."""

    name: str

    async def transform(self, request: EngineRequest) -> EngineResult: ...


def build_engine(config: "GatewayConfig", storage: "StorageConfig") -> ProcessingEngine:
    if config.engine_mode == ENGINE_SUBPROCESS:
        from .subprocess_engine import SubprocessEngine

        return SubprocessEngine(
            storage=storage,
            command=config.engine_command,
            commands=config.engine_commands,
            timeout=config.engine_timeout,
        )
    if config.engine_mode == ENGINE_REMOTE:
        from .remote_engine import RemoteEngine

        return RemoteEngine(base_url=config.remote_base_url, timeout=config.engine_timeout)
    raise ValueError(f"Unknown engine mode '{config.engine_mode}'. Supported: {list(ENGINE_MODES)}")
