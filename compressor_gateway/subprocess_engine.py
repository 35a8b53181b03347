"""Local processing engine launched as an external process."""

from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Dict, List, Mapping, Optional

from .engine import EngineRequest, EngineResult
from .errors import EngineFailure
from .operations import OperationKind, output_content_type, output_suffix, quality_for_level, spec_for
from .storage import StorageConfig, remove_quietly

logger = logging.getLogger(__name__)


def format_quality(quality: float) -> str:
    return f"{quality:.2f}"


def _last_line(text: str) -> Optional[str]:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return lines[-1] if lines else None


class SubprocessEngine:
    """
    Run ``<engine> <inputPath> <outputPath> [<quality>]`` and inspect the result.

    Success is decided by the exit status and the presence of a non-empty
    output file. Anything on stderr is logged but is not a failure by itself.
    """

    name = "subprocess"

    def __init__(
        self,
        storage: StorageConfig,
        command: str,
        commands: Optional[Mapping[str, str]] = None,
        timeout: float = 300.0,
    ):
        """
        Initialize subprocess engine.

        Args:
            storage: Storage layout providing the staging directory
            command: Default engine command line (split with shlex)
            commands: Per-operation overrides keyed by operation wire name
            timeout: Maximum seconds to wait for the engine process
        """
        self.storage = storage
        self.command = command
        self.commands: Dict[str, str] = dict(commands or {})
        self.timeout = timeout

    def command_for(self, operation: OperationKind) -> List[str]:
        raw = self.commands.get(operation.value) or self.command
        argv = shlex.split(raw)
        if not argv:
            raise EngineFailure("Processing engine not configured")
        return argv

    def build_argv(self, request: EngineRequest, output_path) -> List[str]:  # noqa: ANN001
        argv = self.command_for(request.operation) + [str(request.input_path), str(output_path)]
        if spec_for(request.operation).uses_level:
            argv.append(format_quality(quality_for_level(request.level)))
        return argv

    async def transform(self, request: EngineRequest) -> EngineResult:
        output_path = self.storage.staging_output_path(
            request.identifier, output_suffix(request.operation, request.content_type)
        )
        # A previous attempt may have left a partial file behind
        remove_quietly(output_path)

        argv = self.build_argv(request, output_path)
        original_size = request.input_path.stat().st_size
        logger.info(f"Running engine for {request.identifier} ({request.operation.value}): {argv[0]}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            logger.error(f"Engine executable not found: {argv[0]}")
            raise EngineFailure("Processing engine unavailable") from e
        except OSError as e:
            logger.error(f"Failed to launch engine {argv[0]}: {e}")
            raise EngineFailure("Processing engine unavailable") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            remove_quietly(output_path)
            logger.error(f"Engine timed out after {self.timeout}s for {request.identifier}")
            raise EngineFailure("Processing timed out") from None
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            remove_quietly(output_path)
            raise

        error_text = stderr.decode("utf-8", errors="replace") if stderr else ""
        if error_text.strip():
            logger.warning(f"Engine stderr for {request.identifier}: {error_text.strip()}")

        if process.returncode != 0:
            remove_quietly(output_path)
            logger.error(f"Engine exited with status {process.returncode} for {request.identifier}")
            raise EngineFailure(_last_line(error_text) or f"Processing engine exited with status {process.returncode}")

        if not output_path.is_file() or output_path.stat().st_size == 0:
            remove_quietly(output_path)
            logger.error(f"Engine produced no output for {request.identifier}")
            raise EngineFailure("Processing engine produced no output")

        transformed_size = output_path.stat().st_size
        logger.info(
            f"Engine finished for {request.identifier}: {original_size} -> {transformed_size} bytes"
        )
        return EngineResult(
            original_size=original_size,
            transformed_size=transformed_size,
            content_type=output_content_type(request.operation, request.content_type),
            output_path=output_path,
        )
