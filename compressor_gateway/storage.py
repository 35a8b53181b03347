"""
Storage layout shared by the handlers and the retention sweep.

Provides:
- StorageConfig, built once at startup, with idempotent directory creation
- Identifier generation and validation
- Streaming of uploaded payloads into the transient input area
- Best-effort removal of transient inputs and staging outputs
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import aiofiles

from .errors import InvalidInput, NotFound

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
DEFAULT_MAX_UPLOAD_BYTES = 1024 * 1024 * 1024

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


class PayloadSource(Protocol):
    """Anything with an async ``read(n)``, e.g. ``fastapi.UploadFile``."""

    async def read(self, size: int = -1) -> bytes: ...


@dataclass(frozen=True)
class StorageConfig:
    root: Path
    uploads_dir: Path
    staging_dir: Path
    artifacts_dir: Path
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES

    @classmethod
    def from_root(cls, root: Path, max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES) -> "StorageConfig":
        base = Path(root).resolve()
        return cls(
            root=base,
            uploads_dir=base / "uploads",
            staging_dir=base / "staging",
            artifacts_dir=base / "artifacts",
            max_upload_bytes=max_upload_bytes,
        )

    def initialize(self) -> "StorageConfig":
        for path in (self.uploads_dir, self.staging_dir, self.artifacts_dir):
            path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Storage initialized at {self.root}")
        return self

    def transient_input_path(self, identifier: str, suffix: str) -> Path:
        return self.uploads_dir / f"{identifier}{suffix}"

    def staging_output_path(self, identifier: str, suffix: str) -> Path:
        return self.staging_dir / f"{identifier}{suffix}"


def new_identifier() -> str:
    return uuid.uuid4().hex


def validate_identifier(raw: str) -> str:
    """
    Check that an identifier is a safe opaque token.

    A malformed identifier can never resolve to an artifact, so it is reported
    as ``NotFound`` rather than as a client error.
    """
    if not raw or ".." in raw or not _IDENTIFIER_RE.match(raw):
        raise NotFound()
    return raw


async def write_transient_input(path: Path, source: PayloadSource, limit: int) -> int:
    """
    Stream an uploaded payload to ``path``.

    Args:
        path: Destination inside the uploads directory
        source: Object with an async ``read(n)``
        limit: Maximum number of bytes accepted

    Returns:
        Number of bytes written

    Raises:
        InvalidInput: Payload exceeded ``limit`` (the partial file is removed)
    """
    written = 0
    try:
        async with aiofiles.open(path, "wb") as out:
            while True:
                chunk = await source.read(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > limit:
                    raise InvalidInput(f"File exceeds maximum size of {limit} bytes")
                await out.write(chunk)
    except BaseException:
        remove_quietly(path)
        raise
    return written


def remove_quietly(path: Path) -> bool:
    """Delete a file; a missing file is not an error, other faults are logged."""
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
        return False


def _remove_matching(directory: Path, identifier: str) -> int:
    removed = 0
    for path in directory.glob(f"{identifier}.*"):
        if path.is_file() and remove_quietly(path):
            removed += 1
    return removed


def remove_transient_inputs(storage: StorageConfig, identifier: str) -> int:
    return _remove_matching(storage.uploads_dir, identifier)


def remove_staging_outputs(storage: StorageConfig, identifier: str) -> int:
    return _remove_matching(storage.staging_dir, identifier)
