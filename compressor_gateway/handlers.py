"""
Request handlers for the artifact lifecycle.

The handlers are independent of the web framework: the FastAPI routes in
``app.py`` only translate form fields and query parameters into these calls
and render the results.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol, Tuple

from .artifact_store import ArtifactStore
from .engine import EngineRequest, ProcessingEngine
from .errors import EngineFailure, InternalError, InvalidInput, NotFound
from .operations import (
    MAX_LEVEL,
    MIN_LEVEL,
    PDF_MIME,
    OperationKind,
    artifact_file_name,
    input_suffix,
    is_accepted,
    normalize_media_type,
)
from .remote_engine import RemoteArtifactResolver
from .storage import (
    PayloadSource,
    StorageConfig,
    new_identifier,
    remove_quietly,
    remove_staging_outputs,
    remove_transient_inputs,
    validate_identifier,
    write_transient_input,
)

logger = logging.getLogger(__name__)


@dataclass
class UploadedPayload:
    filename: str
    content_type: str
    size: Optional[int]
    source: PayloadSource


@dataclass
class TransformResult:
    success: bool
    artifact_id: Optional[str] = None
    original_size: int = 0
    transformed_size: int = 0
    content_type: Optional[str] = None
    error: Optional[str] = None


class ByteStream(Protocol):
    def __aiter__(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


@dataclass
class DownloadResult:
    filename: str
    content_type: str
    size: Optional[int]
    stream: ByteStream


@dataclass
class CleanupResult:
    identifier: str
    artifact_deleted: bool
    inputs_removed: int


class UploadHandler:
    """Validate an upload, run it through the engine and register the artifact."""

    def __init__(self, storage: StorageConfig, store: ArtifactStore, engine: ProcessingEngine):
        self.storage = storage
        self.store = store
        self.engine = engine

    def validate(
        self, payload: Optional[UploadedPayload], operation: OperationKind, level: int
    ) -> Tuple[UploadedPayload, str]:
        """Reject bad requests before touching the disk or the engine. Returns the payload and its media type."""
        if payload is None or payload.source is None or not payload.filename:
            raise InvalidInput("No file provided")
        media_type = normalize_media_type(payload.content_type)
        if not is_accepted(operation, media_type):
            raise InvalidInput(f"Invalid file type '{media_type or 'unknown'}' for {operation.value}")
        limit = self.storage.max_upload_bytes
        if payload.size is not None and payload.size > limit:
            raise InvalidInput(f"File exceeds maximum size of {limit} bytes")
        if level < MIN_LEVEL or level > MAX_LEVEL:
            raise InvalidInput(f"compressionLevel must be between {MIN_LEVEL} and {MAX_LEVEL}")
        return payload, media_type

    async def handle(
        self,
        payload: Optional[UploadedPayload],
        operation: OperationKind,
        level: int,
    ) -> TransformResult:
        payload, media_type = self.validate(payload, operation, level)

        identifier = new_identifier()
        input_path = self.storage.transient_input_path(identifier, input_suffix(media_type))
        try:
            try:
                written = await write_transient_input(input_path, payload.source, self.storage.max_upload_bytes)
            except OSError as e:
                logger.error(f"Failed to stage upload {identifier}: {e}")
                raise InternalError() from e
            if written == 0:
                raise InvalidInput("Uploaded file is empty")
            logger.info(f"Staged upload {identifier} ({written} bytes, {media_type}, {operation.value})")

            request = EngineRequest(
                identifier=identifier,
                operation=operation,
                level=level,
                input_path=input_path,
                original_filename=payload.filename,
                content_type=media_type,
            )
            try:
                result = await self.engine.transform(request)
            except EngineFailure as e:
                logger.warning(f"Transform failed for {identifier}: {e.message}")
                return TransformResult(success=False, original_size=written, error=e.message)

            if result.output_path is not None:
                artifact = await self.store.put(
                    identifier,
                    result.output_path,
                    result.content_type,
                    file_name=artifact_file_name(identifier, operation, media_type),
                )
                return TransformResult(
                    success=True,
                    artifact_id=artifact.identifier,
                    original_size=result.original_size,
                    transformed_size=artifact.size,
                    content_type=artifact.content_type,
                )

            if not result.remote_id:
                logger.error(f"Engine returned neither output nor remote id for {identifier}")
                return TransformResult(success=False, original_size=written, error=EngineFailure.default_message)
            return TransformResult(
                success=True,
                artifact_id=result.remote_id,
                original_size=result.original_size,
                transformed_size=result.transformed_size,
                content_type=result.content_type,
            )
        finally:
            remove_quietly(input_path)
            remove_staging_outputs(self.storage, identifier)


class DownloadHandler:
    """Resolve an identifier to a byte stream. Never deletes."""

    def __init__(self, store: Optional[ArtifactStore] = None, resolver: Optional[RemoteArtifactResolver] = None):
        if store is None and resolver is None:
            raise ValueError("store or resolver required")
        self.store = store
        self.resolver = resolver

    async def handle(self, identifier: str) -> DownloadResult:
        validate_identifier(identifier)
        if self.resolver is not None:
            remote = await self.resolver.fetch(identifier)
            return DownloadResult(
                filename=identifier,
                content_type=remote.content_type or PDF_MIME,
                size=remote.size,
                stream=remote,
            )

        reader = await self.store.open(identifier)
        artifact = reader.artifact
        return DownloadResult(
            filename=identifier,
            content_type=artifact.content_type or PDF_MIME,
            size=artifact.size,
            stream=reader,
        )


class CleanupHandler:
    """Delete an artifact and whatever transient files remain for its identifier."""

    def __init__(
        self,
        storage: StorageConfig,
        store: Optional[ArtifactStore] = None,
        resolver: Optional[RemoteArtifactResolver] = None,
    ):
        if store is None and resolver is None:
            raise ValueError("store or resolver required")
        self.storage = storage
        self.store = store
        self.resolver = resolver

    async def handle(self, identifier: str) -> CleanupResult:
        validate_identifier(identifier)
        artifact_deleted = True
        try:
            if self.resolver is not None:
                await self.resolver.delete(identifier)
            else:
                await self.store.delete(identifier)
        except NotFound:
            artifact_deleted = False

        removed = remove_transient_inputs(self.storage, identifier)
        removed += remove_staging_outputs(self.storage, identifier)
        if not artifact_deleted and removed == 0:
            raise NotFound()

        logger.info(f"Cleaned up {identifier} (artifact_deleted={artifact_deleted}, inputs_removed={removed})")
        return CleanupResult(identifier=identifier, artifact_deleted=artifact_deleted, inputs_removed=removed)
