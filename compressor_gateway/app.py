from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from .artifact_store import ArtifactStore
from .engine import ENGINE_REMOTE, ENGINE_SUBPROCESS, ProcessingEngine, build_engine
from .errors import EngineFailure, GatewayError, InvalidInput
from .handlers import CleanupHandler, DownloadHandler, UploadedPayload, UploadHandler
from .operations import parse_level, parse_operation
from .remote_engine import RemoteArtifactResolver
from .retention import RetentionSweeper
from .storage import DEFAULT_MAX_UPLOAD_BYTES, StorageConfig

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@dataclass
class GatewayConfig:
    storage_dir: Path = Path("gateway_storage")
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    # Engine settings
    engine_mode: str = ENGINE_SUBPROCESS  # "subprocess" or "remote"
    engine_command: str = "pdf-engine"
    engine_commands: Dict[str, str] = field(default_factory=dict)
    engine_timeout: float = 300.0
    remote_base_url: str = "http://localhost:8080/api"
    remote_timeout: float = 30.0
    # Retention settings
    retention_enabled: bool = True
    retention_max_age: float = 3600.0
    retention_interval: float = 300.0
    # Server settings
    host: str = "127.0.0.1"
    port: int = 8765

    def storage_config(self) -> StorageConfig:
        return StorageConfig.from_root(self.storage_dir, max_upload_bytes=self.max_upload_bytes)


@dataclass
class GatewayState:
    config: GatewayConfig
    storage: StorageConfig
    store: ArtifactStore
    engine: ProcessingEngine
    uploads: UploadHandler
    downloads: DownloadHandler
    cleanup: CleanupHandler
    sweeper: Optional[RetentionSweeper] = None
    tasks: List[asyncio.Task] = field(default_factory=list)


class UploadResponse(BaseModel):
    success: bool
    downloadId: str
    downloadUrl: str
    originalSize: int
    transformedSize: int


class DeleteResponse(BaseModel):
    success: bool
    downloadId: str
    message: str


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    config: Optional[GatewayConfig] = None,
    engine: Optional[ProcessingEngine] = None,
    resolver: Optional[RemoteArtifactResolver] = None,
) -> FastAPI:
    cfg = config or GatewayConfig()
    storage = cfg.storage_config().initialize()
    store = ArtifactStore(storage)

    processing_engine = engine or build_engine(cfg, storage)
    if resolver is None and cfg.engine_mode == ENGINE_REMOTE:
        resolver = RemoteArtifactResolver(cfg.remote_base_url, timeout=cfg.remote_timeout)

    state = GatewayState(
        config=cfg,
        storage=storage,
        store=store,
        engine=processing_engine,
        uploads=UploadHandler(storage, store, processing_engine),
        downloads=DownloadHandler(store=store, resolver=resolver),
        cleanup=CleanupHandler(storage, store=store, resolver=resolver),
    )
    # Artifacts live on the remote service in remote mode; it owns their expiry
    if cfg.retention_enabled and resolver is None:
        state.sweeper = RetentionSweeper(
            store,
            storage,
            max_age=cfg.retention_max_age,
            interval=cfg.retention_interval,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN001
        if state.sweeper is not None:
            state.tasks.append(asyncio.create_task(state.sweeper.run()))
        try:
            yield
        finally:
            for task in state.tasks:
                task.cancel()
            for task in state.tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            state.tasks.clear()

    app = FastAPI(title="Compressor Gateway", version=VERSION, lifespan=lifespan)
    app.state.gateway = state

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        return _error_response(exc.status_code, exc.message)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error for {request.method} {request.url.path}")
        return _error_response(500, "Internal server error")

    def get_state() -> GatewayState:
        return state

    @app.post("/upload", response_model=UploadResponse)
    async def upload(
        state: GatewayState = Depends(get_state),
        file: UploadFile = File(None),
        compressionLevel: Optional[str] = Form(None),
        operation: Optional[str] = Form(None),
    ) -> UploadResponse:
        """
        Compress or convert an uploaded document.
        Accepts multipart form-data with the document under "file".
        """
        kind = parse_operation(operation)
        level = parse_level(compressionLevel)
        payload = None
        if file is not None:
            payload = UploadedPayload(
                filename=file.filename or "",
                content_type=file.content_type or "",
                size=file.size,
                source=file,
            )
        result = await state.uploads.handle(payload, kind, level)
        if not result.success or not result.artifact_id:
            raise EngineFailure(result.error)
        return UploadResponse(
            success=True,
            downloadId=result.artifact_id,
            downloadUrl=f"/download?file={result.artifact_id}",
            originalSize=result.original_size,
            transformedSize=result.transformed_size,
        )

    @app.get("/download")
    async def download(
        file: Optional[str] = Query(None),
        state: GatewayState = Depends(get_state),
    ) -> StreamingResponse:
        if not file:
            raise InvalidInput("No file specified")
        result = await state.downloads.handle(file)
        headers = {"Content-Disposition": f"attachment; filename={result.filename}"}
        if result.size is not None:
            headers["Content-Length"] = str(result.size)
        return StreamingResponse(
            result.stream,
            media_type=result.content_type,
            headers=headers,
            background=BackgroundTask(result.stream.aclose),
        )

    @app.delete("/delete", response_model=DeleteResponse)
    async def delete(
        file: Optional[str] = Query(None),
        state: GatewayState = Depends(get_state),
    ) -> DeleteResponse:
        if not file:
            raise InvalidInput("No file specified")
        result = await state.cleanup.handle(file)
        return DeleteResponse(success=True, downloadId=result.identifier, message="Files deleted successfully")

    @app.get("/health")
    async def health_check(state: GatewayState = Depends(get_state)) -> JSONResponse:
        """
        Health check endpoint.

        Returns status of:
        - Gateway service (API server)
        - Storage directories
        - Retention sweep
        """
        directories = {
            "uploads": state.storage.uploads_dir,
            "staging": state.storage.staging_dir,
            "artifacts": state.storage.artifacts_dir,
        }
        writable = all(path.is_dir() and os.access(path, os.W_OK) for path in directories.values())
        storage_status = "healthy" if writable else "unhealthy"

        sweeper_status = "disabled"
        if state.sweeper is not None:
            alive = any(not task.done() for task in state.tasks)
            sweeper_status = "healthy" if alive else "stopped"

        overall_status = "healthy"
        if sweeper_status == "stopped":
            overall_status = "degraded"
        if storage_status != "healthy":
            overall_status = "unhealthy"

        response = {
            "status": overall_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {
                "gateway": {"status": "healthy", "version": VERSION},
                "engine": {"mode": state.config.engine_mode, "name": getattr(state.engine, "name", "custom")},
                "storage": {"status": storage_status, "artifacts": state.store.count()},
                "retention": {
                    "status": sweeper_status,
                    "max_age_seconds": state.config.retention_max_age,
                    "interval_seconds": state.config.retention_interval,
                },
            },
        }
        status_code = 200 if overall_status in ["healthy", "degraded"] else 503
        return JSONResponse(content=response, status_code=status_code)

    return app
