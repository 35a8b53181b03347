"""Shared fixtures and engine test doubles."""

import io
import shutil
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from compressor_gateway.artifact_store import ArtifactStore
from compressor_gateway.engine import EngineRequest, EngineResult
from compressor_gateway.errors import EngineFailure
from compressor_gateway.handlers import UploadedPayload
from compressor_gateway.operations import output_content_type, output_suffix
from compressor_gateway.storage import StorageConfig


PDF_BYTES = b"%PDF-1.4\n" + b"0" * 2048 + b"\n%%EOF\n"


class BytesSource:
    """Async ``read(n)`` over an in-memory buffer, like ``UploadFile``."""

    def __init__(self, data: bytes):
        self._buffer = io.BytesIO(data)
        self.reads = 0

    async def read(self, size: int = -1) -> bytes:
        self.reads += 1
        return self._buffer.read(size)


class PassthroughEngine:
    """Copies the input to the staging output instead of transforming it."""

    name = "passthrough"

    def __init__(self, storage: StorageConfig):
        self.storage = storage
        self.requests = []

    async def transform(self, request: EngineRequest) -> EngineResult:
        self.requests.append(request)
        output_path = self.storage.staging_output_path(
            request.identifier, output_suffix(request.operation, request.content_type)
        )
        shutil.copyfile(request.input_path, output_path)
        size = output_path.stat().st_size
        return EngineResult(
            original_size=request.input_path.stat().st_size,
            transformed_size=size,
            content_type=output_content_type(request.operation, request.content_type),
            output_path=output_path,
        )


class FailingEngine:
    """Leaves a partial output behind and fails, like a crashed engine."""

    name = "failing"

    def __init__(self, storage: StorageConfig, message: str = "engine exploded"):
        self.storage = storage
        self.message = message
        self.requests = []

    async def transform(self, request: EngineRequest) -> EngineResult:
        self.requests.append(request)
        partial = self.storage.staging_output_path(request.identifier, ".pdf")
        partial.write_bytes(b"partial")
        raise EngineFailure(self.message)


def make_payload(data: bytes = PDF_BYTES, content_type: str = "application/pdf", filename: str = "report.pdf", size=None):
    return UploadedPayload(
        filename=filename,
        content_type=content_type,
        size=len(data) if size is None else size,
        source=BytesSource(data),
    )


@pytest.fixture
def storage(tmp_path):
    return StorageConfig.from_root(tmp_path / "storage", max_upload_bytes=64 * 1024).initialize()


@pytest.fixture
def store(storage):
    return ArtifactStore(storage)


@pytest.fixture
def passthrough_engine(storage):
    return PassthroughEngine(storage)


@pytest.fixture
def failing_engine(storage):
    return FailingEngine(storage)
