"""Tests for remote delegation."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from compressor_gateway.engine import EngineRequest
from compressor_gateway.errors import EngineFailure, NotFound
from compressor_gateway.operations import OperationKind
from compressor_gateway.remote_engine import RemoteArtifactResolver, RemoteEngine
from compressor_gateway.storage import CHUNK_SIZE

from conftest import PDF_BYTES


@pytest.fixture
def remote_engine():
    return RemoteEngine(base_url="http://engine.local/api/", timeout=5.0)


@pytest.fixture
def engine_request(storage):
    identifier = "b" * 32
    input_path = storage.transient_input_path(identifier, ".pdf")
    input_path.write_bytes(PDF_BYTES)
    return EngineRequest(
        identifier=identifier,
        operation=OperationKind.COMPRESS_PDF,
        level=70,
        input_path=input_path,
        original_filename="report.pdf",
        content_type="application/pdf",
    )


def _response(status_code, body=None, content=b"", headers=None):
    response = MagicMock()
    response.status_code = status_code
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    response.content = content
    response.headers = headers or {}
    return response


@pytest.mark.asyncio
async def test_successful_delegation_relays_remote_file_name(remote_engine, engine_request):
    mock_response = _response(
        200,
        {"success": True, "fileName": "remote-123_compressed.pdf", "originalSize": 4096, "compressedSize": 1024},
    )

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.post.return_value = mock_response
        mock_client_class.return_value.__aenter__.return_value = mock_client

        result = await remote_engine.transform(engine_request)

        assert result.remote_id == "remote-123_compressed.pdf"
        assert result.output_path is None
        assert result.original_size == 4096
        assert result.transformed_size == 1024
        assert result.content_type == "application/pdf"

        call_args = mock_client.post.call_args
        assert call_args[0][0] == "http://engine.local/api/compress"
        assert call_args[1]["data"] == {"compressionLevel": "70"}
        filename, _, content_type = call_args[1]["files"]["file"]
        assert filename == "report.pdf"
        assert content_type == "application/pdf"


@pytest.mark.asyncio
async def test_operation_selects_remote_path(remote_engine, engine_request):
    request = EngineRequest(
        identifier=engine_request.identifier,
        operation=OperationKind.REMOVE_WATERMARK_PDF,
        level=50,
        input_path=engine_request.input_path,
        original_filename="report.pdf",
        content_type="application/pdf",
    )
    assert remote_engine.endpoint_for(request) == "http://engine.local/api/watermark/remove/pdf"


@pytest.mark.asyncio
async def test_missing_sizes_fall_back(remote_engine, engine_request):
    mock_response = _response(200, {"success": True, "fileName": "remote.pdf"})

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.post.return_value = mock_response
        mock_client_class.return_value.__aenter__.return_value = mock_client

        result = await remote_engine.transform(engine_request)

        assert result.original_size == len(PDF_BYTES)
        assert result.transformed_size == 0


@pytest.mark.asyncio
async def test_non_success_status_surfaces_remote_message(remote_engine, engine_request):
    mock_response = _response(500, {"success": False, "message": "Compression failed: corrupt PDF"})

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.post.return_value = mock_response
        mock_client_class.return_value.__aenter__.return_value = mock_client

        with pytest.raises(EngineFailure) as exc_info:
            await remote_engine.transform(engine_request)

        assert exc_info.value.message == "Compression failed: corrupt PDF"
        mock_client.post.assert_called_once()


@pytest.mark.asyncio
async def test_non_json_error_uses_generic_message(remote_engine, engine_request):
    mock_response = _response(503)

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.post.return_value = mock_response
        mock_client_class.return_value.__aenter__.return_value = mock_client

        with pytest.raises(EngineFailure) as exc_info:
            await remote_engine.transform(engine_request)

        assert exc_info.value.message == EngineFailure.default_message


@pytest.mark.asyncio
async def test_reported_failure_in_ok_response(remote_engine, engine_request):
    mock_response = _response(200, {"success": False, "message": "Invalid file. Only PDFs are allowed."})

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.post.return_value = mock_response
        mock_client_class.return_value.__aenter__.return_value = mock_client

        with pytest.raises(EngineFailure) as exc_info:
            await remote_engine.transform(engine_request)

        assert exc_info.value.message == "Invalid file. Only PDFs are allowed."


@pytest.mark.asyncio
async def test_timeout_is_failure_without_retry(remote_engine, engine_request):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.post.side_effect = httpx.TimeoutException("Timeout")
        mock_client_class.return_value.__aenter__.return_value = mock_client

        with pytest.raises(EngineFailure) as exc_info:
            await remote_engine.transform(engine_request)

        assert exc_info.value.message == "Processing timed out"
        assert mock_client.post.call_count == 1


@pytest.mark.asyncio
async def test_network_error_is_failure(remote_engine, engine_request):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.post.side_effect = httpx.ConnectError("Connection refused")
        mock_client_class.return_value.__aenter__.return_value = mock_client

        with pytest.raises(EngineFailure):
            await remote_engine.transform(engine_request)


class CountingStream(httpx.AsyncByteStream):
    """Remote body that records how many chunks the gateway has pulled."""

    def __init__(self, chunks, chunk_size):
        self.chunks = chunks
        self.chunk_size = chunk_size
        self.sent = 0
        self.closed = False

    async def __aiter__(self):
        for _ in range(self.chunks):
            self.sent += 1
            yield b"x" * self.chunk_size

    async def aclose(self):
        self.closed = True


def _resolver(handler):
    return RemoteArtifactResolver("http://engine.local/api", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_resolver_fetch_returns_remote_bytes():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=b"%PDF remote", headers={"content-type": "application/pdf"})

    download = await _resolver(handler).fetch("remote-123_compressed.pdf")

    assert download.content_type == "application/pdf"
    assert download.size == len(b"%PDF remote")
    assert str(seen[0].url) == "http://engine.local/api/download/remote-123_compressed.pdf"
    assert b"".join([chunk async for chunk in download]) == b"%PDF remote"


@pytest.mark.asyncio
async def test_resolver_fetch_streams_without_buffering_body():
    total = 8 * CHUNK_SIZE
    body = CountingStream(chunks=8, chunk_size=CHUNK_SIZE)

    def handler(request):
        headers = {"content-type": "application/pdf", "content-length": str(total)}
        return httpx.Response(200, headers=headers, stream=body)

    download = await _resolver(handler).fetch("large_compressed.pdf")

    assert body.sent == 0
    assert download.size == total

    chunks = download.__aiter__()
    first = await chunks.__anext__()
    assert len(first) == CHUNK_SIZE
    assert body.sent == 1

    await chunks.aclose()
    assert body.sent < 8
    assert body.closed


@pytest.mark.asyncio
async def test_resolver_maps_404_to_not_found():
    resolver = _resolver(lambda request: httpx.Response(404, json={"success": False}))

    with pytest.raises(NotFound):
        await resolver.fetch("remote.pdf")
    with pytest.raises(NotFound):
        await resolver.delete("remote.pdf")


@pytest.mark.asyncio
async def test_resolver_fetch_error_surfaces_remote_message():
    resolver = _resolver(lambda request: httpx.Response(500, json={"success": False, "message": "Disk full"}))

    with pytest.raises(EngineFailure) as exc_info:
        await resolver.fetch("remote.pdf")

    assert exc_info.value.message == "Disk full"


@pytest.mark.asyncio
async def test_resolver_fetch_network_error_is_failure():
    def handler(request):
        raise httpx.ConnectError("Connection refused", request=request)

    with pytest.raises(EngineFailure) as exc_info:
        await _resolver(handler).fetch("remote.pdf")

    assert exc_info.value.message == "Processing service unavailable"


@pytest.mark.asyncio
async def test_resolver_delete_calls_remote():
    resolver = RemoteArtifactResolver("http://engine.local/api")

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = AsyncMock()
        mock_client.delete.return_value = _response(200, {"success": True, "message": "Files deleted successfully"})
        mock_client_class.return_value.__aenter__.return_value = mock_client

        body = await resolver.delete("remote.pdf")

        assert body["success"] is True
        assert mock_client.delete.call_args[0][0] == "http://engine.local/api/delete/remote.pdf"


@pytest.mark.asyncio
async def test_resolver_rejects_path_traversal_without_calling_remote():
    resolver = RemoteArtifactResolver("http://engine.local/api")

    with patch("httpx.AsyncClient") as mock_client_class:
        with pytest.raises(NotFound):
            await resolver.fetch("../secrets")
        mock_client_class.assert_not_called()
