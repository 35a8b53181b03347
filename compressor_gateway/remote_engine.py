"""HTTP delegation to a remote processing service."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from .engine import EngineRequest, EngineResult
from .errors import EngineFailure, NotFound
from .operations import PDF_MIME, output_content_type, spec_for
from .storage import CHUNK_SIZE, validate_identifier

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> Optional[str]:
    """Pull the remote service's own error message out of a JSON body, if any."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        for key in ("message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _as_int(value: Any, default: Optional[int]) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class RemoteEngine:
    """Forward uploads to ``<base_url><operation path>`` and relay the remote file name."""

    name = "remote"

    def __init__(self, base_url: str, timeout: float = 300.0):
        """
        Initialize remote engine.

        Args:
            base_url: Remote service base URL (e.g., http://localhost:8080/api)
            timeout: HTTP request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def endpoint_for(self, request: EngineRequest) -> str:
        return f"{self.base_url}{spec_for(request.operation).remote_path}"

    async def transform(self, request: EngineRequest) -> EngineResult:
        url = self.endpoint_for(request)
        original_size = request.input_path.stat().st_size
        data = {"compressionLevel": str(request.level)}

        try:
            with request.input_path.open("rb") as handle:
                files = {"file": (request.original_filename, handle, request.content_type)}
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, files=files, data=data, timeout=self.timeout)
        except httpx.TimeoutException as e:
            logger.error(f"Remote engine timeout for {request.identifier}: {e}")
            raise EngineFailure("Processing timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"Remote engine network error for {request.identifier}: {e}")
            raise EngineFailure("Processing service unavailable") from e

        if not 200 <= response.status_code < 300:
            message = _error_message(response)
            logger.error(
                f"Remote engine returned {response.status_code} for {request.identifier}: {message}"
            )
            raise EngineFailure(message)

        try:
            body = response.json()
        except ValueError as e:
            logger.error(f"Remote engine returned a non-JSON body for {request.identifier}")
            raise EngineFailure() from e

        if not isinstance(body, dict) or not body.get("success") or not body.get("fileName"):
            message = _error_message(response)
            logger.error(f"Remote engine reported failure for {request.identifier}: {message}")
            raise EngineFailure(message)

        remote_id = str(body["fileName"])
        transformed_size = _as_int(body.get("compressedSize", body.get("transformedSize")), 0)
        logger.info(f"Remote engine finished for {request.identifier}: remote file {remote_id}")
        return EngineResult(
            original_size=_as_int(body.get("originalSize"), original_size),
            transformed_size=transformed_size,
            content_type=output_content_type(request.operation, request.content_type),
            remote_id=remote_id,
        )


class RemoteDownload:
    """Open streaming response from the remote service; the body is read as it is relayed."""

    def __init__(self, response: httpx.Response, client: Optional[httpx.AsyncClient] = None):
        self.response = response
        self._client = client
        self._closed = False

    @property
    def content_type(self) -> str:
        return self.response.headers.get("content-type") or PDF_MIME

    @property
    def size(self) -> Optional[int]:
        # content-length counts encoded bytes; aiter_bytes yields decoded ones
        if self.response.headers.get("content-encoding", "identity") != "identity":
            return None
        return _as_int(self.response.headers.get("content-length"), None)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_bytes(CHUNK_SIZE):
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.response.aclose()
        if self._client is not None:
            await self._client.aclose()


class RemoteArtifactResolver:
    """Resolve and delete artifacts that live on the remote processing service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def fetch(self, identifier: str) -> RemoteDownload:
        """
        Open a download from the remote service without reading its body.

        The returned stream owns the HTTP client and must be closed by the caller.
        """
        validate_identifier(identifier)
        client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        try:
            request = client.build_request("GET", f"{self.base_url}/download/{identifier}")
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            logger.error(f"Remote download failed for {identifier}: {e}")
            raise EngineFailure("Processing service unavailable") from e
        except BaseException:
            await client.aclose()
            raise

        if 200 <= response.status_code < 300:
            return RemoteDownload(response, client)

        try:
            if response.status_code == 404:
                raise NotFound()
            logger.error(f"Remote download for {identifier} returned {response.status_code}")
            try:
                await response.aread()
            except httpx.HTTPError as e:
                logger.warning(f"Could not read error body for {identifier}: {e}")
                raise EngineFailure() from e
            raise EngineFailure(_error_message(response))
        finally:
            await response.aclose()
            await client.aclose()

    async def delete(self, identifier: str) -> Dict[str, Any]:
        validate_identifier(identifier)
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.delete(f"{self.base_url}/delete/{identifier}", timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.error(f"Remote delete failed for {identifier}: {e}")
            raise EngineFailure("Processing service unavailable") from e

        if response.status_code == 404:
            raise NotFound()
        if not 200 <= response.status_code < 300:
            logger.error(f"Remote delete for {identifier} returned {response.status_code}")
            raise EngineFailure(_error_message(response))
        logger.info(f"Deleted remote artifact {identifier}")
        try:
            body = response.json()
        except ValueError:
            body = {}
        return body if isinstance(body, dict) else {}
