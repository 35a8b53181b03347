"""Error taxonomy shared by the gateway handlers and the HTTP layer."""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base exception for gateway errors that map onto an HTTP response."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(GatewayError):
    """Request rejected before any storage or engine work (bad type, missing file, oversized)."""

    status_code = 400
    default_message = "Invalid input"


class NotFound(GatewayError):
    """Identifier is unknown, malformed, or already deleted."""

    status_code = 404
    default_message = "File not found"


class EngineFailure(GatewayError):
    """Processing engine failed (remote error, non-zero exit, missing output, timeout)."""

    status_code = 502
    default_message = "Processing failed"


class InternalError(GatewayError):
    """Unexpected storage fault. The message never carries filesystem paths."""

    status_code = 500
    default_message = "Internal server error"
