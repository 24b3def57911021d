"""
Error taxonomy for the proxy pipeline.

Every error raised while handling a request is a ProxyError carrying the
HTTP status and the machine-readable `type` of the failure envelope.
"""
from __future__ import annotations

from typing import Any, Dict


class ProxyError(Exception):
    """Base class for errors rendered as `{success: false, error, type}`."""

    status_code = 500
    error_type = "INTERNAL_ERROR"

    def __init__(self, message: str, error_type: str | None = None):
        super().__init__(message)
        self.message = message
        if error_type is not None:
            self.error_type = error_type

    def to_envelope(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "type": self.error_type}


class ConfigError(Exception):
    """Configuration is missing or unusable. Fatal at startup."""


class RequestError(ProxyError):
    status_code = 400
    error_type = "REQUEST_ERROR"


class AuthenticationError(ProxyError):
    status_code = 401
    error_type = "AUTHENTICATION_ERROR"


class AuthorizationError(ProxyError):
    status_code = 403
    error_type = "ENDPOINT_NOT_ALLOWED"


class UpstreamError(ProxyError):
    status_code = 502
    error_type = "UPSTREAM_ERROR"


class InternalError(ProxyError):
    status_code = 500
    error_type = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error", error_type: str | None = None):
        super().__init__(message, error_type)


NOT_FOUND_BODY = {"success": False, "error": "Endpoint not found", "type": "NOT_FOUND"}
