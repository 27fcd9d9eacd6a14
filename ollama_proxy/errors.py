"""
Gateway error types and the JSON bodies they produce for clients.
"""

from typing import Any, Optional


class GatewayError(Exception):
    """Base exception for gateway errors; maps to a generic 500."""

    status = 500
    error_type = "server_error"
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.public_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": {"message": self.public_message, "type": self.error_type}}


class UpstreamHTTPError(GatewayError):
    """Upstream returned a non-2xx status. The body is passed through unchanged."""

    def __init__(self, status: int, body: Any):
        super().__init__(f"Upstream returned HTTP {status}")
        self.status = status
        self.body = body

    def to_dict(self) -> Any:
        return self.body


class UpstreamTimeout(GatewayError):
    status = 504
    error_type = "timeout_error"
    public_message = "Request timeout - the upstream server took too long to respond"


class ParseError(GatewayError):
    """Upstream payload could not be understood."""

    error_type = "parse_error"
    public_message = "Error parsing response"


class StreamTransportError(GatewayError):
    """Upstream connection dropped while streaming."""

    error_type = "stream_error"
    public_message = "Stream error"

    def to_dict(self) -> dict:
        return {"error": {"message": self.message, "type": self.error_type}}


class ModelNotFound(GatewayError):
    status = 404

    def __init__(self, model: str):
        super().__init__(f"model not found: {model}")
        self.model = model

    def to_dict(self) -> dict:
        return {"error": self.message}


class InvalidRequest(GatewayError):
    status = 400
    error_type = "invalid_request_error"

    def to_dict(self) -> dict:
        return {"error": {"message": self.message, "type": self.error_type}}
