from __future__ import annotations

from fastapi import status


class AuthConfigurationError(RuntimeError):
    """Raised when the path-token auth gate is misconfigured."""


class ProxyError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "proxy_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.error_type)
        self.message = message or self.error_type


class InvalidInboundBody(ProxyError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_type = "invalid_request_body"


class Unauthorized(ProxyError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "unauthorized"


class MalformedPayload(ProxyError):
    """A JSON field edit could not be applied to the payload."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "malformed_payload"


class RequestTimeout(ProxyError):
    """The inbound request was cancelled or ran past its deadline."""

    status_code = status.HTTP_408_REQUEST_TIMEOUT
    error_type = "request_timeout"


class UpstreamTransportFailure(ProxyError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "upstream_connection_error"

    def __init__(self, message: str, *, attempts: int, cause: Exception) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


class UpstreamHTTPError(ProxyError):
    error_type = "upstream_http_error"

    def __init__(self, status_code: int, body: bytes = b"") -> None:
        super().__init__(f"upstream responded with status {status_code}")
        self.status_code = status_code
        self.body = body
