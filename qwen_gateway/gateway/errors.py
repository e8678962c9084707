from __future__ import annotations

from fastapi import status
from fastapi.responses import JSONResponse


class GatewayError(Exception):
    """Base class for failures surfaced to clients as the JSON error envelope."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthenticationError(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED


class InvalidRequestError(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST


class UpstreamStatusError(GatewayError):
    """Upstream answered a streaming request with a non-2xx status."""

    def __init__(self, upstream_status: int, body_preview: str = "") -> None:
        super().__init__(f"Upstream API error: {upstream_status}")
        self.upstream_status = upstream_status
        self.body_preview = body_preview


class UpstreamConnectionError(GatewayError):
    def __init__(self, message: str, *, error_type: str) -> None:
        super().__init__(message)
        self.error_type = error_type


def error_response(
    status_code: int,
    message: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={"error": True, "message": message},
    )
