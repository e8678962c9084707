from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse

from qwen_gateway.gateway.errors import AuthenticationError, error_response


@dataclass(slots=True)
class AuthResult:
    authorization: str
    token: str


def parse_bearer_authorization(header_value: str | None) -> AuthResult:
    auth_header = (header_value or "").strip()
    scheme, _, token = auth_header.partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise AuthenticationError("Unauthorized")
    return AuthResult(authorization=auth_header, token=token.strip())


class BearerAuthenticator:
    """Gate that only checks a Bearer credential is present.

    The credential itself is validated by the upstream service, which receives
    the client's Authorization header verbatim.
    """

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        try:
            result = parse_bearer_authorization(request.headers.get("authorization"))
        except AuthenticationError as exc:
            return error_response(
                exc.status_code,
                exc.message,
                headers={"WWW-Authenticate": "Bearer"},
            )
        request.state.auth = result
        return None
