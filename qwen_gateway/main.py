from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from qwen_gateway.gateway.auth import AuthResult, BearerAuthenticator
from qwen_gateway.gateway.directory_cache import ModelDirectoryCache
from qwen_gateway.gateway.errors import GatewayError, InvalidRequestError, error_response
from qwen_gateway.gateway.proxy import GatewayProxy
from qwen_gateway.gateway.upstream import ResilientFetcher, build_upstream_client
from qwen_gateway.settings import get_settings

app = FastAPI(
    title="Qwen Gateway",
    description="OpenAI-compatible API gateway in front of the Qwen chat service.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)

    authenticator: BearerAuthenticator | None = getattr(
        app.state, "authenticator", None
    )
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins_list,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    client = build_upstream_client(settings)
    fetcher = ResilientFetcher(
        client,
        max_attempts=settings.upstream_max_attempts,
        retry_delay_seconds=settings.upstream_retry_delay_seconds,
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
    )
    directory_cache = ModelDirectoryCache(
        fetcher,
        settings.upstream_models_url,
        ttl_ms=settings.models_cache_ttl_ms,
    )
    app.state.settings = settings
    app.state.authenticator = BearerAuthenticator()
    app.state.upstream_client = client
    app.state.directory_cache = directory_cache
    app.state.gateway_proxy = GatewayProxy(
        client=client,
        directory_cache=directory_cache,
        chat_url=settings.upstream_chat_url,
    )
    logger.info(
        (
            "startup complete chat_url=%s models_url=%s max_attempts=%d "
            "retry_delay_s=%.3f timeout_s=%.1f models_cache_ttl_s=%.0f"
        ),
        settings.upstream_chat_url,
        settings.upstream_models_url,
        settings.upstream_max_attempts,
        settings.upstream_retry_delay_seconds,
        settings.upstream_timeout_seconds,
        settings.models_cache_ttl_seconds,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    proxy: GatewayProxy | None = getattr(app.state, "gateway_proxy", None)
    if proxy is not None:
        await proxy.client.aclose()
    logger.info("shutdown complete")


def _request_authorization(request: Request) -> str:
    auth: AuthResult = request.state.auth
    return auth.authorization


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models(request: Request) -> Response:
    proxy: GatewayProxy = app.state.gateway_proxy
    return await proxy.list_models(_request_authorization(request))


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    try:
        payload: Any = await request.json()
    except ValueError as exc:
        raise InvalidRequestError(f"Expected JSON body: {exc}") from exc

    if not isinstance(payload, dict):
        raise InvalidRequestError("Expected a JSON object request body.")

    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    proxy: GatewayProxy = app.state.gateway_proxy
    return await proxy.chat_completions(
        payload,
        authorization=_request_authorization(request),
        request_id=request_id,
    )


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "gateway_error path=%s type=%s message=%s",
            request.url.path,
            exc.__class__.__name__,
            exc.message,
        )
    else:
        logger.info(
            "client_error path=%s status=%d message=%s",
            request.url.path,
            exc.status_code,
            exc.message,
        )
    return error_response(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(
    _: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return error_response(exc.status_code, str(exc.detail), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    _: Request, exc: RequestValidationError
) -> JSONResponse:
    return error_response(status.HTTP_400_BAD_REQUEST, str(exc))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error path=%s error=%s", request.url.path, exc)
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "qwen_gateway.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        reload=False,
    )


if __name__ == "__main__":
    run()
