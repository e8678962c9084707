from __future__ import annotations

import logging
import time
from typing import Any, AsyncIterator

import httpx
from fastapi.responses import Response, StreamingResponse

from qwen_gateway.gateway.directory_cache import ModelDirectoryCache
from qwen_gateway.gateway.errors import (
    InvalidRequestError,
    UpstreamConnectionError,
    UpstreamStatusError,
)
from qwen_gateway.gateway.streaming import StreamReframer
from qwen_gateway.gateway.upstream import BODY_PREVIEW_CHARS

STREAM_RESPONSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

logger = logging.getLogger("uvicorn.error")


def build_upstream_chat_payload(payload: dict[str, Any]) -> dict[str, Any]:
    model = payload.get("model")
    if not model:
        raise InvalidRequestError("Model parameter is required")

    upstream_payload: dict[str, Any] = {"model": model}
    if "messages" in payload:
        upstream_payload["messages"] = payload["messages"]
    upstream_payload["stream"] = bool(payload.get("stream", False))
    if "max_tokens" in payload:
        upstream_payload["max_tokens"] = payload["max_tokens"]
    return upstream_payload


class GatewayProxy:
    def __init__(
        self,
        client: httpx.AsyncClient,
        directory_cache: ModelDirectoryCache,
        chat_url: str,
    ) -> None:
        self.client = client
        self.directory_cache = directory_cache
        self.chat_url = chat_url

    async def list_models(self, authorization: str) -> Response:
        entry = await self.directory_cache.get_entry(authorization)
        return Response(
            content=entry.payload,
            status_code=entry.status_code,
            media_type="application/json",
        )

    async def chat_completions(
        self,
        payload: dict[str, Any],
        authorization: str,
        request_id: str,
    ) -> Response:
        upstream_payload = build_upstream_chat_payload(payload)
        stream = upstream_payload["stream"]
        logger.info(
            "chat_request request_id=%s model=%s stream=%s",
            request_id,
            upstream_payload["model"],
            stream,
        )
        request = self.client.build_request(
            method="POST",
            url=self.chat_url,
            json=upstream_payload,
            headers={
                "Authorization": authorization,
                "Content-Type": "application/json",
            },
        )
        try:
            upstream = await self.client.send(request, stream=stream)
        except httpx.RequestError as exc:
            error_type = exc.__class__.__name__
            logger.warning(
                "chat_upstream_error request_id=%s error_type=%s error=%s",
                request_id,
                error_type,
                exc,
            )
            raise UpstreamConnectionError(
                f"Could not reach upstream ({error_type}): {exc}",
                error_type=error_type,
            ) from exc

        if not stream:
            logger.info(
                "chat_response request_id=%s status=%d",
                request_id,
                upstream.status_code,
            )
            return Response(
                content=upstream.content,
                status_code=upstream.status_code,
                media_type="application/json",
            )

        if not upstream.is_success:
            body = await upstream.aread()
            await upstream.aclose()
            logger.warning(
                "chat_upstream_status_error request_id=%s status=%d",
                request_id,
                upstream.status_code,
            )
            raise UpstreamStatusError(
                upstream.status_code,
                body.decode("utf-8", errors="replace")[:BODY_PREVIEW_CHARS],
            )

        return StreamingResponse(
            content=self._relay_stream(upstream, request_id),
            headers=STREAM_RESPONSE_HEADERS,
            media_type="text/event-stream",
        )

    @staticmethod
    async def _relay_stream(
        upstream: httpx.Response, request_id: str
    ) -> AsyncIterator[str]:
        reframer = StreamReframer()
        started = time.perf_counter()
        try:
            async for event in reframer.reframe(upstream.aiter_bytes()):
                yield event
        except httpx.HTTPError as exc:
            # The client sees the stream end without a [DONE] event.
            logger.warning(
                "stream_upstream_error request_id=%s events=%d error_type=%s error=%s",
                request_id,
                reframer.session.events_emitted,
                exc.__class__.__name__,
                exc,
            )
            return
        finally:
            await upstream.aclose()
        logger.info(
            "stream_relay_complete request_id=%s events=%d duration_ms=%.2f",
            request_id,
            reframer.session.events_emitted,
            (time.perf_counter() - started) * 1000.0,
        )
