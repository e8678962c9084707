from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from qwen_gateway.gateway.errors import GatewayError
from qwen_gateway.settings import Settings

MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 1.0
TIMEOUT_SECONDS = 30.0
CONNECT_TIMEOUT_SECONDS = 5.0
BODY_PREVIEW_CHARS = 1000

logger = logging.getLogger("uvicorn.error")

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class FetchOutcome:
    status_code: int
    headers: httpx.Headers
    body_text: str

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")


@dataclass(frozen=True, slots=True)
class FetchFailure:
    status_code: int | None = None
    content_type: str | None = None
    body_preview: str | None = None
    error_type: str | None = None
    error: str | None = None
    is_timeout: bool = False

    @classmethod
    def from_outcome(cls, outcome: FetchOutcome) -> FetchFailure:
        return cls(
            status_code=outcome.status_code,
            content_type=outcome.content_type,
            body_preview=outcome.body_text[:BODY_PREVIEW_CHARS],
        )

    @classmethod
    def from_exception(cls, exc: httpx.RequestError) -> FetchFailure:
        error_repr = repr(exc)
        return cls(
            error_type=exc.__class__.__name__.strip() or "RequestError",
            error=str(exc).strip() or error_repr,
            is_timeout=isinstance(exc, httpx.TimeoutException),
        )

    def describe(self) -> str:
        if self.error_type is not None:
            return f"{self.error_type}: {self.error}"
        return (
            f"status={self.status_code} content_type={self.content_type or '-'} "
            f"body={self.body_preview or ''}"
        )


@dataclass(slots=True)
class RetryContext:
    attempts_allowed: int
    attempt_index: int = 0
    last_failure: FetchFailure | None = field(default=None)

    @property
    def has_remaining_attempts(self) -> bool:
        return self.attempt_index < self.attempts_allowed - 1


class RetryExhausted(GatewayError):
    def __init__(self, last_failure: FetchFailure | None, attempts: int) -> None:
        detail = last_failure.describe() if last_failure is not None else "no response"
        super().__init__(
            f"All retry attempts failed after {attempts} attempts ({detail})"
        )
        self.last_failure = last_failure
        self.attempts = attempts


def is_retriable_outcome(outcome: FetchOutcome) -> bool:
    # Only a bare 500 counts; other 5xx statuses are returned to the caller.
    return outcome.status_code == 500 or "text/html" in outcome.content_type.lower()


def build_timeout(
    timeout_seconds: float, connect_timeout_seconds: float
) -> httpx.Timeout:
    total = max(0.1, float(timeout_seconds))
    connect = max(0.1, min(total, float(connect_timeout_seconds)))
    return httpx.Timeout(timeout=total, connect=connect)


def build_upstream_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=build_timeout(
            settings.upstream_timeout_seconds,
            settings.upstream_connect_timeout_seconds,
        ),
        limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
    )


class ResilientFetcher:
    """Issues upstream requests, retrying transient failures with exponential backoff.

    A response counts as transient when its status is exactly 500 or it carries an
    HTML body (an edge proxy error page rather than a structured API error).
    Network-level exceptions are treated the same way. Every other response is
    returned as-is, so callers interpret status codes themselves.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay_seconds: float = RETRY_DELAY_SECONDS,
        timeout_seconds: float = TIMEOUT_SECONDS,
        connect_timeout_seconds: float = CONNECT_TIMEOUT_SECONDS,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.client = client
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self.timeout = build_timeout(timeout_seconds, connect_timeout_seconds)
        self._sleep = sleep

    def backoff_delay(self, attempt_index: int) -> float:
        return self.retry_delay_seconds * (2**attempt_index)

    async def fetch_with_retry(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        json_body: Any | None = None,
        max_attempts: int | None = None,
    ) -> FetchOutcome:
        context = RetryContext(
            attempts_allowed=max(1, int(max_attempts or self.max_attempts))
        )
        while True:
            try:
                outcome = await self._attempt(
                    url, method=method, headers=headers, json_body=json_body
                )
            except httpx.RequestError as exc:
                context.last_failure = FetchFailure.from_exception(exc)
                logger.warning(
                    "upstream_request_error url=%s attempt=%d/%d error_type=%s error=%s",
                    url,
                    context.attempt_index + 1,
                    context.attempts_allowed,
                    context.last_failure.error_type,
                    context.last_failure.error,
                )
            else:
                if not is_retriable_outcome(outcome):
                    return outcome
                context.last_failure = FetchFailure.from_outcome(outcome)

            if not context.has_remaining_attempts:
                break
            delay = self.backoff_delay(context.attempt_index)
            logger.warning(
                "upstream_retry url=%s attempt=%d/%d reason=%s delay_s=%.3f",
                url,
                context.attempt_index + 1,
                context.attempts_allowed,
                context.last_failure.describe(),
                delay,
            )
            await self._sleep(delay)
            context.attempt_index += 1

        attempts = context.attempt_index + 1
        logger.error(
            "upstream_retry_exhausted url=%s attempts=%d reason=%s",
            url,
            attempts,
            context.last_failure.describe() if context.last_failure else "-",
        )
        raise RetryExhausted(context.last_failure, attempts)

    async def _attempt(
        self,
        url: str,
        *,
        method: str,
        headers: dict[str, str] | None,
        json_body: Any | None,
    ) -> FetchOutcome:
        # Non-streamed requests are fully read, so the body stays available after
        # classification.
        response = await self.client.request(
            method,
            url,
            headers=headers,
            json=json_body,
            timeout=self.timeout,
        )
        return FetchOutcome(
            status_code=response.status_code,
            headers=response.headers,
            body_text=response.text,
        )
