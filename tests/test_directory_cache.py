from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from qwen_gateway.gateway.directory_cache import ModelDirectoryCache
from qwen_gateway.gateway.upstream import ResilientFetcher, RetryExhausted

MODELS_URL = "http://upstream.test/api/models"
TTL_MS = 3_600_000


class _FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def _no_sleep(_delay: float) -> None:
    return None


class _Upstream:
    def __init__(self) -> None:
        self.calls = 0
        self.authorizations: list[str | None] = []
        self.responses: list[httpx.Response] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        self.authorizations.append(request.headers.get("authorization"))
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(
            200, text=f'{{"data":[{{"id":"qwen-max","n":{self.calls}}}]}}'
        )


def _build_cache(upstream: _Upstream, clock: _FakeClock) -> ModelDirectoryCache:
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    fetcher = ResilientFetcher(client, sleep=_no_sleep)
    return ModelDirectoryCache(fetcher, MODELS_URL, ttl_ms=TTL_MS, clock=clock)


def test_requests_within_ttl_hit_upstream_once_and_refresh_after_expiry() -> None:
    upstream = _Upstream()
    clock = _FakeClock()
    cache = _build_cache(upstream, clock)

    async def scenario() -> list[str]:
        first = await cache.get_directory("Bearer token-a")
        clock.advance(60)
        second = await cache.get_directory("Bearer token-a")
        clock.advance(3600)
        third = await cache.get_directory("Bearer token-a")
        return [first, second, third]

    first, second, third = asyncio.run(scenario())

    assert upstream.calls == 2
    assert first == second
    assert '"n":1' in first
    assert '"n":2' in third
    assert upstream.authorizations == ["Bearer token-a", "Bearer token-a"]


def test_entry_expires_exactly_at_ttl_boundary() -> None:
    upstream = _Upstream()
    clock = _FakeClock()
    cache = _build_cache(upstream, clock)

    asyncio.run(cache.get_directory("Bearer t"))
    fetched_at = cache.entry.fetched_at_epoch_ms if cache.entry else 0

    assert cache.is_fresh(fetched_at + TTL_MS - 1) is True
    assert cache.is_fresh(fetched_at + TTL_MS) is False


def test_failed_refresh_keeps_previous_entry() -> None:
    upstream = _Upstream()
    clock = _FakeClock()
    cache = _build_cache(upstream, clock)

    asyncio.run(cache.get_directory("Bearer t"))
    previous = cache.entry
    clock.advance(7200)
    upstream.responses = [
        httpx.Response(500, text="boom"),
        httpx.Response(500, text="boom"),
        httpx.Response(500, text="boom"),
    ]

    with pytest.raises(RetryExhausted):
        asyncio.run(cache.get_directory("Bearer t"))

    assert cache.entry is previous
    assert cache.is_fresh() is False


def test_error_responses_are_cached_and_served_within_ttl() -> None:
    upstream = _Upstream()
    clock = _FakeClock()
    cache = _build_cache(upstream, clock)
    upstream.responses = [httpx.Response(401, json={"detail": "invalid token"})]

    async def scenario() -> Any:
        first = await cache.get_entry("Bearer bad")
        clock.advance(30)
        second = await cache.get_entry("Bearer bad")
        return first, second

    first, second = asyncio.run(scenario())

    assert first.status_code == 401
    assert second is first
    assert json.loads(second.payload) == {"detail": "invalid token"}
    assert upstream.calls == 1
    assert cache.entry is first


def test_invalidate_forces_refetch() -> None:
    upstream = _Upstream()
    clock = _FakeClock()
    cache = _build_cache(upstream, clock)

    asyncio.run(cache.get_directory("Bearer t"))
    cache.invalidate()
    asyncio.run(cache.get_directory("Bearer t"))

    assert upstream.calls == 2
