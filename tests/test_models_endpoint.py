from __future__ import annotations

from typing import Any

import httpx

from tests.client_test_utils import TEST_MODELS_URL, build_test_client

AUTH = {"Authorization": "Bearer user-token"}
DIRECTORY = '{"object":"list","data":[{"id":"qwen-max-latest"}]}'


def test_v1_models_returns_upstream_directory_and_caches_it(monkeypatch: Any) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=DIRECTORY)

    with build_test_client(monkeypatch, handler) as client:
        first = client.get("/v1/models", headers=AUTH)
        second = client.get("/v1/models", headers=AUTH)

    assert first.status_code == 200
    assert first.headers["content-type"] == "application/json"
    assert first.text == DIRECTORY
    assert second.text == DIRECTORY
    assert len(seen) == 1
    assert str(seen[0].url) == TEST_MODELS_URL
    assert seen[0].headers["authorization"] == "Bearer user-token"


def test_v1_models_refetches_when_ttl_is_zero(monkeypatch: Any) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, text=DIRECTORY)

    with build_test_client(
        monkeypatch, handler, MODELS_CACHE_TTL_SECONDS="0"
    ) as client:
        client.get("/v1/models", headers=AUTH)
        client.get("/v1/models", headers=AUTH)

    assert calls["count"] == 2


def test_v1_models_mirrors_upstream_error_status(monkeypatch: Any) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"detail": "forbidden"})

    with build_test_client(monkeypatch, handler) as client:
        response = client.get("/v1/models", headers=AUTH)

    assert response.status_code == 403
    assert response.json() == {"detail": "forbidden"}


def test_v1_models_retries_html_error_pages_then_fails_with_envelope(
    monkeypatch: Any,
) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(
            200,
            headers={"content-type": "text/html"},
            text="<html>Just a moment...</html>",
        )

    with build_test_client(monkeypatch, handler, UPSTREAM_MAX_ATTEMPTS="3") as client:
        response = client.get("/v1/models", headers=AUTH)

    assert calls["count"] == 3
    assert response.status_code == 500
    body = response.json()
    assert body["error"] is True
    assert "All retry attempts failed" in body["message"]
    assert "Just a moment..." in body["message"]
