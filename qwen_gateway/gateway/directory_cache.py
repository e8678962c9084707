from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from qwen_gateway.gateway.upstream import ResilientFetcher

MODELS_CACHE_TTL_MS = 3_600_000

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class CachedDirectory:
    payload: str
    fetched_at_epoch_ms: int
    status_code: int = 200


class ModelDirectoryCache:
    """Serves the upstream model directory, memoized for a fixed TTL.

    The entry is replaced as a whole record and never mutated, so two requests
    refreshing at the same time simply race and the last writer wins. A failed
    refresh leaves the previous entry in place.
    """

    def __init__(
        self,
        fetcher: ResilientFetcher,
        directory_url: str,
        *,
        ttl_ms: int = MODELS_CACHE_TTL_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fetcher = fetcher
        self._directory_url = directory_url
        self._ttl_ms = max(0, int(ttl_ms))
        self._clock = clock
        self._entry: CachedDirectory | None = None

    @property
    def entry(self) -> CachedDirectory | None:
        return self._entry

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def is_fresh(self, now_ms: int | None = None) -> bool:
        entry = self._entry
        if entry is None:
            return False
        current = self._now_ms() if now_ms is None else now_ms
        return current - entry.fetched_at_epoch_ms < self._ttl_ms

    async def get_entry(self, authorization: str) -> CachedDirectory:
        now_ms = self._now_ms()
        entry = self._entry
        if entry is not None and self.is_fresh(now_ms):
            logger.debug(
                "directory_cache_hit age_ms=%d", now_ms - entry.fetched_at_epoch_ms
            )
            return entry

        outcome = await self._fetcher.fetch_with_retry(
            self._directory_url,
            headers={"Authorization": authorization},
        )
        refreshed = CachedDirectory(
            payload=outcome.body_text,
            fetched_at_epoch_ms=now_ms,
            status_code=outcome.status_code,
        )
        self._entry = refreshed
        logger.info(
            "directory_cache_refresh status=%d bytes=%d",
            outcome.status_code,
            len(outcome.body_text),
        )
        return refreshed

    async def get_directory(self, authorization: str) -> str:
        entry = await self.get_entry(authorization)
        return entry.payload

    def invalidate(self) -> None:
        self._entry = None
