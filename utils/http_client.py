"""Shared HTTP client for market-data lookups: per-source concurrency, rate windows, 429 cooldowns."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


def backoff_delay(
    attempt: int,
    *,
    base: float,
    cap: float,
    jitter: float,
    bias: float = 0.0,
) -> float:
    """Exponential backoff (`base * 2^(attempt-1)`, capped) plus uniform jitter."""
    base = max(0.01, float(base))
    cap = max(base, float(cap))
    exp = min(cap, base * (2 ** max(0, int(attempt) - 1)) + max(0.0, float(bias)))
    return max(0.01, exp + random.uniform(0.0, max(0.0, float(jitter))))


class ResilientHttpClient:
    """One aiohttp session shared by every lookup of a source family.

    Each source (`dexscreener`, `goplus`, ...) gets its own semaphore, sliding
    rate window and 429 cooldown, so one throttled API never stalls another.
    """

    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
        *,
        rate_limits: dict[str, tuple[int, float]] | None = None,
        cooldowns: dict[str, float] | None = None,
        retry_attempts: int | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = dict(source_limits or {})
        self._rate_limits = dict(config.HTTP_SOURCE_RATE_LIMITS if rate_limits is None else rate_limits)
        self._cooldowns = dict(config.HTTP_SOURCE_429_COOLDOWNS if cooldowns is None else cooldowns)
        self.retry_attempts = max(1, int(config.HTTP_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts))
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._windows: dict[str, deque[float]] = {}
        self._window_locks: dict[str, asyncio.Lock] = {}
        self._cooldown_until: dict[str, float] = {}

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=int(config.HTTP_CONNECTOR_LIMIT))
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    def _semaphore(self, source: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(source)
        if sem is None:
            limit = self._source_limits.get(source, config.HTTP_DEFAULT_CONCURRENCY)
            sem = self._semaphores[source] = asyncio.Semaphore(max(1, int(limit)))
        return sem

    async def _take_rate_slot(self, source: str) -> None:
        if source not in self._rate_limits:
            return
        max_calls, window_seconds = self._rate_limits[source]
        lock = self._window_locks.setdefault(source, asyncio.Lock())
        while True:
            async with lock:
                now = time.monotonic()
                window = self._windows.setdefault(source, deque())
                while window and window[0] <= now - window_seconds:
                    window.popleft()
                if len(window) < max_calls:
                    window.append(now)
                    return
                wait = max(0.01, window[0] + window_seconds - now)
            logger.debug("HTTP_RATE_WAIT source=%s wait=%.2fs", source, wait)
            await asyncio.sleep(wait)

    async def _sit_out_cooldown(self, source: str) -> None:
        wait = self._cooldown_until.get(source, 0.0) - time.monotonic()
        if wait > 0:
            logger.debug("HTTP_COOLDOWN_WAIT source=%s wait=%.2fs", source, wait)
            await asyncio.sleep(wait)

    def _start_cooldown(self, source: str, response: aiohttp.ClientResponse) -> None:
        try:
            retry_after = max(0.0, float(response.headers.get("Retry-After") or 0.0))
        except ValueError:
            retry_after = 0.0
        seconds = max(self._cooldowns.get(source, config.HTTP_429_COOLDOWN_SECONDS), retry_after)
        until = time.monotonic() + seconds
        self._cooldown_until[source] = max(self._cooldown_until.get(source, 0.0), until)
        logger.warning("RATE_LIMIT source=%s status=429 cooldown=%.1fs", source, seconds)

    @staticmethod
    def _retry_delay(attempt: int, status: int) -> float:
        return backoff_delay(
            attempt,
            base=config.HTTP_BACKOFF_BASE_SECONDS,
            cap=config.HTTP_BACKOFF_MAX_SECONDS,
            jitter=config.HTTP_JITTER_SECONDS,
            bias=config.HTTP_RATE_LIMIT_DELAY_SECONDS if status == 429 else 0.0,
        )

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        """GET a JSON document; 429 and 5xx are retried, anything else returns a failed result."""
        attempts = max(1, int(max_attempts or self.retry_attempts))
        source = str(source or "default").strip().lower() or "default"
        req_headers = {**self._headers, **(headers or {})}
        result = HttpResult(ok=False, status=0, data=None, error="http_exhausted")

        for attempt in range(1, attempts + 1):
            await self._sit_out_cooldown(source)
            await self._take_rate_slot(source)
            async with self._semaphore(source):
                try:
                    session = await self._get_session()
                    async with session.get(url, params=params, headers=req_headers) as response:
                        status = int(response.status or 0)
                        if status == 200:
                            return HttpResult(ok=True, status=status, data=await response.json(content_type=None))
                        if status == 429:
                            self._start_cooldown(source, response)
                        result = HttpResult(ok=False, status=status, data=None, error=f"http_status_{status}")
                        if status != 429 and not 500 <= status <= 599:
                            return result
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                    result = HttpResult(ok=False, status=0, data=None, error=f"http_error:{exc}")

            if attempt < attempts:
                delay = self._retry_delay(attempt, result.status)
                logger.debug(
                    "HTTP_RETRY source=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                    source,
                    attempt,
                    attempts,
                    result.status,
                    delay,
                    url,
                )
                await asyncio.sleep(delay)
        return result
