"""Failover pool over blockchain RPC endpoints."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import aiohttp
from web3 import HTTPProvider, Web3

import config

logger = logging.getLogger(__name__)

T = TypeVar("T")

E_RPC_ALL_DOWN = "E_RPC_ALL_DOWN"

_DEFAULT_NAMES = ("primary", "secondary", "tertiary")
_NETWORK_ERROR_MARKERS = ("timeout", "timed out", "invalid json rpc response", "connection", "econn")


class AllEndpointsDown(RuntimeError):
    """Raised when no configured endpoint answers a liveness probe."""

    code = E_RPC_ALL_DOWN


@dataclass
class Endpoint:
    url: str
    name: str
    last_healthy: float | None = None
    consecutive_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "name": self.name,
            "last_healthy": self.last_healthy,
            "consecutive_failures": int(self.consecutive_failures),
        }


def is_network_error(exc: BaseException) -> bool:
    """True for transport-level failures (timeouts, refused/reset connections, broken RPC replies)."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, aiohttp.ClientError)):
        return True
    # requests (used by HTTPProvider) derives its transport errors from OSError.
    if isinstance(exc, OSError):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _NETWORK_ERROR_MARKERS)


def _build_web3(url: str, timeout_seconds: float) -> Web3:
    return Web3(HTTPProvider(url, request_kwargs={"timeout": timeout_seconds}))


def _probe_block_number(client: Any) -> int:
    return int(client.eth.block_number)


class ProviderPool:
    """Round-robin RPC failover with a cached healthy client and a background health monitor.

    `get_client()` serves the cached client while it is younger than the health TTL. On
    expiry it probes endpoints starting at the last-good index and caches the first one
    that answers. Consumers that observe a transport error call `report_error()` which
    rotates to the next endpoint. Endpoints are never removed; the index wraps around.
    """

    def __init__(
        self,
        urls: list[str] | None = None,
        *,
        timeout_seconds: float | None = None,
        health_ttl_seconds: float | None = None,
        health_interval_seconds: float | None = None,
        max_failures: int | None = None,
        client_factory: Callable[[str, float], Any] | None = None,
        probe: Callable[[Any], Any] | None = None,
        on_rotate: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        urls = [u for u in (config.RPC_URLS if urls is None else urls) if str(u or "").strip()]
        if not urls:
            raise ValueError("ProviderPool needs at least one RPC endpoint")
        self.endpoints: list[Endpoint] = [
            Endpoint(url=str(url).strip(), name=(_DEFAULT_NAMES[i] if i < len(_DEFAULT_NAMES) else f"rpc{i + 1}"))
            for i, url in enumerate(urls)
        ]
        self.timeout_seconds = float(config.RPC_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds)
        self.health_ttl_seconds = float(
            config.RPC_HEALTH_TTL_SECONDS if health_ttl_seconds is None else health_ttl_seconds
        )
        self.health_interval_seconds = float(
            config.RPC_HEALTH_INTERVAL_SECONDS if health_interval_seconds is None else health_interval_seconds
        )
        self.max_failures = max(1, int(config.RPC_MAX_FAILURES if max_failures is None else max_failures))
        self._client_factory = client_factory or _build_web3
        self._probe_call = probe or _probe_block_number
        self._on_rotate = on_rotate

        self._index = 0
        self._clients: dict[int, Any] = {}
        self._cached: Any | None = None
        self._cached_at = 0.0
        self._generation = 0
        self._rotations = 0
        self._refresh_lock = asyncio.Lock()
        self._health_task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    @property
    def index(self) -> int:
        return self._index

    @property
    def active(self) -> Endpoint:
        return self.endpoints[self._index]

    @property
    def generation(self) -> int:
        """Bumped on every rotation; lets callers detect a stale client."""
        return self._generation

    def _client_for(self, idx: int) -> Any:
        client = self._clients.get(idx)
        if client is None:
            client = self._client_factory(self.endpoints[idx].url, self.timeout_seconds)
            self._clients[idx] = client
        return client

    def _fresh_cached(self) -> Any | None:
        if self._cached is None:
            return None
        if (time.monotonic() - self._cached_at) >= self.health_ttl_seconds:
            return None
        return self._cached

    async def _probe(self, idx: int) -> bool:
        endpoint = self.endpoints[idx]
        try:
            client = self._client_for(idx)
            await asyncio.wait_for(asyncio.to_thread(self._probe_call, client), timeout=self.timeout_seconds)
        except Exception as exc:
            endpoint.consecutive_failures += 1
            logger.warning(
                "RPC_PROBE_FAIL endpoint=%s failures=%s err=%s",
                endpoint.name,
                endpoint.consecutive_failures,
                exc or exc.__class__.__name__,
            )
            return False
        endpoint.consecutive_failures = 0
        endpoint.last_healthy = time.time()
        return True

    async def get_client(self) -> Any:
        client = self._fresh_cached()
        if client is not None:
            return client
        async with self._refresh_lock:
            client = self._fresh_cached()
            if client is not None:
                return client
            total = len(self.endpoints)
            start = self._index
            for offset in range(total):
                idx = (start + offset) % total
                if await self._probe(idx):
                    if idx != self._index:
                        logger.info(
                            "RPC_SELECT from=%s to=%s",
                            self.endpoints[self._index].name,
                            self.endpoints[idx].name,
                        )
                        self._index = idx
                        self._generation += 1
                    self._cached = self._clients[idx]
                    self._cached_at = time.monotonic()
                    return self._cached
            self._cached = None
            raise AllEndpointsDown(f"{E_RPC_ALL_DOWN}: all {total} RPC endpoints are down")

    def rotate(self, reason: str = "manual") -> Endpoint:
        prev = self.endpoints[self._index]
        self._index = (self._index + 1) % len(self.endpoints)
        self._cached = None
        self._cached_at = 0.0
        self._generation += 1
        self._rotations += 1
        current = self.endpoints[self._index]
        logger.warning("RPC_ROTATE from=%s to=%s reason=%s", prev.name, current.name, reason)
        if self._on_rotate is not None:
            try:
                self._on_rotate({"from": prev.name, "to": current.name, "reason": reason})
            except Exception:
                logger.exception("RPC_ROTATE callback failed")
        return current

    def report_error(self, exc: BaseException, *, generation: int | None = None) -> bool:
        """Rotate on transport errors; returns True when a rotation happened.

        A caller passing the `generation` it read before its call avoids a double rotation
        when several consumers observe the same outage.
        """
        if not is_network_error(exc):
            return False
        if generation is not None and generation != self._generation:
            return False
        self.rotate(reason=f"network_error:{exc.__class__.__name__}")
        return True

    async def run(self, fn: Callable[[Any], T], *, timeout_seconds: float | None = None) -> T:
        """Run a blocking web3 call against the active client in a worker thread."""
        client = await self.get_client()
        generation = self._generation
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, client),
                timeout=float(timeout_seconds or self.timeout_seconds),
            )
        except Exception as exc:
            self.report_error(exc, generation=generation)
            raise

    async def block_number(self) -> int:
        return int(await self.run(_probe_block_number))

    async def check_once(self) -> bool:
        """Probe the active endpoint; rotate after `max_failures` consecutive failures."""
        idx = self._index
        ok = await self._probe(idx)
        if ok:
            return True
        endpoint = self.endpoints[idx]
        if endpoint.consecutive_failures >= self.max_failures and idx == self._index:
            self.rotate(reason=f"health_check_failures={endpoint.consecutive_failures}")
        return False

    async def _health_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.health_interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.check_once()
            except Exception:
                logger.exception("RPC_HEALTH loop error")

    def start(self) -> None:
        if self._health_task is not None and not self._health_task.done():
            return
        self._stop.clear()
        self._health_task = asyncio.create_task(self._health_loop(), name="rpc-health")

    async def close(self) -> None:
        self._stop.set()
        task = self._health_task
        self._health_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def snapshot(self) -> dict[str, Any]:
        return {
            "active_index": int(self._index),
            "active": self.active.name,
            "rotations": int(self._rotations),
            "cached": self._fresh_cached() is not None,
            "endpoints": [e.to_dict() for e in self.endpoints],
        }
