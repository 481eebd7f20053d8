"""DexScreener market data: best pair snapshot and spot price per token."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import config
from utils.addressing import normalize_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


def _as_float(value: Any) -> float | None:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out


class DexScreenerClient:
    def __init__(self, http: ResilientHttpClient | None = None, *, chain_id: str | None = None) -> None:
        self._owns_http = http is None
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(config.HTTP_TIMEOUT_SECONDS),
            headers={"Accept": "application/json, text/plain, */*"},
            source_limits={"dexscreener": 8, "dex_price": 8},
        )
        self.chain_id = str(chain_id or config.CHAIN_ID).lower()

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    async def _fetch_pairs(self, token_address: str, *, source: str, retries: int | None = None) -> list[dict[str, Any]]:
        token_address = normalize_address(token_address)
        if not token_address:
            return []
        url = f"{config.DEXSCREENER_API}/tokens/{token_address}"
        result = await self._http.get_json(url, source=source, max_attempts=retries)
        if not result.ok or not isinstance(result.data, dict):
            logger.debug("DEXSCREENER_FAIL source=%s url=%s err=%s", source, url, result.error)
            return []
        pairs = result.data.get("pairs") or []
        return [p for p in pairs if isinstance(p, dict) and str(p.get("chainId", "")).lower() == self.chain_id]

    @staticmethod
    def _best_pair(pairs: list[dict[str, Any]]) -> dict[str, Any] | None:
        best_pair = None
        best_liq = -1.0
        for pair in pairs:
            liq = _as_float((pair.get("liquidity") or {}).get("usd")) or 0.0
            if liq > best_liq:
                best_liq = liq
                best_pair = pair
        return best_pair

    async def fetch_pair_metrics(self, token_address: str) -> dict[str, Any] | None:
        """Snapshot of the deepest pair on the configured chain, or None."""
        pair = self._best_pair(await self._fetch_pairs(token_address, source="dexscreener"))
        if pair is None:
            return None
        age_seconds = None
        created_ms = _as_float(pair.get("pairCreatedAt"))
        if created_ms:
            now_ts = datetime.now(timezone.utc).timestamp()
            age_seconds = max(0.0, now_ts - created_ms / 1000.0)
        return {
            "price_usd": _as_float(pair.get("priceUsd")),
            "liquidity_usd": _as_float((pair.get("liquidity") or {}).get("usd")),
            "volume_24h": _as_float((pair.get("volume") or {}).get("h24")),
            "fdv": _as_float(pair.get("fdv")),
            "pair_address": str(pair.get("pairAddress") or ""),
            "dex": str(pair.get("dexId") or "").lower(),
            "age_seconds": age_seconds,
        }

    async def get_price_usd(self, token_address: str) -> float | None:
        pair = self._best_pair(await self._fetch_pairs(token_address, source="dex_price", retries=1))
        if pair is None:
            return None
        price = _as_float(pair.get("priceUsd"))
        return price if price and price > 0 else None
