"""Merges DexScreener and GoPlus lookups into scorer input."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from monitor.dexscreener import DexScreenerClient
from monitor.token_checker import TokenChecker
from monitor.token_scorer import MarketMetrics

logger = logging.getLogger(__name__)


def merge_metrics(pair: dict[str, Any] | None, security: dict[str, Any] | None) -> MarketMetrics | None:
    if pair is None and security is None:
        return None
    pair = pair or {}
    security = security or {}
    return MarketMetrics(
        price_usd=pair.get("price_usd"),
        liquidity_usd=pair.get("liquidity_usd"),
        volume_24h=pair.get("volume_24h"),
        fdv=pair.get("fdv"),
        age_seconds=pair.get("age_seconds"),
        holders=security.get("holders"),
        buy_tax=security.get("buy_tax"),
        sell_tax=security.get("sell_tax"),
        top_holder_share=security.get("top_holder_share"),
        lp_locked_share=security.get("lp_locked_share"),
        honeypot=security.get("honeypot"),
    )


class MarketMetricsSource:
    def __init__(self, dex: DexScreenerClient | None = None, checker: TokenChecker | None = None) -> None:
        self.dex = dex or DexScreenerClient()
        self.checker = checker or TokenChecker()

    async def close(self) -> None:
        await self.dex.close()
        await self.checker.close()

    async def fetch(self, token: str) -> MarketMetrics | None:
        pair, security = await asyncio.gather(
            self.dex.fetch_pair_metrics(token),
            self.checker.fetch_security(token),
            return_exceptions=True,
        )
        if isinstance(pair, BaseException):
            logger.warning("MARKET_DATA source=dexscreener token=%s err=%s", token, pair)
            pair = None
        if isinstance(security, BaseException):
            logger.warning("MARKET_DATA source=goplus token=%s err=%s", token, security)
            security = None
        return merge_metrics(pair, security)

    async def get_price_usd(self, token: str) -> float | None:
        return await self.dex.get_price_usd(token)
