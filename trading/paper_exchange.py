"""Simulated exchange: fills at the quoted market price with configured slippage."""

from __future__ import annotations

import logging
import uuid

import config
from trading.execution import BuyFill, PriceFeed, SellFill

logger = logging.getLogger(__name__)


class PaperExchange:
    def __init__(self, price_feed: PriceFeed, *, slippage_percent: float | None = None) -> None:
        self.price_feed = price_feed
        self.slippage_percent = float(
            config.PAPER_SLIPPAGE_PERCENT if slippage_percent is None else slippage_percent
        )

    def _slip(self, max_slippage_percent: float) -> float:
        # Never simulate worse than the caller's tolerance.
        return max(0.0, min(self.slippage_percent, float(max_slippage_percent)))

    async def _quote(self, token: str) -> float:
        price = await self.price_feed.get_price_usd(token)
        if price is None or float(price) <= 0:
            raise RuntimeError(f"no_price token={token}")
        return float(price)

    async def buy(self, token: str, usd_amount: float, slippage_percent: float) -> BuyFill:
        price = await self._quote(token)
        executed = price * (1.0 + self._slip(slippage_percent) / 100.0)
        tokens = float(usd_amount) / executed
        fill = BuyFill(tx_ref=f"paper-{uuid.uuid4().hex[:12]}", executed_price_usd=executed, tokens_received=tokens)
        logger.info("PAPER_BUY token=%s usd=%.2f price=%.10f tokens=%.6f", token, usd_amount, executed, tokens)
        return fill

    async def sell(self, token: str, token_amount: float, slippage_percent: float) -> SellFill:
        price = await self._quote(token)
        executed = price * (1.0 - self._slip(slippage_percent) / 100.0)
        usd = float(token_amount) * executed
        logger.info("PAPER_SELL token=%s tokens=%.6f price=%.10f usd=%.2f", token, token_amount, executed, usd)
        return SellFill(tx_ref=f"paper-{uuid.uuid4().hex[:12]}", executed_price_usd=executed, usd_received=usd)
