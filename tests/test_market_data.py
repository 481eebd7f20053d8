from __future__ import annotations

import unittest

from monitor.market_data import MarketMetricsSource, merge_metrics
from monitor.token_checker import parse_goplus_entry

TOKEN = "0x6666666666666666666666666666666666666666"


class GoPlusParseTests(unittest.TestCase):
    def test_taxes_become_percent_and_holder_rows_are_filtered(self) -> None:
        entry = {
            "buy_tax": "0.05",
            "sell_tax": "0.1",
            "holder_count": "321",
            "holders": [
                {"percent": "0.5", "is_contract": 1, "is_locked": 0},
                {"percent": "0.4", "is_contract": 0, "is_locked": 1},
                {"percent": "0.12", "is_contract": 0, "is_locked": 0},
                {"percent": "0.08", "is_contract": 0, "is_locked": 0},
            ],
            "lp_holders": [
                {"percent": "0.6", "is_locked": 1},
                {"percent": "0.3", "is_locked": "1"},
                {"percent": "0.1", "is_locked": 0},
            ],
            "is_honeypot": "0",
        }
        parsed = parse_goplus_entry(entry)
        self.assertAlmostEqual(parsed["buy_tax"], 5.0)
        self.assertAlmostEqual(parsed["sell_tax"], 10.0)
        self.assertEqual(parsed["holders"], 321)
        self.assertAlmostEqual(parsed["top_holder_share"], 0.12)
        self.assertAlmostEqual(parsed["lp_locked_share"], 0.9)
        self.assertFalse(parsed["honeypot"])

    def test_missing_fields_stay_unknown(self) -> None:
        parsed = parse_goplus_entry({"cannot_sell_all": "1"})
        self.assertIsNone(parsed["buy_tax"])
        self.assertIsNone(parsed["holders"])
        self.assertIsNone(parsed["top_holder_share"])
        self.assertIsNone(parsed["lp_locked_share"])
        self.assertTrue(parsed["honeypot"])


class MergeMetricsTests(unittest.TestCase):
    def test_both_missing_is_none(self) -> None:
        self.assertIsNone(merge_metrics(None, None))

    def test_one_side_is_enough(self) -> None:
        metrics = merge_metrics({"liquidity_usd": 12_000.0, "volume_24h": 800.0}, None)
        self.assertEqual(metrics.liquidity_usd, 12_000.0)
        self.assertIsNone(metrics.holders)

        metrics = merge_metrics(None, {"holders": 40, "sell_tax": 3.0, "honeypot": False})
        self.assertEqual(metrics.holders, 40)
        self.assertIsNone(metrics.liquidity_usd)


class FakeDex:
    def __init__(self, pair=None, error: Exception | None = None) -> None:
        self.pair = pair
        self.error = error

    async def fetch_pair_metrics(self, token: str):
        if self.error:
            raise self.error
        return self.pair

    async def get_price_usd(self, token: str):
        return (self.pair or {}).get("price_usd")

    async def close(self) -> None:
        return None


class FakeChecker:
    def __init__(self, security=None) -> None:
        self.security = security

    async def fetch_security(self, token: str):
        return self.security

    async def close(self) -> None:
        return None


class MarketMetricsSourceTests(unittest.IsolatedAsyncioTestCase):
    async def test_failed_source_is_dropped_not_raised(self) -> None:
        source = MarketMetricsSource(FakeDex(error=RuntimeError("boom")), FakeChecker({"holders": 77}))
        metrics = await source.fetch(TOKEN)
        self.assertEqual(metrics.holders, 77)
        self.assertIsNone(metrics.liquidity_usd)

    async def test_price_comes_from_dex(self) -> None:
        source = MarketMetricsSource(FakeDex({"price_usd": 0.0021}), FakeChecker())
        self.assertEqual(await source.get_price_usd(TOKEN), 0.0021)
        await source.close()


if __name__ == "__main__":
    unittest.main()
