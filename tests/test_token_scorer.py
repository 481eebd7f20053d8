from __future__ import annotations

import asyncio
import unittest

from monitor.token_scorer import (
    RISK_HIGH,
    RISK_LOW,
    RISK_MEDIUM,
    ContractFacts,
    MarketMetrics,
    RiskScorer,
    RiskThresholds,
    RiskWeights,
    dev_concentration_for,
    format_risk_report,
    risk_tier_for_score,
    score_token,
)

TOKEN = "0x3333333333333333333333333333333333333333"
WEIGHTS = RiskWeights()
THRESHOLDS = RiskThresholds()


def _score(metrics: MarketMetrics | None, contract: ContractFacts | None = None):
    return score_token(TOKEN, metrics, contract, weights=WEIGHTS, thresholds=THRESHOLDS, created_at=1.0)


class ScoreTokenTests(unittest.TestCase):
    def test_healthy_token_scores_low_risk(self) -> None:
        signal = _score(MarketMetrics(liquidity_usd=50_000, volume_24h=50_000, holders=300, dev_concentration=0.0))
        self.assertEqual(signal.score, 100)
        self.assertEqual(signal.risk_tier, RISK_LOW)
        self.assertEqual(signal.flags, frozenset())
        self.assertEqual((signal.recommended_buy_fraction, signal.min_buy_usd), (0.05, 5.0))

    def test_weighted_sum_with_partial_metrics(self) -> None:
        signal = _score(MarketMetrics(liquidity_usd=100_000, volume_24h=0, holders=300, dev_concentration=0.4))
        self.assertEqual(signal.score, 58)
        self.assertEqual(signal.risk_tier, RISK_MEDIUM)
        self.assertAlmostEqual(signal.sub_scores.contract, 0.6)
        self.assertEqual(signal.sub_scores.dev_wallets, signal.sub_scores.contract)

    def test_missing_metrics_degrade_to_worst_case(self) -> None:
        signal = _score(None)
        self.assertEqual(signal.score, 0)
        self.assertEqual(signal.risk_tier, RISK_HIGH)
        self.assertEqual(signal.recommended_buy_fraction, 0.0)
        self.assertTrue({"metrics_unavailable", "low_liquidity", "low_holders"} <= signal.flags)

    def test_scoring_is_deterministic(self) -> None:
        metrics = MarketMetrics(liquidity_usd=12_345, volume_24h=999, holders=42, top_holder_share=0.2)
        self.assertEqual(_score(metrics), _score(metrics))

    def test_threshold_and_derived_flags(self) -> None:
        signal = _score(
            MarketMetrics(
                liquidity_usd=10_000,
                volume_24h=40_000,
                holders=5,
                buy_tax=5,
                sell_tax=30,
                top_holder_share=0.45,
                lp_locked_share=0.1,
                honeypot=True,
            )
        )
        expected = {
            "low_liquidity",
            "low_holders",
            "high_tax",
            "liquidity_unlocked",
            "honeypot",
            "abnormal_volume_spike",
            "dev_concentration_high",
        }
        self.assertEqual(signal.flags, frozenset(expected))
        self.assertAlmostEqual(signal.metrics.dev_concentration, 0.9)

    def test_contract_facts_add_advisory_flags(self) -> None:
        metrics = MarketMetrics(liquidity_usd=50_000, volume_24h=50_000, holders=300)
        signal = _score(metrics, ContractFacts(code_size=100, bytecode_flags=("bytecode_mint",), owner_share=0.6))
        self.assertIn("bytecode_mint", signal.flags)
        self.assertIn("owner_gt_50", signal.flags)
        self.assertEqual(signal.metrics.dev_concentration, 1.0)

        failed = _score(metrics, ContractFacts(check_failed=True))
        self.assertIn("bytecode_check_failed", failed.flags)

    def test_dev_concentration_sources(self) -> None:
        self.assertEqual(dev_concentration_for(None, None, 0.5), 1.0)
        self.assertAlmostEqual(dev_concentration_for(MarketMetrics(top_holder_share=0.1), None, 0.5), 0.2)
        self.assertAlmostEqual(dev_concentration_for(None, ContractFacts(owner_share=0.05), 0.5), 0.1)
        self.assertEqual(dev_concentration_for(MarketMetrics(dev_concentration=1.7), None, 0.5), 1.0)

    def test_tier_boundaries(self) -> None:
        self.assertEqual(risk_tier_for_score(75), RISK_LOW)
        self.assertEqual(risk_tier_for_score(74), RISK_MEDIUM)
        self.assertEqual(risk_tier_for_score(45), RISK_MEDIUM)
        self.assertEqual(risk_tier_for_score(44), RISK_HIGH)

    def test_report_and_payload(self) -> None:
        signal = _score(MarketMetrics(liquidity_usd=50_000, volume_24h=50_000, holders=300, dev_concentration=0.0))
        report = format_risk_report(signal)
        self.assertIn("Score: 100/100 (LOW)", report)
        self.assertIn("Flags: none", report)
        payload = signal.to_payload()
        self.assertEqual(payload["flags"], [])
        self.assertEqual(payload["metrics"]["holders"], 300)


class SlowSource:
    async def fetch(self, token: str) -> MarketMetrics | None:
        await asyncio.sleep(5)
        return None


class StaticSource:
    def __init__(self, metrics: MarketMetrics | None) -> None:
        self.metrics = metrics

    async def fetch(self, token: str) -> MarketMetrics | None:
        return self.metrics


class BrokenInspector:
    async def inspect(self, token: str) -> ContractFacts | None:
        raise ConnectionError("rpc down")


class RiskScorerTests(unittest.IsolatedAsyncioTestCase):
    async def test_slow_lookup_times_out_and_degrades(self) -> None:
        scorer = RiskScorer(SlowSource(), lookup_timeout_seconds=0.05, weights=WEIGHTS, thresholds=THRESHOLDS)
        signal = await scorer.assess(TOKEN)
        self.assertEqual(signal.risk_tier, RISK_HIGH)
        self.assertIn("metrics_unavailable", signal.flags)

    async def test_inspector_failure_is_flagged_not_raised(self) -> None:
        metrics = MarketMetrics(liquidity_usd=50_000, volume_24h=50_000, holders=300, dev_concentration=0.0)
        scorer = RiskScorer(StaticSource(metrics), BrokenInspector(), weights=WEIGHTS, thresholds=THRESHOLDS)
        signal = await scorer.assess(TOKEN)
        self.assertIn("bytecode_check_failed", signal.flags)
        self.assertEqual(signal.score, 100)


if __name__ == "__main__":
    unittest.main()
