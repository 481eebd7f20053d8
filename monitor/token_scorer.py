"""Deterministic weighted rug/fraud risk scoring for candidate tokens."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Protocol

import config

logger = logging.getLogger(__name__)

RISK_LOW = "LOW"
RISK_MEDIUM = "MEDIUM"
RISK_HIGH = "HIGH"

# tier -> (recommended_buy_fraction, min_buy_usd); HIGH zeroes the fraction and vetoes the trade.
TIER_POLICY: dict[str, tuple[float, float]] = {
    RISK_LOW: (0.05, 5.0),
    RISK_MEDIUM: (0.02, 2.0),
    RISK_HIGH: (0.0, 0.0),
}


@dataclass(frozen=True)
class MarketMetrics:
    """Off-chain market facts for one token; every field may be unknown."""

    price_usd: float | None = None
    liquidity_usd: float | None = None
    volume_24h: float | None = None
    holders: int | None = None
    buy_tax: float | None = None
    sell_tax: float | None = None
    fdv: float | None = None
    top_holder_share: float | None = None
    dev_concentration: float | None = None
    lp_locked_share: float | None = None
    honeypot: bool | None = None
    age_seconds: float | None = None


@dataclass(frozen=True)
class ContractFacts:
    """Best-effort on-chain inspection result."""

    code_size: int | None = None
    bytecode_flags: tuple[str, ...] = ()
    owner_share: float | None = None
    check_failed: bool = False


@dataclass(frozen=True)
class SignalMetrics:
    liquidity_usd: float
    holders: int | None
    volume_24h: float
    dev_concentration: float
    buy_tax: float | None
    sell_tax: float | None
    age_seconds: float | None


@dataclass(frozen=True)
class SubScores:
    liquidity: float
    contract: float
    activity: float
    dev_wallets: float


@dataclass(frozen=True)
class RiskWeights:
    liquidity: float = 0.25
    contract: float = 0.35
    activity: float = 0.20
    dev_wallets: float = 0.20

    @classmethod
    def from_config(cls) -> "RiskWeights":
        return cls(
            liquidity=float(getattr(config, "RISK_WEIGHT_LIQUIDITY", 0.25)),
            contract=float(getattr(config, "RISK_WEIGHT_CONTRACT", 0.35)),
            activity=float(getattr(config, "RISK_WEIGHT_ACTIVITY", 0.20)),
            dev_wallets=float(getattr(config, "RISK_WEIGHT_DEV_WALLETS", 0.20)),
        )

    @property
    def total(self) -> float:
        return self.liquidity + self.contract + self.activity + self.dev_wallets


@dataclass(frozen=True)
class RiskThresholds:
    liquidity_usd: float = 20_000.0
    min_holders: int = 20
    high_tax_percent: float = 25.0
    dev_danger_share: float = 0.5
    dev_concentration_flag: float = 0.6
    volume_spike_ratio: float = 3.0
    activity_ratio_cap: float = 3.0
    activity_full_ratio: float = 1.0
    min_lp_locked_share: float = 0.5

    @classmethod
    def from_config(cls) -> "RiskThresholds":
        return cls(
            liquidity_usd=float(getattr(config, "RISK_LIQUIDITY_THRESHOLD_USD", 20_000.0)),
            min_holders=int(getattr(config, "RISK_MIN_HOLDERS", 20)),
            high_tax_percent=float(getattr(config, "RISK_HIGH_TAX_PERCENT", 25.0)),
            dev_danger_share=float(getattr(config, "RISK_DEV_DANGER_SHARE", 0.5)),
            dev_concentration_flag=float(getattr(config, "RISK_DEV_CONCENTRATION_FLAG", 0.6)),
            volume_spike_ratio=float(getattr(config, "RISK_VOLUME_SPIKE_RATIO", 3.0)),
            activity_ratio_cap=float(getattr(config, "RISK_ACTIVITY_RATIO_CAP", 3.0)),
            activity_full_ratio=float(getattr(config, "RISK_ACTIVITY_FULL_RATIO", 1.0)),
            min_lp_locked_share=float(getattr(config, "RISK_MIN_LP_LOCKED_SHARE", 0.5)),
        )


@dataclass(frozen=True)
class RiskSignal:
    token: str
    score: int
    risk_tier: str
    flags: frozenset[str]
    metrics: SignalMetrics
    recommended_buy_fraction: float
    min_buy_usd: float
    created_at: float
    sub_scores: SubScores = field(default=SubScores(0.0, 0.0, 0.0, 0.0), compare=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "score": int(self.score),
            "risk_tier": self.risk_tier,
            "flags": sorted(self.flags),
            "metrics": asdict(self.metrics),
            "sub_scores": asdict(self.sub_scores),
            "recommended_buy_fraction": float(self.recommended_buy_fraction),
            "min_buy_usd": float(self.min_buy_usd),
            "created_at": float(self.created_at),
        }


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def risk_tier_for_score(score: int) -> str:
    if score >= 75:
        return RISK_LOW
    if score >= 45:
        return RISK_MEDIUM
    return RISK_HIGH


def dev_concentration_for(
    metrics: MarketMetrics | None,
    contract: ContractFacts | None,
    danger_share: float,
) -> float:
    """Share of supply under developer control scaled to [0, 1]; unknown means 1.0."""
    if metrics is not None and metrics.dev_concentration is not None:
        return _clamp01(metrics.dev_concentration)
    share: float | None = None
    if metrics is not None and metrics.top_holder_share is not None:
        share = float(metrics.top_holder_share)
    elif contract is not None and contract.owner_share is not None:
        share = float(contract.owner_share)
    if share is None:
        return 1.0
    return _clamp01(share / max(1e-9, float(danger_share)))


def score_token(
    token: str,
    metrics: MarketMetrics | None,
    contract: ContractFacts | None = None,
    *,
    weights: RiskWeights | None = None,
    thresholds: RiskThresholds | None = None,
    created_at: float | None = None,
) -> RiskSignal:
    """Pure scoring function: identical inputs always yield an identical signal."""
    weights = weights or RiskWeights.from_config()
    th = thresholds or RiskThresholds.from_config()
    flags: set[str] = set()
    if metrics is None:
        flags.add("metrics_unavailable")
    m = metrics or MarketMetrics()

    liquidity_usd = max(0.0, float(m.liquidity_usd or 0.0))
    volume_24h = max(0.0, float(m.volume_24h or 0.0))
    dev_concentration = dev_concentration_for(metrics, contract, th.dev_danger_share)

    liquidity_metric = _clamp01(liquidity_usd / max(1e-9, th.liquidity_usd))
    contract_metric = 1.0 - dev_concentration
    volume_ratio = (volume_24h / liquidity_usd) if liquidity_usd > 0 else 0.0
    activity_metric = _clamp01(min(volume_ratio, th.activity_ratio_cap) / max(1e-9, th.activity_full_ratio))
    # Mirrors the contract metric, so concentration risk is weighted twice.
    dev_wallets_metric = contract_metric

    weighted = (
        weights.liquidity * liquidity_metric
        + weights.contract * contract_metric
        + weights.activity * activity_metric
        + weights.dev_wallets * dev_wallets_metric
    )
    normalized = weighted / weights.total if weights.total > 0 else 0.0
    score = int(max(0, min(100, round(normalized * 100))))
    tier = risk_tier_for_score(score)

    if liquidity_usd < th.liquidity_usd:
        flags.add("low_liquidity")
    if m.holders is None or int(m.holders) < th.min_holders:
        flags.add("low_holders")
    if max(float(m.buy_tax or 0.0), float(m.sell_tax or 0.0)) > th.high_tax_percent:
        flags.add("high_tax")
    if m.honeypot:
        flags.add("honeypot")
    if m.lp_locked_share is not None and float(m.lp_locked_share) < th.min_lp_locked_share:
        flags.add("liquidity_unlocked")
    if volume_ratio > th.volume_spike_ratio:
        flags.add("abnormal_volume_spike")
    if dev_concentration > th.dev_concentration_flag:
        flags.add("dev_concentration_high")
    if contract is not None:
        if contract.check_failed:
            flags.add("bytecode_check_failed")
        flags.update(contract.bytecode_flags)
        if contract.owner_share is not None and float(contract.owner_share) > 0.5:
            flags.add("owner_gt_50")

    fraction, min_buy = TIER_POLICY[tier]
    return RiskSignal(
        token=str(token),
        score=score,
        risk_tier=tier,
        flags=frozenset(flags),
        metrics=SignalMetrics(
            liquidity_usd=liquidity_usd,
            holders=(None if m.holders is None else int(m.holders)),
            volume_24h=volume_24h,
            dev_concentration=dev_concentration,
            buy_tax=m.buy_tax,
            sell_tax=m.sell_tax,
            age_seconds=m.age_seconds,
        ),
        recommended_buy_fraction=fraction,
        min_buy_usd=min_buy,
        created_at=float(time.time() if created_at is None else created_at),
        sub_scores=SubScores(
            liquidity=round(liquidity_metric, 6),
            contract=round(contract_metric, 6),
            activity=round(activity_metric, 6),
            dev_wallets=round(dev_wallets_metric, 6),
        ),
    )


def format_risk_report(signal: RiskSignal) -> str:
    """Plain-text report for chat or dashboard output."""
    metrics = signal.metrics
    holders = "n/a" if metrics.holders is None else str(metrics.holders)
    taxes = "n/a"
    if metrics.buy_tax is not None or metrics.sell_tax is not None:
        taxes = f"{float(metrics.buy_tax or 0):.1f}% / {float(metrics.sell_tax or 0):.1f}%"
    lines = [
        f"Risk report {signal.token}",
        f"Score: {signal.score}/100 ({signal.risk_tier})",
        f"Liquidity: ${metrics.liquidity_usd:,.0f}",
        f"Volume 24h: ${metrics.volume_24h:,.0f}",
        f"Holders: {holders}",
        f"Taxes buy/sell: {taxes}",
        f"Dev concentration: {metrics.dev_concentration * 100:.0f}%",
        f"Recommended buy: {signal.recommended_buy_fraction * 100:.1f}% of balance (min ${signal.min_buy_usd:.2f})",
    ]
    if signal.flags:
        lines.append("Flags: " + ", ".join(sorted(signal.flags)))
    else:
        lines.append("Flags: none")
    return "\n".join(lines)


class MetricsProvider(Protocol):
    def fetch(self, token: str) -> Awaitable[MarketMetrics | None]: ...


class ContractInspectorLike(Protocol):
    def inspect(self, token: str) -> Awaitable[ContractFacts | None]: ...


class RiskScorer:
    """Gathers metrics with bounded lookups and scores them; lookups never abort scoring."""

    def __init__(
        self,
        metrics_source: MetricsProvider | None,
        inspector: ContractInspectorLike | None = None,
        *,
        lookup_timeout_seconds: float | None = None,
        weights: RiskWeights | None = None,
        thresholds: RiskThresholds | None = None,
    ) -> None:
        self._metrics_source = metrics_source
        self._inspector = inspector
        self.lookup_timeout_seconds = float(
            config.RISK_LOOKUP_TIMEOUT_SECONDS if lookup_timeout_seconds is None else lookup_timeout_seconds
        )
        self._weights = weights
        self._thresholds = thresholds

    async def _guarded(self, awaitable: Awaitable[Any], what: str, token: str) -> Any | None:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.lookup_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("RISK_LOOKUP_TIMEOUT token=%s lookup=%s timeout=%ss", token, what, self.lookup_timeout_seconds)
        except Exception as exc:
            logger.warning("RISK_LOOKUP_FAIL token=%s lookup=%s err=%s", token, what, exc)
        return None

    async def _no_metrics(self) -> None:
        return None

    async def assess(self, token: str) -> RiskSignal:
        metrics_job = (
            self._guarded(self._metrics_source.fetch(token), "metrics", token)
            if self._metrics_source is not None
            else self._no_metrics()
        )
        if self._inspector is not None:
            metrics, contract = await asyncio.gather(
                metrics_job,
                self._guarded(self._inspector.inspect(token), "contract", token),
            )
            if contract is None:
                contract = ContractFacts(check_failed=True)
        else:
            metrics, contract = await metrics_job, None
        signal = score_token(token, metrics, contract, weights=self._weights, thresholds=self._thresholds)
        logger.info(
            "RISK_SCORE token=%s score=%s tier=%s flags=%s",
            token,
            signal.score,
            signal.risk_tier,
            ",".join(sorted(signal.flags)) or "none",
        )
        return signal
