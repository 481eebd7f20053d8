"""Named sniper presets."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SniperPreset:
    name: str
    max_slippage: float
    min_liquidity_usd: float
    min_score: int
    max_buy_percent: float

    @property
    def max_buy_fraction(self) -> float:
        return self.max_buy_percent / 100.0


PRESETS: dict[str, SniperPreset] = {
    "safe": SniperPreset("safe", max_slippage=3.0, min_liquidity_usd=50_000, min_score=65, max_buy_percent=0.5),
    "normal": SniperPreset("normal", max_slippage=5.0, min_liquidity_usd=20_000, min_score=40, max_buy_percent=1.0),
    "degenerate": SniperPreset(
        "degenerate", max_slippage=10.0, min_liquidity_usd=5_000, min_score=0, max_buy_percent=2.5
    ),
    "ultraAI": SniperPreset("ultraAI", max_slippage=5.0, min_liquidity_usd=30_000, min_score=75, max_buy_percent=1.0),
}

DEFAULT_PRESET = "normal"


def get_preset(name: str | None) -> SniperPreset:
    key = str(name or "").strip()
    if key in PRESETS:
        return PRESETS[key]
    for preset_name, preset in PRESETS.items():
        if preset_name.lower() == key.lower():
            return preset
    return PRESETS[DEFAULT_PRESET]
