"""Process-wide capital governor: per-trade cap, daily loss cap and loss-streak kill switch."""

from __future__ import annotations

import logging
import math
import os
import threading
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable

import config
from utils.notifier import OperatorNotifier

logger = logging.getLogger(__name__)

E_TRADING_DISABLED = "E_TRADING_DISABLED"
E_INVALID_AMOUNT = "E_INVALID_AMOUNT"
E_EXCEEDS_MAX_TRADE = "E_EXCEEDS_MAX_TRADE"
E_DAILY_LOSS_LIMIT = "E_DAILY_LOSS_LIMIT"
E_LOSS_STREAK = "E_LOSS_STREAK"


class GuardRejection(RuntimeError):
    """Base for expected trade refusals; `code` is stable for logs and reason strings."""

    code = "E_GUARD"


class TradingDisabled(GuardRejection):
    code = E_TRADING_DISABLED


class InvalidAmount(GuardRejection):
    code = E_INVALID_AMOUNT


class ExceedsMaxTradeSize(GuardRejection):
    code = E_EXCEEDS_MAX_TRADE


class DailyLossLimitReached(GuardRejection):
    code = E_DAILY_LOSS_LIMIT


class MaxLossStreakReached(GuardRejection):
    code = E_LOSS_STREAK


@dataclass
class GuardState:
    trading_enabled: bool = True
    daily_loss_usd: float = 0.0
    loss_streak: int = 0
    last_reset_date: str = ""
    disabled_reason: str = ""


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def normalize_amount(amount_usd: Any) -> float:
    """Round to cents; non-numeric input becomes NaN so validation rejects it."""
    try:
        value = float(amount_usd)
    except (TypeError, ValueError):
        return math.nan
    if not math.isfinite(value):
        return math.nan
    return round(value, 2)


class CapitalGuard:
    """Single mandatory checkpoint before every trade attempt, paper or live.

    Counters reset lazily on the first call of each UTC day. Crossing the daily loss
    limit or the loss-streak limit disables trading on that same `record_loss` call;
    only an explicit `enable_trading()` turns it back on.
    """

    def __init__(
        self,
        *,
        max_trade_usd: float | None = None,
        max_daily_loss_usd: float | None = None,
        max_loss_streak: int | None = None,
        kill_switch_file: str | None = None,
        notifier: OperatorNotifier | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        self.max_trade_usd = float(config.MAX_TRADE_USD if max_trade_usd is None else max_trade_usd)
        self.max_daily_loss_usd = float(
            config.MAX_DAILY_LOSS_USD if max_daily_loss_usd is None else max_daily_loss_usd
        )
        self.max_loss_streak = int(config.MAX_LOSS_STREAK if max_loss_streak is None else max_loss_streak)
        self.kill_switch_file = str(config.KILL_SWITCH_FILE if kill_switch_file is None else kill_switch_file)
        self._notifier = notifier
        self._today = today or _utc_today
        self._lock = threading.Lock()
        self._state = GuardState(last_reset_date=self._today().isoformat())

    @staticmethod
    def _env_disabled() -> bool:
        return bool(getattr(config, "TRADING_DISABLED", False))

    def _kill_switch_active(self) -> bool:
        try:
            return bool(self.kill_switch_file) and os.path.exists(self.kill_switch_file)
        except OSError:
            return False

    def _reset_if_new_day(self) -> None:
        today = self._today().isoformat()
        if today == self._state.last_reset_date:
            return
        logger.info(
            "GUARD_DAILY_RESET prev_day=%s daily_loss=%.2f streak=%s",
            self._state.last_reset_date,
            self._state.daily_loss_usd,
            self._state.loss_streak,
        )
        self._state.daily_loss_usd = 0.0
        self._state.loss_streak = 0
        self._state.last_reset_date = today

    def can_trade(self, amount_usd: float) -> None:
        """Return None when the trade is allowed, otherwise raise a `GuardRejection`."""
        with self._lock:
            self._reset_if_new_day()
            amount = normalize_amount(amount_usd)
            state = self._state
            if self._env_disabled():
                raise TradingDisabled("trading disabled via env TRADING_DISABLED")
            if self._kill_switch_active():
                raise TradingDisabled(f"trading disabled via kill switch file {self.kill_switch_file}")
            if not state.trading_enabled:
                raise TradingDisabled(f"trading disabled (kill switch active: {state.disabled_reason or 'manual'})")
            if math.isnan(amount) or amount <= 0:
                raise InvalidAmount(f"invalid trade amount {amount_usd!r}")
            if amount > self.max_trade_usd:
                raise ExceedsMaxTradeSize(f"trade ${amount:.2f} exceeds max size ${self.max_trade_usd:.2f}")
            if state.daily_loss_usd >= self.max_daily_loss_usd:
                raise DailyLossLimitReached(
                    f"daily loss ${state.daily_loss_usd:.2f} reached limit ${self.max_daily_loss_usd:.2f}"
                )
            if state.loss_streak >= self.max_loss_streak:
                raise MaxLossStreakReached(f"loss streak {state.loss_streak} reached limit {self.max_loss_streak}")

    def check(self, amount_usd: float) -> tuple[bool, str]:
        try:
            self.can_trade(amount_usd)
        except GuardRejection as exc:
            return False, f"{exc.code}: {exc}"
        return True, "ok"

    def record_loss(self, amount_usd: float) -> None:
        loss = normalize_amount(abs(float(amount_usd)))
        tripped: list[str] = []
        with self._lock:
            self._reset_if_new_day()
            state = self._state
            state.daily_loss_usd = round(state.daily_loss_usd + (0.0 if math.isnan(loss) else loss), 2)
            state.loss_streak += 1
            logger.warning(
                "GUARD_LOSS loss=%.2f daily_loss=%.2f streak=%s",
                0.0 if math.isnan(loss) else loss,
                state.daily_loss_usd,
                state.loss_streak,
            )
            if state.daily_loss_usd >= self.max_daily_loss_usd:
                tripped.append(f"daily loss limit breached ${state.daily_loss_usd:.2f}/${self.max_daily_loss_usd:.2f}")
            if state.loss_streak >= self.max_loss_streak:
                tripped.append(f"max loss streak breached {state.loss_streak}/{self.max_loss_streak}")
            was_enabled = state.trading_enabled
            if tripped:
                state.trading_enabled = False
                state.disabled_reason = "; ".join(tripped)
        if tripped and was_enabled:
            self._announce_stop("; ".join(tripped))

    def record_win(self, amount_usd: float = 0.0) -> None:
        with self._lock:
            self._reset_if_new_day()
            self._state.loss_streak = 0
        logger.info("GUARD_WIN profit=%.2f", max(0.0, normalize_amount(amount_usd) or 0.0))

    def disable_trading(self, reason: str = "manual stop") -> None:
        with self._lock:
            was_enabled = self._state.trading_enabled
            self._state.trading_enabled = False
            self._state.disabled_reason = str(reason)
        if was_enabled:
            self._announce_stop(str(reason))

    def enable_trading(self) -> None:
        with self._lock:
            self._state.trading_enabled = True
            self._state.loss_streak = 0
            self._state.disabled_reason = ""
        logger.warning("KILL_SWITCH released trading_enabled=true")

    def _announce_stop(self, reason: str) -> None:
        logger.error("KILL_SWITCH tripped trading_enabled=false reason=%s", reason)
        if self._notifier is not None:
            self._notifier.notify_nowait("Trading stopped", reason)

    @property
    def trading_enabled(self) -> bool:
        return self._state.trading_enabled

    def state(self) -> GuardState:
        with self._lock:
            self._reset_if_new_day()
            return GuardState(**asdict(self._state))

    def status(self) -> dict[str, Any]:
        state = self.state()
        return {
            "trading_enabled": state.trading_enabled,
            "daily_loss_usd": round(state.daily_loss_usd, 2),
            "loss_streak": state.loss_streak,
            "last_reset_date": state.last_reset_date,
            "disabled_reason": state.disabled_reason,
            "limits": {
                "max_daily_loss_usd": self.max_daily_loss_usd,
                "max_trade_usd": self.max_trade_usd,
                "max_loss_streak": self.max_loss_streak,
            },
            "env_disabled": self._env_disabled(),
            "kill_switch_file_active": self._kill_switch_active(),
        }
