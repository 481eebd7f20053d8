"""Execution coordinator: pre-checks, guard, buy, ledger, supervised exit monitors, sell."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import config
from monitor.token_scorer import RISK_HIGH, RiskSignal
from trading.capital_guard import CapitalGuard, GuardRejection
from trading.ledger import (
    MODE_LIVE,
    MODE_PAPER,
    Ledger,
    LedgerError,
    LedgerIOError,
    LedgerLockTimeout,
    TradeRecord,
)
from trading.presets import SniperPreset, get_preset
from trading.provider_pool import ProviderPool, is_network_error
from utils.addressing import normalize_address
from utils.http_client import backoff_delay
from utils.log_contracts import DecisionLog
from utils.notifier import OperatorNotifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

E_TRADE_TIMEOUT = "E_TRADE_TIMEOUT"
E_TX_UNCONFIRMED = "E_TX_UNCONFIRMED"

STATUS_EXECUTED = "executed"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"
STATUS_ALREADY_ACTIVE = "already_active"


class TradeTimeout(RuntimeError):
    code = E_TRADE_TIMEOUT


class TxSentError(RuntimeError):
    """A swap was broadcast but its outcome could not be read back. Never retried."""

    code = E_TX_UNCONFIRMED

    def __init__(self, tx_hash: str) -> None:
        super().__init__(f"{E_TX_UNCONFIRMED}: tx={tx_hash} was sent but its outcome is unknown")
        self.tx_hash = tx_hash


class TokenState(str, Enum):
    IDLE = "IDLE"
    LOCKED = "LOCKED"
    BUYING = "BUYING"
    MONITORING = "MONITORING"
    SELLING = "SELLING"
    UNRESOLVED = "UNRESOLVED"


@dataclass(frozen=True)
class CandidateToken:
    token: str
    pair: str = ""
    chain: str = ""
    creation_block: int | None = None
    timestamp: float = 0.0

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "CandidateToken":
        block = row.get("creation_block", row.get("block"))
        return cls(
            token=normalize_address(row.get("token") or row.get("token_address") or ""),
            pair=normalize_address(row.get("pair") or row.get("pair_address") or ""),
            chain=str(row.get("chain") or config.CHAIN_ID),
            creation_block=(int(block) if block not in (None, "") else None),
            timestamp=float(row.get("timestamp") or time.time()),
        )


@dataclass(frozen=True)
class BuyFill:
    tx_ref: str
    executed_price_usd: float
    tokens_received: float


@dataclass(frozen=True)
class SellFill:
    tx_ref: str
    executed_price_usd: float
    usd_received: float


@dataclass(frozen=True)
class ExecutionOutcome:
    status: str
    reason: str
    token: str
    trade: TradeRecord | None = None
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExitSettings:
    take_profit_percent: float = 20.0
    stop_loss_percent: float = 10.0
    trailing_enabled: bool = False
    trailing_percent: float = 5.0
    poll_interval_seconds: float = 10.0

    @classmethod
    def from_config(cls) -> "ExitSettings":
        return cls(
            take_profit_percent=float(config.TAKE_PROFIT_PERCENT),
            stop_loss_percent=float(config.STOP_LOSS_PERCENT),
            trailing_enabled=bool(config.TRAILING_STOP_ENABLED),
            trailing_percent=float(config.TRAILING_STOP_PERCENT),
            poll_interval_seconds=float(config.MONITOR_POLL_INTERVAL_SECONDS),
        )


class PriceFeed(Protocol):
    def get_price_usd(self, token: str) -> Awaitable[float | None]: ...


class ExchangeAdapter(Protocol):
    def buy(self, token: str, usd_amount: float, slippage_percent: float) -> Awaitable[BuyFill]: ...

    def sell(self, token: str, token_amount: float, slippage_percent: float) -> Awaitable[SellFill]: ...


_EPS = 1e-9


def exit_reason(entry_price: float, highest_price: float, price: float, settings: ExitSettings) -> str | None:
    """TP, then SL, then trailing stop measured from the high-water mark."""
    if entry_price <= 0 or price <= 0:
        return None
    change = (price - entry_price) / entry_price * 100.0
    if settings.take_profit_percent > 0 and change >= settings.take_profit_percent - _EPS:
        return "TP"
    if settings.stop_loss_percent > 0 and change <= -settings.stop_loss_percent + _EPS:
        return "SL"
    if settings.trailing_enabled and settings.trailing_percent > 0 and highest_price > 0:
        drawdown = (highest_price - price) / highest_price * 100.0
        if drawdown >= settings.trailing_percent - _EPS:
            return "TRAIL"
    return None


def pre_checks(
    signal: RiskSignal,
    preset: SniperPreset,
    *,
    current_block: int | None = None,
    creation_block: int | None = None,
    min_block_delay: int = 0,
) -> str | None:
    """Return the skip reason or None when the candidate may proceed."""
    if signal.risk_tier == RISK_HIGH:
        return "high_risk"
    if "honeypot" in signal.flags:
        return "honeypot"
    if signal.metrics.liquidity_usd < preset.min_liquidity_usd:
        return "insufficient_liquidity"
    if signal.score < preset.min_score:
        return "score_below_min"
    if min_block_delay > 0 and current_block is not None and creation_block is not None:
        if current_block - creation_block < min_block_delay:
            return "block_delay_not_met"
    return None


def compute_buy_amount_usd(signal: RiskSignal, balance_usd: float, preset: SniperPreset) -> float:
    fraction = min(float(signal.recommended_buy_fraction), preset.max_buy_fraction)
    if fraction <= 0 or balance_usd <= 0:
        return 0.0
    amount = max(1.0, fraction * float(balance_usd))
    return round(max(amount, float(signal.min_buy_usd)), 2)


class MonitorSupervisor:
    """Registry of running exit monitors; each one owns a stop event."""

    def __init__(self) -> None:
        self._monitors: dict[str, tuple[asyncio.Task, asyncio.Event]] = {}

    def start(self, token: str, factory: Callable[[asyncio.Event], Awaitable[None]]) -> asyncio.Task:
        if token in self._monitors:
            raise RuntimeError(f"monitor already running token={token}")
        stop = asyncio.Event()
        task = asyncio.create_task(factory(stop), name=f"monitor:{token}")
        self._monitors[token] = (task, stop)

        def _forget(done: asyncio.Task) -> None:
            entry = self._monitors.get(token)
            if entry is not None and entry[0] is done:
                del self._monitors[token]

        task.add_done_callback(_forget)
        return task

    def stop(self, token: str) -> bool:
        entry = self._monitors.get(token)
        if entry is None:
            return False
        entry[1].set()
        return True

    def is_active(self, token: str) -> bool:
        return token in self._monitors

    def active(self) -> list[str]:
        return sorted(self._monitors)

    async def shutdown(self, timeout: float) -> dict[str, int]:
        """Signal every monitor, wait up to `timeout`, then cancel the stragglers."""
        entries = list(self._monitors.values())
        if not entries:
            return {"stopped": 0, "cancelled": 0}
        for _, stop in entries:
            stop.set()
        tasks = [task for task, _ in entries]
        done, pending = await asyncio.wait(tasks, timeout=max(0.0, float(timeout)))
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("MONITOR_SHUTDOWN cancelled=%s", len(pending))
        return {"stopped": len(done), "cancelled": len(pending)}


class ExecutionCoordinator:
    """Turns risk signals into guarded trades and owns the per-token lifecycle.

    A token moves LOCKED -> BUYING -> MONITORING -> SELLING and is released back to
    IDLE `cooldown_seconds` after its attempt ends. The per-token lock is taken
    synchronously at the top of `execute()`, so two concurrent calls for the same
    token cannot both pass it. Different tokens proceed concurrently.

    When a swap fills but the ledger cannot record it, the token is held UNRESOLVED
    (never auto-released) until `resolve()` persists the pending write.
    """

    def __init__(
        self,
        ledger: Ledger,
        guard: CapitalGuard,
        pool: ProviderPool | None,
        adapter: ExchangeAdapter,
        price_feed: PriceFeed,
        *,
        mode: str | None = None,
        preset: SniperPreset | str | None = None,
        exit_settings: ExitSettings | None = None,
        cooldown_seconds: float | None = None,
        buy_timeout_seconds: float | None = None,
        sell_timeout_seconds: float | None = None,
        retry_attempts: int | None = None,
        min_block_delay: int | None = None,
        notifier: OperatorNotifier | None = None,
        decision_log: DecisionLog | None = None,
        supervisor: MonitorSupervisor | None = None,
    ) -> None:
        self.ledger = ledger
        self.guard = guard
        self.pool = pool
        self.adapter = adapter
        self.price_feed = price_feed
        self.mode = str(config.TRADE_MODE if mode is None else mode).strip().lower()
        if self.mode not in ("paper", "live"):
            raise ValueError(f"unknown trade mode {self.mode!r}")
        self.preset = preset if isinstance(preset, SniperPreset) else get_preset(preset or config.SNIPER_PRESET)
        self.exit_settings = exit_settings or ExitSettings.from_config()
        self.cooldown_seconds = float(config.SNIPE_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds)
        self.buy_timeout_seconds = float(
            config.BUY_TIMEOUT_SECONDS if buy_timeout_seconds is None else buy_timeout_seconds
        )
        self.sell_timeout_seconds = float(
            config.SELL_TIMEOUT_SECONDS if sell_timeout_seconds is None else sell_timeout_seconds
        )
        self.retry_attempts = max(1, int(config.EXEC_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts))
        self.min_block_delay = int(config.MIN_BLOCK_DELAY if min_block_delay is None else min_block_delay)
        self.notifier = notifier
        self.decision_log = decision_log
        self.supervisor = supervisor or MonitorSupervisor()
        self._states: dict[str, TokenState] = {}
        self._releases: dict[str, asyncio.TimerHandle] = {}
        self._unrecorded: dict[str, tuple[str, Callable[[], Awaitable[TradeRecord | None]]]] = {}

    @property
    def ledger_mode(self) -> str:
        return MODE_LIVE if self.mode == "live" else MODE_PAPER

    def token_state(self, token: str) -> TokenState:
        return self._states.get(normalize_address(token), TokenState.IDLE)

    def _try_lock(self, token: str) -> bool:
        if token in self._states:
            return False
        self._states[token] = TokenState.LOCKED
        return True

    def _unlock(self, token: str) -> None:
        self._releases.pop(token, None)
        self._states.pop(token, None)
        logger.debug("TOKEN_RELEASE token=%s", token)

    def _schedule_release(self, token: str) -> None:
        self._states[token] = TokenState.LOCKED
        previous = self._releases.pop(token, None)
        if previous is not None:
            previous.cancel()
        if self.cooldown_seconds <= 0:
            self._unlock(token)
            return
        loop = asyncio.get_running_loop()
        self._releases[token] = loop.call_later(self.cooldown_seconds, self._unlock, token)

    def _hold_unresolved(
        self,
        token: str,
        side: str,
        write: Callable[[], Awaitable[TradeRecord | None]],
    ) -> None:
        previous = self._releases.pop(token, None)
        if previous is not None:
            previous.cancel()
        self._unrecorded[token] = (side, write)
        self._states[token] = TokenState.UNRESOLVED
        logger.error("TOKEN_HELD token=%s side=%s pending_ledger_write=true", token, side)

    async def _write_ledger(self, side: str, token: str, write: Callable[[], Awaitable[T]]) -> T:
        """Persist a fill that already happened; lock and I/O failures are retried with backoff."""
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await write()
            except (LedgerIOError, LedgerLockTimeout) as exc:
                if attempt >= self.retry_attempts:
                    raise
                delay = backoff_delay(
                    attempt,
                    base=config.EXEC_BACKOFF_BASE_SECONDS,
                    cap=config.EXEC_BACKOFF_MAX_SECONDS,
                    jitter=config.EXEC_JITTER_SECONDS,
                )
                logger.warning(
                    "LEDGER_WRITE_RETRY side=%s token=%s attempt=%s/%s delay=%.2fs err=%s",
                    side,
                    token,
                    attempt,
                    self.retry_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")

    def _report_outcome(self, pnl: float) -> None:
        if pnl >= 0:
            self.guard.record_win(pnl)
        else:
            self.guard.record_loss(abs(pnl))

    def _notify(self, title: str, body: str) -> None:
        if self.notifier is not None:
            self.notifier.notify_nowait(title, body)

    def _decision(
        self,
        *,
        token: str,
        stage: str,
        decision: str,
        reason: str,
        signal: RiskSignal | None = None,
        candidate: CandidateToken | None = None,
        amount_usd: float = 0.0,
        **extra: Any,
    ) -> None:
        if self.decision_log is None:
            return
        event: dict[str, Any] = {
            "token_address": token,
            "decision_stage": stage,
            "decision": decision,
            "reason": reason,
            "mode": self.mode,
            "preset": self.preset.name,
            "score": signal.score if signal is not None else 0,
            "risk_tier": signal.risk_tier if signal is not None else "",
            "position_size_usd": amount_usd,
            "candidate_ts": candidate.timestamp if candidate is not None else "",
        }
        if signal is not None:
            event["flags"] = sorted(signal.flags)
        event.update(extra)
        self.decision_log.write(event)

    def _skip(
        self,
        token: str,
        reason: str,
        *,
        stage: str,
        signal: RiskSignal | None,
        candidate: CandidateToken | None,
        amount_usd: float = 0.0,
        **detail: Any,
    ) -> ExecutionOutcome:
        logger.info("AutoTrade skip token=%s reason=%s", token, reason)
        self._decision(
            token=token,
            stage=stage,
            decision="skip",
            reason=reason,
            signal=signal,
            candidate=candidate,
            amount_usd=amount_usd,
            **detail,
        )
        return ExecutionOutcome(STATUS_SKIPPED, reason, token, detail=dict(detail))

    async def execute(self, signal: RiskSignal, candidate: CandidateToken | None = None) -> ExecutionOutcome:
        token = normalize_address(signal.token)
        if not self._try_lock(token):
            logger.info("AutoTrade skip token=%s reason=already_active state=%s", token, self._states[token].value)
            return ExecutionOutcome(STATUS_ALREADY_ACTIVE, "already_active", token)
        monitoring = False
        try:
            outcome = await self._execute_locked(token, signal, candidate)
            monitoring = outcome.status == STATUS_EXECUTED
            return outcome
        finally:
            if not monitoring and self._states.get(token) != TokenState.UNRESOLVED:
                self._schedule_release(token)

    async def _current_block(self, candidate: CandidateToken | None) -> int | None:
        if self.min_block_delay <= 0 or candidate is None or candidate.creation_block is None or self.pool is None:
            return None
        try:
            return await self.pool.block_number()
        except Exception as exc:
            logger.warning("BLOCK_FETCH_FAIL token=%s err=%s skipping block-age check", candidate.token, exc)
            return None

    async def _execute_locked(
        self,
        token: str,
        signal: RiskSignal,
        candidate: CandidateToken | None,
    ) -> ExecutionOutcome:
        current_block = await self._current_block(candidate)
        reason = pre_checks(
            signal,
            self.preset,
            current_block=current_block,
            creation_block=candidate.creation_block if candidate is not None else None,
            min_block_delay=self.min_block_delay,
        )
        if reason:
            return self._skip(token, reason, stage="precheck", signal=signal, candidate=candidate)

        balance = self.ledger.balance_usd
        amount = compute_buy_amount_usd(signal, balance, self.preset)
        if amount < self.ledger.min_trade_usd or amount <= 0:
            return self._skip(
                token, "buy_amount_below_min", stage="sizing", signal=signal, candidate=candidate, amount_usd=amount
            )
        if amount > balance:
            return self._skip(
                token, "insufficient_balance", stage="sizing", signal=signal, candidate=candidate, amount_usd=amount
            )

        try:
            self.guard.can_trade(amount)
        except GuardRejection as exc:
            logger.info("GUARD_REJECT token=%s amount=%.2f code=%s detail=%s", token, amount, exc.code, exc)
            return self._skip(
                token,
                f"guard:{exc.code}",
                stage="guard",
                signal=signal,
                candidate=candidate,
                amount_usd=amount,
                guard_detail=str(exc),
            )

        self._states[token] = TokenState.BUYING
        try:
            fill = await self._buy_with_retry(token, amount)
        except TradeTimeout as exc:
            self._decision(
                token=token,
                stage="trade_open",
                decision="fail",
                reason="buy_timeout",
                signal=signal,
                candidate=candidate,
                amount_usd=amount,
            )
            return ExecutionOutcome(STATUS_FAILED, "buy_timeout", token, detail={"error": str(exc)})
        except TxSentError as exc:
            logger.error(
                "AUTO_BUY_UNCONFIRMED token=%s usd=%.2f tx=%s possible_phantom_position=true err=%s",
                token,
                amount,
                exc.tx_hash,
                exc.__cause__ or exc,
            )
            self._notify(
                "Buy unconfirmed",
                f"token={token} usd={amount:.2f} tx={exc.tx_hash}. Possible phantom position, check the wallet.",
            )
            self._decision(
                token=token,
                stage="trade_open",
                decision="fail",
                reason="buy_unconfirmed",
                signal=signal,
                candidate=candidate,
                amount_usd=amount,
                tx_ref=exc.tx_hash,
            )
            return ExecutionOutcome(STATUS_FAILED, "buy_unconfirmed", token, detail={"tx_ref": exc.tx_hash})
        except Exception as exc:
            logger.warning("AUTO_BUY_FAIL token=%s amount=%.2f err=%s", token, amount, exc)
            self._notify("Trade failed", f"buy token={token} usd={amount:.2f} err={exc}")
            self._decision(
                token=token,
                stage="trade_open",
                decision="fail",
                reason="buy_fail",
                signal=signal,
                candidate=candidate,
                amount_usd=amount,
                error=str(exc),
            )
            return ExecutionOutcome(STATUS_FAILED, "buy_fail", token, detail={"error": str(exc)})

        def write_buy() -> Awaitable[TradeRecord | None]:
            return self.ledger.buy_open(
                token,
                fill.executed_price_usd,
                amount,
                slippage_percent=0.0,
                tokens=fill.tokens_received,
                mode=self.ledger_mode,
                tx_ref=fill.tx_ref,
            )

        try:
            record = await self._write_ledger("buy", token, write_buy)
        except (LedgerError, ValueError) as exc:
            logger.error(
                "LEDGER_WRITE_FAILED side=buy token=%s mode=%s usd=%.2f price=%.10f tokens=%.6f tx=%s err=%s",
                token,
                self.mode,
                amount,
                fill.executed_price_usd,
                fill.tokens_received,
                fill.tx_ref,
                exc,
            )
            self._notify(
                "Ledger write failed after buy",
                f"token={token} usd={amount:.2f} tokens={fill.tokens_received:.6f} tx={fill.tx_ref} err={exc}",
            )
            self._decision(
                token=token,
                stage="trade_open",
                decision="fail",
                reason="ledger_write_failed",
                signal=signal,
                candidate=candidate,
                amount_usd=amount,
                tx_ref=fill.tx_ref,
            )
            if self.mode == "live":
                self._hold_unresolved(token, "buy", write_buy)
            return ExecutionOutcome(STATUS_FAILED, "ledger_write_failed", token, detail={"tx_ref": fill.tx_ref})
        if record is None:
            return self._skip(
                token, "buy_amount_below_min", stage="sizing", signal=signal, candidate=candidate, amount_usd=amount
            )

        reason = "buy_live" if self.mode == "live" else "buy_paper"
        logger.info(
            "AUTO_BUY token=%s mode=%s usd=%.2f price=%.10f tokens=%.6f score=%s tier=%s tx=%s",
            token,
            self.mode,
            record.usd,
            record.price,
            record.tokens,
            signal.score,
            signal.risk_tier,
            record.tx_ref,
        )
        self._decision(
            token=token,
            stage="trade_open",
            decision="open",
            reason=reason,
            signal=signal,
            candidate=candidate,
            amount_usd=amount,
            entry_price_usd=record.price,
            tx_ref=record.tx_ref,
        )
        self._start_monitor(token)
        return ExecutionOutcome(STATUS_EXECUTED, reason, token, trade=record)

    async def _buy_with_retry(self, token: str, amount: float) -> BuyFill:
        slippage = self.preset.max_slippage
        for attempt in range(1, self.retry_attempts + 1):
            generation = self.pool.generation if self.pool is not None else None
            try:
                return await asyncio.wait_for(
                    self.adapter.buy(token, amount, slippage),
                    timeout=self.buy_timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                # The transaction may still land; retrying could double-buy.
                logger.error(
                    "TRADE_TIMEOUT side=buy token=%s usd=%.2f timeout=%.1fs possible_phantom_position=true",
                    token,
                    amount,
                    self.buy_timeout_seconds,
                )
                if self.pool is not None:
                    self.pool.report_error(exc, generation=generation)
                self._notify(
                    "Buy timed out",
                    f"token={token} usd={amount:.2f}. Possible phantom position, check the wallet.",
                )
                raise TradeTimeout(f"{E_TRADE_TIMEOUT}: buy timed out after {self.buy_timeout_seconds:.1f}s") from exc
            except TxSentError:
                raise
            except Exception as exc:
                transient = is_network_error(exc)
                if transient and self.pool is not None:
                    self.pool.report_error(exc, generation=generation)
                if not transient or attempt >= self.retry_attempts:
                    raise
                delay = backoff_delay(
                    attempt,
                    base=config.EXEC_BACKOFF_BASE_SECONDS,
                    cap=config.EXEC_BACKOFF_MAX_SECONDS,
                    jitter=config.EXEC_JITTER_SECONDS,
                )
                logger.warning(
                    "AUTO_BUY_RETRY token=%s attempt=%s/%s delay=%.2fs err=%s",
                    token,
                    attempt,
                    self.retry_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")

    def _start_monitor(self, token: str) -> None:
        self._states[token] = TokenState.MONITORING
        self.supervisor.start(token, lambda stop: self._monitor(token, stop))

    async def _monitor(self, token: str, stop: asyncio.Event) -> None:
        interval = self.exit_settings.poll_interval_seconds
        logger.info("MONITOR_START token=%s interval=%.2fs", token, interval)
        try:
            while not stop.is_set():
                try:
                    await asyncio.wait_for(stop.wait(), timeout=interval)
                    break
                except asyncio.TimeoutError:
                    pass
                try:
                    if await self._monitor_tick(token):
                        break
                except Exception:
                    logger.exception("MONITOR_ERROR token=%s", token)
        finally:
            logger.info("MONITOR_STOP token=%s", token)
            if self._states.get(token) in (TokenState.MONITORING, TokenState.SELLING):
                self._schedule_release(token)

    async def _monitor_tick(self, token: str) -> bool:
        """One price check; True when the monitor should end."""
        position = self.ledger.get_position(token)
        if position is None:
            return True
        if self._states.get(token) == TokenState.SELLING:
            return False
        price = await self.price_feed.get_price_usd(token)
        if price is None or float(price) <= 0:
            logger.info("MONITOR_NO_PRICE token=%s", token)
            return False
        price = float(price)
        highest = await self.ledger.mark_price(token, price)
        reason = exit_reason(
            position.entry_price_usd,
            highest if highest is not None else position.highest_price_seen_usd,
            price,
            self.exit_settings,
        )
        if reason is None:
            return False
        closed, _ = await self._sell(token, reason, price_hint=price)
        return closed

    async def _sell(self, token: str, reason: str, *, price_hint: float = 0.0) -> tuple[bool, TradeRecord | None]:
        position = self.ledger.get_position(token)
        if position is None:
            return True, None
        if self._states.get(token) == TokenState.SELLING:
            return False, None
        self._states[token] = TokenState.SELLING
        generation = self.pool.generation if self.pool is not None else None
        try:
            fill = await asyncio.wait_for(
                self.adapter.sell(token, position.tokens_held, self.preset.max_slippage),
                timeout=self.sell_timeout_seconds,
            )
        except Exception as exc:
            if self.pool is not None:
                self.pool.report_error(exc, generation=generation)
            if isinstance(exc, asyncio.TimeoutError):
                logger.error(
                    "TRADE_TIMEOUT side=sell token=%s tokens=%.6f timeout=%.1fs",
                    token,
                    position.tokens_held,
                    self.sell_timeout_seconds,
                )
            logger.warning("AUTO_SELL_FAIL token=%s reason=%s err=%s", token, reason, exc or exc.__class__.__name__)
            self._notify("Trade failed", f"sell token={token} reason={reason} err={exc or exc.__class__.__name__}")
            self._decision(token=token, stage="trade_close", decision="fail", reason="sell_fail", error=str(exc))
            self._states[token] = TokenState.MONITORING
            return False, None

        def write_sell() -> Awaitable[TradeRecord | None]:
            return self.ledger.sell_close(
                token,
                fill.executed_price_usd if fill.executed_price_usd > 0 else max(price_hint, _EPS),
                1.0,
                reason,
                slippage_percent=0.0,
                usd_received=fill.usd_received,
                tx_ref=fill.tx_ref,
            )

        try:
            record = await self._write_ledger("sell", token, write_sell)
        except (LedgerError, ValueError) as exc:
            # The swap is done; the guard must still see its outcome.
            pnl = float(fill.usd_received) - float(position.usd_invested)
            self._report_outcome(pnl)
            logger.error(
                "LEDGER_WRITE_FAILED side=sell token=%s mode=%s reason=%s usd=%.2f pnl=%.2f tx=%s err=%s",
                token,
                self.mode,
                reason,
                fill.usd_received,
                pnl,
                fill.tx_ref,
                exc,
            )
            self._notify(
                "Ledger write failed after sell",
                f"token={token} usd={fill.usd_received:.2f} pnl={pnl:.2f} tx={fill.tx_ref} err={exc}. "
                "Token held until resolved.",
            )
            self._decision(
                token=token,
                stage="trade_close",
                decision="fail",
                reason="sell_unrecorded",
                amount_usd=fill.usd_received,
                pnl_usd=pnl,
                tx_ref=fill.tx_ref,
                error=str(exc),
            )
            self._hold_unresolved(token, "sell", write_sell)
            return True, None
        if record is None:
            return True, None

        pnl = float(record.pnl_usd or 0.0)
        self._report_outcome(pnl)
        logger.info(
            "AUTO_SELL token=%s reason=%s usd=%.2f pnl=%.2f tx=%s",
            token,
            reason,
            record.usd,
            pnl,
            record.tx_ref,
        )
        self._decision(
            token=token,
            stage="trade_close",
            decision="close",
            reason=reason,
            amount_usd=record.usd,
            pnl_usd=pnl,
            tx_ref=record.tx_ref,
        )
        return True, record

    async def close_position(self, token: str, reason: str = "MANUAL") -> ExecutionOutcome:
        """Operator exit; sells the whole position now and stops its monitor."""
        token = normalize_address(token)
        if token in self._unrecorded:
            return ExecutionOutcome(STATUS_FAILED, "unresolved", token)
        if self.ledger.get_position(token) is None:
            return ExecutionOutcome(STATUS_SKIPPED, "no_position", token)
        if self._states.get(token) == TokenState.SELLING:
            return ExecutionOutcome(STATUS_ALREADY_ACTIVE, "already_active", token)
        self._states.setdefault(token, TokenState.MONITORING)
        closed, record = await self._sell(token, reason)
        if not closed:
            return ExecutionOutcome(STATUS_FAILED, "sell_fail", token)
        if token in self._unrecorded:
            self.supervisor.stop(token)
            return ExecutionOutcome(STATUS_FAILED, "sell_unrecorded", token)
        if not self.supervisor.stop(token):
            self._schedule_release(token)
        return ExecutionOutcome(STATUS_EXECUTED, str(reason).lower(), token, trade=record)

    async def resolve(self, token: str) -> ExecutionOutcome:
        """Retry the ledger write a held token is waiting on, then monitor or release it.

        The guard already saw a held sell's outcome, so a resolved sell is not reported again.
        """
        token = normalize_address(token)
        pending = self._unrecorded.get(token)
        if pending is None:
            return ExecutionOutcome(STATUS_SKIPPED, "nothing_to_resolve", token)
        side, write = pending
        try:
            record = await self._write_ledger(side, token, write)
        except (LedgerError, ValueError) as exc:
            logger.error("LEDGER_RESOLVE_FAIL token=%s side=%s err=%s", token, side, exc)
            return ExecutionOutcome(STATUS_FAILED, "ledger_write_failed", token, detail={"error": str(exc)})
        del self._unrecorded[token]
        logger.info("LEDGER_RESOLVED token=%s side=%s", token, side)
        if side == "buy" and record is not None:
            self._start_monitor(token)
        else:
            self._schedule_release(token)
        return ExecutionOutcome(STATUS_EXECUTED, f"resolved_{side}", token, trade=record)

    def resume_open_positions(self) -> int:
        """Re-attach exit monitors to positions the ledger already holds."""
        resumed = 0
        for position in self.ledger.open_positions():
            if position.token in self._states:
                continue
            self._start_monitor(position.token)
            resumed += 1
        if resumed:
            logger.info("MONITOR_RESUME positions=%s", resumed)
        return resumed

    async def shutdown(self, timeout: float | None = None) -> dict[str, int]:
        timeout = float(config.GRACEFUL_STOP_TIMEOUT_SECONDS if timeout is None else timeout)
        result = await self.supervisor.shutdown(timeout)
        for handle in list(self._releases.values()):
            handle.cancel()
        self._releases.clear()
        if self._unrecorded:
            logger.error("COORDINATOR_SHUTDOWN_UNRESOLVED tokens=%s", ",".join(sorted(self._unrecorded)))
        self._unrecorded.clear()
        self._states.clear()
        if self.notifier is not None:
            await self.notifier.drain()
        logger.info("COORDINATOR_SHUTDOWN stopped=%s cancelled=%s", result["stopped"], result["cancelled"])
        return result

    def status(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "preset": self.preset.name,
            "tokens": {token: state.value for token, state in sorted(self._states.items())},
            "active_monitors": self.supervisor.active(),
            "cooling_down": sorted(self._releases),
            "unresolved": sorted(self._unrecorded),
        }
