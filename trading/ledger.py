"""Crash-safe position ledger: balance, open positions and append-only trade history."""

from __future__ import annotations

import asyncio
import copy
import logging
import math
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol, TypeVar

import config
from utils.addressing import normalize_address
from utils.state_file import (
    E_JSON_CORRUPT,
    E_STATE_IO,
    E_STATE_LOCKED,
    StateFileCorruptError,
    StateFileLockError,
    async_state_file_lock,
    atomic_write_json,
    read_json,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

LEDGER_SCHEMA_VERSION = 1

MODE_PAPER = "PAPER"
MODE_LIVE = "LIVE"
SIDE_BUY = "BUY"
SIDE_SELL = "SELL"
STATUS_OPEN = "OPEN"
STATUS_CLOSED = "CLOSED"
EXIT_REASONS = ("TP", "SL", "TRAIL", "MANUAL")


class LedgerError(RuntimeError):
    code = "E_LEDGER"


class InvalidPrice(LedgerError, ValueError):
    code = "E_INVALID_PRICE"


class InsufficientBalance(LedgerError):
    code = "E_INSUFFICIENT_BALANCE"


class LedgerIOError(LedgerError):
    code = E_STATE_IO


class LedgerLockTimeout(LedgerError):
    code = E_STATE_LOCKED


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _check_price(price_usd: Any) -> float:
    try:
        price = float(price_usd)
    except (TypeError, ValueError) as exc:
        raise InvalidPrice(f"invalid price {price_usd!r}") from exc
    if not math.isfinite(price) or price <= 0:
        raise InvalidPrice(f"invalid price {price_usd!r}")
    return price


@dataclass
class Position:
    id: str
    token: str
    mode: str
    entry_price_usd: float
    tokens_held: float
    usd_invested: float
    opened_at: float
    status: str = STATUS_OPEN
    highest_price_seen_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "Position":
        return cls(
            id=str(row["id"]),
            token=str(row["token"]),
            mode=str(row.get("mode", MODE_PAPER)),
            entry_price_usd=float(row["entry_price_usd"]),
            tokens_held=float(row["tokens_held"]),
            usd_invested=float(row["usd_invested"]),
            opened_at=float(row["opened_at"]),
            status=str(row.get("status", STATUS_OPEN)),
            highest_price_seen_usd=float(row.get("highest_price_seen_usd", row["entry_price_usd"])),
        )


@dataclass(frozen=True)
class TradeRecord:
    id: str
    side: str
    token: str
    usd: float
    price: float
    tokens: float
    timestamp: float
    pnl_usd: float | None = None
    reason: str | None = None
    mode: str = MODE_PAPER
    tx_ref: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "TradeRecord":
        pnl = row.get("pnl_usd")
        return cls(
            id=str(row["id"]),
            side=str(row["side"]),
            token=str(row["token"]),
            usd=float(row["usd"]),
            price=float(row["price"]),
            tokens=float(row["tokens"]),
            timestamp=float(row["timestamp"]),
            pnl_usd=(None if pnl is None else float(pnl)),
            reason=(None if row.get("reason") is None else str(row["reason"])),
            mode=str(row.get("mode", MODE_PAPER)),
            tx_ref=str(row.get("tx_ref", "") or ""),
        )


@dataclass
class LedgerStats:
    wins: int = 0
    losses: int = 0
    max_drawdown_fraction: float = 0.0


@dataclass
class LedgerState:
    initial_balance_usd: float
    balance_usd: float
    peak_balance_usd: float
    positions: dict[str, Position] = field(default_factory=dict)
    trades: list[TradeRecord] = field(default_factory=list)
    stats: LedgerStats = field(default_factory=LedgerStats)
    updated_at: float = 0.0

    @classmethod
    def fresh(cls, initial_balance_usd: float) -> "LedgerState":
        balance = float(initial_balance_usd)
        return cls(initial_balance_usd=balance, balance_usd=balance, peak_balance_usd=balance, updated_at=time.time())

    @property
    def open_cost_basis_usd(self) -> float:
        return sum(p.usd_invested for p in self.positions.values())

    @property
    def equity_usd(self) -> float:
        """Cash plus open positions at cost."""
        return self.balance_usd + self.open_cost_basis_usd

    def expected_balance_usd(self) -> float:
        spent = sum(t.usd for t in self.trades if t.side == SIDE_BUY)
        received = sum(t.usd for t in self.trades if t.side == SIDE_SELL)
        return self.initial_balance_usd - spent + received

    def update_drawdown(self) -> None:
        equity = self.equity_usd
        if equity > self.peak_balance_usd:
            self.peak_balance_usd = equity
        if self.peak_balance_usd > 0:
            drawdown = max(0.0, (self.peak_balance_usd - equity) / self.peak_balance_usd)
            self.stats.max_drawdown_fraction = max(self.stats.max_drawdown_fraction, drawdown)

    def to_payload(self) -> dict[str, Any]:
        return {
            "schema_version": LEDGER_SCHEMA_VERSION,
            "initial_balance_usd": self.initial_balance_usd,
            "balance_usd": self.balance_usd,
            "peak_balance_usd": self.peak_balance_usd,
            "positions": {token: p.to_dict() for token, p in self.positions.items()},
            "trades": [t.to_dict() for t in self.trades],
            "stats": asdict(self.stats),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "LedgerState":
        stats = payload.get("stats") or {}
        return cls(
            initial_balance_usd=float(payload["initial_balance_usd"]),
            balance_usd=float(payload["balance_usd"]),
            peak_balance_usd=float(payload.get("peak_balance_usd", payload["balance_usd"])),
            positions={
                str(token): Position.from_dict(row) for token, row in (payload.get("positions") or {}).items()
            },
            trades=[TradeRecord.from_dict(row) for row in (payload.get("trades") or [])],
            stats=LedgerStats(
                wins=int(stats.get("wins", 0)),
                losses=int(stats.get("losses", 0)),
                max_drawdown_fraction=float(stats.get("max_drawdown_fraction", 0.0)),
            ),
            updated_at=float(payload.get("updated_at", 0.0) or 0.0),
        )


class LedgerStore(Protocol):
    """Narrow storage backend: an exclusive lock plus whole-document load/save."""

    def lock(self) -> Any: ...

    def load(self) -> dict[str, Any] | None: ...

    def save(self, payload: dict[str, Any]) -> None: ...


class JsonFileLedgerStore:
    """One JSON document replaced atomically, guarded by an OS lock on `<path>.lock`."""

    def __init__(
        self,
        path: str | None = None,
        *,
        lock_timeout_seconds: float | None = None,
        poll_seconds: float | None = None,
    ) -> None:
        self.path = str(path or config.LEDGER_FILE)
        self.lock_timeout_seconds = float(
            config.STATE_FILE_LOCK_TIMEOUT_SECONDS if lock_timeout_seconds is None else lock_timeout_seconds
        )
        self.poll_seconds = float(config.STATE_FILE_LOCK_RETRY_SECONDS if poll_seconds is None else poll_seconds)

    @asynccontextmanager
    async def lock(self) -> AsyncIterator[None]:
        try:
            ctx = async_state_file_lock(
                self.path,
                timeout_seconds=self.lock_timeout_seconds,
                poll_seconds=self.poll_seconds,
            )
            await ctx.__aenter__()
        except StateFileLockError as exc:
            raise LedgerLockTimeout(str(exc)) from exc
        except OSError as exc:
            raise LedgerIOError(f"{E_STATE_IO}: cannot open lock for {self.path}: {exc}") from exc
        try:
            yield
        except BaseException as exc:
            await ctx.__aexit__(type(exc), exc, exc.__traceback__)
            raise
        else:
            await ctx.__aexit__(None, None, None)

    def load(self) -> dict[str, Any] | None:
        try:
            return read_json(self.path)
        except StateFileCorruptError as exc:
            raise LedgerIOError(str(exc)) from exc
        except OSError as exc:
            raise LedgerIOError(f"{E_STATE_IO}: read failed path={self.path} err={exc}") from exc

    def save(self, payload: dict[str, Any]) -> None:
        try:
            atomic_write_json(self.path, payload)
        except (OSError, TypeError, ValueError) as exc:
            raise LedgerIOError(f"{E_STATE_IO}: write failed path={self.path} err={exc}") from exc


class MemoryLedgerStore:
    """In-process backend for tests and throwaway paper sessions."""

    def __init__(self, payload: dict[str, Any] | None = None) -> None:
        self._payload = copy.deepcopy(payload) if payload is not None else None
        self.saves = 0

    @asynccontextmanager
    async def lock(self) -> AsyncIterator[None]:
        yield

    def load(self) -> dict[str, Any] | None:
        return copy.deepcopy(self._payload)

    def save(self, payload: dict[str, Any]) -> None:
        self._payload = copy.deepcopy(payload)
        self.saves += 1


class Ledger:
    """Serialized ledger mutations: read full state, modify in memory, persist atomically, release.

    Every mutation holds an in-process `asyncio.Lock` and the store's cross-process lock, both
    acquired with a bounded wait. The in-memory snapshot served by `get_summary()` only changes
    after a successful persist, so a failed write leaves no partial state behind.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        initial_balance_usd: float | None = None,
        slippage_percent: float | None = None,
        risk_percent: float | None = None,
        min_trade_usd: float | None = None,
        lock_timeout_seconds: float | None = None,
    ) -> None:
        self._store = store
        self.initial_balance_usd = float(
            config.PAPER_START_BALANCE_USD if initial_balance_usd is None else initial_balance_usd
        )
        self.slippage_percent = float(config.PAPER_SLIPPAGE_PERCENT if slippage_percent is None else slippage_percent)
        self.risk_percent = float(config.PAPER_RISK_PERCENT if risk_percent is None else risk_percent)
        self.min_trade_usd = float(config.MIN_TRADE_USD if min_trade_usd is None else min_trade_usd)
        self.lock_timeout_seconds = float(
            config.STATE_FILE_LOCK_TIMEOUT_SECONDS if lock_timeout_seconds is None else lock_timeout_seconds
        )
        self._mutex = asyncio.Lock()
        self._state: LedgerState | None = None

    def _load_state(self) -> LedgerState:
        payload = self._store.load()
        if payload is None:
            return LedgerState.fresh(self.initial_balance_usd)
        try:
            return LedgerState.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerIOError(f"{E_JSON_CORRUPT}: ledger document malformed: {exc}") from exc

    async def _mutate(self, op: Callable[[LedgerState], tuple[T, bool]]) -> T:
        # acquire() runs in this task, so a timeout can never leave the mutex held.
        try:
            async with asyncio.timeout(self.lock_timeout_seconds):
                await self._mutex.acquire()
        except TimeoutError as exc:
            raise LedgerLockTimeout(f"{E_STATE_LOCKED}: in-process ledger lock timeout") from exc
        try:
            async with self._store.lock():
                state = self._load_state()
                result, dirty = op(state)
                if dirty or self._state is None:
                    state.updated_at = time.time()
                    self._store.save(state.to_payload())
                self._state = state
                return result
        finally:
            self._mutex.release()

    async def open(self) -> LedgerState:
        """Load the persisted ledger (or create it) and prime the read snapshot."""
        state = await self._mutate(lambda s: (s, False))
        logger.info(
            "LEDGER_OPEN balance=%.2f positions=%s trades=%s",
            state.balance_usd,
            len(state.positions),
            len(state.trades),
        )
        return state

    def _apply_buy(
        self,
        state: LedgerState,
        token: str,
        price: float,
        usd: float,
        *,
        slippage_percent: float,
        tokens: float | None,
        mode: str,
        tx_ref: str,
    ) -> tuple[TradeRecord | None, bool]:
        if usd < self.min_trade_usd:
            logger.info("LEDGER_BUY_SKIP token=%s usd=%.4f reason=below_min min=%.2f", token, usd, self.min_trade_usd)
            return None, False
        if usd > state.balance_usd + 1e-9:
            raise InsufficientBalance(f"buy ${usd:.2f} exceeds balance ${state.balance_usd:.2f}")
        exec_price = price * (1.0 + max(0.0, slippage_percent) / 100.0)
        qty = float(tokens) if tokens is not None and float(tokens) > 0 else usd / exec_price
        exec_price = usd / qty

        state.balance_usd -= usd
        position = state.positions.get(token)
        now = time.time()
        if position is None:
            state.positions[token] = Position(
                id=_new_id("pos"),
                token=token,
                mode=mode,
                entry_price_usd=exec_price,
                tokens_held=qty,
                usd_invested=usd,
                opened_at=now,
                highest_price_seen_usd=exec_price,
            )
        else:
            position.tokens_held += qty
            position.usd_invested += usd
            position.entry_price_usd = position.usd_invested / position.tokens_held
            position.highest_price_seen_usd = max(position.highest_price_seen_usd, exec_price)
        record = TradeRecord(
            id=_new_id("trd"),
            side=SIDE_BUY,
            token=token,
            usd=usd,
            price=exec_price,
            tokens=qty,
            timestamp=now,
            mode=mode,
            tx_ref=str(tx_ref or ""),
        )
        state.trades.append(record)
        state.update_drawdown()
        return record, True

    async def buy_open(
        self,
        token: str,
        price_usd: float,
        usd_amount: float,
        *,
        slippage_percent: float | None = None,
        tokens: float | None = None,
        mode: str = MODE_PAPER,
        tx_ref: str = "",
    ) -> TradeRecord | None:
        """Open or add to a position; None when the amount is below the trade minimum."""
        price = _check_price(price_usd)
        token = normalize_address(token)
        usd = float(usd_amount)
        if not math.isfinite(usd) or usd < 0:
            raise ValueError(f"invalid usd amount {usd_amount!r}")
        slip = self.slippage_percent if slippage_percent is None else float(slippage_percent)
        record = await self._mutate(
            lambda state: self._apply_buy(
                state, token, price, usd, slippage_percent=slip, tokens=tokens, mode=mode, tx_ref=tx_ref
            )
        )
        if record is not None:
            logger.info(
                "LEDGER_BUY token=%s usd=%.2f price=%.10f tokens=%.6f mode=%s",
                token,
                record.usd,
                record.price,
                record.tokens,
                mode,
            )
        return record

    async def paper_buy(
        self,
        token: str,
        price_usd: float,
        *,
        risk_percent: float | None = None,
        slippage_percent: float | None = None,
    ) -> TradeRecord | None:
        """Buy `risk_percent` of the current balance, sized inside the same critical section."""
        price = _check_price(price_usd)
        token = normalize_address(token)
        risk = self.risk_percent if risk_percent is None else float(risk_percent)
        slip = self.slippage_percent if slippage_percent is None else float(slippage_percent)

        def _op(state: LedgerState) -> tuple[TradeRecord | None, bool]:
            usd = round(state.balance_usd * max(0.0, risk) / 100.0, 2)
            return self._apply_buy(
                state, token, price, usd, slippage_percent=slip, tokens=None, mode=MODE_PAPER, tx_ref=""
            )

        return await self._mutate(_op)

    async def sell_close(
        self,
        token: str,
        price_usd: float,
        fraction: float = 1.0,
        reason: str = "MANUAL",
        *,
        slippage_percent: float | None = None,
        usd_received: float | None = None,
        tx_ref: str = "",
    ) -> TradeRecord | None:
        """Sell `fraction` of an open position; None when no position is open."""
        price = _check_price(price_usd)
        fraction = float(fraction)
        if not (0.0 < fraction <= 1.0):
            raise ValueError(f"fraction must be in (0, 1], got {fraction}")
        reason = str(reason or "MANUAL").upper()
        if reason not in EXIT_REASONS:
            raise ValueError(f"unknown exit reason {reason!r}")
        token = normalize_address(token)
        slip = self.slippage_percent if slippage_percent is None else float(slippage_percent)

        def _op(state: LedgerState) -> tuple[TradeRecord | None, bool]:
            position = state.positions.get(token)
            if position is None or position.status != STATUS_OPEN:
                return None, False
            full = fraction >= 1.0
            tokens_sold = position.tokens_held if full else position.tokens_held * fraction
            cost_basis = position.usd_invested if full else position.usd_invested * fraction
            exec_price = price * (1.0 - max(0.0, slip) / 100.0)
            proceeds = float(usd_received) if usd_received is not None else tokens_sold * exec_price
            if tokens_sold > 0:
                exec_price = proceeds / tokens_sold
            pnl = proceeds - cost_basis

            state.balance_usd += proceeds
            if full:
                position.status = STATUS_CLOSED
                del state.positions[token]
            else:
                position.tokens_held -= tokens_sold
                position.usd_invested -= cost_basis
            if pnl >= 0:
                state.stats.wins += 1
            else:
                state.stats.losses += 1
            record = TradeRecord(
                id=_new_id("trd"),
                side=SIDE_SELL,
                token=token,
                usd=proceeds,
                price=exec_price,
                tokens=tokens_sold,
                timestamp=time.time(),
                pnl_usd=pnl,
                reason=reason,
                mode=position.mode,
                tx_ref=str(tx_ref or ""),
            )
            state.trades.append(record)
            state.update_drawdown()
            return record, True

        record = await self._mutate(_op)
        if record is not None:
            logger.info(
                "LEDGER_SELL token=%s usd=%.2f pnl=%.2f reason=%s fraction=%.4f",
                token,
                record.usd,
                record.pnl_usd or 0.0,
                reason,
                fraction,
            )
        return record

    async def mark_price(self, token: str, price_usd: float) -> float | None:
        """Raise the position's high-water mark; returns the current mark or None without a position."""
        price = _check_price(price_usd)
        token = normalize_address(token)
        cached = self.get_position(token)
        if cached is not None and price <= cached.highest_price_seen_usd:
            return cached.highest_price_seen_usd

        def _op(state: LedgerState) -> tuple[float | None, bool]:
            position = state.positions.get(token)
            if position is None:
                return None, False
            if price > position.highest_price_seen_usd:
                position.highest_price_seen_usd = price
                return price, True
            return position.highest_price_seen_usd, False

        return await self._mutate(_op)

    def get_position(self, token: str) -> Position | None:
        state = self._state
        if state is None:
            return None
        position = state.positions.get(normalize_address(token))
        return copy.copy(position) if position is not None else None

    def open_positions(self) -> list[Position]:
        state = self._state
        return [copy.copy(p) for p in state.positions.values()] if state is not None else []

    def trade_history(self, limit: int | None = None) -> list[TradeRecord]:
        state = self._state
        if state is None:
            return []
        trades = list(state.trades)
        return trades[-int(limit):] if limit else trades

    @property
    def balance_usd(self) -> float:
        state = self._state
        return state.balance_usd if state is not None else self.initial_balance_usd

    def snapshot(self) -> LedgerState:
        if self._state is None:
            return LedgerState.fresh(self.initial_balance_usd)
        return copy.deepcopy(self._state)

    def get_summary(self, prices: dict[str, float] | None = None) -> dict[str, Any]:
        """Non-blocking read of the last persisted state."""
        state = self._state or LedgerState.fresh(self.initial_balance_usd)
        realized = sum(t.pnl_usd or 0.0 for t in state.trades if t.side == SIDE_SELL)
        closed = state.stats.wins + state.stats.losses
        unrealized = 0.0
        for token, position in state.positions.items():
            price = (prices or {}).get(token)
            if price:
                unrealized += position.tokens_held * float(price) - position.usd_invested
        return {
            "initial_balance_usd": round(state.initial_balance_usd, 6),
            "balance_usd": round(state.balance_usd, 6),
            "peak_balance_usd": round(state.peak_balance_usd, 6),
            "equity_usd": round(state.equity_usd, 6),
            "realized_pnl_usd": round(realized, 6),
            "unrealized_pnl_usd": round(unrealized, 6),
            "open_positions": len(state.positions),
            "open_cost_basis_usd": round(state.open_cost_basis_usd, 6),
            "total_trades": len(state.trades),
            "wins": state.stats.wins,
            "losses": state.stats.losses,
            "win_rate": round(state.stats.wins / closed, 4) if closed else 0.0,
            "max_drawdown_fraction": round(state.stats.max_drawdown_fraction, 6),
            "reconciliation_drift_usd": round(state.balance_usd - state.expected_balance_usd(), 9),
            "positions": [p.to_dict() for p in state.positions.values()],
            "updated_at": state.updated_at,
        }
