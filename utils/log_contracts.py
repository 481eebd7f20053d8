"""Stable log contracts for trade-decision JSONL events."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any

import config

logger = logging.getLogger(__name__)

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_TRADE_DECISION = "trade_decision.v1"

_STAGE_PREFIX: dict[str, str] = {
    "precheck": "PRE",
    "guard": "GUARD",
    "sizing": "PLAN",
    "trade_open": "EXEC",
    "trade_close": "EXIT",
    "monitor": "EXIT",
    "rpc": "RPC",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "high_risk": "PRE_HIGH_RISK",
    "honeypot": "PRE_HONEYPOT_GUARD",
    "insufficient_liquidity": "PRE_INSUFFICIENT_LIQUIDITY",
    "score_below_min": "PRE_SCORE_BELOW_MIN",
    "block_delay_not_met": "PRE_BLOCK_DELAY_NOT_MET",
    "already_active": "PRE_ALREADY_ACTIVE",
    "buy_amount_below_min": "PLAN_BUY_AMOUNT_BELOW_MIN",
    "guard_e_trading_disabled": "GUARD_TRADING_DISABLED",
    "guard_e_invalid_amount": "GUARD_INVALID_AMOUNT",
    "guard_e_exceeds_max_trade": "GUARD_EXCEEDS_MAX_TRADE",
    "guard_e_daily_loss_limit": "GUARD_DAILY_LOSS_LIMIT",
    "guard_e_loss_streak": "GUARD_LOSS_STREAK",
    "buy_paper": "EXEC_BUY_PAPER",
    "buy_live": "EXEC_BUY_LIVE",
    "buy_fail": "EXEC_BUY_FAIL",
    "buy_timeout": "EXEC_BUY_TIMEOUT",
    "buy_unconfirmed": "EXEC_BUY_UNCONFIRMED",
    "ledger_write_failed": "EXEC_LEDGER_WRITE_FAILED",
    "sell_fail": "EXEC_SELL_FAIL",
    "sell_unrecorded": "EXEC_SELL_UNRECORDED",
    "tp": "EXIT_TAKE_PROFIT",
    "sl": "EXIT_STOP_LOSS",
    "trail": "EXIT_TRAILING_STOP",
    "manual": "EXIT_MANUAL",
    "rotate": "RPC_ROTATE",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "PRE_HIGH_RISK": {"severity": "INFO", "category": "precheck", "title": "Risk tier HIGH"},
    "PRE_HONEYPOT_GUARD": {"severity": "WARN", "category": "precheck", "title": "Honeypot detected"},
    "PRE_INSUFFICIENT_LIQUIDITY": {"severity": "INFO", "category": "precheck", "title": "Liquidity below minimum"},
    "PRE_SCORE_BELOW_MIN": {"severity": "INFO", "category": "precheck", "title": "Score below preset minimum"},
    "PRE_BLOCK_DELAY_NOT_MET": {"severity": "INFO", "category": "precheck", "title": "Pair younger than block delay"},
    "PRE_ALREADY_ACTIVE": {"severity": "INFO", "category": "precheck", "title": "Token already active"},
    "PLAN_BUY_AMOUNT_BELOW_MIN": {"severity": "INFO", "category": "plan", "title": "Buy amount below minimum"},
    "GUARD_TRADING_DISABLED": {"severity": "WARN", "category": "guard", "title": "Trading disabled"},
    "GUARD_INVALID_AMOUNT": {"severity": "WARN", "category": "guard", "title": "Invalid trade amount"},
    "GUARD_EXCEEDS_MAX_TRADE": {"severity": "INFO", "category": "guard", "title": "Trade above size cap"},
    "GUARD_DAILY_LOSS_LIMIT": {"severity": "WARN", "category": "guard", "title": "Daily loss limit reached"},
    "GUARD_LOSS_STREAK": {"severity": "WARN", "category": "guard", "title": "Loss streak limit reached"},
    "EXEC_BUY_PAPER": {"severity": "INFO", "category": "execute", "title": "Paper buy opened"},
    "EXEC_BUY_LIVE": {"severity": "INFO", "category": "execute", "title": "Live buy opened"},
    "EXEC_BUY_FAIL": {"severity": "ERROR", "category": "execute", "title": "Buy failed"},
    "EXEC_BUY_TIMEOUT": {"severity": "ERROR", "category": "execute", "title": "Buy timed out"},
    "EXEC_BUY_UNCONFIRMED": {"severity": "ERROR", "category": "execute", "title": "Buy sent but unconfirmed"},
    "EXEC_LEDGER_WRITE_FAILED": {"severity": "ERROR", "category": "execute", "title": "Ledger write failed after buy"},
    "EXEC_SELL_FAIL": {"severity": "ERROR", "category": "execute", "title": "Sell failed"},
    "EXEC_SELL_UNRECORDED": {"severity": "ERROR", "category": "execute", "title": "Sell filled but not recorded"},
    "EXIT_TAKE_PROFIT": {"severity": "INFO", "category": "exit", "title": "Closed by take profit"},
    "EXIT_STOP_LOSS": {"severity": "WARN", "category": "exit", "title": "Closed by stop loss"},
    "EXIT_TRAILING_STOP": {"severity": "INFO", "category": "exit", "title": "Closed by trailing stop"},
    "EXIT_MANUAL": {"severity": "INFO", "category": "exit", "title": "Closed manually"},
    "RPC_ROTATE": {"severity": "WARN", "category": "rpc", "title": "RPC endpoint rotated"},
}


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except Exception:
        return float(default)


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except Exception:
        return int(default)


def _as_ts(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value or "").strip()
    if text:
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.timestamp()
        except ValueError:
            pass
    return datetime.now(timezone.utc).timestamp()


def _iso_from_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def _normalize_address(value: Any) -> str:
    raw = str(value or "").strip().lower()
    if len(raw) == 42 and raw.startswith("0x"):
        return raw
    return ""


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return ""
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def _stage_prefix(value: Any) -> str:
    stage = _normalize_reason_text(value) or "unknown"
    return _STAGE_PREFIX.get(stage, "UNKNOWN")


def reason_code_for_event(
    *,
    reason: Any,
    decision_stage: Any = "",
    decision: Any = "",
) -> str:
    normalized_reason = _normalize_reason_text(reason)
    if not normalized_reason:
        normalized_decision = _normalize_reason_text(decision)
        if normalized_decision:
            return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_decision)}"
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized_reason)
    if override:
        return override
    return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_reason)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {
        "severity": "INFO",
        "category": "unknown",
        "title": key.replace("_", " ").title(),
    }


def _digest_seed(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()


def stamp_event(
    event: dict[str, Any],
    *,
    schema_name: str,
    event_type: str,
    run_tag: str = "",
) -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    payload["ts"] = float(ts)
    payload["timestamp"] = str(payload.get("timestamp", "") or _iso_from_ts(ts))
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    payload.setdefault("event_type", str(event_type or "event"))
    if run_tag:
        payload.setdefault("run_tag", str(run_tag))
    token_address = _normalize_address(payload.get("token_address", ""))
    if not str(payload.get("trace_id", "") or "").strip():
        payload["trace_id"] = f"tr_{_digest_seed(token_address, payload.get('candidate_ts', ''))[:20]}"
    if not str(payload.get("decision_id", "") or "").strip():
        payload["decision_id"] = "dec_" + _digest_seed(
            payload.get("run_tag", run_tag),
            payload["trace_id"],
            payload.get("decision_stage", ""),
            payload.get("decision", ""),
            payload.get("reason", ""),
            f"{ts:.6f}",
        )[:20]
    stage = _normalize_reason_text(payload.get("decision_stage", ""))
    if not payload.get("position_id") and stage in {"trade_open", "trade_close", "monitor"} and token_address:
        payload["position_id"] = f"pos_{_digest_seed(payload['trace_id'], token_address)[:20]}"
    payload.setdefault("position_id", "")
    return payload


def trade_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_TRADE_DECISION,
        event_type=str((event or {}).get("event_type", "trade_decision")),
        run_tag=run_tag,
    )
    payload.setdefault("decision_stage", "unknown")
    payload.setdefault("decision", "unknown")
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["mode"] = str(payload.get("mode", "") or "")
    payload["score"] = _safe_int(payload.get("score", 0), 0)
    payload["risk_tier"] = str(payload.get("risk_tier", "") or "")
    payload["position_size_usd"] = _safe_float(payload.get("position_size_usd", 0.0), 0.0)
    payload["reason_code"] = str(
        payload.get("reason_code", "")
        or reason_code_for_event(
            reason=payload.get("reason", ""),
            decision_stage=payload.get("decision_stage", ""),
            decision=payload.get("decision", ""),
        )
    ).strip().upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = str(payload.get("reason_severity", meta.get("severity", "INFO")) or "INFO")
    payload["reason_category"] = str(payload.get("reason_category", meta.get("category", "unknown")) or "unknown")
    payload["token_address"] = _normalize_address(payload.get("token_address", ""))
    return payload


class DecisionLog:
    """Append-only JSONL writer for trade decisions."""

    def __init__(self, path: str | None = None, *, enabled: bool | None = None, run_tag: str | None = None) -> None:
        self.enabled = bool(getattr(config, "TRADE_DECISIONS_LOG_ENABLED", True) if enabled is None else enabled)
        raw = str(path or getattr(config, "TRADE_DECISIONS_LOG_FILE", "") or "").strip()
        self.path = os.path.abspath(raw or os.path.join("logs", "trade_decisions.jsonl"))
        self.run_tag = str(getattr(config, "RUN_TAG", "") if run_tag is None else run_tag)

    def write(self, event: dict[str, Any]) -> dict[str, Any]:
        row = trade_decision_event(dict(event), run_tag=self.run_tag)
        if not self.enabled:
            return row
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=False, sort_keys=False) + "\n")
        except OSError:
            logger.exception("TRADE_DECISION_LOG write failed path=%s", self.path)
        return row
