"""Application configuration."""

import os
from pathlib import Path
from typing import Dict, List, Tuple

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y", "on")


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except Exception:
            continue
        out[source] = (count, window_seconds)
    return out


def _parse_source_float_map(raw: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except Exception:
            continue
    return out


def _parse_rpc_urls() -> List[str]:
    raw = os.getenv("RPC_URLS", "").strip()
    if raw:
        urls = [u.strip() for u in raw.split(",") if u.strip()]
    else:
        urls = [
            os.getenv("RPC_PRIMARY", "https://bsc-dataseed.binance.org/").strip(),
            os.getenv("RPC_SECONDARY", "https://bsc-dataseed1.defibit.io/").strip(),
            os.getenv("RPC_TERTIARY", "https://bsc-dataseed1.ninicoin.io/").strip(),
        ]
    out: List[str] = []
    for url in urls:
        if url and url not in out:
            out.append(url)
    return out


RUN_TAG = os.getenv("RUN_TAG", os.getenv("BOT_INSTANCE_ID", "")).strip()

# Chain
CHAIN_ID = os.getenv("CHAIN_ID", "bsc")
EVM_CHAIN_ID = os.getenv("EVM_CHAIN_ID", "56")

# RPC provider pool
RPC_URLS = _parse_rpc_urls()
RPC_TIMEOUT_SECONDS = max(1.0, float(os.getenv("RPC_TIMEOUT_SECONDS", "5")))
RPC_HEALTH_TTL_SECONDS = max(1.0, float(os.getenv("RPC_HEALTH_TTL_SECONDS", "60")))
RPC_HEALTH_INTERVAL_SECONDS = max(1.0, float(os.getenv("RPC_HEALTH_INTERVAL_SECONDS", "15")))
RPC_MAX_FAILURES = max(1, int(os.getenv("RPC_MAX_FAILURES", "3")))

# Shared HTTP client
HTTP_TIMEOUT_SECONDS = max(1.0, float(os.getenv("HTTP_TIMEOUT_SECONDS", "10")))
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.50")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_RATE_LIMIT_DELAY_SECONDS = max(0.0, float(os.getenv("HTTP_RATE_LIMIT_DELAY_SECONDS", "2.00")))
HTTP_429_COOLDOWN_SECONDS = max(1.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "90")))
HTTP_SOURCE_RATE_LIMITS = _parse_source_rate_limits(
    os.getenv("HTTP_SOURCE_RATE_LIMITS", "dexscreener:120/60,dex_price:240/60,goplus:40/60")
)
HTTP_SOURCE_429_COOLDOWNS = _parse_source_float_map(
    os.getenv("HTTP_SOURCE_429_COOLDOWNS", "dexscreener:20,dex_price:20,goplus:60")
)

# Market data
DEXSCREENER_API = os.getenv("DEXSCREENER_API", "https://api.dexscreener.com/latest/dex")
GOPLUS_ACCESS_TOKEN = os.getenv("GOPLUS_ACCESS_TOKEN", "")
GOPLUS_EVM_API = os.getenv(
    "GOPLUS_EVM_API",
    "https://api.gopluslabs.io/api/v1/token_security/{chain_id}",
)
RISK_LOOKUP_TIMEOUT_SECONDS = max(0.5, float(os.getenv("RISK_LOOKUP_TIMEOUT_SECONDS", "8")))

# Risk scoring
RISK_LIQUIDITY_THRESHOLD_USD = max(1.0, float(os.getenv("RISK_LIQUIDITY_THRESHOLD_USD", "20000")))
RISK_MIN_HOLDERS = max(0, int(os.getenv("RISK_MIN_HOLDERS", "20")))
RISK_HIGH_TAX_PERCENT = max(0.0, float(os.getenv("RISK_HIGH_TAX_PERCENT", "25")))
RISK_DEV_DANGER_SHARE = min(1.0, max(0.01, float(os.getenv("RISK_DEV_DANGER_SHARE", "0.5"))))
RISK_DEV_CONCENTRATION_FLAG = min(1.0, max(0.0, float(os.getenv("RISK_DEV_CONCENTRATION_FLAG", "0.6"))))
RISK_VOLUME_SPIKE_RATIO = max(0.0, float(os.getenv("RISK_VOLUME_SPIKE_RATIO", "3.0")))
RISK_ACTIVITY_RATIO_CAP = max(0.1, float(os.getenv("RISK_ACTIVITY_RATIO_CAP", "3.0")))
RISK_ACTIVITY_FULL_RATIO = max(0.01, float(os.getenv("RISK_ACTIVITY_FULL_RATIO", "1.0")))
RISK_MIN_LP_LOCKED_SHARE = min(1.0, max(0.0, float(os.getenv("RISK_MIN_LP_LOCKED_SHARE", "0.5"))))
RISK_WEIGHT_LIQUIDITY = max(0.0, float(os.getenv("RISK_WEIGHT_LIQUIDITY", "0.25")))
RISK_WEIGHT_CONTRACT = max(0.0, float(os.getenv("RISK_WEIGHT_CONTRACT", "0.35")))
RISK_WEIGHT_ACTIVITY = max(0.0, float(os.getenv("RISK_WEIGHT_ACTIVITY", "0.20")))
RISK_WEIGHT_DEV_WALLETS = max(0.0, float(os.getenv("RISK_WEIGHT_DEV_WALLETS", "0.20")))

# Capital guard
MAX_TRADE_USD = max(0.01, float(os.getenv("MAX_TRADE_USD", "25")))
MAX_DAILY_LOSS_USD = max(0.01, float(os.getenv("MAX_DAILY_LOSS_USD", "50")))
MAX_LOSS_STREAK = max(1, int(os.getenv("MAX_LOSS_STREAK", "5")))
TRADING_DISABLED = _env_bool("TRADING_DISABLED", "false")
KILL_SWITCH_FILE = os.getenv("KILL_SWITCH_FILE", os.path.join("data", "kill.txt"))

# Ledger
LEDGER_FILE = os.getenv("LEDGER_FILE", os.path.join("data", "ledger.json"))
STATE_FILE_LOCK_TIMEOUT_SECONDS = max(0.1, float(os.getenv("STATE_FILE_LOCK_TIMEOUT_SECONDS", "5.0")))
STATE_FILE_LOCK_RETRY_SECONDS = max(0.01, float(os.getenv("STATE_FILE_LOCK_RETRY_SECONDS", "0.05")))
PAPER_START_BALANCE_USD = max(0.0, float(os.getenv("PAPER_START_BALANCE_USD", "1000")))
PAPER_SLIPPAGE_PERCENT = max(0.0, float(os.getenv("PAPER_SLIPPAGE_PERCENT", "1.0")))
PAPER_RISK_PERCENT = max(0.0, float(os.getenv("PAPER_RISK_PERCENT", "5")))
MIN_TRADE_USD = max(0.0, float(os.getenv("MIN_TRADE_USD", "1.0")))

# Execution
TRADE_MODE = os.getenv("TRADE_MODE", "paper").strip().lower()  # paper | live
SNIPER_PRESET = os.getenv("SNIPER_PRESET", "normal").strip()
SNIPE_COOLDOWN_SECONDS = max(0.0, float(os.getenv("SNIPE_COOLDOWN_SECONDS", "30")))
MONITOR_POLL_INTERVAL_SECONDS = max(0.1, float(os.getenv("MONITOR_POLL_INTERVAL_SECONDS", "10")))
TAKE_PROFIT_PERCENT = max(0.0, float(os.getenv("TAKE_PROFIT_PERCENT", "20")))
STOP_LOSS_PERCENT = max(0.0, float(os.getenv("STOP_LOSS_PERCENT", "10")))
TRAILING_STOP_ENABLED = _env_bool("TRAILING_STOP_ENABLED", "false")
TRAILING_STOP_PERCENT = max(0.0, float(os.getenv("TRAILING_STOP_PERCENT", "5")))
BUY_TIMEOUT_SECONDS = max(1.0, float(os.getenv("BUY_TIMEOUT_SECONDS", "60")))
SELL_TIMEOUT_SECONDS = max(1.0, float(os.getenv("SELL_TIMEOUT_SECONDS", "60")))
EXEC_RETRY_ATTEMPTS = max(1, int(os.getenv("EXEC_RETRY_ATTEMPTS", "3")))
EXEC_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("EXEC_BACKOFF_BASE_SECONDS", "0.5")))
EXEC_BACKOFF_MAX_SECONDS = max(0.1, float(os.getenv("EXEC_BACKOFF_MAX_SECONDS", "4.0")))
EXEC_JITTER_SECONDS = max(0.0, float(os.getenv("EXEC_JITTER_SECONDS", "0.25")))
MIN_BLOCK_DELAY = max(0, int(os.getenv("MIN_BLOCK_DELAY", "0")))
CANDIDATE_WORKERS = max(1, int(os.getenv("CANDIDATE_WORKERS", "4")))
CANDIDATE_QUEUE_MAX = max(1, int(os.getenv("CANDIDATE_QUEUE_MAX", "500")))
GRACEFUL_STOP_TIMEOUT_SECONDS = max(1.0, float(os.getenv("GRACEFUL_STOP_TIMEOUT_SECONDS", "12")))

# Live trading (UniswapV2-compatible router)
LIVE_WALLET_ADDRESS = os.getenv("LIVE_WALLET_ADDRESS", "").strip()
LIVE_PRIVATE_KEY = os.getenv("LIVE_PRIVATE_KEY", "").strip()
LIVE_CHAIN_ID = int(os.getenv("LIVE_CHAIN_ID", EVM_CHAIN_ID))
LIVE_ROUTER_ADDRESS = os.getenv("LIVE_ROUTER_ADDRESS", "0x10ED43C718714eb63d5aA57B78B54704E256024E").strip()
WRAPPED_NATIVE_ADDRESS = os.getenv("WRAPPED_NATIVE_ADDRESS", "").strip()
LIVE_SWAP_DEADLINE_SECONDS = max(30, int(os.getenv("LIVE_SWAP_DEADLINE_SECONDS", "45")))
LIVE_TX_TIMEOUT_SECONDS = max(10, int(os.getenv("LIVE_TX_TIMEOUT_SECONDS", "50")))
LIVE_MAX_GAS_GWEI = float(os.getenv("LIVE_MAX_GAS_GWEI", "5.0"))
LIVE_PRIORITY_FEE_GWEI = float(os.getenv("LIVE_PRIORITY_FEE_GWEI", "1.0"))
LIVE_MAX_SWAP_GAS = max(50_000, int(os.getenv("LIVE_MAX_SWAP_GAS", "450000")))
NATIVE_PRICE_USD = max(0.0, float(os.getenv("NATIVE_PRICE_USD", "0")))

# Operator notifications
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
ADMIN_CHAT_ID = int(os.getenv("ADMIN_CHAT_ID", "0") or 0)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
TRADE_DECISIONS_LOG_ENABLED = _env_bool("TRADE_DECISIONS_LOG_ENABLED", "true")
TRADE_DECISIONS_LOG_FILE = os.getenv(
    "TRADE_DECISIONS_LOG_FILE",
    os.path.join(LOG_DIR, "trade_decisions.jsonl"),
)
