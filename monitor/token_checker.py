"""GoPlus token-security lookups."""

from __future__ import annotations

import logging
from typing import Any

import config
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


def _truthy(value: Any) -> bool:
    return value in ("1", 1, True)


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_goplus_entry(result: dict[str, Any]) -> dict[str, Any]:
    """Normalize one GoPlus token_security entry; taxes become percents, shares stay in [0, 1]."""
    buy_tax = _as_float(result.get("buy_tax"))
    sell_tax = _as_float(result.get("sell_tax"))
    holders = None
    try:
        holders = int(result.get("holder_count"))
    except (TypeError, ValueError):
        holders = None

    top_holder_share = None
    for row in result.get("holders") or []:
        if not isinstance(row, dict) or _truthy(row.get("is_contract")) or _truthy(row.get("is_locked")):
            continue
        share = _as_float(row.get("percent"))
        if share is not None:
            top_holder_share = max(top_holder_share or 0.0, share)

    lp_locked_share = None
    lp_rows = [row for row in (result.get("lp_holders") or []) if isinstance(row, dict)]
    if lp_rows:
        lp_locked_share = sum(
            (_as_float(row.get("percent")) or 0.0) for row in lp_rows if _truthy(row.get("is_locked"))
        )

    return {
        "holders": holders,
        "buy_tax": (None if buy_tax is None else buy_tax * 100.0),
        "sell_tax": (None if sell_tax is None else sell_tax * 100.0),
        "top_holder_share": top_holder_share,
        "lp_locked_share": lp_locked_share,
        "honeypot": _truthy(result.get("is_honeypot")) or _truthy(result.get("cannot_sell_all")),
        "is_mintable": _truthy(result.get("is_mintable")),
        "is_blacklisted": _truthy(result.get("is_blacklisted")),
        "trading_cooldown": _truthy(result.get("trading_cooldown")),
    }


class TokenChecker:
    def __init__(self, http: ResilientHttpClient | None = None) -> None:
        self._owns_http = http is None
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(config.HTTP_TIMEOUT_SECONDS),
            source_limits={"goplus": 4},
        )

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    async def fetch_security(self, token_address: str) -> dict[str, Any] | None:
        if not token_address:
            return None
        headers = {}
        if config.GOPLUS_ACCESS_TOKEN:
            headers["Authorization"] = f"Bearer {config.GOPLUS_ACCESS_TOKEN}"
        url = config.GOPLUS_EVM_API.format(chain_id=config.EVM_CHAIN_ID)
        result = await self._http.get_json(
            url,
            source="goplus",
            params={"contract_addresses": token_address},
            headers=headers,
        )
        if not result.ok or not isinstance(result.data, dict):
            logger.debug("GOPLUS_FAIL token=%s err=%s", token_address, result.error)
            return None

        data = result.data
        code = str(data.get("code", "")).strip()
        if code and code not in {"1", "200", "ok", "OK"}:
            logger.debug("GOPLUS_FAIL token=%s api_code=%s", token_address, code)
            return None
        result_map = data.get("result") or {}
        if not isinstance(result_map, dict):
            return None
        entry = result_map.get(token_address) or result_map.get(token_address.lower())
        if not isinstance(entry, dict):
            return None
        return parse_goplus_entry(entry)
