"""On-chain live swap executor (UniswapV2-compatible router, native coin <-> token)."""

from __future__ import annotations

import logging
import time
from typing import Any

from eth_account import Account
from web3 import Web3
from web3.contract import Contract

import config
from trading.execution import BuyFill, PriceFeed, SellFill, TxSentError
from trading.provider_pool import ProviderPool

logger = logging.getLogger(__name__)


ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


ROUTER_ABI: list[dict[str, Any]] = [
    {
        "name": "WETH",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactETHForTokensSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "swapExactTokensForETHSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "outputs": [],
    },
]


def slippage_bps(slippage_percent: float) -> int:
    return max(1, min(10_000, int(round(float(slippage_percent) * 100))))


def amount_out_min(quoted_out: int, bps: int) -> int:
    return max(1, int(int(quoted_out) * (10_000 - int(bps)) / 10_000))


class LiveExecutor:
    """Exchange adapter that signs and sends real swaps through the provider pool.

    Each swap is a blocking web3 sequence run on the pool's active client in a worker
    thread; transport errors surface to the pool, which rotates endpoints.
    """

    def __init__(
        self,
        pool: ProviderPool,
        price_feed: PriceFeed | None = None,
        *,
        private_key: str | None = None,
        wallet_address: str | None = None,
        router_address: str | None = None,
        wrapped_native_address: str | None = None,
        chain_id: int | None = None,
        native_price_usd: float | None = None,
    ) -> None:
        private_key = str(config.LIVE_PRIVATE_KEY if private_key is None else private_key).strip()
        wallet_address = str(config.LIVE_WALLET_ADDRESS if wallet_address is None else wallet_address).strip()
        router_address = str(config.LIVE_ROUTER_ADDRESS if router_address is None else router_address).strip()
        if not private_key:
            raise ValueError("LIVE_PRIVATE_KEY is empty")
        if not wallet_address:
            raise ValueError("LIVE_WALLET_ADDRESS is empty")
        if not router_address:
            raise ValueError("LIVE_ROUTER_ADDRESS is empty")

        self.pool = pool
        self.price_feed = price_feed
        self.account = Account.from_key(private_key)
        self.wallet = Web3.to_checksum_address(wallet_address)
        if self.account.address.lower() != self.wallet.lower():
            raise ValueError("LIVE_WALLET_ADDRESS does not match LIVE_PRIVATE_KEY")
        self.router_address = Web3.to_checksum_address(router_address)
        wrapped = str(config.WRAPPED_NATIVE_ADDRESS if wrapped_native_address is None else wrapped_native_address)
        self._wrapped_native = Web3.to_checksum_address(wrapped) if wrapped.strip() else ""
        self.chain_id = int(config.LIVE_CHAIN_ID if chain_id is None else chain_id)
        self.native_price_usd = float(config.NATIVE_PRICE_USD if native_price_usd is None else native_price_usd)
        self.tx_timeout_seconds = int(config.LIVE_TX_TIMEOUT_SECONDS)

    def _router(self, w3: Web3) -> Contract:
        return w3.eth.contract(address=self.router_address, abi=ROUTER_ABI)

    def _wrapped(self, w3: Web3) -> str:
        if not self._wrapped_native:
            self._wrapped_native = w3.to_checksum_address(self._router(w3).functions.WETH().call())
        return self._wrapped_native

    async def native_price(self) -> float:
        if self.native_price_usd > 0:
            return self.native_price_usd
        if self.price_feed is not None:
            wrapped = self._wrapped_native or await self.pool.run(self._wrapped)
            price = await self.price_feed.get_price_usd(wrapped)
            if price:
                return float(price)
        raise RuntimeError("native_price_unavailable")

    def _call_timeout(self) -> float:
        return float(self.tx_timeout_seconds) + float(self.pool.timeout_seconds) * 4

    async def buy(self, token: str, usd_amount: float, slippage_percent: float) -> BuyFill:
        native_usd = await self.native_price()
        spend_native = float(usd_amount) / native_usd
        bps = slippage_bps(slippage_percent)
        tx_hash, raw_out, decimals = await self.pool.run(
            lambda w3: self._buy_sync(w3, token, spend_native, bps),
            timeout_seconds=self._call_timeout(),
        )
        tokens = raw_out / float(10**decimals)
        if tokens <= 0:
            raise RuntimeError(f"buy_zero_tokens tx={tx_hash}")
        logger.info(
            "LIVE_BUY token=%s usd=%.2f spend_native=%.8f tokens=%.6f tx=%s",
            token,
            usd_amount,
            spend_native,
            tokens,
            tx_hash,
        )
        return BuyFill(tx_ref=tx_hash, executed_price_usd=float(usd_amount) / tokens, tokens_received=tokens)

    async def sell(self, token: str, token_amount: float, slippage_percent: float) -> SellFill:
        native_usd = await self.native_price()
        bps = slippage_bps(slippage_percent)
        tx_hash, received_native = await self.pool.run(
            lambda w3: self._sell_sync(w3, token, float(token_amount), bps),
            timeout_seconds=self._call_timeout(),
        )
        usd = received_native * native_usd
        price = usd / float(token_amount) if token_amount else 0.0
        logger.info("LIVE_SELL token=%s tokens=%.6f usd=%.2f tx=%s", token, token_amount, usd, tx_hash)
        return SellFill(tx_ref=tx_hash, executed_price_usd=price, usd_received=usd)

    def token_decimals(self, w3: Web3, token: str) -> int:
        """Best-effort ERC20 decimals() with a safe fallback."""
        try:
            contract = w3.eth.contract(address=w3.to_checksum_address(token), abi=ERC20_ABI)
            dec = int(contract.functions.decimals().call())
            if 0 <= dec <= 36:
                return dec
        except Exception as exc:
            logger.warning("LIVE_DECIMALS_FALLBACK token=%s err=%s", token, exc)
        return 18

    def _buy_sync(self, w3: Web3, token_address: str, spend_native: float, bps: int) -> tuple[str, int, int]:
        token = w3.to_checksum_address(token_address)
        amount_in = int(w3.to_wei(spend_native, "ether"))
        if amount_in <= 0:
            raise ValueError("amount_in is zero")
        router = self._router(w3)
        path = [self._wrapped(w3), token]
        quoted = router.functions.getAmountsOut(amount_in, path).call()
        if not isinstance(quoted, (list, tuple)) or len(quoted) < 2 or int(quoted[-1]) <= 0:
            raise RuntimeError("unsupported_route:quote_empty")
        out_min = amount_out_min(int(quoted[-1]), bps)

        token_contract = w3.eth.contract(address=token, abi=ERC20_ABI)
        balance_before = int(token_contract.functions.balanceOf(self.wallet).call())
        tx = router.functions.swapExactETHForTokensSupportingFeeOnTransferTokens(
            out_min,
            path,
            self.wallet,
            self._deadline(),
        ).build_transaction(self._tx_params(w3, value_wei=amount_in))
        tx_hash = self._send_and_wait(w3, tx)
        try:
            balance_after = int(token_contract.functions.balanceOf(self.wallet).call())
        except Exception as exc:
            raise TxSentError(tx_hash) from exc
        return tx_hash, max(0, balance_after - balance_before), self.token_decimals(w3, token)

    def _sell_sync(self, w3: Web3, token_address: str, token_amount: float, bps: int) -> tuple[str, float]:
        token = w3.to_checksum_address(token_address)
        decimals = self.token_decimals(w3, token)
        token_contract = w3.eth.contract(address=token, abi=ERC20_ABI)
        held = int(token_contract.functions.balanceOf(self.wallet).call())
        amount_raw = min(held, int(token_amount * (10**decimals)))
        if amount_raw <= 0:
            raise ValueError("token_amount_raw is zero")
        self._ensure_allowance(w3, token_contract, amount_raw)

        router = self._router(w3)
        path = [token, self._wrapped(w3)]
        quoted = router.functions.getAmountsOut(amount_raw, path).call()
        out_min = amount_out_min(int(quoted[-1]), bps) if quoted else 1
        native_before = int(w3.eth.get_balance(self.wallet))
        tx = router.functions.swapExactTokensForETHSupportingFeeOnTransferTokens(
            amount_raw,
            out_min,
            path,
            self.wallet,
            self._deadline(),
        ).build_transaction(self._tx_params(w3))
        tx_hash = self._send_and_wait(w3, tx)
        try:
            native_after = int(w3.eth.get_balance(self.wallet))
        except Exception as exc:
            raise TxSentError(tx_hash) from exc
        # Gas is paid from the same balance, so this slightly understates proceeds.
        received = float(w3.from_wei(max(0, native_after - native_before), "ether"))
        return tx_hash, received

    def _ensure_allowance(self, w3: Web3, token_contract: Contract, required_amount: int) -> None:
        allowance = int(token_contract.functions.allowance(self.wallet, self.router_address).call())
        if allowance >= required_amount:
            return
        approve_tx = token_contract.functions.approve(self.router_address, (2**256) - 1).build_transaction(
            self._tx_params(w3)
        )
        self._send_and_wait(w3, approve_tx)

    @staticmethod
    def _deadline() -> int:
        return int(time.time()) + int(config.LIVE_SWAP_DEADLINE_SECONDS)

    def _tx_params(self, w3: Web3, value_wei: int = 0) -> dict[str, Any]:
        nonce = w3.eth.get_transaction_count(self.wallet, "pending")
        latest = w3.eth.get_block("latest")
        base_fee = int(latest.get("baseFeePerGas") or 0)
        priority = int(w3.to_wei(max(0.0, float(config.LIVE_PRIORITY_FEE_GWEI)), "gwei"))
        cap = int(w3.to_wei(max(0.0, float(config.LIVE_MAX_GAS_GWEI)), "gwei"))
        if cap <= 0:
            cap = int(w3.to_wei(1, "gwei"))

        observed = int(w3.eth.gas_price or 0)
        if observed > cap:
            raise RuntimeError(
                f"gas_price_too_high observed_gwei={float(w3.from_wei(observed, 'gwei')):.3f} "
                f"cap_gwei={float(w3.from_wei(cap, 'gwei')):.3f}"
            )
        params: dict[str, Any] = {
            "from": self.wallet,
            "chainId": self.chain_id,
            "nonce": nonce,
            "value": int(value_wei),
        }
        if base_fee > 0:
            max_fee = min(cap, max(observed, base_fee * 2 + priority))
            params.update({"maxFeePerGas": max_fee, "maxPriorityFeePerGas": min(priority, max_fee), "type": 2})
        else:
            # Legacy pricing on chains without EIP-1559 blocks.
            params["gasPrice"] = max(1, min(cap, observed or cap))
        return params

    def _send_and_wait(self, w3: Web3, tx: dict[str, Any]) -> str:
        gas_limit = int(w3.eth.estimate_gas(tx) * 1.15)
        gas_cap = int(config.LIVE_MAX_SWAP_GAS)
        if gas_cap > 0 and gas_limit > gas_cap:
            raise RuntimeError(f"gas_estimate_too_high gas={gas_limit} cap={gas_cap}")
        tx["gas"] = gas_limit

        balance = int(w3.eth.get_balance(self.wallet))
        fee = int(tx.get("maxFeePerGas") or tx.get("gasPrice") or 0)
        worst_cost = int((gas_limit * fee + int(tx.get("value") or 0)) * 1.20)
        if worst_cost > balance:
            raise RuntimeError(
                f"insufficient_balance_for_tx have={float(w3.from_wei(balance, 'ether')):.8f} "
                f"want={float(w3.from_wei(worst_cost, 'ether')):.8f} gas={gas_limit}"
            )
        signed = self.account.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raise RuntimeError("signed_tx_missing_raw_bytes")
        tx_hash = w3.eth.send_raw_transaction(raw_tx)
        try:
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout_seconds)
        except Exception as exc:
            # Broadcast already happened; a resend could fill twice.
            raise TxSentError(tx_hash.hex()) from exc
        if int(receipt.status) != 1:
            raise RuntimeError(f"tx_failed hash={tx_hash.hex()}")
        return tx_hash.hex()
