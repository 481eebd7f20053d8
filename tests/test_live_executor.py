from __future__ import annotations

import unittest
from types import SimpleNamespace

from eth_account import Account

from trading.execution import TxSentError
from trading.live_executor import LiveExecutor, amount_out_min, slippage_bps
from trading.provider_pool import ProviderPool, is_network_error

ROUTER = "0x10ED43C718714eb63d5aA57B78B54704E256024E"
WRAPPED = "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c"


class StaticFeed:
    def __init__(self, prices: dict[str, float]) -> None:
        self.prices = prices
        self.calls: list[str] = []

    async def get_price_usd(self, token: str) -> float | None:
        self.calls.append(token)
        return self.prices.get(token)


def _pool() -> ProviderPool:
    return ProviderPool(["https://rpc.example"], client_factory=lambda url, timeout: object())


class SwapMathTests(unittest.TestCase):
    def test_slippage_bps_is_clamped(self) -> None:
        self.assertEqual(slippage_bps(5), 500)
        self.assertEqual(slippage_bps(0), 1)
        self.assertEqual(slippage_bps(250), 10_000)

    def test_amount_out_min_applies_bps(self) -> None:
        self.assertEqual(amount_out_min(1_000_000, 500), 950_000)
        self.assertEqual(amount_out_min(0, 500), 1)


class LiveExecutorSetupTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.account = Account.create()

    def _executor(self, **kwargs) -> LiveExecutor:
        params = {
            "private_key": self.account.key.hex(),
            "wallet_address": self.account.address,
            "router_address": ROUTER,
            "wrapped_native_address": WRAPPED,
            "chain_id": 56,
            "native_price_usd": 0.0,
        }
        params.update(kwargs)
        feed = params.pop("price_feed", None)
        return LiveExecutor(_pool(), feed, **params)

    def test_missing_credentials_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self._executor(private_key="")
        with self.assertRaises(ValueError):
            self._executor(wallet_address="")

    def test_wallet_must_match_key(self) -> None:
        other = Account.create()
        with self.assertRaises(ValueError):
            self._executor(wallet_address=other.address)

    async def test_native_price_prefers_configured_value(self) -> None:
        feed = StaticFeed({WRAPPED: 600.0})
        executor = self._executor(native_price_usd=550.0, price_feed=feed)
        self.assertEqual(await executor.native_price(), 550.0)
        self.assertEqual(feed.calls, [])

    async def test_native_price_falls_back_to_feed(self) -> None:
        feed = StaticFeed({WRAPPED: 600.0})
        executor = self._executor(price_feed=feed)
        self.assertEqual(await executor.native_price(), 600.0)

    async def test_native_price_unavailable(self) -> None:
        executor = self._executor(price_feed=StaticFeed({}))
        with self.assertRaises(RuntimeError):
            await executor.native_price()


class FakeEth:
    """Just enough of `w3.eth` for one send: the broadcast succeeds, the receipt read fails."""

    def __init__(self, receipt_error: BaseException) -> None:
        self.receipt_error = receipt_error
        self.sent: list[bytes] = []

    def estimate_gas(self, tx) -> int:
        return 100_000

    def get_balance(self, address) -> int:
        return 10**20

    def send_raw_transaction(self, raw_tx: bytes) -> bytes:
        self.sent.append(raw_tx)
        return bytes.fromhex("abcd")

    def wait_for_transaction_receipt(self, tx_hash, timeout=None):
        raise self.receipt_error


class BroadcastFailureTests(unittest.TestCase):
    def test_error_after_broadcast_is_not_transient(self) -> None:
        account = Account.create()
        executor = LiveExecutor(
            _pool(),
            private_key=account.key.hex(),
            wallet_address=account.address,
            router_address=ROUTER,
            wrapped_native_address=WRAPPED,
            chain_id=56,
        )
        executor.account = SimpleNamespace(sign_transaction=lambda tx: SimpleNamespace(raw_transaction=b"\x01"))
        eth = FakeEth(ConnectionError("connection reset by peer"))
        w3 = SimpleNamespace(eth=eth)
        with self.assertRaises(TxSentError) as ctx:
            executor._send_and_wait(w3, {"value": 0, "gasPrice": 1})
        self.assertEqual(len(eth.sent), 1)
        self.assertEqual(ctx.exception.tx_hash, "abcd")
        self.assertIsInstance(ctx.exception.__cause__, ConnectionError)
        self.assertFalse(is_network_error(ctx.exception))


if __name__ == "__main__":
    unittest.main()
