from __future__ import annotations

import asyncio
import unittest

from trading.provider_pool import AllEndpointsDown, ProviderPool, is_network_error

URLS = ["https://rpc-a.example", "https://rpc-b.example", "https://rpc-c.example"]


class FakeClient:
    def __init__(self, url: str) -> None:
        self.url = url


class FakeNetwork:
    def __init__(self) -> None:
        self.down: set[str] = set()
        self.probes: list[str] = []

    def factory(self, url: str, timeout: float) -> FakeClient:
        return FakeClient(url)

    def probe(self, client: FakeClient) -> int:
        self.probes.append(client.url)
        if client.url in self.down:
            raise ConnectionError(f"connection refused {client.url}")
        return 123


def make_pool(net: FakeNetwork, **kwargs) -> ProviderPool:
    params = {
        "timeout_seconds": 0.5,
        "health_ttl_seconds": 60.0,
        "health_interval_seconds": 0.02,
        "max_failures": 3,
        "client_factory": net.factory,
        "probe": net.probe,
    }
    params.update(kwargs)
    return ProviderPool(list(URLS), **params)


class ProviderPoolTests(unittest.IsolatedAsyncioTestCase):
    def test_empty_url_list_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ProviderPool([], client_factory=FakeNetwork().factory)

    def test_endpoint_names(self) -> None:
        pool = ProviderPool(URLS + ["https://rpc-d.example"], client_factory=FakeNetwork().factory)
        self.assertEqual([e.name for e in pool.endpoints], ["primary", "secondary", "tertiary", "rpc4"])

    async def test_cached_client_is_reused_within_ttl(self) -> None:
        net = FakeNetwork()
        pool = make_pool(net)
        first = await pool.get_client()
        second = await pool.get_client()
        self.assertIs(first, second)
        self.assertEqual(net.probes, [URLS[0]])

    async def test_probe_skips_dead_endpoints(self) -> None:
        net = FakeNetwork()
        net.down = {URLS[0]}
        pool = make_pool(net)
        client = await pool.get_client()
        self.assertEqual(client.url, URLS[1])
        self.assertEqual(pool.active.name, "secondary")
        self.assertEqual(pool.endpoints[0].consecutive_failures, 1)
        self.assertIsNotNone(pool.endpoints[1].last_healthy)

    async def test_failover_reaches_tertiary_then_wraps_to_primary(self) -> None:
        net = FakeNetwork()
        net.down = {URLS[0], URLS[1]}
        pool = make_pool(net)
        client = await pool.get_client()
        self.assertEqual(client.url, URLS[2])
        self.assertEqual(pool.index, 2)
        self.assertEqual(pool.active.name, "tertiary")

        net.down = {URLS[2]}
        self.assertFalse(await pool.check_once())
        self.assertFalse(await pool.check_once())
        self.assertEqual(pool.index, 2)
        self.assertFalse(await pool.check_once())
        self.assertEqual(pool.index, 0)
        self.assertEqual(pool.active.name, "primary")
        self.assertEqual((await pool.get_client()).url, URLS[0])

    async def test_all_endpoints_down(self) -> None:
        net = FakeNetwork()
        net.down = set(URLS)
        pool = make_pool(net)
        with self.assertRaises(AllEndpointsDown):
            await pool.get_client()

    async def test_rotation_wraps_and_fires_callback(self) -> None:
        events: list[dict] = []
        pool = make_pool(FakeNetwork(), on_rotate=events.append)
        for _ in range(3):
            pool.rotate("test")
        self.assertEqual(pool.index, 0)
        self.assertEqual(len(events), 3)
        self.assertEqual(events[0]["to"], "secondary")
        self.assertEqual(pool.generation, 3)

    async def test_network_error_rotates_once_per_generation(self) -> None:
        pool = make_pool(FakeNetwork())
        generation = pool.generation
        self.assertTrue(pool.report_error(ConnectionError("reset"), generation=generation))
        self.assertFalse(pool.report_error(ConnectionError("reset"), generation=generation))
        self.assertFalse(pool.report_error(ValueError("execution reverted")))
        self.assertEqual(pool.index, 1)

    async def test_run_reports_transport_errors(self) -> None:
        pool = make_pool(FakeNetwork())

        def broken(client: FakeClient) -> int:
            raise TimeoutError("read timed out")

        with self.assertRaises(TimeoutError):
            await pool.run(broken)
        self.assertEqual(pool.active.name, "secondary")
        self.assertEqual(await pool.run(lambda client: client.url), URLS[1])

    async def test_health_monitor_rotates_after_consecutive_failures(self) -> None:
        net = FakeNetwork()
        pool = make_pool(net)
        await pool.get_client()
        net.down = {URLS[0]}
        pool.start()
        try:
            for _ in range(100):
                if pool.index != 0:
                    break
                await asyncio.sleep(0.02)
        finally:
            await pool.close()
        self.assertEqual(pool.active.name, "secondary")
        self.assertGreaterEqual(pool.endpoints[0].consecutive_failures, 3)
        self.assertIn("rotations", pool.snapshot())

    def test_network_error_classification(self) -> None:
        self.assertTrue(is_network_error(asyncio.TimeoutError()))
        self.assertTrue(is_network_error(ConnectionResetError()))
        self.assertTrue(is_network_error(ValueError("Invalid JSON RPC response: ''")))
        self.assertFalse(is_network_error(ValueError("execution reverted: TRANSFER_FAILED")))


if __name__ == "__main__":
    unittest.main()
