from __future__ import annotations

import unittest

from aiohttp import web
from aiohttp import test_utils

import config
from utils.http_client import ResilientHttpClient, backoff_delay


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class BackoffDelayTests(unittest.TestCase):
    def test_exponential_growth_is_capped(self) -> None:
        self.assertAlmostEqual(backoff_delay(1, base=0.5, cap=4.0, jitter=0.0), 0.5)
        self.assertAlmostEqual(backoff_delay(3, base=0.5, cap=4.0, jitter=0.0), 2.0)
        self.assertAlmostEqual(backoff_delay(10, base=0.5, cap=4.0, jitter=0.0), 4.0)

    def test_jitter_stays_within_bounds(self) -> None:
        for _ in range(50):
            delay = backoff_delay(2, base=0.5, cap=4.0, jitter=0.25)
            self.assertGreaterEqual(delay, 1.0)
            self.assertLessEqual(delay, 1.25)


class ResilientHttpClientTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.patch_cfg(
            HTTP_BACKOFF_BASE_SECONDS=0.01,
            HTTP_BACKOFF_MAX_SECONDS=0.02,
            HTTP_JITTER_SECONDS=0.0,
            HTTP_RATE_LIMIT_DELAY_SECONDS=0.0,
        )
        self.hits = {"flaky": 0, "missing": 0}

        async def flaky(request: web.Request) -> web.Response:
            self.hits["flaky"] += 1
            if self.hits["flaky"] == 1:
                return web.json_response({"error": "slow down"}, status=429)
            return web.json_response({"pairs": [], "q": request.query.get("q", "")})

        async def missing(request: web.Request) -> web.Response:
            self.hits["missing"] += 1
            return web.json_response({"error": "nope"}, status=404)

        app = web.Application()
        app.router.add_get("/flaky", flaky)
        app.router.add_get("/missing", missing)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()
        self.client = ResilientHttpClient(
            timeout_seconds=2.0,
            rate_limits={},
            cooldowns={"test": 0.0},
            retry_attempts=3,
        )

    async def asyncTearDown(self) -> None:
        await self.client.close()
        await self.server.close()

    async def test_rate_limited_request_is_retried(self) -> None:
        result = await self.client.get_json(str(self.server.make_url("/flaky")), source="test", params={"q": "x"})
        self.assertTrue(result.ok)
        self.assertEqual(result.data["q"], "x")
        self.assertEqual(self.hits["flaky"], 2)

    async def test_client_errors_are_not_retried(self) -> None:
        result = await self.client.get_json(str(self.server.make_url("/missing")), source="test")
        self.assertFalse(result.ok)
        self.assertEqual(result.status, 404)
        self.assertEqual(result.error, "http_status_404")
        self.assertEqual(self.hits["missing"], 1)


if __name__ == "__main__":
    unittest.main()
