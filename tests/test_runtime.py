from __future__ import annotations

import asyncio
import os
import tempfile
import unittest

from main import SniperRuntime, read_candidates
from monitor.token_scorer import MarketMetrics, RiskThresholds, RiskWeights, score_token
from trading.execution import STATUS_EXECUTED, STATUS_SKIPPED, CandidateToken, ExecutionOutcome

TOKEN_A = "0x7777777777777777777777777777777777777777"
TOKEN_B = "0x8888888888888888888888888888888888888888"


class StubScorer:
    def __init__(self) -> None:
        self.seen: list[str] = []

    async def assess(self, token: str):
        self.seen.append(token)
        return score_token(
            token,
            MarketMetrics(liquidity_usd=50_000, volume_24h=50_000, holders=300, dev_concentration=0.0),
            None,
            weights=RiskWeights(),
            thresholds=RiskThresholds(),
        )


class StubCoordinator:
    def __init__(self, statuses: dict[str, str]) -> None:
        self.statuses = statuses

    async def execute(self, signal, candidate: CandidateToken) -> ExecutionOutcome:
        status = self.statuses.get(candidate.token, STATUS_SKIPPED)
        if status == "boom":
            raise RuntimeError("unexpected")
        return ExecutionOutcome(status=status, reason="test", token=candidate.token)


def _runtime(coordinator: StubCoordinator, *, queue_max: int = 10) -> SniperRuntime:
    return SniperRuntime(
        pool=None,
        market=None,
        scorer=StubScorer(),
        ledger=None,
        guard=None,
        coordinator=coordinator,
        notifier=None,
        workers=2,
        queue_max=queue_max,
    )


class ReadCandidatesTests(unittest.TestCase):
    def test_bad_lines_are_skipped(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "candidates.jsonl")
            with open(path, "w", encoding="utf-8") as f:
                f.write('{"token": "%s", "pair": "0xAB", "block": "120"}\n' % TOKEN_A.upper().replace("0X", "0x"))
                f.write("not json\n")
                f.write("\n")
                f.write('{"pair": "0xCD"}\n')
                f.write('{"token_address": "%s", "creation_block": 7, "timestamp": 5}\n' % TOKEN_B)
            rows = read_candidates(path)
        self.assertEqual([c.token for c in rows], [TOKEN_A, TOKEN_B])
        self.assertEqual(rows[0].creation_block, 120)
        self.assertEqual(rows[0].pair, "0xab")
        self.assertEqual(rows[1].timestamp, 5.0)


class RuntimeFanOutTests(unittest.IsolatedAsyncioTestCase):
    async def test_queue_full_drops_candidate(self) -> None:
        runtime = _runtime(StubCoordinator({}), queue_max=1)
        self.assertTrue(runtime.submit(CandidateToken(token=TOKEN_A)))
        self.assertFalse(runtime.submit(CandidateToken(token=TOKEN_B)))
        self.assertEqual(runtime.stats["dropped"], 1)

    async def test_handle_counts_outcomes_and_worker_survives_errors(self) -> None:
        runtime = _runtime(StubCoordinator({TOKEN_A: STATUS_EXECUTED, TOKEN_B: "boom"}))
        await runtime.handle(CandidateToken(token=TOKEN_A))
        self.assertEqual(runtime.stats["executed"], 1)

        worker = asyncio.create_task(runtime._worker(0))
        try:
            runtime.submit(CandidateToken(token=TOKEN_B))
            runtime.submit(CandidateToken(token=TOKEN_A))
            await asyncio.wait_for(runtime.queue.join(), timeout=2.0)
        finally:
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
        self.assertEqual(runtime.stats["errors"], 1)
        self.assertEqual(runtime.stats["executed"], 2)


if __name__ == "__main__":
    unittest.main()
