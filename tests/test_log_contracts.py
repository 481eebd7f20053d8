from __future__ import annotations

import json
import os
import tempfile
import unittest

from utils import log_contracts


class LogContractsTests(unittest.TestCase):
    def test_trade_event_generates_position_id_for_trade_stages(self) -> None:
        row = log_contracts.trade_decision_event(
            {
                "trace_id": "cand-2",
                "decision_stage": "trade_open",
                "decision": "open",
                "reason": "buy_paper",
                "token_address": "0x2222222222222222222222222222222222222222",
                "score": "81",
            },
            run_tag="run_b",
        )
        self.assertEqual(row["trace_id"], "cand-2")
        self.assertTrue(str(row.get("position_id", "")).startswith("pos_"))
        self.assertTrue(str(row.get("decision_id", "")).startswith("dec_"))
        self.assertEqual(row["reason_code"], "EXEC_BUY_PAPER")
        self.assertEqual(row["reason_category"], "execute")
        self.assertEqual(row["score"], 81)
        self.assertEqual(row["run_tag"], "run_b")

    def test_guard_reasons_map_to_guard_codes(self) -> None:
        row = log_contracts.trade_decision_event(
            {"decision_stage": "guard", "decision": "skip", "reason": "guard:E_DAILY_LOSS_LIMIT"}
        )
        self.assertEqual(row["reason_code"], "GUARD_DAILY_LOSS_LIMIT")
        self.assertEqual(row["reason_severity"], "WARN")
        self.assertEqual(row["position_id"], "")

    def test_honeypot_skip_has_its_own_code(self) -> None:
        row = log_contracts.trade_decision_event(
            {"decision_stage": "precheck", "decision": "skip", "reason": "honeypot"}
        )
        self.assertEqual(row["reason_code"], "PRE_HONEYPOT_GUARD")
        self.assertEqual(row["reason_severity"], "WARN")
        self.assertEqual(log_contracts.reason_code_meta("PRE_HONEYPOT_GUARD")["category"], "precheck")

    def test_unknown_reason_uses_stage_prefix(self) -> None:
        code = log_contracts.reason_code_for_event(reason="odd thing!", decision_stage="precheck")
        self.assertEqual(code, "PRE_ODD_THING")
        self.assertEqual(log_contracts.reason_code_meta(code)["category"], "unknown")
        self.assertEqual(log_contracts.reason_code_for_event(reason="", decision=""), "UNKNOWN")

    def test_decision_log_appends_jsonl(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "logs", "decisions.jsonl")
            log = log_contracts.DecisionLog(path, enabled=True, run_tag="t1")
            log.write({"decision_stage": "precheck", "decision": "skip", "reason": "high_risk"})
            log.write({"decision_stage": "trade_close", "decision": "close", "reason": "TP"})
            with open(path, "r", encoding="utf-8") as f:
                rows = [json.loads(line) for line in f]
        self.assertEqual([r["reason_code"] for r in rows], ["PRE_HIGH_RISK", "EXIT_TAKE_PROFIT"])
        self.assertTrue(all(r["schema_name"] == "trade_decision.v1" for r in rows))

    def test_disabled_log_writes_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "decisions.jsonl")
            row = log_contracts.DecisionLog(path, enabled=False).write({"reason": "tp"})
            self.assertFalse(os.path.exists(path))
        self.assertEqual(row["reason_code"], "EXIT_TAKE_PROFIT")


if __name__ == "__main__":
    unittest.main()
