from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


class ConfigEnvLoadingTests(unittest.TestCase):
    def _run_import(self, bot_env_file: str) -> subprocess.CompletedProcess[str]:
        root = Path(__file__).resolve().parents[1]
        env = os.environ.copy()
        env["BOT_ENV_FILE"] = bot_env_file
        return subprocess.run(
            [sys.executable, "-c", "import config; print('ok')"],
            cwd=str(root),
            env=env,
            capture_output=True,
            text=True,
        )

    def test_missing_bot_env_file_fails_fast(self) -> None:
        missing_path = "data/__definitely_missing_env_for_test__.env"
        result = self._run_import(missing_path)
        self.assertNotEqual(result.returncode, 0)
        details = (result.stdout + "\n" + result.stderr).lower()
        self.assertIn("bot_env_file", details)
        self.assertIn("does not exist", details)

    def test_existing_bot_env_file_is_applied(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("UNITTEST_BOT_ENV_FLAG=loaded\n", encoding="utf-8")
            root = Path(__file__).resolve().parents[1]
            env = os.environ.copy()
            env["BOT_ENV_FILE"] = str(env_path)
            result = subprocess.run(
                [
                    sys.executable,
                    "-c",
                    "import os, config; print(os.getenv('UNITTEST_BOT_ENV_FLAG', ''))",
                ],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "loaded")

    def test_rpc_pool_and_guard_keys_are_loaded_from_env(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text(
                "\n".join(
                    [
                        "RPC_URLS=https://rpc-a.example, https://rpc-b.example,https://rpc-a.example",
                        "MAX_TRADE_USD=12.5",
                        "MAX_LOSS_STREAK=3",
                        "TRADING_DISABLED=yes",
                    ]
                )
                + "\n",
                encoding="utf-8",
            )
            root = Path(__file__).resolve().parents[1]
            env = os.environ.copy()
            env["BOT_ENV_FILE"] = str(env_path)
            result = subprocess.run(
                [
                    sys.executable,
                    "-c",
                    (
                        "import config; "
                        "print(f\"{','.join(config.RPC_URLS)}|"
                        "{config.MAX_TRADE_USD}|"
                        "{config.MAX_LOSS_STREAK}|"
                        "{config.TRADING_DISABLED}\")"
                    ),
                ],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(
            result.stdout.strip(),
            "https://rpc-a.example,https://rpc-b.example|12.5|3|True",
        )


if __name__ == "__main__":
    unittest.main()
