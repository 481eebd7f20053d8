from __future__ import annotations

import asyncio
import json
import multiprocessing
import os
import tempfile
import unittest

from utils.state_file import (
    StateFileCorruptError,
    StateFileLockError,
    async_state_file_lock,
    atomic_write_json,
    read_json,
    state_file_lock,
)


def _hold_lock_worker(path: str, ready: multiprocessing.Event, release: multiprocessing.Event) -> None:
    with state_file_lock(path, timeout_seconds=2.0, poll_seconds=0.01):
        ready.set()
        release.wait(2.0)


class StateFileLockingTests(unittest.TestCase):
    def test_atomic_write_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "nested", "ledger.json")
            payload = {"schema_version": 1, "balance_usd": 7.0, "positions": {}}
            atomic_write_json(state_path, payload)
            with open(state_path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
            self.assertEqual(loaded, payload)
            self.assertEqual(read_json(state_path), payload)
            self.assertEqual([n for n in os.listdir(os.path.dirname(state_path)) if n.endswith(".tmp")], [])

    def test_read_missing_and_corrupt_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "ledger.json")
            self.assertIsNone(read_json(state_path))
            with open(state_path, "w", encoding="utf-8") as f:
                f.write("{not json")
            with self.assertRaises(StateFileCorruptError):
                read_json(state_path)

    def test_state_lock_is_exclusive(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "state.json")
            ctx = multiprocessing.get_context("spawn")
            ready = ctx.Event()
            release = ctx.Event()
            proc = ctx.Process(target=_hold_lock_worker, args=(state_path, ready, release))
            proc.start()
            try:
                self.assertTrue(ready.wait(2.0), "worker did not acquire state lock in time")
                with self.assertRaises(StateFileLockError):
                    with state_file_lock(state_path, timeout_seconds=0.08, poll_seconds=0.01):
                        pass
            finally:
                release.set()
                proc.join(2.0)
                if proc.is_alive():
                    proc.terminate()
                    proc.join(1.0)
            self.assertEqual(proc.exitcode, 0)


class AsyncStateFileLockTests(unittest.IsolatedAsyncioTestCase):
    async def test_async_lock_times_out_while_held(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "state.json")
            ctx = multiprocessing.get_context("spawn")
            ready = ctx.Event()
            release = ctx.Event()
            proc = ctx.Process(target=_hold_lock_worker, args=(state_path, ready, release))
            proc.start()
            try:
                self.assertTrue(await asyncio.to_thread(ready.wait, 2.0))
                with self.assertRaises(StateFileLockError):
                    async with async_state_file_lock(state_path, timeout_seconds=0.08, poll_seconds=0.01):
                        pass
            finally:
                release.set()
                await asyncio.to_thread(proc.join, 2.0)
                if proc.is_alive():
                    proc.terminate()
                    proc.join(1.0)
            async with async_state_file_lock(state_path, timeout_seconds=0.5, poll_seconds=0.01):
                pass


if __name__ == "__main__":
    unittest.main()
