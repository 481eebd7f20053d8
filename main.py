"""Entry point for the sniper runtime."""

import argparse
import asyncio
import json
import logging
import os
import signal
from logging.handlers import RotatingFileHandler
from typing import Any

import config
from monitor.contract_inspector import ContractInspector
from monitor.market_data import MarketMetricsSource
from monitor.token_scorer import RiskScorer, format_risk_report
from trading.capital_guard import CapitalGuard
from trading.execution import STATUS_EXECUTED, CandidateToken, ExecutionCoordinator
from trading.ledger import JsonFileLedgerStore, Ledger
from trading.paper_exchange import PaperExchange
from trading.provider_pool import ProviderPool
from utils.log_contracts import DecisionLog
from utils.notifier import OperatorNotifier


def configure_logging() -> None:
    os.makedirs(config.LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(config.APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Avoid leaking bot token in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)
    logging.getLogger("web3").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def read_candidates(path: str) -> list[CandidateToken]:
    """Parse a JSONL file of discovered pairs; malformed lines are logged and skipped."""
    out: list[CandidateToken] = []
    with open(path, "r", encoding="utf-8-sig") as f:
        for line_no, line in enumerate(f, start=1):
            text = line.strip()
            if not text:
                continue
            try:
                candidate = CandidateToken.from_dict(json.loads(text))
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("CANDIDATE_PARSE_FAIL path=%s line=%s err=%s", path, line_no, exc)
                continue
            if not candidate.token:
                logger.warning("CANDIDATE_PARSE_FAIL path=%s line=%s err=missing_token", path, line_no)
                continue
            out.append(candidate)
    return out


class SniperRuntime:
    """Wires the services together and fans candidates out to concurrent workers."""

    def __init__(
        self,
        *,
        pool: ProviderPool,
        market: MarketMetricsSource,
        scorer: RiskScorer,
        ledger: Ledger,
        guard: CapitalGuard,
        coordinator: ExecutionCoordinator,
        notifier: OperatorNotifier,
        workers: int | None = None,
        queue_max: int | None = None,
    ) -> None:
        self.pool = pool
        self.market = market
        self.scorer = scorer
        self.ledger = ledger
        self.guard = guard
        self.coordinator = coordinator
        self.notifier = notifier
        self.worker_count = max(1, int(config.CANDIDATE_WORKERS if workers is None else workers))
        self.queue: asyncio.Queue[CandidateToken] = asyncio.Queue(
            maxsize=int(config.CANDIDATE_QUEUE_MAX if queue_max is None else queue_max)
        )
        self._workers: list[asyncio.Task] = []
        self._stop = asyncio.Event()
        self.stats = {"received": 0, "dropped": 0, "executed": 0, "skipped": 0, "failed": 0, "errors": 0}

    @classmethod
    def from_config(cls) -> "SniperRuntime":
        notifier = OperatorNotifier()
        pool = ProviderPool(
            on_rotate=lambda event: notifier.notify_nowait(
                "RPC endpoint rotated", f"{event['from']} -> {event['to']} ({event['reason']})"
            )
        )
        market = MarketMetricsSource()
        scorer = RiskScorer(market, ContractInspector(pool))
        ledger = Ledger(JsonFileLedgerStore())
        guard = CapitalGuard(notifier=notifier)
        if config.TRADE_MODE == "live":
            from trading.live_executor import LiveExecutor

            adapter: Any = LiveExecutor(pool, market)
        else:
            adapter = PaperExchange(market)
        coordinator = ExecutionCoordinator(
            ledger,
            guard,
            pool,
            adapter,
            market,
            notifier=notifier,
            decision_log=DecisionLog(),
        )
        return cls(
            pool=pool,
            market=market,
            scorer=scorer,
            ledger=ledger,
            guard=guard,
            coordinator=coordinator,
            notifier=notifier,
        )

    def submit(self, candidate: CandidateToken) -> bool:
        self.stats["received"] += 1
        try:
            self.queue.put_nowait(candidate)
        except asyncio.QueueFull:
            self.stats["dropped"] += 1
            logger.warning("CANDIDATE_DROP token=%s reason=queue_full size=%s", candidate.token, self.queue.qsize())
            return False
        return True

    async def handle(self, candidate: CandidateToken) -> None:
        signal_ = await self.scorer.assess(candidate.token)
        logger.debug("Risk report:\n%s", format_risk_report(signal_))
        outcome = await self.coordinator.execute(signal_, candidate)
        key = outcome.status if outcome.status in self.stats else "skipped"
        self.stats[key] += 1
        if outcome.status == STATUS_EXECUTED:
            logger.info("CANDIDATE_DONE token=%s status=%s reason=%s", candidate.token, outcome.status, outcome.reason)

    async def _worker(self, idx: int) -> None:
        while True:
            candidate = await self.queue.get()
            try:
                await self.handle(candidate)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.stats["errors"] += 1
                logger.exception("WORKER_ERROR worker=%s token=%s", idx, candidate.token)
            finally:
                self.queue.task_done()

    def request_stop(self) -> None:
        if not self._stop.is_set():
            logger.warning("SHUTDOWN requested")
            self._stop.set()

    async def start(self) -> None:
        await self.ledger.open()
        self.pool.start()
        self.coordinator.resume_open_positions()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"candidate-worker-{i}") for i in range(self.worker_count)
        ]
        logger.info(
            "RUNTIME_START mode=%s preset=%s workers=%s rpc=%s",
            self.coordinator.mode,
            self.coordinator.preset.name,
            self.worker_count,
            self.pool.active.name,
        )

    async def wait_idle(self) -> None:
        """Wait until queued candidates are handled and every position is closed."""
        await self.queue.join()
        while self.coordinator.supervisor.active() and not self._stop.is_set():
            await asyncio.sleep(self.coordinator.exit_settings.poll_interval_seconds)

    async def run(self, candidates_file: str | None = None, *, exit_when_idle: bool = False) -> None:
        await self.start()
        try:
            if candidates_file:
                for candidate in read_candidates(candidates_file):
                    self.submit(candidate)
            if exit_when_idle:
                idle = asyncio.create_task(self.wait_idle())
                stop = asyncio.create_task(self._stop.wait())
                await asyncio.wait({idle, stop}, return_when=asyncio.FIRST_COMPLETED)
                for task in (idle, stop):
                    task.cancel()
            else:
                await self._stop.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        await self.coordinator.shutdown()
        await self.pool.close()
        await self.market.close()
        await self.notifier.drain()
        logger.info("RUNTIME_STOP stats=%s ledger=%s", self.stats, _brief_summary(self.ledger.get_summary()))


def _brief_summary(summary: dict[str, Any]) -> str:
    return (
        f"balance={summary['balance_usd']:.2f} equity={summary['equity_usd']:.2f} "
        f"realized={summary['realized_pnl_usd']:.2f} open={summary['open_positions']} "
        f"wins={summary['wins']} losses={summary['losses']}"
    )


def _install_signal_handlers(runtime: SniperRuntime) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runtime.request_stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support; Ctrl+C still raises KeyboardInterrupt.
            pass


async def run_sniper(candidates_file: str | None, exit_when_idle: bool) -> None:
    runtime = SniperRuntime.from_config()
    _install_signal_handlers(runtime)
    await runtime.run(candidates_file, exit_when_idle=exit_when_idle)


async def collect_status() -> dict[str, Any]:
    ledger = Ledger(JsonFileLedgerStore())
    await ledger.open()
    return {
        "mode": config.TRADE_MODE,
        "preset": config.SNIPER_PRESET,
        "ledger": ledger.get_summary(),
        # Guard counters live in the running process; a fresh process reports limits and switches.
        "guard": CapitalGuard().status(),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Token sniper: risk scoring, guarded execution, exit monitors.")
    parser.add_argument("--candidates-file", default="", help="JSONL file with discovered pairs to evaluate.")
    parser.add_argument(
        "--exit-when-idle",
        action="store_true",
        help="Stop once every candidate is handled and all positions are closed.",
    )
    parser.add_argument("--status", action="store_true", help="Print ledger summary and guard status as JSON.")
    args = parser.parse_args()

    if args.status:
        print(json.dumps(asyncio.run(collect_status()), indent=2, ensure_ascii=False))
        return

    configure_logging()
    try:
        asyncio.run(run_sniper(args.candidates_file or None, bool(args.exit_when_idle)))
    except KeyboardInterrupt:
        logger.warning("Interrupted")


if __name__ == "__main__":
    main()
