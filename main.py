import argparse
import signal
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from rich.console import Console
from rich.live import Live

# Keep a real stdout for Rich to use
REAL_STDOUT = sys.__stdout__
console = Console(file=REAL_STDOUT)

from ui.console import ConsoleUI, cycle_results_table  # import AFTER console exists

from config import settings
from config.policy import load_hybrid_policy, resolve_effective_config
from config.strategy import StrategyConfig, load_strategy_config, normalize_symbol
from core.engine import advance_one_cycle
from core.sessions import now_ms
from data.capital_client import CapitalClient
from data.store import InMemoryStateStore, RedisStateStore
from models.types import CycleResult
from utils.logger import setup_logger

logger = setup_logger("scalper")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Session liquidity-sweep scalper (live loop)")
    parser.add_argument("--symbols", nargs="*", default=None, help="Symbols to trade (default: policy symbols)")
    parser.add_argument("--profile", default=None, help="Force a hybrid policy profile for every symbol")
    parser.add_argument("--policy", default=settings.HYBRID_POLICY_FILE, help="Hybrid policy JSON path")
    parser.add_argument("--store", choices=["redis", "memory"], default="redis", help="State store backend")
    parser.add_argument("--journal-file", default=settings.JOURNAL_FILE, help="JSONL mirror for the in-memory journal")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--live", action="store_true", help="Place real orders (also needs SCALP_LIVE_ENABLED)")
    mode.add_argument("--dry-run", action="store_true", help="Force dry run")
    parser.add_argument("--once", action="store_true", help="Run a single cycle per symbol and exit")
    parser.add_argument("--workers", type=int, default=4, help="Parallel symbols per tick")
    return parser.parse_args(argv)


def _dry_run_flag(args: argparse.Namespace) -> Optional[bool]:
    if args.live:
        return False
    if args.dry_run:
        return True
    return None


def _build_store(args: argparse.Namespace):
    if args.store == "memory":
        return InMemoryStateStore(journal_path=args.journal_file)
    return RedisStateStore()


def run_tick(
    symbols: List[str],
    configs: dict,
    store,
    client: CapitalClient,
    executor: ThreadPoolExecutor,
    dry_run: Optional[bool],
    ui: Optional[ConsoleUI] = None,
) -> List[CycleResult]:
    tick_ms = now_ms()

    def one(symbol: str) -> Optional[CycleResult]:
        try:
            result = advance_one_cycle(
                symbol, tick_ms, configs[symbol],
                store=store, market_data=client, broker=client, dry_run=dry_run,
            )
        except Exception as e:
            logger.error(f"Cycle failed for {symbol}: {e}")
            if ui:
                ui.error(f"{symbol}: {e}")
            return None
        if ui:
            ui.cycle_finished(result)
        return result

    results = list(executor.map(one, symbols))
    return [r for r in results if r is not None]


def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)
    logger.info("Starting session sweep scalper...")

    base_cfg: StrategyConfig = load_strategy_config()
    policy = load_hybrid_policy(args.policy)
    symbols = [normalize_symbol(s) for s in (args.symbols or policy.symbols)]
    symbols = [s for s in dict.fromkeys(symbols) if s]

    configs = {}
    for raw in symbols:
        symbol, profile, cfg = resolve_effective_config(base_cfg, raw, policy, args.profile)
        configs[symbol] = cfg
        logger.info(f"{symbol}: profile={profile} base={cfg.timeframes.asia_base.value} confirm={cfg.timeframes.confirm.value}")

    dry_run = _dry_run_flag(args)
    store = _build_store(args)
    client = CapitalClient()
    executor = ThreadPoolExecutor(max_workers=max(1, args.workers), thread_name_prefix="CycleWorker")

    if args.once:
        try:
            results = run_tick(symbols, configs, store, client, executor, dry_run)
            console.print(cycle_results_table(results))
        finally:
            executor.shutdown(wait=True)
        return

    ui = ConsoleUI(console=console)
    ui.status.dry_run = base_cfg.dry_run_default if dry_run is None else dry_run
    ui.status.store_kind = args.store
    ui.dirty = True

    stop = threading.Event()
    interval_s = max(1, base_cfg.execute_minutes) * 60

    def scheduler():
        while not stop.is_set():
            started = time.time()
            run_tick(symbols, configs, store, client, executor, dry_run, ui)
            stop.wait(max(0.0, interval_s - (time.time() - started)))

    # Graceful Shutdown
    def signal_handler(sig, frame):
        logger.info("Shutting down (Signal)...")
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    threading.Thread(target=scheduler, daemon=True, name="Scheduler").start()

    try:
        with Live(ui.generate_layout(), console=console, auto_refresh=False, screen=False) as live:
            while True:
                if ui.dirty:
                    ui.dirty = False
                    live.update(ui.generate_layout(), refresh=True)
                time.sleep(0.1)
    except KeyboardInterrupt:
        logger.info("Keyboard Interrupt")
    finally:
        logger.info("Performing cleanup...")
        stop.set()
        executor.shutdown(wait=False, cancel_futures=True)
        logger.info(f"Cleanup complete. Client metrics: {dict(client.metrics)}")


if __name__ == "__main__":
    main()
