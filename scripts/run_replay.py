import argparse
import sys
from dataclasses import replace
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from rich.console import Console

from config import settings
from core.replay import ReplayInputError, default_replay_runtime_config, normalize_replay_input, run_replay
from data.candle_history import CandleHistoryStore, history_to_replay_input
from models.types import EntryMode, Timeframe
from ui.console import replay_summary_table
from utils.logger import setup_logger
from utils.replay_io import load_candles_file, write_replay_artifacts

logger = setup_logger("run_replay")
console = Console()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Replay 1-minute candles through the scalp strategy")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--input", help="Candle file (.json or .csv)")
    source.add_argument("--history", action="store_true", help="Replay stored M1 history for --symbol")
    parser.add_argument("--symbol", default=None)
    parser.add_argument("--out-dir", default=settings.REPLAY_OUTPUT_DIR)
    parser.add_argument("--execute-minutes", type=int, default=None)
    parser.add_argument("--spread-factor", type=float, default=None)
    parser.add_argument("--slippage-pips", type=float, default=None)
    parser.add_argument("--default-spread-pips", type=float, default=None)
    parser.add_argument("--base-tf", choices=[tf.value for tf in Timeframe], default=None)
    parser.add_argument("--confirm-tf", choices=[Timeframe.M1.value, Timeframe.M3.value], default=None)
    parser.add_argument("--tp-r", type=float, default=None)
    parser.add_argument("--risk-pct", type=float, default=None)
    parser.add_argument("--sweep-buffer-pips", type=float, default=None)
    parser.add_argument("--mss-lookback-bars", type=int, default=None)
    parser.add_argument("--ifvg-entry-mode", choices=[m.value for m in EntryMode], default=None)
    parser.add_argument("--allow-tp-first", action="store_true", help="Resolve same-bar stop/target hits as target")
    parser.add_argument("--no-force-close", action="store_true", help="Leave a position open at the end of data")
    return parser.parse_args(argv)


def apply_overrides(runtime, args):
    cfg = runtime.strategy
    timeframes = cfg.timeframes
    if args.base_tf:
        timeframes = replace(timeframes, asia_base=Timeframe(args.base_tf))
    if args.confirm_tf:
        timeframes = replace(timeframes, confirm=Timeframe(args.confirm_tf))

    risk = cfg.risk
    if args.tp_r is not None and args.tp_r > 0:
        risk = replace(risk, take_profit_r=args.tp_r)
    if args.risk_pct is not None and args.risk_pct > 0:
        risk = replace(risk, risk_per_trade_pct=args.risk_pct)

    sweep = cfg.sweep
    if args.sweep_buffer_pips is not None and args.sweep_buffer_pips >= 0:
        sweep = replace(sweep, buffer_pips=args.sweep_buffer_pips)
    confirm = cfg.confirm
    if args.mss_lookback_bars is not None and args.mss_lookback_bars > 0:
        confirm = replace(confirm, mss_lookback_bars=args.mss_lookback_bars)
    ifvg = cfg.ifvg
    if args.ifvg_entry_mode:
        ifvg = replace(ifvg, entry_mode=EntryMode(args.ifvg_entry_mode))

    changes = {
        "strategy": replace(cfg, timeframes=timeframes, risk=risk, sweep=sweep, confirm=confirm, ifvg=ifvg),
        "prefer_stop_when_both_hit": not args.allow_tp_first,
        "force_close_at_end": not args.no_force_close,
    }
    if args.execute_minutes is not None and args.execute_minutes > 0:
        changes["execute_minutes"] = args.execute_minutes
    if args.spread_factor is not None and args.spread_factor > 0:
        changes["spread_factor"] = args.spread_factor
    if args.slippage_pips is not None and args.slippage_pips >= 0:
        changes["slippage_pips"] = args.slippage_pips
    if args.default_spread_pips is not None and args.default_spread_pips >= 0:
        changes["default_spread_pips"] = args.default_spread_pips
    return replace(runtime, **changes)


def load_payload(args):
    if args.input:
        return load_candles_file(args.input, args.symbol)
    symbol = args.symbol or settings.DEFAULT_SYMBOL
    record = CandleHistoryStore().load(symbol, Timeframe.M1)
    if record is None or not record.candles:
        raise ReplayInputError(f"No stored M1 history for {symbol}")
    return history_to_replay_input(record)


def main(argv=None):
    args = parse_args(argv)
    try:
        symbol, candles, pip_size = normalize_replay_input(load_payload(args), args.symbol)
    except (OSError, ValueError) as e:
        logger.error(f"Cannot load replay input: {e}")
        return 1

    runtime = apply_overrides(default_replay_runtime_config(symbol), args)
    result = run_replay(candles, pip_size, runtime)
    out = write_replay_artifacts(args.out_dir, result, runtime)

    console.print(replay_summary_table(result))
    console.print(f"[dim]Artifacts: {out}[/]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
