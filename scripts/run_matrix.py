import argparse
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from rich.console import Console

from config import settings
from core.matrix import (
    baseline_scenario_values,
    build_cartesian_scenarios,
    default_scenarios,
    load_fixture_file,
    load_fixtures,
    load_scenarios_file,
    run_matrix,
)
from core.replay import default_replay_runtime_config
from models.types import EntryMode
from ui.console import matrix_leaderboard_table
from utils.logger import setup_logger
from utils.replay_io import write_matrix_artifacts

logger = setup_logger("run_matrix")
console = Console()


def _csv(cast):
    def parse(text):
        values = [cast(part.strip()) for part in str(text).split(",") if part.strip()]
        if not values:
            raise argparse.ArgumentTypeError("expected a comma-separated list")
        return values
    return parse


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Replay fixtures under a grid of scenarios")
    parser.add_argument("--fixtures", default="core", help="all | core | comma-separated fixture ids")
    parser.add_argument("--fixtures-index", default=os.path.join(settings.FIXTURES_DIR, "index.json"))
    parser.add_argument("--input", action="append", default=[], help="Extra fixture file (repeatable)")
    parser.add_argument("--scenario-file", default=None, help="JSON file with a scenarios list")
    parser.add_argument("--spread-factors", type=_csv(float), default=None)
    parser.add_argument("--slippage-pips", type=_csv(float), default=None)
    parser.add_argument("--tp-rs", type=_csv(float), default=None)
    parser.add_argument("--risk-pcts", type=_csv(float), default=None)
    parser.add_argument("--sweep-buffer-pips", type=_csv(float), default=None)
    parser.add_argument("--mss-lookback-bars", type=_csv(int), default=None)
    parser.add_argument("--ifvg-entry-modes", type=_csv(lambda s: EntryMode(s.lower())), default=None)
    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument("--top", type=int, default=10)
    parser.add_argument("--out-dir", default=os.path.join(settings.REPLAY_OUTPUT_DIR, "matrix"))
    return parser.parse_args(argv)


def build_scenarios(args, runtime):
    if args.scenario_file:
        return load_scenarios_file(args.scenario_file, baseline_scenario_values(runtime))
    grids = [
        args.spread_factors, args.slippage_pips, args.tp_rs, args.risk_pcts,
        args.sweep_buffer_pips, args.mss_lookback_bars, args.ifvg_entry_modes,
    ]
    if all(g is None for g in grids):
        return default_scenarios(runtime)
    base = baseline_scenario_values(runtime)
    return build_cartesian_scenarios(
        args.spread_factors or settings.MATRIX_SPREAD_FACTORS,
        args.slippage_pips or settings.MATRIX_SLIPPAGE_PIPS,
        args.tp_rs or [base["tp_r"]],
        args.risk_pcts or [base["risk_pct"]],
        args.sweep_buffer_pips or [base["sweep_buffer_pips"]],
        args.mss_lookback_bars or [base["mss_lookback_bars"]],
        args.ifvg_entry_modes or [base["ifvg_entry_mode"]],
    )


def main(argv=None):
    args = parse_args(argv)
    try:
        fixtures = [] if args.input and args.fixtures == "core" else load_fixtures(args.fixtures_index, args.fixtures)
        fixtures += [load_fixture_file(path) for path in args.input]
    except (OSError, ValueError) as e:
        logger.error(f"Cannot load fixtures: {e}")
        return 1
    if not fixtures:
        logger.error("No fixture inputs available")
        return 1

    runtime = default_replay_runtime_config(fixtures[0].symbol)
    scenarios = build_scenarios(args, runtime)
    selection = "custom" if args.input else args.fixtures
    result = run_matrix(
        fixtures,
        scenarios,
        base=runtime,
        workers=max(1, args.workers),
        fixture_selection=selection,
        fixtures_index_path=None if args.input else args.fixtures_index,
    )
    out = write_matrix_artifacts(args.out_dir, result)

    console.print(matrix_leaderboard_table(result.scenarios, limit=args.top))
    console.print(f"[dim]Artifacts: {out}[/]")
    return 0


if __name__ == "__main__":
    sys.exit(main())
