"""
Parameter-sweep runner: every (fixture x scenario) pair is one replay, and
scenarios are ranked by a robustness score rather than raw return.
"""
import itertools
import json
import math
from concurrent.futures import ProcessPoolExecutor
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import settings
from config.strategy import StrategyConfig
from core.replay import ReplayRuntimeConfig, default_replay_runtime_config, normalize_replay_input, run_replay
from models.types import Candle, EntryMode
from utils.logger import setup_logger

logger = setup_logger("Matrix")


@dataclass(slots=True, frozen=True)
class Scenario:
    id: str
    spread_factor: float
    slippage_pips: float
    tp_r: float
    risk_pct: float
    sweep_buffer_pips: float
    mss_lookback_bars: int
    ifvg_entry_mode: EntryMode


@dataclass(slots=True, frozen=True)
class Fixture:
    id: str
    symbol: str
    pip_size: float
    candles: Tuple[Candle, ...]


@dataclass(slots=True, frozen=True)
class MatrixRun:
    fixture_id: str
    scenario_id: str
    spread_factor: float
    slippage_pips: float
    tp_r: float
    risk_pct: float
    sweep_buffer_pips: float
    mss_lookback_bars: int
    ifvg_entry_mode: str
    trades: int
    win_rate_pct: float
    avg_r: float
    expectancy_r: float
    net_r: float
    net_pnl_usd: float
    max_drawdown_r: float
    avg_hold_minutes: float


@dataclass(slots=True, frozen=True)
class ScenarioAggregate:
    scenario_id: str
    spread_factor: float
    slippage_pips: float
    tp_r: float
    risk_pct: float
    sweep_buffer_pips: float
    mss_lookback_bars: int
    ifvg_entry_mode: str
    runs: int
    fixtures_with_trades: int
    trade_coverage_pct: float
    total_trades: int
    avg_win_rate_pct: float
    avg_r: float
    avg_expectancy_r: float
    avg_net_r: float
    avg_net_pnl_usd: float
    worst_net_r: float
    avg_max_drawdown_r: float
    worst_max_drawdown_r: float
    robustness_score: float


@dataclass(slots=True)
class MatrixResult:
    overview: Dict[str, Any]
    runs: List[MatrixRun]
    scenarios: List[ScenarioAggregate]


# ----------------------------------------------------------------------
# Scenarios
# ----------------------------------------------------------------------
def baseline_scenario_values(runtime: ReplayRuntimeConfig) -> Dict[str, Any]:
    cfg = runtime.strategy
    return {
        "spread_factor": 1.0,
        "slippage_pips": runtime.slippage_pips,
        "tp_r": cfg.risk.take_profit_r,
        "risk_pct": cfg.risk.risk_per_trade_pct,
        "sweep_buffer_pips": cfg.sweep.buffer_pips,
        "mss_lookback_bars": cfg.confirm.mss_lookback_bars,
        "ifvg_entry_mode": cfg.ifvg.entry_mode,
    }


def scenario_id(idx: int, spread: float, slip: float, tp_r: float, risk: float, sweep: float, mss: int, mode: EntryMode) -> str:
    return "_".join(
        [
            f"S{idx:02d}",
            f"SPR{spread:.2f}",
            f"SLP{slip:.2f}",
            f"TP{tp_r:.2f}",
            f"RISK{risk:.2f}",
            f"SWP{sweep:.2f}",
            f"MSS{mss}",
            f"IFVG{mode.value.upper()}",
        ]
    )


def build_cartesian_scenarios(
    spread_factors: Sequence[float],
    slippage_pips: Sequence[float],
    tp_rs: Sequence[float],
    risk_pcts: Sequence[float],
    sweep_buffer_pips: Sequence[float],
    mss_lookback_bars: Sequence[int],
    ifvg_entry_modes: Sequence[EntryMode],
) -> List[Scenario]:
    grid = itertools.product(
        spread_factors, slippage_pips, tp_rs, risk_pcts, sweep_buffer_pips, mss_lookback_bars, ifvg_entry_modes
    )
    scenarios = [
        Scenario(scenario_id(idx, *values), *values)
        for idx, values in enumerate(grid)
    ]
    if not scenarios:
        raise ValueError("No scenarios generated from provided grid")
    return scenarios


def default_scenarios(runtime: ReplayRuntimeConfig) -> List[Scenario]:
    base = baseline_scenario_values(runtime)
    return build_cartesian_scenarios(
        settings.MATRIX_SPREAD_FACTORS,
        settings.MATRIX_SLIPPAGE_PIPS,
        [base["tp_r"]],
        [base["risk_pct"]],
        [base["sweep_buffer_pips"]],
        [base["mss_lookback_bars"]],
        [base["ifvg_entry_mode"]],
    )


def _number(value: Any, fallback: float, allow_zero: bool) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number) or number < 0 or (number == 0 and not allow_zero):
        return fallback
    return number


def _entry_mode(value: Any, fallback: EntryMode) -> EntryMode:
    try:
        return EntryMode(str(value or "").strip().lower())
    except ValueError:
        return fallback


def sanitize_scenario(entry: Dict[str, Any], idx: int, fallback: Dict[str, Any]) -> Scenario:
    """Scenario-file entry with every unusable value replaced by the baseline."""
    return Scenario(
        id=str(entry.get("id") or "").strip() or f"scenario_{idx:02d}",
        spread_factor=_number(entry.get("spreadFactor"), fallback["spread_factor"], allow_zero=False),
        slippage_pips=_number(entry.get("slippagePips"), fallback["slippage_pips"], allow_zero=True),
        tp_r=_number(entry.get("tpR"), fallback["tp_r"], allow_zero=False),
        risk_pct=_number(entry.get("riskPct"), fallback["risk_pct"], allow_zero=False),
        sweep_buffer_pips=_number(entry.get("sweepBufferPips"), fallback["sweep_buffer_pips"], allow_zero=True),
        mss_lookback_bars=int(_number(entry.get("mssLookbackBars"), fallback["mss_lookback_bars"], allow_zero=False)),
        ifvg_entry_mode=_entry_mode(entry.get("ifvgEntryMode"), fallback["ifvg_entry_mode"]),
    )


def load_scenarios_file(path: str, fallback: Dict[str, Any]) -> List[Scenario]:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    entries = raw.get("scenarios") if isinstance(raw, dict) else None
    if not isinstance(entries, list) or not entries:
        raise ValueError("scenario file must include at least one scenario entry")
    return [sanitize_scenario(e if isinstance(e, dict) else {}, idx, fallback) for idx, e in enumerate(entries)]


def scenario_to_runtime_config(base: ReplayRuntimeConfig, scenario: Scenario, symbol: str) -> ReplayRuntimeConfig:
    cfg: StrategyConfig = base.strategy
    strategy = replace(
        cfg,
        risk=replace(cfg.risk, take_profit_r=scenario.tp_r, risk_per_trade_pct=scenario.risk_pct),
        sweep=replace(cfg.sweep, buffer_pips=scenario.sweep_buffer_pips),
        confirm=replace(cfg.confirm, mss_lookback_bars=scenario.mss_lookback_bars),
        ifvg=replace(cfg.ifvg, entry_mode=scenario.ifvg_entry_mode),
    )
    return replace(
        base,
        symbol=symbol,
        spread_factor=scenario.spread_factor,
        slippage_pips=scenario.slippage_pips,
        strategy=strategy,
    )


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------
def load_fixture_manifest(path: str) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    fixtures = raw.get("fixtures") if isinstance(raw, dict) else None
    if not isinstance(fixtures, list) or not fixtures:
        raise ValueError(f"Fixture index {path} has no fixtures")
    return [f for f in fixtures if isinstance(f, dict) and f.get("id") and f.get("file")]


def select_fixtures(entries: List[Dict[str, Any]], selector: str = "core") -> List[Dict[str, Any]]:
    selector = str(selector or "core").strip().lower()
    if selector == "all":
        return list(entries)
    if selector == "core":
        return [e for e in entries if str(e.get("tier") or "").lower() == "core"]
    wanted = {s.strip() for s in selector.split(",") if s.strip()}
    return [e for e in entries if str(e.get("id") or "").strip().lower() in wanted]


def load_fixture_file(path: str, fixture_id: Optional[str] = None) -> Fixture:
    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    symbol, candles, pip_size = normalize_replay_input(payload)
    return Fixture(id=fixture_id or Path(path).name, symbol=symbol, pip_size=pip_size, candles=tuple(candles))


def load_fixtures(index_path: str, selector: str = "core") -> List[Fixture]:
    selected = select_fixtures(load_fixture_manifest(index_path), selector)
    if not selected:
        raise ValueError(f"No fixtures matched selection {selector!r}")
    root = Path(index_path).resolve().parent
    return [load_fixture_file(str(root / entry["file"]), str(entry["id"])) for entry in selected]


# ----------------------------------------------------------------------
# Runs
# ----------------------------------------------------------------------
def _run_pair(fixture: Fixture, scenario: Scenario, base: ReplayRuntimeConfig) -> MatrixRun:
    runtime = scenario_to_runtime_config(base, scenario, fixture.symbol)
    summary = run_replay(list(fixture.candles), fixture.pip_size, runtime).summary
    return MatrixRun(
        fixture_id=fixture.id,
        scenario_id=scenario.id,
        spread_factor=scenario.spread_factor,
        slippage_pips=scenario.slippage_pips,
        tp_r=scenario.tp_r,
        risk_pct=scenario.risk_pct,
        sweep_buffer_pips=scenario.sweep_buffer_pips,
        mss_lookback_bars=scenario.mss_lookback_bars,
        ifvg_entry_mode=scenario.ifvg_entry_mode.value,
        trades=summary.trades,
        win_rate_pct=summary.win_rate_pct,
        avg_r=summary.avg_r,
        expectancy_r=summary.expectancy_r,
        net_r=summary.net_r,
        net_pnl_usd=summary.net_pnl_usd,
        max_drawdown_r=summary.max_drawdown_r,
        avg_hold_minutes=summary.avg_hold_minutes,
    )


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def robustness_score(avg_net_r: float, worst_max_drawdown_r: float, coverage_pct: float) -> float:
    coverage_penalty = max(0.0, 1 - coverage_pct / 100)
    return (
        avg_net_r
        - settings.ROBUSTNESS_DRAWDOWN_WEIGHT * worst_max_drawdown_r
        - settings.ROBUSTNESS_COVERAGE_WEIGHT * coverage_penalty
    )


def aggregate_scenarios(runs: Sequence[MatrixRun], fixture_count: int) -> List[ScenarioAggregate]:
    by_scenario: Dict[str, List[MatrixRun]] = {}
    for run in runs:
        by_scenario.setdefault(run.scenario_id, []).append(run)

    aggregates = []
    for sid, rows in by_scenario.items():
        sample = rows[0]
        with_trades = len({r.fixture_id for r in rows if r.trades > 0})
        coverage = with_trades / fixture_count * 100 if fixture_count > 0 else 0.0
        avg_net_r = _mean([r.net_r for r in rows])
        worst_dd = max(r.max_drawdown_r for r in rows)
        aggregates.append(
            ScenarioAggregate(
                scenario_id=sid,
                spread_factor=sample.spread_factor,
                slippage_pips=sample.slippage_pips,
                tp_r=sample.tp_r,
                risk_pct=sample.risk_pct,
                sweep_buffer_pips=sample.sweep_buffer_pips,
                mss_lookback_bars=sample.mss_lookback_bars,
                ifvg_entry_mode=sample.ifvg_entry_mode,
                runs=len(rows),
                fixtures_with_trades=with_trades,
                trade_coverage_pct=coverage,
                total_trades=sum(r.trades for r in rows),
                avg_win_rate_pct=_mean([r.win_rate_pct for r in rows]),
                avg_r=_mean([r.avg_r for r in rows]),
                avg_expectancy_r=_mean([r.expectancy_r for r in rows]),
                avg_net_r=avg_net_r,
                avg_net_pnl_usd=_mean([r.net_pnl_usd for r in rows]),
                worst_net_r=min(r.net_r for r in rows),
                avg_max_drawdown_r=_mean([r.max_drawdown_r for r in rows]),
                worst_max_drawdown_r=worst_dd,
                robustness_score=robustness_score(avg_net_r, worst_dd, coverage),
            )
        )
    # Stable sort keeps scenario order for equal scores
    return sorted(aggregates, key=lambda a: -a.robustness_score)


def build_overview(
    runs: Sequence[MatrixRun],
    aggregates: Sequence[ScenarioAggregate],
    fixture_count: int,
    scenario_count: int,
    fixture_selection: str,
    fixtures_index_path: Optional[str] = None,
) -> Dict[str, Any]:
    by_net_r = sorted(runs, key=lambda r: -r.net_r)
    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "fixture_selection": fixture_selection,
        "fixtures_index_path": fixtures_index_path,
        "fixture_count": fixture_count,
        "scenario_count": scenario_count,
        "run_count": len(runs),
        "best_run": asdict(by_net_r[0]) if by_net_r else None,
        "worst_run": asdict(by_net_r[-1]) if by_net_r else None,
        "best_scenario": asdict(aggregates[0]) if aggregates else None,
        "worst_scenario": asdict(aggregates[-1]) if aggregates else None,
        "top_robust_scenarios": [
            {
                "scenario_id": a.scenario_id,
                "robustness_score": a.robustness_score,
                "trade_coverage_pct": a.trade_coverage_pct,
                "avg_net_r": a.avg_net_r,
                "worst_max_drawdown_r": a.worst_max_drawdown_r,
            }
            for a in aggregates[:5]
        ],
    }


def run_matrix(
    fixtures: Sequence[Fixture],
    scenarios: Sequence[Scenario],
    base: Optional[ReplayRuntimeConfig] = None,
    workers: int = 1,
    fixture_selection: str = "custom",
    fixtures_index_path: Optional[str] = None,
) -> MatrixResult:
    """
    Replay every fixture under every scenario. With ``workers > 1`` the pairs
    run in a process pool; results keep fixture-major, scenario-minor order.
    """
    if not fixtures:
        raise ValueError("No fixture inputs available")
    if not scenarios:
        raise ValueError("No scenarios to run")
    base = base or default_replay_runtime_config(fixtures[0].symbol)
    pairs = [(fixture, scenario) for fixture in fixtures for scenario in scenarios]
    logger.info(f"Matrix: {len(fixtures)} fixtures x {len(scenarios)} scenarios = {len(pairs)} runs, workers={workers}")

    if workers > 1:
        with ProcessPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(_run_pair, f, s, base) for f, s in pairs]
            runs = [fut.result() for fut in futures]
    else:
        runs = []
        for n, (fixture, scenario) in enumerate(pairs, start=1):
            runs.append(_run_pair(fixture, scenario, base))
            logger.info(f"[{n}/{len(pairs)}] {fixture.id} {scenario.id} netR={runs[-1].net_r:.3f}")

    aggregates = aggregate_scenarios(runs, len(fixtures))
    overview = build_overview(runs, aggregates, len(fixtures), len(scenarios), fixture_selection, fixtures_index_path)
    if aggregates:
        best = aggregates[0]
        logger.info(
            f"Matrix done: top scenario {best.scenario_id} score={best.robustness_score:.3f} "
            f"coverage={best.trade_coverage_pct:.1f}%"
        )
    return MatrixResult(overview=overview, runs=runs, scenarios=aggregates)
