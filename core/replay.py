"""
Bar-by-bar replay of the live decision stack over historical 1-minute candles.

The harness evaluates exactly what a live cycle would (state machine, phase
detectors, entry planner) at every execution tick, then tracks the simulated
position itself: fills take adverse slippage, exits are resolved against each
later bar's high/low, and a same-bar stop/target conflict is settled by the
configured tie-break.
"""
import math
from bisect import bisect_left, bisect_right
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from config import settings
from config.strategy import StrategyConfig, load_strategy_config, normalize_symbol
from core.indicators import aggregate_candles, pip_size_for_symbol
from core.planner import build_entry_plan
from core.sessions import build_session_windows, day_key_for
from core.state_machine import advance_state_machine, apply_phase_detectors, create_initial_state
from models.types import (
    Candle,
    EntryMode,
    ExitReason,
    MarketSnapshot,
    OrderSide,
    OrderType,
    Quote,
    ReplayDiagnostics,
    ReplayResult,
    ReplaySummary,
    ReplayTrade,
    SessionState,
    State,
    Timeframe,
    TimelineEvent,
    TradeSnapshot,
)
from utils.logger import setup_logger
from utils.reason_codes import dedupe_reason_codes

logger = setup_logger("Replay")

_MINUTE_MS = 60_000


class ReplayInputError(ValueError):
    """Raised for candle input the replay cannot use."""


@dataclass(frozen=True)
class ReplayRuntimeConfig:
    symbol: str = settings.DEFAULT_SYMBOL
    execute_minutes: int = settings.EXECUTE_MINUTES
    default_spread_pips: float = settings.REPLAY_DEFAULT_SPREAD_PIPS
    spread_factor: float = settings.REPLAY_SPREAD_FACTOR
    slippage_pips: float = settings.REPLAY_SLIPPAGE_PIPS
    prefer_stop_when_both_hit: bool = True
    force_close_at_end: bool = True
    strategy: StrategyConfig = field(default_factory=StrategyConfig)


def replay_strategy_config(base: StrategyConfig) -> StrategyConfig:
    """
    Loosen the live profile for parameter exploration: 1-minute frames,
    smaller buffers and thresholds, first-touch entries. Replay never
    trades live, never cools down and never honours the kill switch.
    """
    return replace(
        base,
        enabled=True,
        dry_run_default=True,
        timeframes=replace(base.timeframes, asia_base=Timeframe.M1, confirm=Timeframe.M1),
        sweep=replace(
            base.sweep,
            buffer_pips=max(0.05, min(base.sweep.buffer_pips, 0.25)),
            reject_inside_pips=min(base.sweep.reject_inside_pips, 0.05),
            reject_max_bars=max(20, base.sweep.reject_max_bars),
            min_wick_body_ratio=min(base.sweep.min_wick_body_ratio, 0.8),
        ),
        confirm=replace(
            base.confirm,
            displacement_body_atr_mult=min(base.confirm.displacement_body_atr_mult, 0.08),
            displacement_range_atr_mult=min(base.confirm.displacement_range_atr_mult, 0.15),
            mss_lookback_bars=1,
        ),
        ifvg=replace(
            base.ifvg,
            min_atr_mult=0.0,
            max_atr_mult=max(base.ifvg.max_atr_mult, 3.0),
            entry_mode=EntryMode.FIRST_TOUCH,
        ),
        risk=replace(
            base.risk,
            cooldown_after_loss_minutes=0,
            max_open_positions_per_symbol=1,
            kill_switch=False,
            take_profit_r=min(base.risk.take_profit_r, 1.2),
        ),
        execution=replace(base.execution, live_enabled=False, entry_order_type=OrderType.MARKET, default_leverage=1),
    )


def default_replay_runtime_config(symbol: str = settings.DEFAULT_SYMBOL, base: Optional[StrategyConfig] = None) -> ReplayRuntimeConfig:
    base = base or load_strategy_config()
    return ReplayRuntimeConfig(
        symbol=normalize_symbol(symbol) or settings.DEFAULT_SYMBOL,
        execute_minutes=base.execute_minutes,
        strategy=replay_strategy_config(base),
    )


# ----------------------------------------------------------------------
# Input normalization
# ----------------------------------------------------------------------
def _to_ts_ms(value: Any) -> int:
    try:
        number = float(value)
        if math.isfinite(number) and number > 0:
            return int(number)
    except (TypeError, ValueError):
        pass
    text = str(value or "").strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        raise ReplayInputError(f"Invalid candle timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    ts = int(dt.timestamp() * 1000)
    if ts <= 0:
        raise ReplayInputError(f"Invalid candle timestamp: {value!r}")
    return ts


def _to_finite(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _row_fields(row: Any) -> Tuple[Any, ...]:
    if isinstance(row, Mapping):
        ts = row.get("ts", row.get("timestamp"))
        spread = row.get("spreadPips", row.get("spread_pips"))
        return ts, row.get("open"), row.get("high"), row.get("low"), row.get("close"), row.get("volume"), spread
    if isinstance(row, (list, tuple)) and len(row) >= 5:
        padded = list(row) + [None] * (7 - len(row))
        return tuple(padded[:7])
    raise ReplayInputError(f"Unsupported candle row: {row!r}")


def normalize_replay_candles(rows: Iterable[Any]) -> List[Candle]:
    """Validated 1-minute candles, sorted; a repeated timestamp keeps its last row."""
    by_ts: Dict[int, Candle] = {}
    for row in rows:
        ts_raw, o, h, l, c, v, spread = _row_fields(row)
        ts = _to_ts_ms(ts_raw)
        prices = [_to_finite(x) for x in (o, h, l, c)]
        if not all(p is not None and p > 0 for p in prices):
            raise ReplayInputError(f"Invalid candle at {ts}")
        spread_pips = _to_finite(spread)
        by_ts[ts] = Candle(
            timestamp=ts,
            open=prices[0],
            high=prices[1],
            low=prices[2],
            close=prices[3],
            volume=_to_finite(v) or 0.0,
            spread_pips=spread_pips if spread_pips is not None and spread_pips >= 0 else None,
        )
    if not by_ts:
        raise ReplayInputError("Replay input requires non-empty candles")
    return [by_ts[ts] for ts in sorted(by_ts)]


def normalize_replay_input(payload: Mapping[str, Any], symbol: Optional[str] = None) -> Tuple[str, List[Candle], float]:
    """Unpack a ``{symbol, pipSize, candles}`` document."""
    if not isinstance(payload, Mapping):
        raise ReplayInputError("Replay input must be an object with a candles list")
    resolved = normalize_symbol(symbol or payload.get("symbol")) or settings.DEFAULT_SYMBOL
    candles_raw = payload.get("candles")
    if not isinstance(candles_raw, list) or not candles_raw:
        raise ReplayInputError("Replay input requires non-empty candles")
    candles = normalize_replay_candles(candles_raw)
    pip = _to_finite(payload.get("pipSize"))
    pip_size = pip if pip is not None and pip > 0 else pip_size_for_symbol(resolved)
    return resolved, candles, pip_size


# ----------------------------------------------------------------------
# Simulation
# ----------------------------------------------------------------------
@dataclass(slots=True)
class _Position:
    trade_id: str
    day_key: str
    side: OrderSide
    entry_ts_ms: int
    entry_price: float
    stop_price: float
    take_profit_price: float
    risk_abs: float
    risk_usd: float
    notional_usd: float
    active_from_index: int


class _CandleSeries:
    """Base/confirm aggregations built once; each tick slices the closed bars."""

    def __init__(self, minute: List[Candle], cfg: StrategyConfig):
        self.minute = minute
        self.minute_ts = [c.timestamp for c in minute]
        self.base_tf = cfg.timeframes.asia_base
        self.confirm_tf = cfg.timeframes.confirm
        self.base = minute if self.base_tf is Timeframe.M1 else aggregate_candles(minute, self.base_tf.minutes)
        self.confirm = minute if self.confirm_tf is Timeframe.M1 else aggregate_candles(minute, self.confirm_tf.minutes)
        self.base_ts = [c.timestamp for c in self.base]
        self.confirm_ts = [c.timestamp for c in self.confirm]

    @staticmethod
    def _closed(series, ts_list, tf: Timeframe, now_ms: int, start_ms: int, min_count: int) -> List[Candle]:
        end = bisect_right(ts_list, now_ms - tf.ms)
        start = min(bisect_left(ts_list, start_ms), max(0, end - min_count))
        return series[start:end]

    def last_closed_minute(self, now_ms: int) -> Optional[Candle]:
        idx = bisect_right(self.minute_ts, now_ms - _MINUTE_MS) - 1
        return self.minute[idx] if idx >= 0 else None

    def window(self, now_ms: int, start_ms: int, cfg: StrategyConfig) -> Tuple[List[Candle], List[Candle]]:
        base = self._closed(self.base, self.base_ts, self.base_tf, now_ms, start_ms, cfg.data.min_base_candles)
        confirm = self._closed(
            self.confirm, self.confirm_ts, self.confirm_tf, now_ms, start_ms, cfg.data.min_confirm_candles
        )
        return base, confirm


def _market_snapshot(
    series: _CandleSeries,
    symbol: str,
    now_ms: int,
    lookback_start_ms: int,
    pip_size: float,
    runtime: ReplayRuntimeConfig,
) -> Optional[MarketSnapshot]:
    last = series.last_closed_minute(now_ms)
    if last is None:
        return None
    spread_raw = last.spread_pips if last.spread_pips is not None else runtime.default_spread_pips
    spread_pips = max(0.0, spread_raw * runtime.spread_factor)
    spread_abs = spread_pips * pip_size
    base, confirm = series.window(now_ms, lookback_start_ms, runtime.strategy)
    return MarketSnapshot(
        symbol=symbol,
        epic=f"REPLAY:{symbol}",
        now_ms=now_ms,
        quote=Quote(
            price=last.close,
            bid=last.close - spread_abs / 2,
            offer=last.close + spread_abs / 2,
            spread_abs=spread_abs,
            spread_pips=spread_pips,
            ts_ms=last.timestamp,
        ),
        base_tf=series.base_tf,
        confirm_tf=series.confirm_tf,
        base_candles=base,
        confirm_candles=confirm,
    )


def resolve_exit(
    position: _Position, candle: Candle, slippage_abs: float, prefer_stop: bool
) -> Optional[Tuple[float, ExitReason]]:
    """Exit price and reason if ``candle`` reaches the stop or the target."""
    slip = max(0.0, slippage_abs)
    if position.side is OrderSide.BUY:
        stop_hit = candle.low <= position.stop_price
        tp_hit = candle.high >= position.take_profit_price
        adverse = -slip
    else:
        stop_hit = candle.high >= position.stop_price
        tp_hit = candle.low <= position.take_profit_price
        adverse = slip
    if not stop_hit and not tp_hit:
        return None
    if stop_hit and (prefer_stop or not tp_hit):
        return position.stop_price + adverse, ExitReason.STOP
    return position.take_profit_price + adverse, ExitReason.TP


def _close_trade(position: _Position, exit_ts_ms: int, exit_price: float, reason: ExitReason) -> ReplayTrade:
    if position.side is OrderSide.BUY:
        pnl_abs = exit_price - position.entry_price
    else:
        pnl_abs = position.entry_price - exit_price
    r_multiple = pnl_abs / position.risk_abs if position.risk_abs > 0 else 0.0
    return ReplayTrade(
        id=position.trade_id,
        day_key=position.day_key,
        side=position.side,
        entry_ts_ms=position.entry_ts_ms,
        exit_ts_ms=exit_ts_ms,
        hold_minutes=max(0.0, (exit_ts_ms - position.entry_ts_ms) / _MINUTE_MS),
        entry_price=position.entry_price,
        stop_price=position.stop_price,
        take_profit_price=position.take_profit_price,
        exit_price=exit_price,
        exit_reason=reason,
        risk_abs=position.risk_abs,
        risk_usd=position.risk_usd,
        notional_usd=position.notional_usd,
        r_multiple=r_multiple,
        pnl_usd=r_multiple * position.risk_usd,
    )


def _event(ts_ms: int, type: str, state: State, codes: List[str], payload: Optional[Dict[str, Any]] = None) -> TimelineEvent:
    return TimelineEvent(ts_ms, type, state, dedupe_reason_codes(codes), payload or {})


def summarize_trades(
    symbol: str, runs: int, trades: Sequence[ReplayTrade], start_ts_ms: Optional[int], end_ts_ms: Optional[int]
) -> ReplaySummary:
    wins = sum(1 for t in trades if t.r_multiple > 0)
    net_r = sum(t.r_multiple for t in trades)
    avg_r = net_r / len(trades) if trades else 0.0
    exits: Dict[str, int] = {}
    equity = peak = max_dd = 0.0
    for t in trades:
        exits[t.exit_reason.value] = exits.get(t.exit_reason.value, 0) + 1
        equity += t.r_multiple
        peak = max(peak, equity)
        max_dd = max(max_dd, peak - equity)
    return ReplaySummary(
        symbol=symbol,
        start_ts_ms=start_ts_ms,
        end_ts_ms=end_ts_ms,
        runs=runs,
        trades=len(trades),
        wins=wins,
        losses=len(trades) - wins,
        win_rate_pct=wins / len(trades) * 100 if trades else 0.0,
        avg_r=avg_r,
        expectancy_r=avg_r,
        net_r=net_r,
        net_pnl_usd=sum(t.pnl_usd for t in trades),
        max_drawdown_r=max_dd,
        avg_hold_minutes=sum(t.hold_minutes for t in trades) / len(trades) if trades else 0.0,
        exits_by_reason=exits,
    )


def build_diagnostics(timeline: Sequence[TimelineEvent], top_n: int = settings.TOP_REASON_CODES) -> ReplayDiagnostics:
    code_counts = Counter(code for event in timeline for code in event.reason_codes)
    ranked = sorted(code_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:top_n]
    state_counts = Counter(event.state.value for event in timeline if event.type == "state")
    return ReplayDiagnostics(
        top_reason_codes=[{"code": code, "count": count} for code, count in ranked],
        state_counts=dict(sorted(state_counts.items())),
    )


def run_replay(candles: Sequence[Candle], pip_size: float, config: ReplayRuntimeConfig) -> ReplayResult:
    """Replay ``candles`` (1-minute bars) through the full decision stack."""
    candles = sorted(candles, key=lambda c: c.timestamp)
    if not candles:
        raise ReplayInputError("Replay requires candles")
    if not pip_size > 0:
        raise ReplayInputError(f"Invalid pip size: {pip_size}")

    cfg = config.strategy
    symbol = normalize_symbol(config.symbol) or settings.DEFAULT_SYMBOL
    interval_ms = max(1, int(config.execute_minutes)) * _MINUTE_MS
    slippage_abs = config.slippage_pips * pip_size
    series = _CandleSeries(candles, cfg)
    logger.info(
        f"Replay {symbol}: {len(candles)} candles, every {config.execute_minutes}m, "
        f"spread x{config.spread_factor}, slippage {config.slippage_pips} pips"
    )

    timeline: List[TimelineEvent] = []
    trades: List[ReplayTrade] = []
    runs = 0
    state: Optional[SessionState] = None
    position: Optional[_Position] = None
    next_run_ts = candles[0].timestamp

    for i, candle in enumerate(candles):
        if position is not None and i >= position.active_from_index:
            hit = resolve_exit(position, candle, slippage_abs, config.prefer_stop_when_both_hit)
            if hit is not None:
                exit_price, reason = hit
                trade = _close_trade(position, candle.timestamp, exit_price, reason)
                trades.append(trade)
                position = None
                if state is not None:
                    state.trade = None
                    state.state = State.DONE
                timeline.append(_event(
                    candle.timestamp, "exit", state.state if state else State.DONE, [f"EXIT_{reason.value}"],
                    {"tradeId": trade.id, "r": trade.r_multiple, "pnlUsd": trade.pnl_usd},
                ))

        while next_run_ts <= candle.timestamp:
            runs += 1
            now_ms = next_run_ts
            next_run_ts += interval_ms
            day_key = day_key_for(now_ms, cfg.sessions.clock_mode)
            if state is None:
                state = create_initial_state(symbol, day_key, now_ms)

            transition = advance_state_machine(state, now_ms, day_key)
            state = transition.next_state
            windows = build_session_windows(state.day_key, cfg)
            lookback_start = min(windows.asia_start_ms, windows.raid_start_ms) - settings.MARKET_LOOKBACK_MINUTES * _MINUTE_MS
            market = _market_snapshot(series, symbol, now_ms, lookback_start, pip_size, config)
            if market is None:
                timeline.append(_event(
                    now_ms, "state", state.state,
                    ["SCALP_REPLAY_RUN", *transition.reason_codes, "REPLAY_NO_CLOSED_CANDLES"],
                ))
                continue

            state, phase_codes = apply_phase_detectors(state, market, windows, now_ms, cfg)
            run_codes = dedupe_reason_codes(["SCALP_REPLAY_RUN", *transition.reason_codes, *phase_codes])
            payload = None
            if state.ifvg is not None and ("IFVG_QUALIFIED" in run_codes or "IFVG_WAITING_RETRACE" in run_codes):
                payload = {
                    "ifvgDirection": state.ifvg.direction.value,
                    "ifvgLow": state.ifvg.low,
                    "ifvgHigh": state.ifvg.high,
                    "ifvgCreatedTs": state.ifvg.created_ts_ms,
                    "ifvgTouched": state.ifvg.touched,
                }
            timeline.append(_event(now_ms, "state", state.state, run_codes, payload))

            ready = (
                position is None
                and state.state is State.WAITING_RETRACE
                and state.ifvg is not None
                and state.ifvg.touched
                and state.trade is None
            )
            if not ready:
                continue

            plan, plan_codes = build_entry_plan(state, market.quote, cfg)
            timeline.append(_event(now_ms, "note", state.state, plan_codes))
            if plan is None or state.stats.trades_placed >= cfg.risk.max_trades_per_symbol_per_day:
                continue

            adverse = slippage_abs if plan.side is OrderSide.BUY else -slippage_abs
            fill = plan.entry_reference_price + adverse
            risk_abs = abs(fill - plan.stop_price)
            if not risk_abs > 0:
                continue

            position = _Position(
                trade_id=plan.setup_id,
                day_key=state.day_key,
                side=plan.side,
                entry_ts_ms=now_ms,
                entry_price=fill,
                stop_price=plan.stop_price,
                take_profit_price=plan.take_profit_price,
                risk_abs=risk_abs,
                risk_usd=plan.risk_usd,
                notional_usd=plan.notional_usd,
                active_from_index=i + 1,
            )
            state.trade = TradeSnapshot(
                setup_id=plan.setup_id,
                deal_reference=plan.deal_reference,
                side=plan.side,
                entry_price=fill,
                stop_price=plan.stop_price,
                take_profit_price=plan.take_profit_price,
                risk_r=1.0,
                opened_at_ms=now_ms,
                broker_order_id=None,
                dry_run=True,
            )
            state.stats.trades_placed += 1
            state.stats.last_trade_at_ms = now_ms
            state.state = State.IN_TRADE
            timeline.append(_event(
                now_ms, "entry", state.state, ["ENTRY_SIMULATED"],
                {"setupId": plan.setup_id, "side": plan.side.value, "entry": fill,
                 "stop": plan.stop_price, "tp": plan.take_profit_price},
            ))

    if position is not None and config.force_close_at_end:
        last = candles[-1]
        exit_price = last.close - slippage_abs if position.side is OrderSide.BUY else last.close + slippage_abs
        trade = _close_trade(position, last.timestamp, exit_price, ExitReason.FORCE_CLOSE)
        trades.append(trade)
        if state is not None:
            state.trade = None
            state.state = State.DONE
        timeline.append(_event(
            last.timestamp, "exit", State.DONE, ["EXIT_FORCE_CLOSE"],
            {"tradeId": trade.id, "r": trade.r_multiple, "pnlUsd": trade.pnl_usd},
        ))

    summary = summarize_trades(symbol, runs, trades, candles[0].timestamp, candles[-1].timestamp)
    logger.info(
        f"Replay {symbol} done: runs={runs} trades={summary.trades} netR={summary.net_r:.3f} "
        f"maxDD={summary.max_drawdown_r:.3f}"
    )
    return ReplayResult(summary=summary, trades=trades, timeline=timeline, diagnostics=build_diagnostics(timeline))
