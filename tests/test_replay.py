import copy
import unittest
from dataclasses import replace
from unittest.mock import patch

from config.strategy import StrategyConfig
from core.replay import (
    ReplayInputError,
    ReplayRuntimeConfig,
    _Position,
    build_diagnostics,
    normalize_replay_candles,
    normalize_replay_input,
    replay_strategy_config,
    resolve_exit,
    run_replay,
    summarize_trades,
)
from factories import MIN, T0, candle, flat_session_day
from models.types import (
    Direction,
    EntryMode,
    EntryPlan,
    ExitReason,
    IfvgZoneSnapshot,
    OrderSide,
    OrderType,
    ReplayTrade,
    State,
    SweepSide,
    SweepSnapshot,
    Timeframe,
    TimelineEvent,
)


def position(side=OrderSide.BUY, entry=100.0, stop=99.0, tp=102.0):
    return _Position(
        trade_id="t1",
        day_key="2024-01-15",
        side=side,
        entry_ts_ms=T0,
        entry_price=entry,
        stop_price=stop,
        take_profit_price=tp,
        risk_abs=abs(entry - stop),
        risk_usd=35.0,
        notional_usd=2000.0,
        active_from_index=1,
    )


def trade(r, reason=ExitReason.TP, hold=10.0):
    return ReplayTrade(
        id=f"t{r}",
        day_key="2024-01-15",
        side=OrderSide.BUY,
        entry_ts_ms=T0,
        exit_ts_ms=T0 + int(hold * MIN),
        hold_minutes=hold,
        entry_price=100.0,
        stop_price=99.0,
        take_profit_price=102.0,
        exit_price=100.0 + r,
        exit_reason=reason,
        risk_abs=1.0,
        risk_usd=35.0,
        notional_usd=2000.0,
        r_multiple=float(r),
        pnl_usd=35.0 * r,
    )


class TestReplayInput(unittest.TestCase):
    def test_rows_are_normalized(self):
        candles = normalize_replay_candles(
            [
                {"ts": T0 + MIN, "open": 1.1, "high": 1.2, "low": 1.0, "close": 1.15, "spreadPips": "0.8"},
                [T0, 1.0, 1.1, 0.9, 1.05],
                {"timestamp": "2024-01-15T00:01:00Z", "open": 1.1, "high": 1.3, "low": 1.0, "close": 1.2},
            ]
        )
        self.assertEqual([c.timestamp for c in candles], [T0, T0 + MIN])
        # Repeated timestamp keeps the last row
        self.assertEqual(candles[1].close, 1.2)
        self.assertIsNone(candles[1].spread_pips)
        self.assertEqual(candles[0].volume, 0.0)

    def test_bad_rows_raise(self):
        with self.assertRaises(ReplayInputError):
            normalize_replay_candles([{"ts": "yesterday", "open": 1, "high": 1, "low": 1, "close": 1}])
        with self.assertRaises(ReplayInputError):
            normalize_replay_candles([[T0, 1.0, 1.1, -0.9, 1.05]])
        with self.assertRaises(ReplayInputError):
            normalize_replay_candles(["nope"])
        with self.assertRaises(ReplayInputError):
            normalize_replay_candles([])

    def test_input_document(self):
        symbol, candles, pip = normalize_replay_input({"symbol": "usdjpy", "candles": [[T0, 150, 150.1, 149.9, 150]]})
        self.assertEqual((symbol, len(candles), pip), ("USDJPY", 1, 0.01))

        symbol, _, pip = normalize_replay_input(
            {"symbol": "usdjpy", "pipSize": 0.001, "candles": [[T0, 150, 150.1, 149.9, 150]]}, symbol="gbpusd"
        )
        self.assertEqual((symbol, pip), ("GBPUSD", 0.001))

        with self.assertRaises(ReplayInputError):
            normalize_replay_input({"symbol": "EURUSD", "candles": []})
        with self.assertRaises(ReplayInputError):
            normalize_replay_input([1, 2, 3])

    def test_replay_profile(self):
        cfg = replay_strategy_config(replace(StrategyConfig(), risk=replace(StrategyConfig().risk, kill_switch=True)))
        self.assertEqual(cfg.timeframes.asia_base, Timeframe.M1)
        self.assertEqual(cfg.timeframes.confirm, Timeframe.M1)
        self.assertEqual(cfg.sweep.buffer_pips, 0.25)
        self.assertEqual(cfg.sweep.reject_max_bars, 20)
        self.assertEqual(cfg.confirm.mss_lookback_bars, 1)
        self.assertEqual(cfg.ifvg.entry_mode, EntryMode.FIRST_TOUCH)
        self.assertEqual(cfg.risk.take_profit_r, 1.2)
        self.assertFalse(cfg.risk.kill_switch)
        self.assertFalse(cfg.execution.live_enabled)
        self.assertEqual(cfg.execution.entry_order_type, OrderType.MARKET)


class TestExitResolution(unittest.TestCase):
    def test_both_hit_tie_break(self):
        bar = candle(T0, 100.0, 102.1, 98.9, 101.0)
        price, reason = resolve_exit(position(), bar, 0.01, True)
        self.assertEqual(reason, ExitReason.STOP)
        self.assertAlmostEqual(price, 98.99)
        price, reason = resolve_exit(position(), bar, 0.01, False)
        self.assertEqual(reason, ExitReason.TP)
        self.assertAlmostEqual(price, 101.99)

    def test_single_side_hits(self):
        self.assertEqual(resolve_exit(position(), candle(T0, 100, 100.5, 99.5, 100), 0.01, True), None)
        price, reason = resolve_exit(position(), candle(T0, 100, 102.5, 99.5, 102), 0.0, True)
        self.assertEqual((price, reason), (102.0, ExitReason.TP))

        short = position(OrderSide.SELL, entry=100.0, stop=101.0, tp=98.0)
        price, reason = resolve_exit(short, candle(T0, 100, 101.2, 99.5, 101), 0.01, True)
        self.assertEqual(reason, ExitReason.STOP)
        self.assertAlmostEqual(price, 101.01)


class TestSummaries(unittest.TestCase):
    def test_summarize_trades(self):
        trades = [trade(1), trade(-1, ExitReason.STOP), trade(-1, ExitReason.STOP), trade(2, hold=20.0)]
        summary = summarize_trades("EURUSD", 50, trades, T0, T0 + 60 * MIN)
        self.assertEqual(summary.trades, 4)
        self.assertEqual(summary.wins, 2)
        self.assertEqual(summary.losses, 2)
        self.assertEqual(summary.win_rate_pct, 50.0)
        self.assertEqual(summary.net_r, 1.0)
        self.assertEqual(summary.avg_r, 0.25)
        self.assertEqual(summary.expectancy_r, 0.25)
        self.assertEqual(summary.max_drawdown_r, 2.0)
        self.assertEqual(summary.net_pnl_usd, 35.0)
        self.assertEqual(summary.avg_hold_minutes, 12.5)
        self.assertEqual(summary.exits_by_reason, {"TP": 2, "STOP": 2})

    def test_empty_summary(self):
        summary = summarize_trades("EURUSD", 3, [], None, None)
        self.assertEqual((summary.trades, summary.win_rate_pct, summary.max_drawdown_r), (0, 0.0, 0.0))

    def test_diagnostics_ordering(self):
        timeline = [
            TimelineEvent(T0, "state", State.IDLE, ["B", "A"], {}),
            TimelineEvent(T0, "state", State.IDLE, ["B", "C"], {}),
            TimelineEvent(T0, "note", State.DONE, ["C"], {}),
            TimelineEvent(T0, "state", State.DONE, ["D"], {}),
        ]
        diag = build_diagnostics(timeline, top_n=3)
        self.assertEqual(
            diag.top_reason_codes,
            [{"code": "B", "count": 2}, {"code": "C", "count": 2}, {"code": "A", "count": 1}],
        )
        self.assertEqual(diag.state_counts, {"DONE": 1, "IDLE": 2})


class TestRunReplay(unittest.TestCase):
    def setUp(self):
        self.runtime = ReplayRuntimeConfig(
            symbol="EURUSD",
            execute_minutes=3,
            strategy=replay_strategy_config(StrategyConfig()),
        )

    def test_flat_day_has_no_trades(self):
        result = run_replay(flat_session_day(), 0.0001, self.runtime)
        self.assertEqual(result.summary.runs, 210)
        self.assertEqual(result.summary.trades, 0)
        self.assertEqual(result.trades, [])
        top = result.diagnostics.top_reason_codes
        codes = [row["code"] for row in top]
        # Both codes appear on every run, so the tie is broken by code name
        self.assertEqual(
            top[:2],
            [{"code": "NO_STATE_CHANGE", "count": 210}, {"code": "SCALP_REPLAY_RUN", "count": 210}],
        )
        self.assertIn("NO_SWEEP_DETECTED", codes)
        self.assertIn("RAID_WINDOW_CLOSED_NO_SWEEP", codes)
        self.assertIn("REPLAY_NO_CLOSED_CANDLES", result.timeline[0].reason_codes)
        self.assertEqual(result.timeline[-1].state, State.DONE)

    def test_replay_is_deterministic(self):
        candles = flat_session_day(minutes=480)
        self.assertEqual(run_replay(candles, 0.0001, self.runtime), run_replay(candles, 0.0001, self.runtime))

    def test_invalid_arguments(self):
        with self.assertRaises(ReplayInputError):
            run_replay([], 0.0001, self.runtime)
        with self.assertRaises(ReplayInputError):
            run_replay(flat_session_day(minutes=5), 0.0, self.runtime)


def _fake_phase(state, market, windows, now_ms, cfg):
    """Jumps straight to a touched bullish zone at T0+3m, otherwise holds."""
    nxt = copy.deepcopy(state)
    if nxt.state is State.IDLE and now_ms >= T0 + 3 * MIN:
        nxt.state = State.WAITING_RETRACE
        nxt.sweep = SweepSnapshot(SweepSide.SELL_SIDE, T0, 98.0, 0.1, True, T0)
        nxt.ifvg = IfvgZoneSnapshot(
            Direction.BULLISH, 99.8, 100.0, T0 + MIN, T0 + 90 * MIN, EntryMode.FIRST_TOUCH, True, T0 + 2 * MIN
        )
        return nxt, ["ENTRY_SIGNAL_READY"]
    return nxt, ["NO_STATE_CHANGE"]


PLAN = EntryPlan(
    setup_id="scalp:test",
    deal_reference="scalp-test",
    side=OrderSide.BUY,
    order_type=OrderType.MARKET,
    limit_level=None,
    entry_reference_price=100.0,
    stop_price=99.0,
    take_profit_price=102.0,
    risk_abs=1.0,
    risk_usd=35.0,
    notional_usd=2000.0,
    leverage=1,
)


class TestSimulatedPosition(unittest.TestCase):
    def setUp(self):
        self.runtime = ReplayRuntimeConfig(
            symbol="EURUSD",
            execute_minutes=1,
            slippage_pips=0.0,
            strategy=replay_strategy_config(StrategyConfig()),
        )
        patch_phase = patch("core.replay.apply_phase_detectors", side_effect=_fake_phase)
        patch_plan = patch("core.replay.build_entry_plan", return_value=(PLAN, ["ENTRY_PLAN_READY"]))
        patch_phase.start()
        self.plan = patch_plan.start()
        self.addCleanup(patch_phase.stop)
        self.addCleanup(patch_plan.stop)

    def bars(self, tail):
        head = [candle(T0 + i * MIN, 100.0, 100.5, 99.5, 100.0) for i in range(3)]
        # The entry bar dips through the stop; exits only start on the next bar
        entry_bar = candle(T0 + 3 * MIN, 100.0, 100.2, 98.5, 99.8)
        return head + [entry_bar] + [replace(c, timestamp=T0 + (4 + i) * MIN) for i, c in enumerate(tail)]

    def test_take_profit_exit(self):
        tail = [
            candle(0, 100.0, 101.0, 99.5, 100.8),
            candle(0, 100.8, 102.3, 100.5, 102.1),
            candle(0, 102.1, 102.2, 101.9, 102.0),
        ]
        result = run_replay(self.bars(tail), 0.0001, self.runtime)

        self.plan.assert_called_once()
        self.assertEqual(len(result.trades), 1)
        t = result.trades[0]
        self.assertEqual(t.entry_ts_ms, T0 + 3 * MIN)
        self.assertEqual(t.exit_ts_ms, T0 + 5 * MIN)
        self.assertEqual(t.exit_reason, ExitReason.TP)
        self.assertAlmostEqual(t.r_multiple, 2.0)
        self.assertAlmostEqual(t.pnl_usd, 70.0)
        self.assertEqual(t.hold_minutes, 2.0)
        self.assertEqual(t.day_key, "2024-01-15")
        types = [e.type for e in result.timeline]
        self.assertIn("entry", types)
        self.assertIn("exit", types)
        self.assertEqual(result.summary.exits_by_reason, {"TP": 1})

    def test_open_position_is_force_closed(self):
        tail = [candle(0, 100.0, 100.5, 99.5, 100.2) for _ in range(3)]
        result = run_replay(self.bars(tail), 0.0001, self.runtime)
        self.assertEqual(len(result.trades), 1)
        t = result.trades[0]
        self.assertEqual(t.exit_reason, ExitReason.FORCE_CLOSE)
        self.assertEqual(t.exit_ts_ms, T0 + 6 * MIN)
        self.assertAlmostEqual(t.r_multiple, 0.2)
        self.assertEqual(result.timeline[-1].reason_codes, ["EXIT_FORCE_CLOSE"])

    def test_open_position_kept_without_force_close(self):
        tail = [candle(0, 100.0, 100.5, 99.5, 100.2) for _ in range(3)]
        runtime = replace(self.runtime, force_close_at_end=False)
        result = run_replay(self.bars(tail), 0.0001, runtime)
        self.assertEqual(result.trades, [])
        self.assertEqual(result.summary.trades, 0)


if __name__ == "__main__":
    unittest.main()
