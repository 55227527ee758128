import math
import unittest
from dataclasses import replace

from config.strategy import ExecutionConfig, StrategyConfig
from core.planner import build_entry_plan, build_setup_id, limit_price_for_zone
from factories import HOUR, MIN, T0, eurusd_waiting_state, quote
from models.types import (
    Direction,
    EntryMode,
    IfvgZoneSnapshot,
    OrderSide,
    OrderType,
    SessionState,
    State,
    SweepSide,
    SweepSnapshot,
)

DAY = "2024-01-15"
NOW = T0 + 8 * HOUR


def usdjpy_touched_state():
    r = T0 + 7 * HOUR
    return SessionState(
        symbol="USDJPY",
        day_key=DAY,
        state=State.WAITING_RETRACE,
        created_at_ms=T0,
        updated_at_ms=r + 7 * MIN,
        sweep=SweepSnapshot(
            side=SweepSide.SELL_SIDE,
            sweep_ts_ms=r,
            sweep_price=99.5,
            buffer_abs=0.01,
            rejected=True,
            rejected_ts_ms=r,
        ),
        ifvg=IfvgZoneSnapshot(
            direction=Direction.BULLISH,
            low=101.0,
            high=101.2,
            created_ts_ms=r + 5 * MIN,
            expires_at_ms=r + 95 * MIN,
            entry_mode=EntryMode.FIRST_TOUCH,
            touched=True,
            touched_ts_ms=r + 6 * MIN,
        ),
    )


class TestEntryPlanner(unittest.TestCase):
    def setUp(self):
        self.cfg = StrategyConfig()

    def test_usdjpy_market_plan(self):
        plan, codes = build_entry_plan(usdjpy_touched_state(), quote(101.3, 0.02, pip_size=0.01), self.cfg)
        self.assertEqual(codes, ["ENTRY_PLAN_READY"])
        self.assertEqual(plan.side, OrderSide.BUY)
        self.assertEqual(plan.order_type, OrderType.MARKET)
        self.assertIsNone(plan.limit_level)
        self.assertAlmostEqual(plan.entry_reference_price, 101.3)
        # Spread (0.02) outweighs the 0.8 pip buffer (0.008)
        self.assertAlmostEqual(plan.stop_price, 99.48)
        self.assertAlmostEqual(plan.risk_abs, 1.82)
        self.assertAlmostEqual(plan.risk_usd, 35.0)
        self.assertAlmostEqual(plan.notional_usd, 35.0 * 101.3 / 1.82, places=6)
        self.assertAlmostEqual(plan.take_profit_price, 104.94)
        self.assertEqual(plan.leverage, 1)

    def test_unclamped_notional_risks_exactly_risk_usd(self):
        plan, _ = build_entry_plan(usdjpy_touched_state(), quote(101.3, 0.02, pip_size=0.01), self.cfg)
        loss_at_stop = plan.notional_usd * plan.risk_abs / plan.entry_reference_price
        self.assertAlmostEqual(loss_at_stop, plan.risk_usd, places=6)

    def test_eurusd_sell_plan_clamps_notional(self):
        state = eurusd_waiting_state(DAY, NOW)
        plan, codes = build_entry_plan(state, quote(1.1040, 0.00012), self.cfg)
        self.assertEqual(codes, ["ENTRY_PLAN_READY"])
        self.assertEqual(plan.side, OrderSide.SELL)
        self.assertAlmostEqual(plan.stop_price, 1.10632)
        self.assertAlmostEqual(plan.risk_abs, 0.00232)
        self.assertEqual(plan.notional_usd, 2000.0)
        self.assertAlmostEqual(plan.take_profit_price, 1.09936)
        self.assertLess(plan.take_profit_price, plan.entry_reference_price)
        self.assertGreater(plan.stop_price, plan.entry_reference_price)

    def test_missing_setup(self):
        state = eurusd_waiting_state(DAY, NOW)
        state.ifvg = None
        self.assertEqual(build_entry_plan(state, quote(1.1040, 0.0001), self.cfg), (None, ["ENTRY_PLAN_MISSING_SETUP"]))

    def test_untouched_zone(self):
        state = eurusd_waiting_state(DAY, NOW)
        state.ifvg.touched = False
        plan, codes = build_entry_plan(state, quote(1.1040, 0.0001), self.cfg)
        self.assertIsNone(plan)
        self.assertEqual(codes, ["ENTRY_PLAN_IFVG_NOT_TOUCHED"])

    def test_invalid_entry_price(self):
        plan, codes = build_entry_plan(eurusd_waiting_state(DAY, NOW), quote(math.nan, 0.0001), self.cfg)
        self.assertIsNone(plan)
        self.assertEqual(codes, ["ENTRY_PLAN_INVALID_ENTRY_PRICE"])

    def test_stop_too_tight(self):
        # 1.10625 vs a 1.10628 stop is 0.3 pip, under the 0.5 pip minimum
        plan, codes = build_entry_plan(eurusd_waiting_state(DAY, NOW), quote(1.10625, 0.0), self.cfg)
        self.assertIsNone(plan)
        self.assertEqual(codes, ["ENTRY_PLAN_STOP_DISTANCE_TOO_TIGHT"])

    def test_non_positive_stop(self):
        state = usdjpy_touched_state()
        state.sweep.sweep_price = 0.01
        plan, codes = build_entry_plan(state, quote(101.3, 0.02, pip_size=0.01), self.cfg)
        self.assertIsNone(plan)
        self.assertEqual(codes, ["ENTRY_PLAN_INVALID_STOP"])

    def test_limit_order_uses_zone_edge(self):
        cfg = replace(self.cfg, execution=ExecutionConfig(entry_order_type=OrderType.LIMIT))
        plan, _ = build_entry_plan(usdjpy_touched_state(), quote(101.3, 0.02, pip_size=0.01), cfg)
        self.assertEqual(plan.order_type, OrderType.LIMIT)
        self.assertAlmostEqual(plan.limit_level, 101.2)
        self.assertAlmostEqual(plan.entry_reference_price, 101.2)
        self.assertAlmostEqual(plan.risk_abs, 1.72)

    def test_limit_price_per_mode(self):
        self.assertEqual(limit_price_for_zone(OrderSide.BUY, 1.0, 2.0, EntryMode.FIRST_TOUCH), 2.0)
        self.assertEqual(limit_price_for_zone(OrderSide.SELL, 1.0, 2.0, EntryMode.FIRST_TOUCH), 1.0)
        self.assertEqual(limit_price_for_zone(OrderSide.BUY, 1.0, 2.0, EntryMode.MIDLINE_TOUCH), 1.5)
        self.assertEqual(limit_price_for_zone(OrderSide.BUY, 1.0, 2.0, EntryMode.FULL_FILL), 1.0)
        self.assertEqual(limit_price_for_zone(OrderSide.SELL, 1.0, 2.0, EntryMode.FULL_FILL), 2.0)

    def test_setup_identity_is_deterministic(self):
        a, _ = build_entry_plan(eurusd_waiting_state(DAY, NOW), quote(1.1040, 0.0001), self.cfg)
        b, _ = build_entry_plan(eurusd_waiting_state(DAY, NOW), quote(1.1041, 0.0002), self.cfg)
        self.assertEqual(a.setup_id, b.setup_id)
        self.assertEqual(a.deal_reference, b.deal_reference)
        self.assertTrue(a.setup_id.startswith("scalp:"))
        self.assertEqual(len(a.setup_id), len("scalp:") + 20)
        self.assertTrue(a.deal_reference.startswith("scalp-"))

        other = eurusd_waiting_state(DAY, NOW)
        other.ifvg.created_ts_ms += MIN
        self.assertNotEqual(build_setup_id(other), a.setup_id)


if __name__ == "__main__":
    unittest.main()
