import unittest

from config.strategy import (
    ConfigOverrideError,
    StrategyConfig,
    apply_config_override,
    load_strategy_config,
    normalize_symbol,
    to_bool,
    to_non_negative_number,
    to_positive_number,
)
from models.types import ClockMode, EntryMode, OrderType, Timeframe


class TestEnvLoading(unittest.TestCase):
    def test_empty_env_gives_defaults(self):
        cfg = load_strategy_config({})
        self.assertEqual(cfg, StrategyConfig())
        self.assertTrue(cfg.dry_run_default)
        self.assertFalse(cfg.execution.live_enabled)
        self.assertEqual(cfg.sweep.buffer_pips, 1.0)
        self.assertEqual(cfg.confirm.mss_lookback_bars, 8)
        self.assertEqual(cfg.risk.take_profit_r, 2.0)
        self.assertEqual(cfg.timeframes.asia_base, Timeframe.M5)
        self.assertEqual(cfg.timeframes.confirm, Timeframe.M3)

    def test_env_values_are_parsed(self):
        cfg = load_strategy_config(
            {
                "SCALP_DEFAULT_SYMBOL": " gbp/usd ",
                "SCALP_SESSION_CLOCK_MODE": "utc_fixed",
                "SCALP_RAID_WINDOW_START_LOCAL": "6:30",
                "SCALP_CONFIRM_TF": "m1",
                "SCALP_IFVG_ENTRY_MODE": "FULL_FILL",
                "SCALP_SWEEP_BUFFER_PIPS": "0",
                "SCALP_RISK_PER_TRADE_PCT": "0.5",
                "SCALP_LIVE_ENABLED": "yes",
                "SCALP_ENTRY_ORDER_TYPE": "limit",
                "SCALP_STATE_TTL_DAYS": "1",
            }
        )
        self.assertEqual(cfg.default_symbol, "GBPUSD")
        self.assertEqual(cfg.sessions.clock_mode, ClockMode.UTC_FIXED)
        self.assertEqual(cfg.sessions.raid_window_local, ("06:30", "10:00"))
        self.assertEqual(cfg.timeframes.confirm, Timeframe.M1)
        self.assertEqual(cfg.ifvg.entry_mode, EntryMode.FULL_FILL)
        self.assertEqual(cfg.sweep.buffer_pips, 0.0)
        self.assertEqual(cfg.risk.risk_per_trade_pct, 0.5)
        self.assertTrue(cfg.execution.live_enabled)
        self.assertEqual(cfg.execution.entry_order_type, OrderType.LIMIT)
        self.assertEqual(cfg.storage.session_ttl_seconds, 86400)

    def test_invalid_values_fall_back(self):
        cfg = load_strategy_config(
            {
                "SCALP_RISK_PER_TRADE_PCT": "-1",
                "SCALP_TAKE_PROFIT_R": "0",
                "SCALP_MSS_LOOKBACK_BARS": "lots",
                "SCALP_CONFIRM_TF": "M15",  # not a confirmation timeframe
                "SCALP_ASIA_WINDOW_START_LOCAL": "25:00",
                "SCALP_LIVE_ENABLED": "maybe",
                "SCALP_DISPLACEMENT_CLOSE_IN_EXTREME_PCT": "0.9",
            }
        )
        self.assertEqual(cfg.risk.risk_per_trade_pct, 0.35)
        self.assertEqual(cfg.risk.take_profit_r, 2.0)
        self.assertEqual(cfg.confirm.mss_lookback_bars, 8)
        self.assertEqual(cfg.timeframes.confirm, Timeframe.M3)
        self.assertEqual(cfg.sessions.asia_window_local[0], "00:00")
        self.assertFalse(cfg.execution.live_enabled)
        self.assertEqual(cfg.confirm.close_in_extreme_pct, 0.49)

    def test_fractional_integers_floor_to_one(self):
        cfg = load_strategy_config(
            {
                "SCALP_MAX_TRADES_PER_SYMBOL_PER_DAY": "0.5",
                "SCALP_RUN_LOCK_SECONDS": "0.5",
                "SCALP_STATE_TTL_DAYS": "0.5",
                "SCALP_ATR_PERIOD": "0.5",
                "SCALP_MSS_LOOKBACK_BARS": "2.9",
            }
        )
        self.assertEqual(cfg.risk.max_trades_per_symbol_per_day, 1)
        self.assertEqual(cfg.idempotency.run_lock_seconds, 1)
        self.assertEqual(cfg.storage.session_ttl_seconds, 24 * 60 * 60)
        self.assertEqual(cfg.data.atr_period, 1)
        self.assertEqual(cfg.confirm.mss_lookback_bars, 2)

    def test_clamped_limits(self):
        cfg = load_strategy_config({"SCALP_DEFAULT_LEVERAGE": "50", "SCALP_MAX_CANDLES_PER_REQUEST": "10"})
        self.assertEqual(cfg.execution.default_leverage, 5)
        self.assertEqual(cfg.data.max_candles_per_request, 200)

    def test_number_helpers(self):
        self.assertEqual(to_positive_number("nan", 3.0), 3.0)
        self.assertEqual(to_positive_number("inf", 3.0), 3.0)
        self.assertEqual(to_non_negative_number("0", 3.0), 0.0)
        self.assertEqual(to_bool(None, True), True)
        self.assertEqual(to_bool("OFF", True), False)
        self.assertEqual(normalize_symbol("eur usd!"), "EURUSD")


class TestConfigOverride(unittest.TestCase):
    def setUp(self):
        self.base = StrategyConfig()

    def test_nested_merge(self):
        cfg = apply_config_override(
            self.base,
            {
                "sweep": {"buffer_pips": 0.25, "reject_max_bars": "4"},
                "ifvg": {"entry_mode": "first_touch"},
                "sessions": {"raid_window_local": ["06:00", "09:00"]},
                "execution": {"live_enabled": "true"},
                "risk": {"take_profit_r": None},
            },
        )
        self.assertEqual(cfg.sweep.buffer_pips, 0.25)
        self.assertEqual(cfg.sweep.reject_max_bars, 4)
        self.assertEqual(cfg.sweep.min_wick_body_ratio, self.base.sweep.min_wick_body_ratio)
        self.assertEqual(cfg.ifvg.entry_mode, EntryMode.FIRST_TOUCH)
        self.assertEqual(cfg.sessions.raid_window_local, ("06:00", "09:00"))
        self.assertTrue(cfg.execution.live_enabled)
        self.assertEqual(cfg.risk.take_profit_r, 2.0)
        # The base is never modified
        self.assertEqual(self.base.sweep.buffer_pips, 1.0)

    def test_empty_override_returns_same_config(self):
        self.assertIs(apply_config_override(self.base, {}), self.base)
        self.assertIs(apply_config_override(self.base, None), self.base)

    def test_unknown_key(self):
        with self.assertRaises(ConfigOverrideError) as ctx:
            apply_config_override(self.base, {"sweep": {"bufer_pips": 1}})
        self.assertIn("sweep.bufer_pips", str(ctx.exception))

    def test_bad_values(self):
        with self.assertRaises(ConfigOverrideError):
            apply_config_override(self.base, {"ifvg": {"entry_mode": "halfway"}})
        with self.assertRaises(ConfigOverrideError):
            apply_config_override(self.base, {"sessions": {"asia_window_local": "00:00-06:00"}})
        with self.assertRaises(ConfigOverrideError):
            apply_config_override(self.base, {"sweep": 1.0})
        with self.assertRaises(ConfigOverrideError):
            apply_config_override(self.base, {"sweep": {"reject_max_bars": "abc"}})
        with self.assertRaises(ConfigOverrideError):
            apply_config_override(self.base, {"risk": {"take_profit_r": [2]}})


if __name__ == "__main__":
    unittest.main()
