import unittest
from dataclasses import replace
from unittest.mock import MagicMock, patch

from config.strategy import ExecutionConfig, RiskConfig, StrategyConfig
from core.engine import advance_one_cycle
from data.capital_client import CapitalApiError
from data.store import InMemoryStateStore, lock_key
from factories import eurusd_waiting_state, quote
from models.types import MarketSnapshot, OrderResult, State, Timeframe

NOW = 1705305600000  # 2024-01-15 08:00 UTC, inside the London raid window
DAY = "2024-01-15"


def eurusd_market(*args, **kwargs):
    return MarketSnapshot(
        symbol="EURUSD",
        epic="CS.D.EURUSD.CFD.IP",
        now_ms=NOW,
        quote=quote(1.1040, 0.00012, ts_ms=NOW),
        base_tf=Timeframe.M5,
        confirm_tf=Timeframe.M1,
        base_candles=[],
        confirm_candles=[],
    )


class TestAdvanceOneCycle(unittest.TestCase):
    def setUp(self):
        self.cfg = StrategyConfig()
        self.store = InMemoryStateStore()
        self.broker = MagicMock()
        self.market_data = MagicMock()
        self.store.save(eurusd_waiting_state(DAY, NOW), 3600)

        patcher = patch("core.engine.load_market_snapshot", side_effect=eurusd_market)
        self.load_market = patcher.start()
        self.addCleanup(patcher.stop)

    def cycle(self, cfg=None, dry_run=None, run_id="run-1"):
        return advance_one_cycle(
            "eurusd",
            NOW,
            cfg or self.cfg,
            store=self.store,
            market_data=self.market_data,
            broker=self.broker,
            dry_run=dry_run,
            run_id=run_id,
        )

    def lock_is_free(self):
        key = lock_key("EURUSD")
        if not self.store.try_acquire_lock(key, "probe", 60):
            return False
        self.store.release_lock(key, "probe")
        return True

    def test_dry_run_entry(self):
        result = self.cycle()

        self.assertTrue(result.run_lock_acquired)
        self.assertTrue(result.dry_run)
        self.assertEqual(result.symbol, "EURUSD")
        self.assertEqual(result.day_key, DAY)
        self.assertEqual(result.state, State.DONE)
        self.assertEqual(result.reason_codes[0], "SCALP_CYCLE_EXECUTED")
        for code in ("ENTRY_SIGNAL_READY", "BROKER_RECONCILE_SKIPPED_DRY_RUN", "ENTRY_PLAN_READY", "ENTRY_DRYRUN_SIMULATED"):
            self.assertIn(code, result.reason_codes)
        self.broker.place_order.assert_not_called()
        self.broker.list_open_positions.assert_not_called()

        saved = self.store.load("EURUSD", DAY)
        self.assertEqual(saved.state, State.DONE)
        self.assertTrue(saved.trade.dry_run)
        self.assertEqual(saved.stats.trades_placed, 1)
        self.assertEqual(saved.run.last_run_id, "run-1")
        self.assertEqual(saved.run.last_run_at_ms, NOW)

        journal = self.store.load_journal()
        self.assertEqual(journal[0]["type"], "execution")
        self.assertEqual(journal[0]["symbol"], "EURUSD")
        self.assertEqual(journal[0]["payload"]["state"], "DONE")
        self.assertTrue(self.lock_is_free())

    def test_second_cycle_finds_day_done(self):
        self.cycle()
        result = self.cycle(run_id="run-2")
        self.assertEqual(result.state, State.DONE)
        self.assertIn("DAY_ALREADY_DONE", result.reason_codes)
        self.assertEqual(self.store.load("EURUSD", DAY).stats.trades_placed, 1)

    def test_lock_contention(self):
        self.store.try_acquire_lock(lock_key("EURUSD"), "someone-else", 60)
        result = self.cycle()

        self.assertFalse(result.run_lock_acquired)
        self.assertEqual(result.reason_codes, ["SCALP_RUN_LOCK_ACTIVE"])
        self.load_market.assert_not_called()
        self.assertEqual(self.store.load("EURUSD", DAY).state, State.WAITING_RETRACE)
        journal = self.store.load_journal()
        self.assertEqual(journal[0]["level"], "warn")
        self.assertEqual(journal[0]["reasonCodes"], ["SCALP_RUN_LOCK_ACTIVE"])
        self.assertFalse(self.lock_is_free())

    def test_market_data_failure_still_saves(self):
        self.load_market.side_effect = CapitalApiError(503, "prices unavailable")
        result = self.cycle()

        self.assertIn("MARKET_DATA_UNAVAILABLE", result.reason_codes)
        self.assertEqual(result.state, State.WAITING_RETRACE)
        journal = self.store.load_journal()
        self.assertEqual(journal[1]["type"], "risk")
        self.assertEqual(journal[1]["reasonCodes"], ["MARKET_DATA_UNAVAILABLE"])
        self.assertEqual(self.store.load("EURUSD", DAY).run.last_run_id, "run-1")
        self.assertTrue(self.lock_is_free())

    def test_detector_error_propagates_without_saving(self):
        with patch("core.engine.apply_phase_detectors", side_effect=RuntimeError("boom")):
            with self.assertRaises(RuntimeError):
                self.cycle()

        saved = self.store.load("EURUSD", DAY)
        self.assertEqual(saved.state, State.WAITING_RETRACE)
        self.assertIsNone(saved.run.last_run_id)
        journal = self.store.load_journal()
        self.assertEqual(journal[0]["type"], "error")
        self.assertEqual(journal[0]["reasonCodes"], ["SCALP_EXECUTE_CYCLE_ERROR"])
        self.assertTrue(self.lock_is_free())

    def test_disabled_engine(self):
        result = self.cycle(cfg=replace(self.cfg, enabled=False))
        self.assertEqual(result.reason_codes, ["SCALP_ENGINE_DISABLED"])
        self.assertEqual(result.state, State.IDLE)
        self.load_market.assert_not_called()
        self.assertEqual(self.store.load("EURUSD", DAY).state, State.IDLE)

    def test_kill_switch_skips_market_and_orders(self):
        cfg = replace(self.cfg, risk=replace(RiskConfig(), kill_switch=True))
        result = self.cycle(cfg=cfg)
        self.assertIn("GLOBAL_KILL_SWITCH_ACTIVE", result.reason_codes)
        self.assertEqual(result.state, State.WAITING_RETRACE)
        self.load_market.assert_not_called()
        self.broker.place_order.assert_not_called()
        self.assertTrue(self.store.load("EURUSD", DAY).kill_switch_active)

    def test_live_entry_is_placed(self):
        cfg = replace(self.cfg, execution=ExecutionConfig(live_enabled=True))
        self.broker.list_open_positions.return_value = []
        self.broker.place_order.return_value = OrderResult(accepted=True, broker_order_id="DEAL7")

        result = self.cycle(cfg=cfg, dry_run=False)
        self.assertFalse(result.dry_run)
        self.assertEqual(result.state, State.IN_TRADE)
        self.assertIn("BROKER_POSITION_NONE", result.reason_codes)
        self.assertIn("ENTRY_PLACED", result.reason_codes)
        saved = self.store.load("EURUSD", DAY)
        self.assertEqual(saved.trade.broker_order_id, "DEAL7")
        self.assertFalse(saved.run.dry_run_last)

    def test_live_requested_but_not_enabled(self):
        self.broker.list_open_positions.return_value = []
        result = self.cycle(dry_run=False)
        self.assertEqual(result.state, State.DONE)
        self.assertIn("LIVE_EXECUTION_DISABLED", result.reason_codes)
        self.broker.place_order.assert_not_called()


if __name__ == "__main__":
    unittest.main()
