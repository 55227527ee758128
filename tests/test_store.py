import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from data.store import (
    InMemoryStateStore,
    RedisStateStore,
    lock_key,
    sanitize_journal_entry,
    state_from_dict,
    state_key,
    state_to_dict,
)
from factories import T0, eurusd_waiting_state
from models.types import (
    JournalEntry,
    JournalLevel,
    JournalType,
    OrderSide,
    State,
    TradeSnapshot,
)
from utils.journal_writer import append_journal_line

DAY = "2024-01-15"
NOW = T0 + 8 * 3_600_000


def journal_entry(codes, symbol="eurusd", entry_id="e1"):
    return JournalEntry(
        id=entry_id,
        timestamp_ms=NOW,
        type=JournalType.EXECUTION,
        symbol=symbol,
        day_key=DAY,
        level=JournalLevel.INFO,
        reason_codes=codes,
        payload={"state": State.DONE, "nested": {"side": OrderSide.SELL}},
    )


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestSerialization(unittest.TestCase):
    def test_round_trip(self):
        state = eurusd_waiting_state(DAY, NOW)
        state.trade = TradeSnapshot(
            setup_id="scalp:abc",
            deal_reference="scalp-abc",
            side=OrderSide.SELL,
            entry_price=1.104,
            stop_price=1.10632,
            take_profit_price=None,
            risk_r=1.0,
            opened_at_ms=NOW,
            broker_order_id=None,
            dry_run=True,
        )
        state.stats.trades_placed = 1
        state.run.last_reason_codes = ["SCALP_CYCLE_EXECUTED"]

        raw = json.loads(json.dumps(state_to_dict(state)))
        self.assertEqual(raw["state"], "WAITING_RETRACE")
        self.assertEqual(raw["ifvg"]["entry_mode"], "midline_touch")
        self.assertEqual(state_from_dict(raw), state)

    def test_unrecognisable_payloads(self):
        self.assertIsNone(state_from_dict(None))
        self.assertIsNone(state_from_dict([1, 2]))
        self.assertIsNone(state_from_dict({"symbol": "EURUSD", "day_key": DAY, "state": "SLEEPING"}))
        self.assertIsNone(state_from_dict({"symbol": "", "day_key": DAY, "state": "IDLE"}))

        raw = state_to_dict(eurusd_waiting_state(DAY, NOW))
        del raw["sweep"]["sweep_price"]
        self.assertIsNone(state_from_dict(raw))

    def test_minimal_payload_gets_defaults(self):
        state = state_from_dict({"symbol": "eurusd", "day_key": DAY, "state": "idle", "stats": {"trades_placed": -3}})
        self.assertEqual(state.symbol, "EURUSD")
        self.assertEqual(state.state, State.IDLE)
        self.assertEqual(state.stats.trades_placed, 0)
        self.assertTrue(state.run.dry_run_last)

    def test_journal_rows_are_camel_case_and_compact(self):
        codes = ["a", "A", " b "] + [f"CODE_{i}" for i in range(30)] + ["X" * 200]
        row = sanitize_journal_entry(journal_entry(codes))
        self.assertEqual(row["symbol"], "EURUSD")
        self.assertEqual(row["dayKey"], DAY)
        self.assertEqual(row["timestampMs"], NOW)
        self.assertEqual(row["type"], "execution")
        self.assertEqual(row["level"], "info")
        self.assertEqual(row["reasonCodes"][:3], ["A", "B", "CODE_0"])
        self.assertEqual(len(row["reasonCodes"]), 16)
        self.assertEqual(row["payload"], {"state": "DONE", "nested": {"side": "SELL"}})

    def test_keys(self):
        self.assertEqual(state_key("eurusd", DAY), "scalp:state:v1:EURUSD:2024-01-15")
        self.assertEqual(lock_key("eurusd"), "scalp:runlock:v1:EURUSD")


class TestInMemoryStateStore(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = InMemoryStateStore(clock=self.clock)

    def test_save_and_load(self):
        state = eurusd_waiting_state(DAY, NOW)
        self.store.save(state, 3600)
        self.assertEqual(self.store.load("eurusd", DAY), state)
        self.assertIsNone(self.store.load("EURUSD", "2024-01-16"))

    def test_state_expires(self):
        self.store.save(eurusd_waiting_state(DAY, NOW), 5)  # clamped up to 30s
        self.clock.now += 29
        self.assertIsNotNone(self.store.load("EURUSD", DAY))
        self.clock.now += 2
        self.assertIsNone(self.store.load("EURUSD", DAY))

    def test_lock_lifecycle(self):
        key = lock_key("EURUSD")
        self.assertTrue(self.store.try_acquire_lock(key, "a", 5))
        self.assertFalse(self.store.try_acquire_lock(key, "b", 5))

        # Only the owner releases
        self.store.release_lock(key, "b")
        self.assertFalse(self.store.try_acquire_lock(key, "b", 5))

        # Minimum lock TTL is 15s
        self.clock.now += 14
        self.assertFalse(self.store.try_acquire_lock(key, "b", 5))
        self.clock.now += 2
        self.assertTrue(self.store.try_acquire_lock(key, "b", 5))

        self.store.release_lock(key, "b")
        self.assertTrue(self.store.try_acquire_lock(key, "c", 5))

    def test_journal_is_bounded_newest_first(self):
        for i in range(25):
            self.store.journal(journal_entry(["X"], entry_id=f"e{i}"), max_rows=3)
        rows = self.store.load_journal()
        self.assertEqual(len(rows), 10)
        self.assertEqual(rows[0]["id"], "e24")
        self.assertEqual(len(self.store.load_journal(limit=4)), 4)

    def test_journal_mirrors_to_jsonl(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "journal.jsonl"
            store = InMemoryStateStore(journal_path=str(path))
            store.journal(journal_entry(["ENTRY_PLACED"]), 500)
            store.journal(journal_entry(["DAY_ALREADY_DONE"], entry_id="e2"), 500)

            lines = path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 2)
            first = json.loads(lines[0])
            self.assertEqual(first["reasonCodes"], ["ENTRY_PLACED"])
            self.assertIn("logged_at", first)


class TestRedisStateStore(unittest.TestCase):
    def setUp(self):
        self.client = MagicMock()
        self.store = RedisStateStore(client=self.client)

    def test_save_uses_ttl(self):
        state = eurusd_waiting_state(DAY, NOW)
        self.store.save(state, 10)
        key, payload = self.client.set.call_args.args
        self.assertEqual(key, "scalp:state:v1:EURUSD:2024-01-15")
        self.assertEqual(self.client.set.call_args.kwargs, {"ex": 30})
        self.assertEqual(json.loads(payload)["symbol"], "EURUSD")

    def test_load(self):
        state = eurusd_waiting_state(DAY, NOW)
        self.client.get.return_value = json.dumps(state_to_dict(state))
        self.assertEqual(self.store.load("EURUSD", DAY), state)

        self.client.get.return_value = None
        self.assertIsNone(self.store.load("EURUSD", DAY))

        self.client.get.return_value = "{not json"
        self.assertIsNone(self.store.load("EURUSD", DAY))

    def test_lock_uses_set_nx(self):
        self.client.set.return_value = True
        self.assertTrue(self.store.try_acquire_lock("k", "tok", 90))
        self.client.set.assert_called_with("k", "tok", nx=True, ex=90)

        self.client.set.return_value = None
        self.assertFalse(self.store.try_acquire_lock("k", "tok", 1))
        self.client.set.assert_called_with("k", "tok", nx=True, ex=15)

    def test_release_is_atomic_compare_and_delete(self):
        script = self.client.register_script.return_value
        lua = self.client.register_script.call_args.args[0]
        self.assertIn("GET", lua)
        self.assertIn("DEL", lua)

        self.store.release_lock("k", "tok")
        script.assert_called_once_with(keys=["k"], args=["tok"])
        self.client.get.assert_not_called()
        self.client.delete.assert_not_called()

    def test_journal_push_and_trim(self):
        self.store.journal(journal_entry(["ENTRY_PLACED"]), 5000)
        self.client.lpush.assert_called_once()
        self.assertEqual(self.client.lpush.call_args.args[0], "scalp:journal:list:v1")
        self.client.ltrim.assert_called_once_with("scalp:journal:list:v1", 0, 1999)

    def test_load_journal_skips_bad_rows(self):
        self.client.lrange.return_value = ['{"id": "a"}', "oops", '{"id": "b"}']
        self.assertEqual([r["id"] for r in self.store.load_journal(50)], ["a", "b"])
        self.client.lrange.assert_called_once_with("scalp:journal:list:v1", 0, 49)



class TestJournalWriter(unittest.TestCase):
    def test_appends_timestamped_rows(self):
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "nested" / "journal.jsonl"
            self.assertEqual(append_journal_line({"id": "a"}, str(target)), target)
            append_journal_line({"id": "b"}, str(target))

            rows = [json.loads(line) for line in target.read_text(encoding="utf-8").splitlines()]
            self.assertEqual([r["id"] for r in rows], ["a", "b"])
            self.assertTrue(all("logged_at" in r for r in rows))


if __name__ == "__main__":
    unittest.main()
