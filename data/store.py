import json
import threading
import time
from dataclasses import asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import redis

from config import settings
from models.types import (
    AsiaRangeSnapshot,
    ConfirmationSnapshot,
    DailyStats,
    Direction,
    EntryMode,
    IfvgZoneSnapshot,
    JournalEntry,
    JournalLevel,
    JournalType,
    OrderSide,
    RunContext,
    SessionState,
    State,
    SweepSide,
    SweepSnapshot,
    TimeCursor,
    Timeframe,
    TradeSnapshot,
)
from utils.journal_writer import append_journal_line
from utils.logger import setup_logger
from utils.reason_codes import compact_reason_codes

logger = setup_logger("StateStore")


def state_key(symbol: str, day_key: str) -> str:
    return f"{settings.STATE_KEY_PREFIX}:{str(symbol or '').upper()}:{day_key}"


def lock_key(symbol: str) -> str:
    return f"{settings.LOCK_KEY_PREFIX}:{str(symbol or '').upper()}"


# ----------------------------------------------------------------------
# Serialization
# ----------------------------------------------------------------------
def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def state_to_dict(state: SessionState) -> Dict[str, Any]:
    return _plain(asdict(state))


def _opt_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _codes(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return compact_reason_codes(value, settings.RUN_CONTEXT_MAX_REASON_CODES, settings.JOURNAL_MAX_REASON_CODE_LEN)


def _parse_asia(raw: Dict[str, Any]) -> AsiaRangeSnapshot:
    return AsiaRangeSnapshot(
        timezone=str(raw["timezone"]),
        source_tf=Timeframe(raw["source_tf"]),
        start_iso=str(raw["start_iso"]),
        end_iso=str(raw["end_iso"]),
        high=float(raw["high"]),
        low=float(raw["low"]),
        candle_count=int(raw["candle_count"]),
        built_at_ms=int(raw["built_at_ms"]),
    )


def _parse_sweep(raw: Dict[str, Any]) -> SweepSnapshot:
    return SweepSnapshot(
        side=SweepSide(raw["side"]),
        sweep_ts_ms=int(raw["sweep_ts_ms"]),
        sweep_price=float(raw["sweep_price"]),
        buffer_abs=float(raw["buffer_abs"]),
        rejected=bool(raw.get("rejected")),
        rejected_ts_ms=_opt_int(raw.get("rejected_ts_ms")),
        reason_codes=list(raw.get("reason_codes") or []),
    )


def _parse_confirmation(raw: Dict[str, Any]) -> ConfirmationSnapshot:
    return ConfirmationSnapshot(
        displacement_detected=bool(raw.get("displacement_detected")),
        displacement_ts_ms=_opt_int(raw.get("displacement_ts_ms")),
        structure_shift_detected=bool(raw.get("structure_shift_detected")),
        structure_shift_ts_ms=_opt_int(raw.get("structure_shift_ts_ms")),
        reason_codes=list(raw.get("reason_codes") or []),
    )


def _parse_ifvg(raw: Dict[str, Any]) -> IfvgZoneSnapshot:
    return IfvgZoneSnapshot(
        direction=Direction(raw["direction"]),
        low=float(raw["low"]),
        high=float(raw["high"]),
        created_ts_ms=int(raw["created_ts_ms"]),
        expires_at_ms=int(raw["expires_at_ms"]),
        entry_mode=EntryMode(raw["entry_mode"]),
        touched=bool(raw.get("touched")),
        touched_ts_ms=_opt_int(raw.get("touched_ts_ms")),
    )


def _parse_trade(raw: Dict[str, Any]) -> TradeSnapshot:
    tp = raw.get("take_profit_price")
    return TradeSnapshot(
        setup_id=str(raw["setup_id"]),
        deal_reference=str(raw["deal_reference"]),
        side=OrderSide(raw["side"]),
        entry_price=float(raw["entry_price"]),
        stop_price=float(raw["stop_price"]),
        take_profit_price=float(tp) if tp is not None else None,
        risk_r=float(raw.get("risk_r", 1.0)),
        opened_at_ms=int(raw["opened_at_ms"]),
        broker_order_id=raw.get("broker_order_id"),
        dry_run=bool(raw.get("dry_run")),
    )


def state_from_dict(raw: Any) -> Optional[SessionState]:
    """Rebuild a SessionState; returns None for anything unrecognisable."""
    if not isinstance(raw, dict):
        return None
    symbol = str(raw.get("symbol") or "").strip().upper()
    day_key = str(raw.get("day_key") or "").strip()
    try:
        lifecycle = State(str(raw.get("state") or "").strip().upper())
    except ValueError:
        return None
    if not symbol or not day_key:
        return None

    now = int(time.time() * 1000)
    cursor = raw.get("last_processed") or {}
    stats = raw.get("stats") or {}
    run = raw.get("run") or {}
    try:
        return SessionState(
            symbol=symbol,
            day_key=day_key,
            state=lifecycle,
            created_at_ms=_opt_int(raw.get("created_at_ms")) or now,
            updated_at_ms=_opt_int(raw.get("updated_at_ms")) or now,
            cooldown_until_ms=_opt_int(raw.get("cooldown_until_ms")),
            kill_switch_active=bool(raw.get("kill_switch_active")),
            asia_range=_parse_asia(raw["asia_range"]) if raw.get("asia_range") else None,
            sweep=_parse_sweep(raw["sweep"]) if raw.get("sweep") else None,
            confirmation=_parse_confirmation(raw["confirmation"]) if raw.get("confirmation") else None,
            ifvg=_parse_ifvg(raw["ifvg"]) if raw.get("ifvg") else None,
            trade=_parse_trade(raw["trade"]) if raw.get("trade") else None,
            last_processed=TimeCursor(
                m1_closed_ts_ms=_opt_int(cursor.get("m1_closed_ts_ms")),
                m3_closed_ts_ms=_opt_int(cursor.get("m3_closed_ts_ms")),
                m5_closed_ts_ms=_opt_int(cursor.get("m5_closed_ts_ms")),
                m15_closed_ts_ms=_opt_int(cursor.get("m15_closed_ts_ms")),
            ),
            stats=DailyStats(
                trades_placed=max(0, _opt_int(stats.get("trades_placed")) or 0),
                wins=max(0, _opt_int(stats.get("wins")) or 0),
                losses=max(0, _opt_int(stats.get("losses")) or 0),
                last_trade_at_ms=_opt_int(stats.get("last_trade_at_ms")),
            ),
            run=RunContext(
                last_run_at_ms=_opt_int(run.get("last_run_at_ms")),
                last_run_id=str(run.get("last_run_id") or "").strip() or None,
                dry_run_last=bool(run.get("dry_run_last", True)),
                last_reason_codes=_codes(run.get("last_reason_codes")),
            ),
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Discarding malformed state for {symbol} {day_key}: {e}")
        return None


def sanitize_journal_entry(entry: JournalEntry) -> Dict[str, Any]:
    return {
        "id": str(entry.id or int(time.time() * 1000)),
        "timestampMs": int(entry.timestamp_ms),
        "type": JournalType(entry.type).value,
        "symbol": entry.symbol.upper() if entry.symbol else None,
        "dayKey": entry.day_key or None,
        "level": JournalLevel(entry.level).value,
        "reasonCodes": compact_reason_codes(
            entry.reason_codes, settings.JOURNAL_MAX_REASON_CODES, settings.JOURNAL_MAX_REASON_CODE_LEN
        ),
        "payload": _plain(entry.payload) if isinstance(entry.payload, dict) else {},
    }


def _journal_bound(max_rows: int) -> int:
    return max(settings.JOURNAL_MIN_ROWS, min(settings.JOURNAL_MAX_ROWS, int(max_rows)))


# ----------------------------------------------------------------------
# Redis
# ----------------------------------------------------------------------
# Owner-only delete, evaluated atomically on the server
_RELEASE_LOCK_LUA = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class RedisStateStore:
    """Session state, run locks and the audit journal in Redis."""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client or redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD,
            decode_responses=True,
        )
        self._release_lock = self.client.register_script(_RELEASE_LOCK_LUA)

    def load(self, symbol: str, day_key: str) -> Optional[SessionState]:
        raw = self.client.get(state_key(symbol, day_key))
        if not raw:
            return None
        try:
            return state_from_dict(json.loads(raw))
        except json.JSONDecodeError:
            logger.warning(f"Unparseable state payload for {symbol} {day_key}")
            return None

    def save(self, state: SessionState, ttl_seconds: int) -> None:
        ttl = max(settings.MIN_STATE_TTL_SECONDS, int(ttl_seconds))
        self.client.set(state_key(state.symbol, state.day_key), json.dumps(state_to_dict(state)), ex=ttl)

    def try_acquire_lock(self, key: str, token: str, ttl_seconds: int) -> bool:
        ttl = max(settings.MIN_RUN_LOCK_SECONDS, int(ttl_seconds))
        return bool(self.client.set(key, token, nx=True, ex=ttl))

    def release_lock(self, key: str, token: str) -> None:
        self._release_lock(keys=[key], args=[token])

    def journal(self, entry: JournalEntry, max_rows: int) -> None:
        row = json.dumps(sanitize_journal_entry(entry))
        self.client.lpush(settings.JOURNAL_LIST_KEY, row)
        self.client.ltrim(settings.JOURNAL_LIST_KEY, 0, _journal_bound(max_rows) - 1)

    def load_journal(self, limit: int = 200) -> List[Dict[str, Any]]:
        limit = max(1, min(1000, int(limit)))
        rows = self.client.lrange(settings.JOURNAL_LIST_KEY, 0, limit - 1)
        out = []
        for row in rows:
            try:
                out.append(json.loads(row))
            except json.JSONDecodeError:
                continue
        return out


# ----------------------------------------------------------------------
# In-memory (tests, offline dry runs)
# ----------------------------------------------------------------------
class InMemoryStateStore:
    def __init__(self, journal_path: Optional[str] = None, clock=time.time):
        self._values: Dict[str, Tuple[str, float]] = {}
        self._journal: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self._clock = clock
        self.journal_path = journal_path

    def _get(self, key: str) -> Optional[str]:
        item = self._values.get(key)
        if item is None:
            return None
        value, expires_at = item
        if self._clock() >= expires_at:
            del self._values[key]
            return None
        return value

    def load(self, symbol: str, day_key: str) -> Optional[SessionState]:
        with self._lock:
            raw = self._get(state_key(symbol, day_key))
        return state_from_dict(json.loads(raw)) if raw else None

    def save(self, state: SessionState, ttl_seconds: int) -> None:
        ttl = max(settings.MIN_STATE_TTL_SECONDS, int(ttl_seconds))
        payload = json.dumps(state_to_dict(state))
        with self._lock:
            self._values[state_key(state.symbol, state.day_key)] = (payload, self._clock() + ttl)

    def try_acquire_lock(self, key: str, token: str, ttl_seconds: int) -> bool:
        ttl = max(settings.MIN_RUN_LOCK_SECONDS, int(ttl_seconds))
        with self._lock:
            if self._get(key) is not None:
                return False
            self._values[key] = (token, self._clock() + ttl)
            return True

    def release_lock(self, key: str, token: str) -> None:
        with self._lock:
            if self._get(key) == token:
                del self._values[key]

    def journal(self, entry: JournalEntry, max_rows: int) -> None:
        row = sanitize_journal_entry(entry)
        with self._lock:
            self._journal.insert(0, row)
            del self._journal[_journal_bound(max_rows):]
        if self.journal_path:
            append_journal_line(row, self.journal_path)

    def load_journal(self, limit: int = 200) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._journal[: max(1, int(limit))])
