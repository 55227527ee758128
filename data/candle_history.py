import json
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from config import settings
from config.strategy import normalize_symbol
from core.indicators import pip_size_for_symbol
from models.types import Candle, Timeframe
from utils.logger import setup_logger

logger = setup_logger("CandleHistory")

HISTORY_VERSION = 1


@dataclass(slots=True)
class CandleHistoryRecord:
    symbol: str
    timeframe: Timeframe
    epic: Optional[str] = None
    source: str = "capital"
    updated_at_ms: int = 0
    candles: List[Candle] = field(default_factory=list)


def _row_to_candle(row: Any) -> Optional[Candle]:
    if isinstance(row, dict):
        values = [row.get(k) for k in ("ts", "open", "high", "low", "close", "volume")]
    elif isinstance(row, (list, tuple)) and len(row) >= 5:
        values = list(row[:6]) + [0] * (6 - len(row[:6]))
    else:
        return None
    try:
        ts, o, h, l, c = (float(v) for v in values[:5])
        volume = float(values[5] or 0)
    except (TypeError, ValueError):
        return None
    if not all(math.isfinite(v) and v > 0 for v in (ts, o, h, l, c)):
        return None
    return Candle(int(ts), o, h, l, c, volume if math.isfinite(volume) else 0.0)


def merge_candles(*series: Iterable[Candle]) -> List[Candle]:
    """Union of candle series; a repeated timestamp keeps the later series' bar."""
    by_ts: Dict[int, Candle] = {}
    for candles in series:
        for candle in candles:
            by_ts[candle.timestamp] = candle
    return [by_ts[ts] for ts in sorted(by_ts)]


class CandleHistoryStore:
    """One JSON document per symbol and timeframe under a local directory."""

    def __init__(self, root: str = settings.CANDLE_HISTORY_DIR):
        self.root = Path(root)

    def path_for(self, symbol: str, timeframe: Timeframe) -> Path:
        return self.root / f"{normalize_symbol(symbol)}_{Timeframe(timeframe).value}.json"

    def load(self, symbol: str, timeframe: Timeframe) -> Optional[CandleHistoryRecord]:
        path = self.path_for(symbol, timeframe)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable candle history {path}: {e}")
            return None
        if not isinstance(raw, dict):
            return None
        rows = raw.get("candles") if isinstance(raw.get("candles"), list) else []
        candles = [c for c in (_row_to_candle(r) for r in rows) if c is not None]
        epic = str(raw.get("epic") or "").strip().upper() or None
        return CandleHistoryRecord(
            symbol=normalize_symbol(raw.get("symbol") or symbol),
            timeframe=Timeframe(timeframe),
            epic=epic,
            source=str(raw.get("source") or "capital"),
            updated_at_ms=int(raw.get("updatedAtMs") or 0),
            candles=merge_candles(candles),
        )

    def save(self, record: CandleHistoryRecord) -> Path:
        path = self.path_for(record.symbol, record.timeframe)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": HISTORY_VERSION,
            "symbol": record.symbol,
            "timeframe": record.timeframe.value,
            "epic": record.epic,
            "source": record.source,
            "updatedAtMs": record.updated_at_ms,
            "candles": [[c.timestamp, c.open, c.high, c.low, c.close, c.volume] for c in record.candles],
        }
        with path.open("w", encoding="utf-8") as f:
            json.dump(payload, f)
        return path

    def append(
        self,
        symbol: str,
        timeframe: Timeframe,
        candles: Iterable[Candle],
        epic: Optional[str] = None,
        now_ms: Optional[int] = None,
    ) -> CandleHistoryRecord:
        existing = self.load(symbol, timeframe)
        before = len(existing.candles) if existing else 0
        record = CandleHistoryRecord(
            symbol=normalize_symbol(symbol),
            timeframe=Timeframe(timeframe),
            epic=epic or (existing.epic if existing else None),
            updated_at_ms=now_ms if now_ms is not None else int(time.time() * 1000),
            candles=merge_candles(existing.candles if existing else [], candles),
        )
        self.save(record)
        logger.info(f"{record.symbol} {record.timeframe.value}: history {before} -> {len(record.candles)} candles")
        return record


def history_to_replay_input(record: CandleHistoryRecord) -> Dict[str, Any]:
    """Replay input document built from stored 1-minute history."""
    return {
        "symbol": record.symbol,
        "pipSize": pip_size_for_symbol(record.symbol),
        "candles": [
            {"ts": c.timestamp, "open": c.open, "high": c.high, "low": c.low, "close": c.close, "volume": c.volume}
            for c in record.candles
        ],
    }
