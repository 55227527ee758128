import pandas as pd
import numpy as np
from typing import List, Sequence
from models.types import Candle
from config.settings import ATR_PERIOD

# --- Symbol helpers ---

def pip_size_for_symbol(symbol: str) -> float:
    return 0.01 if "JPY" in str(symbol or "").upper() else 0.0001


# --- Volatility ---

def _candles_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "timestamp": [c.timestamp for c in candles],
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
        }
    )


def atr_series(candles: Sequence[Candle], period: int = ATR_PERIOD) -> List[float]:
    """
    Average true range aligned with ``candles``.

    True range starts at the second bar. During warm-up the average divides
    by the number of true ranges seen so far; the first bar reuses the
    second bar's value.
    """
    n = len(candles)
    if n < 2:
        return [0.0] * n
    period = max(1, int(period))

    df = _candles_frame(candles)
    df["prev_close"] = df["close"].shift(1)
    df["tr1"] = df["high"] - df["low"]
    df["tr2"] = (df["high"] - df["prev_close"]).abs()
    df["tr3"] = (df["low"] - df["prev_close"]).abs()
    tr = df[["tr1", "tr2", "tr3"]].max(axis=1).iloc[1:]

    atr = tr.rolling(window=period, min_periods=1).mean().to_numpy()
    out = np.empty(n, dtype=float)
    out[1:] = atr
    out[0] = out[1]
    return out.tolist()


def compute_atr(candles: Sequence[Candle], period: int = ATR_PERIOD) -> float:
    """Latest ATR value, or 0.0 when fewer than two candles are available."""
    if len(candles) < 2:
        return 0.0
    return float(atr_series(candles, period)[-1])


# --- Timeframe shaping ---

def aggregate_candles(candles: Sequence[Candle], tf_minutes: int) -> List[Candle]:
    """Bucket candles into ``tf_minutes`` bars aligned to epoch multiples."""
    if not candles:
        return []
    tf_ms = max(1, int(tf_minutes)) * 60_000

    df = _candles_frame(candles).sort_values("timestamp", kind="stable")
    df["bucket"] = (df["timestamp"] // tf_ms) * tf_ms
    grouped = df.groupby("bucket", sort=True).agg(
        open=("open", "first"),
        high=("high", "max"),
        low=("low", "min"),
        close=("close", "last"),
        volume=("volume", "sum"),
    )
    return [
        Candle(
            timestamp=int(bucket),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for bucket, row in zip(grouped.index, grouped.itertuples(index=False))
    ]


def only_closed_candles(candles: Sequence[Candle], tf_minutes: int, now_ms: int) -> List[Candle]:
    close_ms = max(1, int(tf_minutes)) * 60_000
    return [c for c in candles if c.timestamp + close_ms <= now_ms]


def sort_candles(candles: Sequence[Candle]) -> List[Candle]:
    return sorted(candles, key=lambda c: c.timestamp)
