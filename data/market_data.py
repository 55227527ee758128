import math
from typing import Any, Dict, List, Optional

from config import settings
from config.strategy import StrategyConfig
from core.indicators import aggregate_candles, only_closed_candles, pip_size_for_symbol, sort_candles
from models.types import Candle, MarketDataProvider, MarketSnapshot, Quote, SessionWindows, Timeframe
from utils.logger import setup_logger

logger = setup_logger("MarketData")

# Timeframes the provider cannot serve natively are fetched at this resolution
# and aggregated locally.
_SOURCE_TF = {
    Timeframe.M1: Timeframe.M1,
    Timeframe.M3: Timeframe.M1,
    Timeframe.M5: Timeframe.M5,
    Timeframe.M15: Timeframe.M15,
}


def _finite(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def estimate_limit(now_ms: int, start_ms: int, tf: Timeframe, min_candles: int, max_candles: int) -> int:
    bars = math.ceil(max(0, now_ms - start_ms) / tf.ms)
    return max(min_candles, min(max_candles, bars + 40))


def _valid(candles: List[Candle]) -> List[Candle]:
    return [
        c for c in candles
        if c.timestamp > 0 and all(v > 0 for v in (c.open, c.high, c.low, c.close))
    ]


def shape_candles(raw: List[Candle], source_tf: Timeframe, target_tf: Timeframe, now_ms: int) -> List[Candle]:
    candles = sort_candles(_valid(raw))
    if source_tf is not target_tf:
        candles = aggregate_candles(candles, target_tf.minutes)
    return only_closed_candles(candles, target_tf.minutes, now_ms)


def build_quote(symbol: str, raw: Dict[str, Any], now_ms: int) -> Quote:
    bid = _finite(raw.get("bid"))
    offer = _finite(raw.get("offer"))
    spread_abs = max(0.0, offer - bid) if bid is not None and offer is not None else 0.0
    price = _finite(raw.get("price"))
    if price is None and bid is not None and offer is not None:
        price = (bid + offer) / 2
    ts = _finite(raw.get("ts"))
    return Quote(
        price=price if price is not None else float("nan"),
        bid=bid,
        offer=offer,
        spread_abs=spread_abs,
        spread_pips=spread_abs / pip_size_for_symbol(symbol) if spread_abs > 0 else 0.0,
        ts_ms=int(ts) if ts is not None else now_ms,
    )


def load_market_snapshot(
    provider: MarketDataProvider,
    symbol: str,
    now_ms: int,
    windows: SessionWindows,
    cfg: StrategyConfig,
) -> MarketSnapshot:
    """Fetch quote and closed base/confirm candles covering today's windows."""
    base_tf = cfg.timeframes.asia_base
    confirm_tf = cfg.timeframes.confirm
    lookback_start = min(windows.asia_start_ms, windows.raid_start_ms) - settings.MARKET_LOOKBACK_MINUTES * 60_000

    base_limit = estimate_limit(now_ms, lookback_start, base_tf, cfg.data.min_base_candles, cfg.data.max_candles_per_request)
    confirm_limit = estimate_limit(
        now_ms, lookback_start, confirm_tf, cfg.data.min_confirm_candles, cfg.data.max_candles_per_request
    )

    epic = provider.resolve_epic(symbol)
    quote = build_quote(symbol, provider.fetch_quote(symbol), now_ms)

    base_src, confirm_src = _SOURCE_TF[base_tf], _SOURCE_TF[confirm_tf]
    if base_src is confirm_src:
        raw = provider.fetch_candles(symbol, base_src, max(base_limit, confirm_limit))
        raw_base, raw_confirm = raw, list(raw)
    else:
        raw_base = provider.fetch_candles(symbol, base_src, base_limit)
        raw_confirm = provider.fetch_candles(symbol, confirm_src, confirm_limit)

    snapshot = MarketSnapshot(
        symbol=symbol,
        epic=epic,
        now_ms=now_ms,
        quote=quote,
        base_tf=base_tf,
        confirm_tf=confirm_tf,
        base_candles=shape_candles(raw_base, base_src, base_tf, now_ms),
        confirm_candles=shape_candles(raw_confirm, confirm_src, confirm_tf, now_ms),
    )
    logger.debug(
        f"{symbol}: {len(snapshot.base_candles)} {base_tf.value} / {len(snapshot.confirm_candles)} "
        f"{confirm_tf.value} closed candles, spread {quote.spread_pips:.2f} pips"
    )
    return snapshot
