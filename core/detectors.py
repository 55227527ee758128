"""
Pattern detectors for the session liquidity-sweep setup.

Every detector is a pure function: it takes candles, the prior snapshot
(where one exists) and config knobs, and returns a fresh result carrying
the snapshot, a status and reason codes. Inputs are never mutated.
"""
import sys
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence

from config.strategy import ConfirmConfig, IfvgConfig, SweepConfig
from core.indicators import atr_series
from models.types import (
    AsiaRangeSnapshot,
    Candle,
    ConfirmationSnapshot,
    DetectorStatus,
    Direction,
    EntryMode,
    IfvgZoneSnapshot,
    SessionWindows,
    SweepSide,
    SweepSnapshot,
    Timeframe,
)
from utils.reason_codes import dedupe_reason_codes

_EPSILON = sys.float_info.epsilon


@dataclass(slots=True)
class AsiaRangeResult:
    snapshot: Optional[AsiaRangeSnapshot]
    reason_codes: List[str]


@dataclass(slots=True)
class SweepResult:
    sweep: Optional[SweepSnapshot]
    status: DetectorStatus
    direction: Optional[Direction]
    reason_codes: List[str]


@dataclass(slots=True)
class ConfirmationResult:
    snapshot: ConfirmationSnapshot
    status: DetectorStatus
    reason_codes: List[str]

    @property
    def displacement_ts_ms(self) -> Optional[int]:
        return self.snapshot.displacement_ts_ms

    @property
    def structure_shift_ts_ms(self) -> Optional[int]:
        return self.snapshot.structure_shift_ts_ms


@dataclass(slots=True)
class IfvgResult:
    zone: Optional[IfvgZoneSnapshot]
    reason_codes: List[str]


@dataclass(slots=True)
class TouchResult:
    zone: IfvgZoneSnapshot
    status: DetectorStatus
    touched_ts_ms: Optional[int] = None
    reason_codes: List[str] = field(default_factory=list)

    @property
    def touched(self) -> bool:
        return self.status is DetectorStatus.TOUCHED

    @property
    def expired(self) -> bool:
        return self.status is DetectorStatus.EXPIRED


def _safe_div(n: float, d: float) -> float:
    if d == 0:
        return 0.0
    return n / d


def _in_window(candles: Sequence[Candle], start_ms: int, end_ms: int) -> List[Candle]:
    return [c for c in candles if start_ms <= c.timestamp < end_ms]


# ----------------------------------------------------------------------
# Asia range
# ----------------------------------------------------------------------
def build_asia_range(
    now_ms: int,
    windows: SessionWindows,
    candles: Sequence[Candle],
    min_candles: int,
    source_tf: Timeframe,
) -> AsiaRangeResult:
    if now_ms < windows.asia_end_ms:
        return AsiaRangeResult(None, ["ASIA_WINDOW_NOT_CLOSED"])

    asia = _in_window(candles, windows.asia_start_ms, windows.asia_end_ms)
    if len(asia) < max(1, min_candles):
        return AsiaRangeResult(None, ["ASIA_RANGE_INSUFFICIENT_CANDLES"])

    range_high = max(c.high for c in asia)
    range_low = min(c.low for c in asia)
    if not range_high > range_low:
        return AsiaRangeResult(None, ["ASIA_RANGE_INVALID"])

    snapshot = AsiaRangeSnapshot(
        timezone=windows.timezone,
        source_tf=source_tf,
        start_iso=windows.asia_start_iso,
        end_iso=windows.asia_end_iso,
        high=range_high,
        low=range_low,
        candle_count=len(asia),
        built_at_ms=now_ms,
    )
    return AsiaRangeResult(snapshot, ["ASIA_RANGE_READY"])


# ----------------------------------------------------------------------
# Sweep lifecycle
# ----------------------------------------------------------------------
def sweep_buffer(cfg: SweepConfig, pip_size: float, atr_abs: float, spread_abs: float) -> float:
    return max(
        max(0.0, cfg.buffer_pips) * pip_size,
        max(0.0, cfg.buffer_atr_mult) * max(0.0, atr_abs),
        max(0.0, cfg.buffer_spread_mult) * max(0.0, spread_abs),
    )


def _find_breach(
    raid_candles: Sequence[Candle],
    asia_high: float,
    asia_low: float,
    buffer_abs: float,
    reason_codes: List[str],
) -> Optional[SweepSnapshot]:
    for candle in raid_candles:
        buy_side = candle.high >= asia_high + buffer_abs
        sell_side = candle.low <= asia_low - buffer_abs
        if buy_side and sell_side:
            # Outside bar through both extremes: no side is inferred
            reason_codes.append("SWEEP_AMBIGUOUS_DUAL_BREACH")
            continue
        if buy_side:
            return SweepSnapshot(
                side=SweepSide.BUY_SIDE,
                sweep_ts_ms=candle.timestamp,
                sweep_price=candle.high,
                buffer_abs=buffer_abs,
                reason_codes=["SWEEP_BUY_SIDE_BREACH"],
            )
        if sell_side:
            return SweepSnapshot(
                side=SweepSide.SELL_SIDE,
                sweep_ts_ms=candle.timestamp,
                sweep_price=candle.low,
                buffer_abs=buffer_abs,
                reason_codes=["SWEEP_SELL_SIDE_BREACH"],
            )
    return None


def detect_sweep(
    existing: Optional[SweepSnapshot],
    candles: Sequence[Candle],
    windows: SessionWindows,
    asia_high: float,
    asia_low: float,
    atr_abs: float,
    spread_abs: float,
    pip_size: float,
    cfg: SweepConfig,
) -> SweepResult:
    """
    Detect the first raid-window breach of the range, then watch for a
    close back inside within ``reject_max_bars`` bars of the breach bar.

    A recorded sweep is never replaced; a rejected one is returned as is.
    """
    reason_codes: List[str] = []
    buffer_abs = sweep_buffer(cfg, pip_size, atr_abs, spread_abs)
    inside_abs = max(0.0, cfg.reject_inside_pips) * pip_size

    sweep = replace(existing, reason_codes=list(existing.reason_codes)) if existing else None

    if sweep is None:
        raid = _in_window(candles, windows.raid_start_ms, windows.raid_end_ms)
        if not raid:
            return SweepResult(None, DetectorStatus.NONE, None, ["NO_RAID_CANDLES_YET"])
        sweep = _find_breach(raid, asia_high, asia_low, buffer_abs, reason_codes)
        if sweep is None:
            reason_codes.append("NO_SWEEP_DETECTED")
            return SweepResult(None, DetectorStatus.NONE, None, dedupe_reason_codes(reason_codes))

    direction = sweep.side.reversal

    if sweep.rejected:
        reason_codes.append("SWEEP_ALREADY_REJECTED")
        return SweepResult(
            sweep, DetectorStatus.REJECTED, direction, dedupe_reason_codes(reason_codes + sweep.reason_codes)
        )

    sweep_index = next((i for i, c in enumerate(candles) if c.timestamp == sweep.sweep_ts_ms), -1)
    if sweep_index < 0:
        reason_codes.append("SWEEP_CANDLE_NOT_FOUND")
        return SweepResult(sweep, DetectorStatus.PENDING, direction, dedupe_reason_codes(reason_codes))

    max_bars = max(1, cfg.reject_max_bars)
    last_index = min(len(candles) - 1, sweep_index + max_bars - 1)
    min_body = pip_size * 0.1

    for candle in candles[sweep_index:last_index + 1]:
        if sweep.side is SweepSide.BUY_SIDE:
            wick = max(0.0, candle.upper_wick)
            closed_inside = candle.close <= asia_high - inside_abs
        else:
            wick = max(0.0, candle.lower_wick)
            closed_inside = candle.close >= asia_low + inside_abs
        wick_ratio = _safe_div(wick, max(candle.body, min_body))
        wick_ok = cfg.min_wick_body_ratio <= 0 or wick_ratio >= cfg.min_wick_body_ratio

        if closed_inside and wick_ok:
            sweep.rejected = True
            sweep.rejected_ts_ms = candle.timestamp
            sweep.reason_codes = dedupe_reason_codes(sweep.reason_codes + ["SWEEP_REJECTION_CONFIRMED"])
            reason_codes.append("SWEEP_REJECTION_CONFIRMED")
            return SweepResult(
                sweep, DetectorStatus.REJECTED, direction, dedupe_reason_codes(reason_codes + sweep.reason_codes)
            )

    if len(candles) - 1 > last_index:
        reason_codes.append("SWEEP_REJECTION_TIMEOUT")
        sweep.reason_codes = dedupe_reason_codes(sweep.reason_codes + ["SWEEP_REJECTION_TIMEOUT"])
        return SweepResult(
            sweep, DetectorStatus.EXPIRED, direction, dedupe_reason_codes(reason_codes + sweep.reason_codes)
        )

    reason_codes.append("SWEEP_PENDING_REJECTION")
    return SweepResult(
        sweep, DetectorStatus.PENDING, direction, dedupe_reason_codes(reason_codes + sweep.reason_codes)
    )


# ----------------------------------------------------------------------
# Confirmation: displacement, then market structure shift
# ----------------------------------------------------------------------
def _displacement_index(
    candles: Sequence[Candle],
    atrs: Sequence[float],
    direction: Direction,
    cfg: ConfirmConfig,
) -> int:
    for i, c in enumerate(candles):
        atr = max(atrs[i] or 0.0, _EPSILON)
        if c.body < cfg.displacement_body_atr_mult * atr:
            continue
        if max(0.0, c.range) < cfg.displacement_range_atr_mult * atr:
            continue
        if direction is Direction.BEARISH:
            if c.close < c.open and _safe_div(c.close - c.low, c.range) <= cfg.close_in_extreme_pct:
                return i
        else:
            if c.close > c.open and _safe_div(c.high - c.close, c.range) <= cfg.close_in_extreme_pct:
                return i
    return -1


def _structure_shift_index(
    candles: Sequence[Candle],
    atrs: Sequence[float],
    from_index: int,
    direction: Direction,
    lookback: int,
    buffer_pips_abs: float,
    buffer_atr_mult: float,
) -> int:
    lookback = max(2, int(lookback))
    for i in range(max(lookback, from_index), len(candles)):
        window = candles[max(0, i - lookback):i]
        if len(window) < 2:
            continue
        atr = max(atrs[i] or 0.0, _EPSILON)
        break_buffer = max(buffer_pips_abs, buffer_atr_mult * atr)
        if direction is Direction.BULLISH:
            swing_high = max(c.high for c in window)
            if candles[i].close >= swing_high + break_buffer:
                return i
        else:
            swing_low = min(c.low for c in window)
            if candles[i].close <= swing_low - break_buffer:
                return i
    return -1


def detect_confirmation(
    candles: Sequence[Candle],
    now_ms: int,
    rejection_ts_ms: int,
    direction: Direction,
    pip_size: float,
    atr_period: int,
    cfg: ConfirmConfig,
) -> ConfirmationResult:
    start_ms = rejection_ts_ms
    end_ms = rejection_ts_ms + max(1, cfg.ttl_minutes) * 60_000
    expired = now_ms > end_ms
    window = [c for c in candles if start_ms <= c.timestamp <= min(now_ms, end_ms)]

    if not window:
        code = "CONFIRM_WINDOW_EXPIRED" if expired else "CONFIRM_WAITING_CANDLES"
        snapshot = ConfirmationSnapshot(reason_codes=["CONFIRM_WINDOW_EMPTY"])
        status = DetectorStatus.EXPIRED if expired else DetectorStatus.PENDING
        return ConfirmationResult(snapshot, status, [code])

    atrs = atr_series(window, atr_period)
    disp_index = _displacement_index(window, atrs, direction, cfg)
    if disp_index < 0:
        code = "DISPLACEMENT_NOT_FOUND_EXPIRED" if expired else "DISPLACEMENT_PENDING"
        status = DetectorStatus.EXPIRED if expired else DetectorStatus.PENDING
        return ConfirmationResult(ConfirmationSnapshot(reason_codes=[code]), status, [code])

    shift_index = _structure_shift_index(
        window,
        atrs,
        from_index=disp_index + 1,
        direction=direction,
        lookback=cfg.mss_lookback_bars,
        buffer_pips_abs=max(0.0, cfg.mss_break_buffer_pips) * pip_size,
        buffer_atr_mult=max(0.0, cfg.mss_break_buffer_atr_mult),
    )

    if shift_index >= 0:
        shift_code, status = "MSS_CONFIRMED", DetectorStatus.CONFIRMED
    elif expired:
        shift_code, status = "MSS_NOT_FOUND_EXPIRED", DetectorStatus.EXPIRED
    else:
        shift_code, status = "MSS_PENDING", DetectorStatus.PENDING

    snapshot = ConfirmationSnapshot(
        displacement_detected=True,
        displacement_ts_ms=window[disp_index].timestamp,
        structure_shift_detected=shift_index >= 0,
        structure_shift_ts_ms=window[shift_index].timestamp if shift_index >= 0 else None,
        reason_codes=["DISPLACEMENT_CONFIRMED", shift_code],
    )
    return ConfirmationResult(snapshot, status, list(snapshot.reason_codes))


# ----------------------------------------------------------------------
# Imbalance zone (inverse fair value gap)
# ----------------------------------------------------------------------
def _gap_between(direction: Direction, c1: Candle, c3: Candle):
    if direction is Direction.BULLISH:
        if c1.high < c3.low:
            return c1.high, c3.low
        return None
    if c1.low > c3.high:
        return c3.high, c1.low
    return None


def detect_ifvg(
    candles: Sequence[Candle],
    direction: Direction,
    displacement_ts_ms: int,
    structure_shift_ts_ms: int,
    now_ms: int,
    atr_period: int,
    cfg: IfvgConfig,
) -> IfvgResult:
    window = [c for c in candles if displacement_ts_ms <= c.timestamp <= now_ms]
    if len(window) < 3:
        return IfvgResult(None, ["IFVG_WINDOW_TOO_SHORT"])

    atrs = atr_series(window, atr_period)
    min_mult = max(0.0, cfg.min_atr_mult)
    max_mult = max(min_mult, cfg.max_atr_mult)
    ttl_ms = max(1, cfg.ttl_minutes) * 60_000

    best: Optional[IfvgZoneSnapshot] = None
    for i in range(2, len(window)):
        gap = _gap_between(direction, window[i - 2], window[i])
        if gap is None:
            continue
        zone_low, zone_high = gap
        size = zone_high - zone_low
        atr = max(atrs[i] or 0.0, _EPSILON)
        if not (min_mult * atr <= size <= max_mult * atr):
            continue
        created = window[i].timestamp
        if created < displacement_ts_ms or created < structure_shift_ts_ms:
            continue
        # Window is time-ordered, so the last qualifying gap is the newest
        best = IfvgZoneSnapshot(
            direction=direction,
            low=zone_low,
            high=zone_high,
            created_ts_ms=created,
            expires_at_ms=created + ttl_ms,
            entry_mode=cfg.entry_mode,
        )

    if best is None:
        return IfvgResult(None, ["IFVG_NOT_FOUND"])
    return IfvgResult(best, ["IFVG_QUALIFIED"])


# ----------------------------------------------------------------------
# Touch
# ----------------------------------------------------------------------
def _touches(candle: Candle, zone: IfvgZoneSnapshot) -> bool:
    mode = zone.entry_mode
    if mode is EntryMode.FIRST_TOUCH:
        return candle.low <= zone.high and candle.high >= zone.low
    if mode is EntryMode.MIDLINE_TOUCH:
        mid = zone.midpoint
        return candle.low <= mid <= candle.high
    if zone.direction is Direction.BULLISH:
        return candle.low <= zone.low
    return candle.high >= zone.high


def detect_touch(candles: Sequence[Candle], zone: IfvgZoneSnapshot, now_ms: int) -> TouchResult:
    if zone.touched:
        return TouchResult(zone, DetectorStatus.TOUCHED, zone.touched_ts_ms, ["IFVG_ALREADY_TOUCHED"])

    horizon = min(now_ms, zone.expires_at_ms)
    for candle in candles:
        if candle.timestamp <= zone.created_ts_ms or candle.timestamp > horizon:
            continue
        if _touches(candle, zone):
            touched = replace(zone, touched=True, touched_ts_ms=candle.timestamp)
            return TouchResult(touched, DetectorStatus.TOUCHED, candle.timestamp, ["IFVG_ENTRY_TOUCH_CONFIRMED"])

    if now_ms > zone.expires_at_ms:
        return TouchResult(zone, DetectorStatus.EXPIRED, None, ["IFVG_EXPIRED"])
    return TouchResult(zone, DetectorStatus.PENDING, None, ["IFVG_WAITING_RETRACE"])
