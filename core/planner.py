import hashlib
import math
from typing import List, Optional, Tuple

from config.strategy import StrategyConfig, clamp
from core.indicators import pip_size_for_symbol
from models.types import (
    Direction,
    EntryMode,
    EntryPlan,
    OrderSide,
    OrderType,
    Quote,
    SessionState,
)


def _short_hash(raw: str) -> str:
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:20]


def build_setup_id(state: SessionState) -> Optional[str]:
    if state.sweep is None or state.ifvg is None:
        return None
    seed = ":".join(
        [
            state.symbol,
            state.day_key,
            state.sweep.side.value,
            str(state.sweep.sweep_ts_ms),
            state.ifvg.direction.value,
            str(state.ifvg.created_ts_ms),
        ]
    )
    return f"scalp:{_short_hash(seed)}"


def build_deal_reference(setup_id: str, day_key: str) -> str:
    return f"scalp-{_short_hash(f'{setup_id}:{day_key}')}"


def side_from_direction(direction: Direction) -> OrderSide:
    return OrderSide.BUY if direction is Direction.BULLISH else OrderSide.SELL


def limit_price_for_zone(side: OrderSide, zone_low: float, zone_high: float, mode: EntryMode) -> float:
    """Price inside the zone matching the entry mode: near edge, midpoint or far edge."""
    if mode is EntryMode.FIRST_TOUCH:
        return zone_high if side is OrderSide.BUY else zone_low
    if mode is EntryMode.FULL_FILL:
        return zone_low if side is OrderSide.BUY else zone_high
    return (zone_low + zone_high) / 2


def _positive(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


def build_entry_plan(state: SessionState, quote: Quote, cfg: StrategyConfig) -> Tuple[Optional[EntryPlan], List[str]]:
    """
    Turn a touched zone plus the live quote into an order plan.

    Each rejection returns exactly one reason code so a missing trade can
    be traced to the rule that blocked it.
    """
    zone, sweep = state.ifvg, state.sweep
    if zone is None or sweep is None:
        return None, ["ENTRY_PLAN_MISSING_SETUP"]
    if not zone.touched:
        return None, ["ENTRY_PLAN_IFVG_NOT_TOUCHED"]

    setup_id = build_setup_id(state)
    deal_reference = build_deal_reference(setup_id, state.day_key)
    side = side_from_direction(zone.direction)
    pip_size = pip_size_for_symbol(state.symbol)
    risk = cfg.risk

    order_type = cfg.execution.entry_order_type
    limit_level = None
    if order_type is OrderType.LIMIT:
        limit_level = limit_price_for_zone(side, zone.low, zone.high, zone.entry_mode)
        entry = limit_level
    else:
        entry = quote.price
    if not _positive(entry):
        return None, ["ENTRY_PLAN_INVALID_ENTRY_PRICE"]

    stop_buffer = max(
        risk.stop_buffer_pips * pip_size,
        risk.stop_buffer_spread_mult * max(0.0, quote.spread_abs),
    )
    if side is OrderSide.BUY:
        stop = sweep.sweep_price - stop_buffer
    else:
        stop = sweep.sweep_price + stop_buffer
    if not _positive(stop):
        return None, ["ENTRY_PLAN_INVALID_STOP"]

    risk_abs = abs(entry - stop)
    if not (math.isfinite(risk_abs) and risk_abs >= risk.min_stop_distance_pips * pip_size):
        return None, ["ENTRY_PLAN_STOP_DISTANCE_TOO_TIGHT"]

    risk_usd = risk.reference_equity_usd * (risk.risk_per_trade_pct / 100)
    notional = clamp(risk_usd * entry / risk_abs, risk.min_notional_usd, risk.max_notional_usd)
    if not _positive(notional):
        return None, ["ENTRY_PLAN_INVALID_NOTIONAL"]

    if side is OrderSide.BUY:
        take_profit = entry + risk_abs * risk.take_profit_r
    else:
        take_profit = entry - risk_abs * risk.take_profit_r
    if not _positive(take_profit):
        return None, ["ENTRY_PLAN_INVALID_TP"]

    plan = EntryPlan(
        setup_id=setup_id,
        deal_reference=deal_reference,
        side=side,
        order_type=order_type,
        limit_level=limit_level,
        entry_reference_price=entry,
        stop_price=stop,
        take_profit_price=take_profit,
        risk_abs=risk_abs,
        risk_usd=risk_usd,
        notional_usd=notional,
        leverage=cfg.execution.default_leverage,
    )
    return plan, ["ENTRY_PLAN_READY"]
