import os
import re
import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Tuple

from config import settings
from models.types import (
    BASE_TIMEFRAMES,
    CONFIRM_TIMEFRAMES,
    ClockMode,
    EntryMode,
    OrderType,
    Timeframe,
)

_CLOCK_LABEL_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
_SYMBOL_STRIP_RE = re.compile(r"[^A-Z0-9._-]")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigOverrideError(ValueError):
    """Raised when an override names a field the config does not have."""


@dataclass(frozen=True)
class SessionConfig:
    clock_mode: ClockMode = ClockMode(settings.CLOCK_MODE)
    asia_window_local: Tuple[str, str] = settings.ASIA_WINDOW_LOCAL
    raid_window_local: Tuple[str, str] = settings.RAID_WINDOW_LOCAL


@dataclass(frozen=True)
class TimeframeConfig:
    asia_base: Timeframe = Timeframe(settings.ASIA_BASE_TF)
    confirm: Timeframe = Timeframe(settings.CONFIRM_TF)


@dataclass(frozen=True)
class SweepConfig:
    buffer_pips: float = settings.SWEEP_BUFFER_PIPS
    buffer_atr_mult: float = settings.SWEEP_BUFFER_ATR_MULT
    buffer_spread_mult: float = settings.SWEEP_BUFFER_SPREAD_MULT
    reject_inside_pips: float = settings.SWEEP_REJECT_INSIDE_PIPS
    reject_max_bars: int = settings.SWEEP_REJECT_MAX_BARS
    min_wick_body_ratio: float = settings.SWEEP_MIN_WICK_BODY_RATIO


@dataclass(frozen=True)
class ConfirmConfig:
    displacement_body_atr_mult: float = settings.DISPLACEMENT_BODY_ATR_MULT
    displacement_range_atr_mult: float = settings.DISPLACEMENT_RANGE_ATR_MULT
    close_in_extreme_pct: float = settings.DISPLACEMENT_CLOSE_IN_EXTREME_PCT
    mss_lookback_bars: int = settings.MSS_LOOKBACK_BARS
    mss_break_buffer_pips: float = settings.MSS_BREAK_BUFFER_PIPS
    mss_break_buffer_atr_mult: float = settings.MSS_BREAK_BUFFER_ATR_MULT
    ttl_minutes: int = settings.CONFIRM_TTL_MINUTES


@dataclass(frozen=True)
class IfvgConfig:
    min_atr_mult: float = settings.IFVG_MIN_ATR_MULT
    max_atr_mult: float = settings.IFVG_MAX_ATR_MULT
    ttl_minutes: int = settings.IFVG_TTL_MINUTES
    entry_mode: EntryMode = EntryMode(settings.IFVG_ENTRY_MODE)


@dataclass(frozen=True)
class RiskConfig:
    cooldown_after_loss_minutes: int = settings.COOLDOWN_AFTER_LOSS_MINUTES
    max_trades_per_symbol_per_day: int = settings.MAX_TRADES_PER_SYMBOL_PER_DAY
    max_open_positions_per_symbol: int = settings.MAX_OPEN_POSITIONS_PER_SYMBOL
    kill_switch: bool = False
    risk_per_trade_pct: float = settings.RISK_PER_TRADE_PCT
    reference_equity_usd: float = settings.REFERENCE_EQUITY_USD
    min_notional_usd: float = settings.MIN_NOTIONAL_USD
    max_notional_usd: float = settings.MAX_NOTIONAL_USD
    take_profit_r: float = settings.TAKE_PROFIT_R
    stop_buffer_pips: float = settings.STOP_BUFFER_PIPS
    stop_buffer_spread_mult: float = settings.STOP_BUFFER_SPREAD_MULT
    min_stop_distance_pips: float = settings.MIN_STOP_DISTANCE_PIPS


@dataclass(frozen=True)
class ExecutionConfig:
    live_enabled: bool = False
    entry_order_type: OrderType = OrderType(settings.ENTRY_ORDER_TYPE)
    default_leverage: int = settings.DEFAULT_LEVERAGE


@dataclass(frozen=True)
class IdempotencyConfig:
    run_lock_seconds: int = settings.RUN_LOCK_SECONDS


@dataclass(frozen=True)
class StorageConfig:
    session_ttl_seconds: int = settings.STATE_TTL_DAYS * 24 * 60 * 60
    journal_max: int = settings.JOURNAL_MAX


@dataclass(frozen=True)
class DataConfig:
    atr_period: int = settings.ATR_PERIOD
    min_asia_candles: int = settings.MIN_ASIA_CANDLES
    min_base_candles: int = settings.MIN_BASE_CANDLES
    min_confirm_candles: int = settings.MIN_CONFIRM_CANDLES
    max_candles_per_request: int = settings.MAX_CANDLES_PER_REQUEST


@dataclass(frozen=True)
class StrategyConfig:
    """Effective strategy knobs for one cycle or one replay run.

    Built once (from env, then optional profile overrides) and passed
    explicitly to every detector, planner and coordinator call.
    """
    enabled: bool = True
    default_symbol: str = settings.DEFAULT_SYMBOL
    dry_run_default: bool = True
    execute_minutes: int = settings.EXECUTE_MINUTES
    sessions: SessionConfig = field(default_factory=SessionConfig)
    timeframes: TimeframeConfig = field(default_factory=TimeframeConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)
    confirm: ConfirmConfig = field(default_factory=ConfirmConfig)
    ifvg: IfvgConfig = field(default_factory=IfvgConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    data: DataConfig = field(default_factory=DataConfig)


# ----------------------------------------------------------------------
# Normalization helpers
# ----------------------------------------------------------------------
def normalize_symbol(value: Optional[str]) -> str:
    return _SYMBOL_STRIP_RE.sub("", str(value or "").strip().upper())


def normalize_clock_label(value: Optional[str], fallback: Optional[str] = None) -> str:
    """Return a zero-padded HH:MM label. Raises ValueError without a fallback."""
    raw = str(value or "").strip()
    match = _CLOCK_LABEL_RE.match(raw)
    if not match:
        if fallback is None:
            raise ValueError(f"Invalid clock label: {value!r}")
        return normalize_clock_label(fallback)
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def _to_number(raw: Optional[str], fallback: float, allow_zero: bool) -> float:
    if raw is None or str(raw).strip() == "":
        return fallback
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return fallback
    if value != value or value in (float("inf"), float("-inf")):
        return fallback
    if value < 0 or (value == 0 and not allow_zero):
        return fallback
    return value


def to_positive_number(raw: Optional[str], fallback: float) -> float:
    return _to_number(raw, fallback, allow_zero=False)


def to_non_negative_number(raw: Optional[str], fallback: float) -> float:
    return _to_number(raw, fallback, allow_zero=True)


def to_positive_int(raw: Optional[str], fallback: int) -> int:
    return max(1, int(to_positive_number(raw, fallback)))


def to_bool(raw: Optional[str], fallback: bool) -> bool:
    if raw is None:
        return fallback
    value = str(raw).strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return fallback


def _parse_enum(enum_cls, raw: Optional[str], fallback, allowed=None):
    if raw is None:
        return fallback
    text = str(raw).strip()
    for candidate in (text, text.upper(), text.lower()):
        try:
            value = enum_cls(candidate)
        except ValueError:
            continue
        if allowed is None or value in allowed:
            return value
    return fallback


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# ----------------------------------------------------------------------
# Env loading
# ----------------------------------------------------------------------
def load_strategy_config(env: Optional[Mapping[str, str]] = None) -> StrategyConfig:
    env = os.environ if env is None else env
    get = env.get

    symbol = normalize_symbol(get("SCALP_DEFAULT_SYMBOL")) or settings.DEFAULT_SYMBOL
    state_ttl_days = to_positive_int(get("SCALP_STATE_TTL_DAYS"), settings.STATE_TTL_DAYS)

    return StrategyConfig(
        enabled=to_bool(get("SCALP_ENABLED"), True),
        default_symbol=symbol,
        dry_run_default=to_bool(get("SCALP_DRY_RUN_DEFAULT"), True),
        execute_minutes=to_positive_int(get("SCALP_EXECUTE_MINUTES"), settings.EXECUTE_MINUTES),
        sessions=SessionConfig(
            clock_mode=_parse_enum(ClockMode, get("SCALP_SESSION_CLOCK_MODE"), ClockMode(settings.CLOCK_MODE)),
            asia_window_local=(
                normalize_clock_label(get("SCALP_ASIA_WINDOW_START_LOCAL"), settings.ASIA_WINDOW_LOCAL[0]),
                normalize_clock_label(get("SCALP_ASIA_WINDOW_END_LOCAL"), settings.ASIA_WINDOW_LOCAL[1]),
            ),
            raid_window_local=(
                normalize_clock_label(get("SCALP_RAID_WINDOW_START_LOCAL"), settings.RAID_WINDOW_LOCAL[0]),
                normalize_clock_label(get("SCALP_RAID_WINDOW_END_LOCAL"), settings.RAID_WINDOW_LOCAL[1]),
            ),
        ),
        timeframes=TimeframeConfig(
            asia_base=_parse_enum(Timeframe, get("SCALP_ASIA_BASE_TF"), Timeframe(settings.ASIA_BASE_TF), BASE_TIMEFRAMES),
            confirm=_parse_enum(Timeframe, get("SCALP_CONFIRM_TF"), Timeframe(settings.CONFIRM_TF), CONFIRM_TIMEFRAMES),
        ),
        sweep=SweepConfig(
            buffer_pips=to_non_negative_number(get("SCALP_SWEEP_BUFFER_PIPS"), settings.SWEEP_BUFFER_PIPS),
            buffer_atr_mult=to_non_negative_number(get("SCALP_SWEEP_BUFFER_ATR_MULT"), settings.SWEEP_BUFFER_ATR_MULT),
            buffer_spread_mult=to_non_negative_number(get("SCALP_SWEEP_BUFFER_SPREAD_MULT"), settings.SWEEP_BUFFER_SPREAD_MULT),
            reject_inside_pips=to_non_negative_number(get("SCALP_SWEEP_REJECT_INSIDE_PIPS"), settings.SWEEP_REJECT_INSIDE_PIPS),
            reject_max_bars=to_positive_int(get("SCALP_SWEEP_REJECT_MAX_BARS"), settings.SWEEP_REJECT_MAX_BARS),
            min_wick_body_ratio=to_non_negative_number(get("SCALP_SWEEP_MIN_WICK_BODY_RATIO"), settings.SWEEP_MIN_WICK_BODY_RATIO),
        ),
        confirm=ConfirmConfig(
            displacement_body_atr_mult=to_non_negative_number(get("SCALP_DISPLACEMENT_BODY_ATR_MULT"), settings.DISPLACEMENT_BODY_ATR_MULT),
            displacement_range_atr_mult=to_non_negative_number(get("SCALP_DISPLACEMENT_RANGE_ATR_MULT"), settings.DISPLACEMENT_RANGE_ATR_MULT),
            close_in_extreme_pct=clamp(
                to_positive_number(get("SCALP_DISPLACEMENT_CLOSE_IN_EXTREME_PCT"), settings.DISPLACEMENT_CLOSE_IN_EXTREME_PCT),
                0.01,
                0.49,
            ),
            mss_lookback_bars=to_positive_int(get("SCALP_MSS_LOOKBACK_BARS"), settings.MSS_LOOKBACK_BARS),
            mss_break_buffer_pips=to_non_negative_number(get("SCALP_MSS_BREAK_BUFFER_PIPS"), settings.MSS_BREAK_BUFFER_PIPS),
            mss_break_buffer_atr_mult=to_non_negative_number(get("SCALP_MSS_BREAK_BUFFER_ATR_MULT"), settings.MSS_BREAK_BUFFER_ATR_MULT),
            ttl_minutes=to_positive_int(get("SCALP_CONFIRM_TTL_MINUTES"), settings.CONFIRM_TTL_MINUTES),
        ),
        ifvg=IfvgConfig(
            min_atr_mult=to_non_negative_number(get("SCALP_IFVG_MIN_ATR_MULT"), settings.IFVG_MIN_ATR_MULT),
            max_atr_mult=to_positive_number(get("SCALP_IFVG_MAX_ATR_MULT"), settings.IFVG_MAX_ATR_MULT),
            ttl_minutes=to_positive_int(get("SCALP_IFVG_TTL_MINUTES"), settings.IFVG_TTL_MINUTES),
            entry_mode=_parse_enum(EntryMode, get("SCALP_IFVG_ENTRY_MODE"), EntryMode(settings.IFVG_ENTRY_MODE)),
        ),
        risk=RiskConfig(
            cooldown_after_loss_minutes=to_positive_int(get("SCALP_COOLDOWN_AFTER_LOSS_MINUTES"), settings.COOLDOWN_AFTER_LOSS_MINUTES),
            max_trades_per_symbol_per_day=to_positive_int(get("SCALP_MAX_TRADES_PER_SYMBOL_PER_DAY"), settings.MAX_TRADES_PER_SYMBOL_PER_DAY),
            max_open_positions_per_symbol=to_positive_int(get("SCALP_MAX_OPEN_POSITIONS_PER_SYMBOL"), settings.MAX_OPEN_POSITIONS_PER_SYMBOL),
            kill_switch=to_bool(get("SCALP_KILL_SWITCH"), False),
            risk_per_trade_pct=to_positive_number(get("SCALP_RISK_PER_TRADE_PCT"), settings.RISK_PER_TRADE_PCT),
            reference_equity_usd=to_positive_number(get("SCALP_REFERENCE_EQUITY_USD"), settings.REFERENCE_EQUITY_USD),
            min_notional_usd=to_positive_number(get("SCALP_MIN_NOTIONAL_USD"), settings.MIN_NOTIONAL_USD),
            max_notional_usd=to_positive_number(get("SCALP_MAX_NOTIONAL_USD"), settings.MAX_NOTIONAL_USD),
            take_profit_r=to_positive_number(get("SCALP_TAKE_PROFIT_R"), settings.TAKE_PROFIT_R),
            stop_buffer_pips=to_non_negative_number(get("SCALP_STOP_BUFFER_PIPS"), settings.STOP_BUFFER_PIPS),
            stop_buffer_spread_mult=to_non_negative_number(get("SCALP_STOP_BUFFER_SPREAD_MULT"), settings.STOP_BUFFER_SPREAD_MULT),
            min_stop_distance_pips=to_positive_number(get("SCALP_MIN_STOP_DISTANCE_PIPS"), settings.MIN_STOP_DISTANCE_PIPS),
        ),
        execution=ExecutionConfig(
            live_enabled=to_bool(get("SCALP_LIVE_ENABLED"), False),
            entry_order_type=_parse_enum(OrderType, get("SCALP_ENTRY_ORDER_TYPE"), OrderType(settings.ENTRY_ORDER_TYPE)),
            default_leverage=int(clamp(to_positive_int(get("SCALP_DEFAULT_LEVERAGE"), settings.DEFAULT_LEVERAGE), 1, settings.MAX_LEVERAGE)),
        ),
        idempotency=IdempotencyConfig(
            run_lock_seconds=to_positive_int(get("SCALP_RUN_LOCK_SECONDS"), settings.RUN_LOCK_SECONDS),
        ),
        storage=StorageConfig(
            session_ttl_seconds=state_ttl_days * 24 * 60 * 60,
            journal_max=to_positive_int(get("SCALP_JOURNAL_MAX"), settings.JOURNAL_MAX),
        ),
        data=DataConfig(
            atr_period=to_positive_int(get("SCALP_ATR_PERIOD"), settings.ATR_PERIOD),
            min_asia_candles=to_positive_int(get("SCALP_MIN_ASIA_CANDLES"), settings.MIN_ASIA_CANDLES),
            min_base_candles=to_positive_int(get("SCALP_MIN_BASE_CANDLES"), settings.MIN_BASE_CANDLES),
            min_confirm_candles=to_positive_int(get("SCALP_MIN_CONFIRM_CANDLES"), settings.MIN_CONFIRM_CANDLES),
            max_candles_per_request=int(clamp(
                to_positive_int(get("SCALP_MAX_CANDLES_PER_REQUEST"), settings.MAX_CANDLES_PER_REQUEST),
                settings.MIN_CANDLES_PER_REQUEST_CAP,
                settings.MAX_CANDLES_PER_REQUEST,
            )),
        ),
    )


# ----------------------------------------------------------------------
# Typed partial overrides
# ----------------------------------------------------------------------
def _coerce_field(current: Any, value: Any, path: str) -> Any:
    if isinstance(current, Enum):
        try:
            return type(current)(value)
        except ValueError as exc:
            raise ConfigOverrideError(f"{path}: invalid value {value!r}") from exc
    if isinstance(current, tuple):
        if not isinstance(value, (list, tuple)):
            raise ConfigOverrideError(f"{path}: expected a list, got {value!r}")
        return tuple(value)
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        return to_bool(str(value), current)
    try:
        if isinstance(current, int) and not isinstance(value, bool):
            return int(value)
        if isinstance(current, float):
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigOverrideError(f"{path}: invalid value {value!r}") from exc
    return value


def apply_config_override(cfg, override: Optional[Mapping[str, Any]], _path: str = ""):
    """Return a copy of ``cfg`` with ``override`` merged in field by field.

    Nested mappings recurse into nested config sections, ``None`` keeps the
    current value and lists replace tuples wholesale.
    """
    if not override:
        return cfg
    if not isinstance(override, Mapping):
        raise ConfigOverrideError(f"{_path or 'config'}: override must be a mapping")

    known = {f.name for f in dataclasses.fields(cfg)}
    changes = {}
    for key, value in override.items():
        path = f"{_path}.{key}" if _path else key
        if key not in known:
            raise ConfigOverrideError(f"Unknown config field: {path}")
        if value is None:
            continue
        current = getattr(cfg, key)
        if dataclasses.is_dataclass(current):
            changes[key] = apply_config_override(current, value, path)
        else:
            changes[key] = _coerce_field(current, value, path)
    return dataclasses.replace(cfg, **changes)
