from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol, Any, Optional, List, Dict


class ClockMode(str, Enum):
    LONDON_TZ = "LONDON_TZ"
    UTC_FIXED = "UTC_FIXED"


class Timeframe(str, Enum):
    M1 = "M1"
    M3 = "M3"
    M5 = "M5"
    M15 = "M15"

    @property
    def minutes(self) -> int:
        return int(self.value[1:])

    @property
    def ms(self) -> int:
        return self.minutes * 60_000


BASE_TIMEFRAMES = (Timeframe.M1, Timeframe.M3, Timeframe.M5, Timeframe.M15)
CONFIRM_TIMEFRAMES = (Timeframe.M1, Timeframe.M3)


class EntryMode(str, Enum):
    FIRST_TOUCH = "first_touch"
    MIDLINE_TOUCH = "midline_touch"
    FULL_FILL = "full_fill"


class Direction(str, Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"


class SweepSide(str, Enum):
    BUY_SIDE = "BUY_SIDE"
    SELL_SIDE = "SELL_SIDE"

    @property
    def reversal(self) -> Direction:
        # Raiding buy-side liquidity implies a move down afterwards
        return Direction.BEARISH if self is SweepSide.BUY_SIDE else Direction.BULLISH


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class State(str, Enum):
    IDLE = "IDLE"
    ASIA_RANGE_READY = "ASIA_RANGE_READY"
    SWEEP_DETECTED = "SWEEP_DETECTED"
    CONFIRMING = "CONFIRMING"
    WAITING_RETRACE = "WAITING_RETRACE"
    IN_TRADE = "IN_TRADE"
    DONE = "DONE"
    COOLDOWN = "COOLDOWN"


class DetectorStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    REJECTED = "rejected"
    CONFIRMED = "confirmed"
    TOUCHED = "touched"
    EXPIRED = "expired"


class ExitReason(str, Enum):
    TP = "TP"
    STOP = "STOP"
    FORCE_CLOSE = "FORCE_CLOSE"


class JournalType(str, Enum):
    EXECUTION = "execution"
    STATE = "state"
    RISK = "risk"
    ERROR = "error"


class JournalLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def to_utc_iso(ts_ms: int) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True, frozen=True)
class Candle:
    timestamp: int        # Open time (ms)
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    spread_pips: Optional[float] = None  # Replay fixtures only

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def upper_wick(self) -> float:
        return self.high - max(self.open, self.close)

    @property
    def lower_wick(self) -> float:
        return min(self.open, self.close) - self.low


@dataclass(slots=True, frozen=True)
class SessionWindows:
    timezone: str
    asia_start_ms: int
    asia_end_ms: int
    raid_start_ms: int
    raid_end_ms: int

    @property
    def asia_start_iso(self) -> str:
        return to_utc_iso(self.asia_start_ms)

    @property
    def asia_end_iso(self) -> str:
        return to_utc_iso(self.asia_end_ms)

    @property
    def raid_start_iso(self) -> str:
        return to_utc_iso(self.raid_start_ms)

    @property
    def raid_end_iso(self) -> str:
        return to_utc_iso(self.raid_end_ms)


@dataclass(slots=True)
class AsiaRangeSnapshot:
    timezone: str
    source_tf: Timeframe
    start_iso: str
    end_iso: str
    high: float
    low: float
    candle_count: int
    built_at_ms: int


@dataclass(slots=True)
class SweepSnapshot:
    side: SweepSide
    sweep_ts_ms: int
    sweep_price: float
    buffer_abs: float
    rejected: bool = False
    rejected_ts_ms: Optional[int] = None
    reason_codes: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ConfirmationSnapshot:
    displacement_detected: bool = False
    displacement_ts_ms: Optional[int] = None
    structure_shift_detected: bool = False
    structure_shift_ts_ms: Optional[int] = None
    reason_codes: List[str] = field(default_factory=list)


@dataclass(slots=True)
class IfvgZoneSnapshot:
    direction: Direction
    low: float
    high: float
    created_ts_ms: int
    expires_at_ms: int
    entry_mode: EntryMode
    touched: bool = False
    touched_ts_ms: Optional[int] = None

    @property
    def midpoint(self) -> float:
        return (self.low + self.high) / 2


@dataclass(slots=True)
class TradeSnapshot:
    setup_id: str
    deal_reference: str
    side: OrderSide
    entry_price: float
    stop_price: float
    take_profit_price: Optional[float]
    risk_r: float
    opened_at_ms: int
    broker_order_id: Optional[str]
    dry_run: bool


@dataclass(slots=True)
class TimeCursor:
    m1_closed_ts_ms: Optional[int] = None
    m3_closed_ts_ms: Optional[int] = None
    m5_closed_ts_ms: Optional[int] = None
    m15_closed_ts_ms: Optional[int] = None


@dataclass(slots=True)
class DailyStats:
    trades_placed: int = 0
    wins: int = 0
    losses: int = 0
    last_trade_at_ms: Optional[int] = None


@dataclass(slots=True)
class RunContext:
    last_run_at_ms: Optional[int] = None
    last_run_id: Optional[str] = None
    dry_run_last: bool = True
    last_reason_codes: List[str] = field(default_factory=list)


@dataclass(slots=True)
class SessionState:
    symbol: str
    day_key: str
    state: State = State.IDLE
    created_at_ms: int = 0
    updated_at_ms: int = 0
    cooldown_until_ms: Optional[int] = None
    kill_switch_active: bool = False
    asia_range: Optional[AsiaRangeSnapshot] = None
    sweep: Optional[SweepSnapshot] = None
    confirmation: Optional[ConfirmationSnapshot] = None
    ifvg: Optional[IfvgZoneSnapshot] = None
    trade: Optional[TradeSnapshot] = None
    last_processed: TimeCursor = field(default_factory=TimeCursor)
    stats: DailyStats = field(default_factory=DailyStats)
    run: RunContext = field(default_factory=RunContext)
    version: int = 1


@dataclass(slots=True)
class StateMachineResult:
    next_state: SessionState
    transitioned: bool
    reason_codes: List[str]


@dataclass(slots=True)
class Quote:
    price: float
    bid: Optional[float]
    offer: Optional[float]
    spread_abs: float
    spread_pips: float
    ts_ms: int


@dataclass(slots=True)
class MarketSnapshot:
    symbol: str
    epic: str
    now_ms: int
    quote: Quote
    base_tf: Timeframe
    confirm_tf: Timeframe
    base_candles: List[Candle]
    confirm_candles: List[Candle]


@dataclass(slots=True)
class EntryPlan:
    setup_id: str
    deal_reference: str
    side: OrderSide
    order_type: OrderType
    limit_level: Optional[float]
    entry_reference_price: float
    stop_price: float
    take_profit_price: float
    risk_abs: float
    risk_usd: float
    notional_usd: float
    leverage: int


@dataclass(slots=True)
class OrderResult:
    accepted: bool
    broker_order_id: Optional[str] = None
    size: Optional[float] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BrokerPosition:
    epic: str
    side: Optional[str]          # 'long' / 'short' as reported by the broker
    entry_price: Optional[float]
    deal_id: Optional[str]
    size: Optional[float] = None


@dataclass(slots=True)
class JournalEntry:
    id: str
    timestamp_ms: int
    type: JournalType
    symbol: Optional[str]
    day_key: Optional[str]
    level: JournalLevel
    reason_codes: List[str]
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CycleResult:
    generated_at_ms: int
    symbol: str
    day_key: str
    dry_run: bool
    run_lock_acquired: bool
    state: State
    reason_codes: List[str]
    run_id: Optional[str] = None


@dataclass(slots=True)
class TimelineEvent:
    ts_ms: int
    type: str             # 'state' | 'entry' | 'exit' | 'note'
    state: State
    reason_codes: List[str]
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ReplayTrade:
    id: str
    day_key: str
    side: OrderSide
    entry_ts_ms: int
    exit_ts_ms: int
    hold_minutes: float
    entry_price: float
    stop_price: float
    take_profit_price: float
    exit_price: float
    exit_reason: ExitReason
    risk_abs: float
    risk_usd: float
    notional_usd: float
    r_multiple: float
    pnl_usd: float


@dataclass(slots=True, frozen=True)
class ReplaySummary:
    symbol: str
    start_ts_ms: Optional[int]
    end_ts_ms: Optional[int]
    runs: int
    trades: int
    wins: int
    losses: int
    win_rate_pct: float
    avg_r: float
    expectancy_r: float
    net_r: float
    net_pnl_usd: float
    max_drawdown_r: float
    avg_hold_minutes: float
    exits_by_reason: Dict[str, int]


@dataclass(slots=True)
class ReplayDiagnostics:
    top_reason_codes: List[Dict[str, Any]]
    state_counts: Dict[str, int]


@dataclass(slots=True)
class ReplayResult:
    summary: ReplaySummary
    trades: List[ReplayTrade]
    timeline: List[TimelineEvent]
    diagnostics: ReplayDiagnostics


class MarketDataProvider(Protocol):
    def fetch_candles(self, symbol: str, timeframe: Timeframe, limit: int) -> List[Candle]:
        ...

    def fetch_quote(self, symbol: str) -> Dict[str, Any]:
        ...

    def resolve_epic(self, symbol: str) -> str:
        ...


class Broker(Protocol):
    def place_order(self, symbol: str, plan: EntryPlan, dry_run: bool) -> OrderResult:
        ...

    def list_open_positions(self, symbol: str) -> List[BrokerPosition]:
        ...


class StateStore(Protocol):
    def load(self, symbol: str, day_key: str) -> Optional[SessionState]:
        ...

    def save(self, state: SessionState, ttl_seconds: int) -> None:
        ...

    def try_acquire_lock(self, key: str, token: str, ttl_seconds: int) -> bool:
        ...

    def release_lock(self, key: str, token: str) -> None:
        ...

    def journal(self, entry: JournalEntry, max_rows: int) -> None:
        ...
