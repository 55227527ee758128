import os

# Symbols traded by the live loop when none are passed on the command line
SYMBOLS = ["EURUSD", "GBPUSD", "USDJPY"]
DEFAULT_SYMBOL = "EURUSD"

# Session clock (local wall time in the session timezone)
SESSION_TIMEZONE = "Europe/London"
ASIA_WINDOW_LOCAL = ("00:00", "06:00")
RAID_WINDOW_LOCAL = ("07:00", "10:00")
CLOCK_MODE = "LONDON_TZ"

# Timeframes
ASIA_BASE_TF = "M5"
CONFIRM_TF = "M3"
EXECUTE_MINUTES = 3

# Sweep
SWEEP_BUFFER_PIPS = 1.0
SWEEP_BUFFER_ATR_MULT = 0.08
SWEEP_BUFFER_SPREAD_MULT = 1.2
SWEEP_REJECT_INSIDE_PIPS = 0.0
SWEEP_REJECT_MAX_BARS = 3
SWEEP_MIN_WICK_BODY_RATIO = 1.2

# Confirmation (displacement + market structure shift)
DISPLACEMENT_BODY_ATR_MULT = 1.1
DISPLACEMENT_RANGE_ATR_MULT = 1.6
DISPLACEMENT_CLOSE_IN_EXTREME_PCT = 0.25
MSS_LOOKBACK_BARS = 8
MSS_BREAK_BUFFER_PIPS = 0.3
MSS_BREAK_BUFFER_ATR_MULT = 0.0
CONFIRM_TTL_MINUTES = 45

# Imbalance zone
IFVG_MIN_ATR_MULT = 0.1
IFVG_MAX_ATR_MULT = 0.8
IFVG_TTL_MINUTES = 90
IFVG_ENTRY_MODE = "midline_touch"

# Risk
COOLDOWN_AFTER_LOSS_MINUTES = 90
MAX_TRADES_PER_SYMBOL_PER_DAY = 2
MAX_OPEN_POSITIONS_PER_SYMBOL = 1
RISK_PER_TRADE_PCT = 0.35
REFERENCE_EQUITY_USD = 10_000.0
MIN_NOTIONAL_USD = 100.0
MAX_NOTIONAL_USD = 2_000.0
TAKE_PROFIT_R = 2.0
STOP_BUFFER_PIPS = 0.8
STOP_BUFFER_SPREAD_MULT = 1.0
MIN_STOP_DISTANCE_PIPS = 0.5

# Execution
ENTRY_ORDER_TYPE = "MARKET"
DEFAULT_LEVERAGE = 1
MAX_LEVERAGE = 5

# Idempotency / storage
RUN_LOCK_SECONDS = 90
MIN_RUN_LOCK_SECONDS = 15
STATE_TTL_DAYS = 3
MIN_STATE_TTL_SECONDS = 30
JOURNAL_MAX = 500
JOURNAL_MIN_ROWS = 10
JOURNAL_MAX_ROWS = 2000
JOURNAL_MAX_REASON_CODES = 16
JOURNAL_MAX_REASON_CODE_LEN = 80
RUN_CONTEXT_MAX_REASON_CODES = 16

# Store keys
STATE_KEY_PREFIX = "scalp:state:v1"
LOCK_KEY_PREFIX = "scalp:runlock:v1"
JOURNAL_LIST_KEY = "scalp:journal:list:v1"

# Redis connection
REDIS_HOST = os.getenv("SCALP_REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("SCALP_REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("SCALP_REDIS_DB", "0"))
REDIS_PASSWORD = os.getenv("SCALP_REDIS_PASSWORD") or None

# Data
ATR_PERIOD = 14
MIN_ASIA_CANDLES = 12
MIN_BASE_CANDLES = 220
MIN_CONFIRM_CANDLES = 320
MAX_CANDLES_PER_REQUEST = 1000
MIN_CANDLES_PER_REQUEST_CAP = 200
MARKET_LOOKBACK_MINUTES = 60

# Capital.com REST
CAPITAL_API_BASE = os.getenv("CAPITAL_API_BASE", "https://api-capital.backend-capital.com")
CAPITAL_API_KEY = os.getenv("CAPITAL_API_KEY", "")
CAPITAL_IDENTIFIER = os.getenv("CAPITAL_IDENTIFIER", "")
CAPITAL_PASSWORD = os.getenv("CAPITAL_PASSWORD", "")
CAPITAL_SESSION_TTL_SECONDS = 9 * 60
CAPITAL_REQUEST_TIMEOUT_SECONDS = 10.0
CAPITAL_TICKER_EPIC_MAP = {
    "EURUSD": "EURUSD",
    "GBPUSD": "GBPUSD",
    "USDJPY": "USDJPY",
    "XAUUSD": "GOLD",
}

# Candle history
CANDLE_HISTORY_DIR = "data/candles-history"

# Hybrid profile policy
HYBRID_POLICY_FILE = os.getenv("SCALP_HYBRID_POLICY_FILE", "config/hybrid_policy.json")
DEFAULT_PROFILE = "baseline"

# Replay
REPLAY_DEFAULT_SPREAD_PIPS = 1.1
REPLAY_SPREAD_FACTOR = 1.0
REPLAY_SLIPPAGE_PIPS = 0.15
REPLAY_OUTPUT_DIR = "replay-output"
FIXTURES_DIR = "data/fixtures"
MATRIX_SPREAD_FACTORS = [1.0, 1.5, 2.0]
MATRIX_SLIPPAGE_PIPS = [0.0, 0.15, 0.3]
ROBUSTNESS_DRAWDOWN_WEIGHT = 0.35
ROBUSTNESS_COVERAGE_WEIGHT = 0.5
TOP_REASON_CODES = 20

# Logging
LOG_LEVEL = os.getenv("SCALP_LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("SCALP_LOG_FILE", "logs/scalp.log")
JOURNAL_FILE = "logs/journal.jsonl"
