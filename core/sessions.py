import re
from datetime import datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from config.settings import SESSION_TIMEZONE
from config.strategy import StrategyConfig, normalize_clock_label
from models.types import ClockMode, SessionWindows

_DAY_KEY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_LONDON = ZoneInfo(SESSION_TIMEZONE)
_MAX_CORRECTIONS = 6
_MINUTE_MS = 60_000
_DAY_MS = 24 * 60 * _MINUTE_MS


def parse_day_key(day_key: str) -> Tuple[int, int, int]:
    match = _DAY_KEY_RE.match(str(day_key or "").strip())
    if not match:
        raise ValueError(f"Invalid day key: {day_key!r}")
    year, month, day = (int(g) for g in match.groups())
    # Reject impossible dates such as 2024-02-31
    datetime(year, month, day)
    return year, month, day


def _naive_utc_ms(year: int, month: int, day: int, hour: int, minute: int) -> int:
    return int(datetime(year, month, day, hour, minute, tzinfo=timezone.utc).timestamp() * 1000)


def _zoned_clock_to_utc_ms(day_key: str, clock: str, tz: ZoneInfo) -> int:
    """Resolve a local wall-clock time on ``day_key`` in ``tz`` to epoch ms.

    Starts from the naive UTC reading and corrects by the observed local
    offset until the local wall time matches the target.
    """
    year, month, day = parse_day_key(day_key)
    label = normalize_clock_label(clock)
    hour, minute = (int(x) for x in label.split(":"))
    target_minutes = hour * 60 + minute
    target_date = (year, month, day)

    guess = _naive_utc_ms(year, month, day, hour, minute)
    for _ in range(_MAX_CORRECTIONS):
        local = datetime.fromtimestamp(guess / 1000, tz=tz)
        local_date = (local.year, local.month, local.day)
        if local_date == target_date:
            day_delta = 0
        elif local_date < target_date:
            day_delta = 1
        else:
            day_delta = -1
        delta_minutes = day_delta * 1440 + (target_minutes - (local.hour * 60 + local.minute))
        if delta_minutes == 0:
            break
        guess += delta_minutes * _MINUTE_MS
    return guess


def clock_to_utc_ms(day_key: str, clock: str, clock_mode: ClockMode) -> int:
    if clock_mode is ClockMode.UTC_FIXED:
        year, month, day = parse_day_key(day_key)
        hour, minute = (int(x) for x in normalize_clock_label(clock).split(":"))
        return _naive_utc_ms(year, month, day, hour, minute)
    return _zoned_clock_to_utc_ms(day_key, clock, _LONDON)


def _normalize_window(start_ms: int, end_ms: int) -> Tuple[int, int]:
    if end_ms <= start_ms:
        end_ms += _DAY_MS
    return start_ms, end_ms


def build_session_windows(day_key: str, cfg: StrategyConfig) -> SessionWindows:
    mode = cfg.sessions.clock_mode
    asia_start, asia_end = _normalize_window(
        clock_to_utc_ms(day_key, cfg.sessions.asia_window_local[0], mode),
        clock_to_utc_ms(day_key, cfg.sessions.asia_window_local[1], mode),
    )
    raid_start, raid_end = _normalize_window(
        clock_to_utc_ms(day_key, cfg.sessions.raid_window_local[0], mode),
        clock_to_utc_ms(day_key, cfg.sessions.raid_window_local[1], mode),
    )
    return SessionWindows(
        timezone="UTC" if mode is ClockMode.UTC_FIXED else SESSION_TIMEZONE,
        asia_start_ms=asia_start,
        asia_end_ms=asia_end,
        raid_start_ms=raid_start,
        raid_end_ms=raid_end,
    )


def day_key_for(now_ms: int, clock_mode: ClockMode = ClockMode.LONDON_TZ) -> str:
    tz = timezone.utc if clock_mode is ClockMode.UTC_FIXED else _LONDON
    return datetime.fromtimestamp(now_ms / 1000, tz=tz).strftime("%Y-%m-%d")


def now_ms(clock: Optional[datetime] = None) -> int:
    moment = clock or datetime.now(timezone.utc)
    return int(moment.timestamp() * 1000)
