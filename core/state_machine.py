import copy
from typing import List, Optional, Tuple

from config.strategy import StrategyConfig
from core.detectors import (
    build_asia_range,
    detect_confirmation,
    detect_ifvg,
    detect_sweep,
    detect_touch,
)
from core.indicators import compute_atr, pip_size_for_symbol
from models.types import (
    DetectorStatus,
    Direction,
    MarketSnapshot,
    SessionState,
    SessionWindows,
    State,
    StateMachineResult,
    Timeframe,
)
from utils.logger import setup_logger
from utils.reason_codes import dedupe_reason_codes

logger = setup_logger("StateMachine")


def create_initial_state(symbol: str, day_key: str, now_ms: int, kill_switch_active: bool = False) -> SessionState:
    return SessionState(
        symbol=symbol.upper(),
        day_key=day_key,
        state=State.IDLE,
        created_at_ms=now_ms,
        updated_at_ms=now_ms,
        kill_switch_active=bool(kill_switch_active),
    )


def clone_state(state: SessionState) -> SessionState:
    return copy.deepcopy(state)


def advance_state_machine(state: SessionState, now_ms: int, day_key: str) -> StateMachineResult:
    """Apply the time-driven transitions: day rollover and cooldown."""
    nxt = clone_state(state)
    reason_codes: List[str] = []
    transitioned = False

    if nxt.day_key != day_key:
        reset = create_initial_state(nxt.symbol, day_key, now_ms, nxt.kill_switch_active)
        logger.info(f"{nxt.symbol}: new session day {day_key} (was {state.day_key}, {state.state.value})")
        return StateMachineResult(reset, True, ["NEW_DAY_SESSION_RESET"])

    if nxt.cooldown_until_ms and now_ms < nxt.cooldown_until_ms:
        if nxt.state is not State.COOLDOWN:
            nxt.state = State.COOLDOWN
            transitioned = True
        reason_codes.append("COOLDOWN_ACTIVE")
    elif nxt.state is State.COOLDOWN:
        nxt.cooldown_until_ms = None
        nxt.state = State.IDLE
        transitioned = True
        reason_codes.append("COOLDOWN_EXPIRED")

    if nxt.kill_switch_active:
        reason_codes.append("GLOBAL_KILL_SWITCH_ACTIVE")

    if not reason_codes:
        reason_codes.append("NO_STATE_CHANGE")

    nxt.updated_at_ms = now_ms
    return StateMachineResult(nxt, transitioned, reason_codes)


def _with_last_processed(state: SessionState, market: MarketSnapshot) -> SessionState:
    cursor = state.last_processed
    base_ts = market.base_candles[-1].timestamp if market.base_candles else None
    confirm_ts = market.confirm_candles[-1].timestamp if market.confirm_candles else None

    fields = {
        Timeframe.M1: "m1_closed_ts_ms",
        Timeframe.M3: "m3_closed_ts_ms",
        Timeframe.M5: "m5_closed_ts_ms",
        Timeframe.M15: "m15_closed_ts_ms",
    }
    setattr(cursor, fields[market.base_tf], base_ts)
    setattr(cursor, fields[market.confirm_tf], confirm_ts)
    return state


def expected_direction(state: SessionState) -> Optional[Direction]:
    if state.sweep is None:
        return None
    return state.sweep.side.reversal


def apply_phase_detectors(
    state: SessionState,
    market: MarketSnapshot,
    windows: SessionWindows,
    now_ms: int,
    cfg: StrategyConfig,
) -> Tuple[SessionState, List[str]]:
    """
    Run the detector for the current lifecycle state and advance on a
    definitive outcome. Expired or invalid outcomes end the day (DONE).

    Shared verbatim by the live coordinator and the replay harness.
    """
    nxt = _with_last_processed(clone_state(state), market)
    codes: List[str] = []
    pip_size = pip_size_for_symbol(nxt.symbol)
    before = nxt.state

    def done(*extra: str) -> Tuple[SessionState, List[str]]:
        codes.extend(extra)
        if nxt.state is not before:
            logger.info(f"{nxt.symbol} {nxt.day_key}: {before.value} -> {nxt.state.value} ({', '.join(codes[-3:])})")
        return nxt, dedupe_reason_codes(codes)

    if nxt.state in (State.IN_TRADE, State.COOLDOWN):
        return nxt, ["STATE_SKIPPED_MANAGED_EXTERNALLY"]
    if nxt.state is State.DONE:
        return nxt, ["DAY_ALREADY_DONE"]

    if nxt.asia_range is None:
        asia = build_asia_range(
            now_ms, windows, market.base_candles, cfg.data.min_asia_candles, market.base_tf
        )
        codes.extend(asia.reason_codes)
        if asia.snapshot is None:
            return done()
        nxt.asia_range = asia.snapshot
        if nxt.state in (State.IDLE, State.ASIA_RANGE_READY):
            nxt.state = State.ASIA_RANGE_READY

    if nxt.sweep is None and now_ms > windows.raid_end_ms and nxt.state is State.ASIA_RANGE_READY:
        nxt.state = State.DONE
        return done("RAID_WINDOW_CLOSED_NO_SWEEP")

    if nxt.state is State.IDLE:
        nxt.state = State.ASIA_RANGE_READY

    if nxt.state in (State.ASIA_RANGE_READY, State.SWEEP_DETECTED):
        sweep = detect_sweep(
            existing=nxt.sweep,
            candles=market.base_candles,
            windows=windows,
            asia_high=nxt.asia_range.high,
            asia_low=nxt.asia_range.low,
            atr_abs=compute_atr(market.base_candles, cfg.data.atr_period),
            spread_abs=market.quote.spread_abs,
            pip_size=pip_size,
            cfg=cfg.sweep,
        )
        codes.extend(sweep.reason_codes)
        if sweep.sweep is not None:
            nxt.sweep = sweep.sweep
        if sweep.status is DetectorStatus.REJECTED:
            nxt.state = State.CONFIRMING
        elif sweep.status is DetectorStatus.PENDING:
            nxt.state = State.SWEEP_DETECTED
            return done()
        elif sweep.status is DetectorStatus.EXPIRED:
            nxt.state = State.DONE
            return done()
        else:
            return done()

    if nxt.state is State.CONFIRMING:
        rejection_ts = nxt.sweep.rejected_ts_ms if nxt.sweep else None
        direction = expected_direction(nxt)
        if not rejection_ts or rejection_ts <= 0 or direction is None:
            nxt.state = State.DONE
            return done("CONFIRM_REQUIRES_REJECTED_SWEEP")

        confirmation = detect_confirmation(
            market.confirm_candles,
            now_ms,
            rejection_ts,
            direction,
            pip_size,
            cfg.data.atr_period,
            cfg.confirm,
        )
        nxt.confirmation = confirmation.snapshot
        codes.extend(confirmation.reason_codes)
        if confirmation.status is DetectorStatus.PENDING:
            return done()
        if confirmation.status is DetectorStatus.EXPIRED:
            nxt.state = State.DONE
            return done()

        ifvg = detect_ifvg(
            market.confirm_candles,
            direction,
            confirmation.displacement_ts_ms,
            confirmation.structure_shift_ts_ms,
            now_ms,
            cfg.data.atr_period,
            cfg.ifvg,
        )
        codes.extend(ifvg.reason_codes)
        if ifvg.zone is None:
            if now_ms > rejection_ts + cfg.confirm.ttl_minutes * 60_000:
                nxt.state = State.DONE
                codes.append("IFVG_NOT_FOUND_BEFORE_CONFIRM_TTL")
            return done()
        nxt.ifvg = ifvg.zone
        nxt.state = State.WAITING_RETRACE

    if nxt.state is State.WAITING_RETRACE and nxt.ifvg is not None:
        touch = detect_touch(market.confirm_candles, nxt.ifvg, now_ms)
        codes.extend(touch.reason_codes)
        if touch.touched:
            nxt.ifvg = touch.zone
            return done("ENTRY_SIGNAL_READY")
        if touch.expired:
            nxt.state = State.DONE
            return done()

    return done()
