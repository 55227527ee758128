import time
import uuid
from typing import Any, Dict, List, Optional

from config import settings
from config.strategy import StrategyConfig, normalize_symbol
from core.execution import execute_entry_plan, reconcile_broker_position
from core.planner import build_entry_plan
from core.sessions import build_session_windows, day_key_for
from core.state_machine import advance_state_machine, apply_phase_detectors, create_initial_state
from data.market_data import load_market_snapshot
from data.store import lock_key
from models.types import (
    Broker,
    CycleResult,
    JournalEntry,
    JournalLevel,
    JournalType,
    MarketDataProvider,
    MarketSnapshot,
    SessionState,
    SessionWindows,
    State,
    StateStore,
)
from utils.logger import setup_logger
from utils.reason_codes import dedupe_reason_codes

logger = setup_logger("Engine")


def build_journal_entry(
    type: JournalType,
    symbol: Optional[str],
    day_key: Optional[str],
    reason_codes: List[str],
    payload: Optional[Dict[str, Any]] = None,
    level: JournalLevel = JournalLevel.INFO,
) -> JournalEntry:
    return JournalEntry(
        id=uuid.uuid4().hex,
        timestamp_ms=int(time.time() * 1000),
        type=type,
        symbol=symbol,
        day_key=day_key,
        level=level,
        reason_codes=list(reason_codes),
        payload=payload or {},
    )


def _safe_journal(store: StateStore, entry: JournalEntry, max_rows: int):
    # The audit trail never decides the outcome of a cycle
    try:
        store.journal(entry, max_rows)
    except Exception as e:
        logger.warning(f"Failed to append journal entry {entry.reason_codes}: {e}")


def _with_run_context(
    state: SessionState,
    now_ms: int,
    run_id: str,
    dry_run: bool,
    reason_codes: List[str],
    kill_switch: bool,
) -> SessionState:
    state.kill_switch_active = kill_switch
    state.updated_at_ms = now_ms
    state.run.last_run_at_ms = now_ms
    state.run.last_run_id = run_id
    state.run.dry_run_last = dry_run
    state.run.last_reason_codes = reason_codes[: settings.RUN_CONTEXT_MAX_REASON_CODES]
    return state


def _cycle_payload(
    state: SessionState,
    cfg: StrategyConfig,
    windows: SessionWindows,
    market: Optional[MarketSnapshot],
    transitioned: bool,
    dry_run: bool,
    now_ms: int,
    run_id: str,
) -> Dict[str, Any]:
    return {
        "dryRun": dry_run,
        "nowMs": now_ms,
        "runId": run_id,
        "state": state.state.value,
        "transitioned": transitioned,
        "maxTradesPerDay": cfg.risk.max_trades_per_symbol_per_day,
        "sessionClockMode": cfg.sessions.clock_mode.value,
        "asiaWindowLocal": list(cfg.sessions.asia_window_local),
        "raidWindowLocal": list(cfg.sessions.raid_window_local),
        "asiaTf": cfg.timeframes.asia_base.value,
        "confirmTf": cfg.timeframes.confirm.value,
        "windows": {
            "asiaStart": windows.asia_start_iso,
            "asiaEnd": windows.asia_end_iso,
            "raidStart": windows.raid_start_iso,
            "raidEnd": windows.raid_end_iso,
        },
        "marketSummary": {
            "epic": market.epic,
            "baseCandleCount": len(market.base_candles),
            "confirmCandleCount": len(market.confirm_candles),
            "spreadPips": market.quote.spread_pips,
        } if market else None,
        "hasAsiaRange": state.asia_range is not None,
        "hasSweep": state.sweep is not None,
        "hasConfirmation": state.confirmation is not None,
        "hasIfvg": state.ifvg is not None,
        "hasTrade": state.trade is not None,
        "tradeDryRun": state.trade.dry_run if state.trade else None,
    }


def advance_one_cycle(
    symbol: Optional[str],
    now_ms: int,
    cfg: StrategyConfig,
    *,
    store: StateStore,
    market_data: MarketDataProvider,
    broker: Broker,
    dry_run: Optional[bool] = None,
    run_id: Optional[str] = None,
) -> CycleResult:
    """
    One live evaluation for one symbol.

    Holds the per-symbol run lock for the whole cycle. Nothing is persisted
    unless the lock was won and the next state was fully computed; the lock
    is always released on the way out.
    """
    dry_run = cfg.dry_run_default if dry_run is None else bool(dry_run)
    symbol = normalize_symbol(symbol or cfg.default_symbol)
    day_key = day_key_for(now_ms, cfg.sessions.clock_mode)
    run_id = run_id or uuid.uuid4().hex
    key = lock_key(symbol)
    journal_max = cfg.storage.journal_max
    kill_switch = cfg.risk.kill_switch
    base_payload = {"dryRun": dry_run, "nowMs": now_ms, "runId": run_id}

    if not store.try_acquire_lock(key, run_id, cfg.idempotency.run_lock_seconds):
        codes = ["SCALP_RUN_LOCK_ACTIVE"]
        logger.info(f"{symbol}: run lock held by another cycle, skipping")
        _safe_journal(
            store,
            build_journal_entry(JournalType.EXECUTION, symbol, day_key, codes, base_payload, JournalLevel.WARN),
            journal_max,
        )
        return CycleResult(now_ms, symbol, day_key, dry_run, False, State.IDLE, codes, run_id)

    try:
        if not cfg.enabled:
            codes = ["SCALP_ENGINE_DISABLED"]
            disabled = _with_run_context(
                create_initial_state(symbol, day_key, now_ms, kill_switch),
                now_ms, run_id, dry_run, codes, kill_switch,
            )
            store.save(disabled, cfg.storage.session_ttl_seconds)
            _safe_journal(
                store,
                build_journal_entry(JournalType.EXECUTION, symbol, day_key, codes, base_payload, JournalLevel.WARN),
                journal_max,
            )
            return CycleResult(now_ms, symbol, day_key, dry_run, True, disabled.state, codes, run_id)

        current = store.load(symbol, day_key) or create_initial_state(symbol, day_key, now_ms, kill_switch)
        current.kill_switch_active = kill_switch

        transition = advance_state_machine(current, now_ms, day_key)
        windows = build_session_windows(day_key, cfg)
        nxt = transition.next_state
        market: Optional[MarketSnapshot] = None
        phase_codes: List[str] = []

        if not kill_switch:
            try:
                market = load_market_snapshot(market_data, symbol, now_ms, windows, cfg)
            except Exception as e:
                logger.warning(f"{symbol}: market data unavailable: {e}")
                phase_codes.append("MARKET_DATA_UNAVAILABLE")
                _safe_journal(
                    store,
                    build_journal_entry(
                        JournalType.RISK, symbol, day_key, ["MARKET_DATA_UNAVAILABLE"],
                        {**base_payload, "message": str(e)}, JournalLevel.WARN,
                    ),
                    journal_max,
                )

            if market is not None:
                nxt, codes = apply_phase_detectors(nxt, market, windows, now_ms, cfg)
                phase_codes.extend(codes)

                nxt, codes = reconcile_broker_position(
                    nxt, market, broker, dry_run, cfg.risk.max_open_positions_per_symbol
                )
                phase_codes.extend(codes)

                if nxt.state is State.WAITING_RETRACE and nxt.ifvg is not None and nxt.ifvg.touched and nxt.trade is None:
                    plan, codes = build_entry_plan(nxt, market.quote, cfg)
                    phase_codes.extend(codes)
                    if plan is not None:
                        nxt, codes = execute_entry_plan(nxt, plan, broker, cfg, dry_run, now_ms)
                        phase_codes.extend(codes)
        else:
            phase_codes.append("GLOBAL_KILL_SWITCH_ACTIVE")

        reason_codes = dedupe_reason_codes(["SCALP_CYCLE_EXECUTED", *transition.reason_codes, *phase_codes])
        nxt = _with_run_context(nxt, now_ms, run_id, dry_run, reason_codes, kill_switch)

        store.save(nxt, cfg.storage.session_ttl_seconds)
        _safe_journal(
            store,
            build_journal_entry(
                JournalType.STATE if transition.transitioned else JournalType.EXECUTION,
                symbol,
                day_key,
                reason_codes,
                _cycle_payload(nxt, cfg, windows, market, transition.transitioned, dry_run, now_ms, run_id),
            ),
            journal_max,
        )
        logger.info(f"{symbol} {day_key}: cycle done state={nxt.state.value} codes={','.join(reason_codes[:6])}")
        return CycleResult(now_ms, symbol, day_key, dry_run, True, nxt.state, reason_codes, run_id)

    except Exception as e:
        logger.error(f"{symbol}: cycle {run_id} failed: {e}", exc_info=True)
        _safe_journal(
            store,
            build_journal_entry(
                JournalType.ERROR, symbol, day_key, ["SCALP_EXECUTE_CYCLE_ERROR"],
                {**base_payload, "message": str(e)}, JournalLevel.ERROR,
            ),
            journal_max,
        )
        raise
    finally:
        store.release_lock(key, run_id)
