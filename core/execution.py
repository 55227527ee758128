from typing import List, Tuple

from config.strategy import StrategyConfig
from core.state_machine import clone_state
from models.types import (
    Broker,
    EntryPlan,
    MarketSnapshot,
    OrderSide,
    SessionState,
    State,
    TradeSnapshot,
)
from utils.logger import setup_logger

logger = setup_logger("Execution")

_BROKER_SIDES = {"long": OrderSide.BUY, "short": OrderSide.SELL, "buy": OrderSide.BUY, "sell": OrderSide.SELL}


def reconcile_broker_position(
    state: SessionState,
    market: MarketSnapshot,
    broker: Broker,
    dry_run: bool,
    max_open_positions: int,
) -> Tuple[SessionState, List[str]]:
    """Align local trade bookkeeping with what the broker reports as open."""
    if dry_run:
        return state, ["BROKER_RECONCILE_SKIPPED_DRY_RUN"]

    try:
        positions = broker.list_open_positions(market.symbol)
    except Exception as e:
        logger.warning(f"{market.symbol}: broker positions unavailable: {e}")
        return state, ["BROKER_RECONCILE_UNAVAILABLE"]

    nxt = clone_state(state)
    matching = [p for p in positions if str(p.epic or "").strip() == market.epic]

    if len(matching) > max(1, max_open_positions):
        nxt.state = State.DONE
        logger.error(f"{market.symbol}: {len(matching)} open positions exceed limit {max_open_positions}")
        return nxt, ["BROKER_OPEN_POSITION_LIMIT_EXCEEDED"]

    if not matching:
        if nxt.state is State.IN_TRADE and nxt.trade is not None and not nxt.trade.dry_run:
            nxt.state = State.DONE
            logger.info(f"{market.symbol}: broker shows no position for {nxt.trade.setup_id}, marking day done")
            nxt.trade = None
            return nxt, ["BROKER_POSITION_NOT_FOUND_MARK_DONE"]
        return nxt, ["BROKER_POSITION_NONE"]

    position = matching[0]
    side = _BROKER_SIDES.get(str(position.side or "").strip().lower())
    entry_price = position.entry_price
    if side is None or entry_price is None or not entry_price > 0:
        return nxt, ["BROKER_POSITION_INVALID_PAYLOAD"]

    if nxt.trade is not None and not nxt.trade.dry_run:
        nxt.state = State.IN_TRADE
        return nxt, ["BROKER_POSITION_CONFIRMED"]

    previous = nxt.trade
    nxt.trade = TradeSnapshot(
        setup_id=f"recovered:{market.epic}",
        deal_reference=str(position.deal_id or f"recovered-{market.epic}"),
        side=side,
        entry_price=entry_price,
        stop_price=previous.stop_price if previous else entry_price,
        take_profit_price=previous.take_profit_price if previous else None,
        risk_r=1.0,
        opened_at_ms=market.now_ms,
        broker_order_id=position.deal_id or None,
        dry_run=False,
    )
    nxt.state = State.IN_TRADE
    logger.warning(f"{market.symbol}: recovered untracked broker position {position.deal_id}")
    return nxt, ["BROKER_POSITION_RECOVERED"]


def execute_entry_plan(
    state: SessionState,
    plan: EntryPlan,
    broker: Broker,
    cfg: StrategyConfig,
    dry_run: bool,
    now_ms: int,
) -> Tuple[SessionState, List[str]]:
    nxt = clone_state(state)

    if nxt.stats.trades_placed >= cfg.risk.max_trades_per_symbol_per_day:
        nxt.state = State.DONE
        return nxt, ["TRADE_LIMIT_REACHED"]

    if not dry_run and not cfg.execution.live_enabled:
        nxt.state = State.DONE
        return nxt, ["LIVE_EXECUTION_DISABLED"]

    broker_order_id = None
    if not dry_run:
        try:
            result = broker.place_order(nxt.symbol, plan, dry_run=False)
        except Exception as e:
            logger.error(f"{nxt.symbol}: order {plan.deal_reference} failed: {e}")
            return nxt, ["ENTRY_NOT_PLACED"]
        if not result.accepted:
            logger.warning(f"{nxt.symbol}: order {plan.deal_reference} not accepted")
            return nxt, ["ENTRY_NOT_PLACED"]
        broker_order_id = result.broker_order_id

    nxt.trade = TradeSnapshot(
        setup_id=plan.setup_id,
        deal_reference=plan.deal_reference,
        side=plan.side,
        entry_price=plan.entry_reference_price,
        stop_price=plan.stop_price,
        take_profit_price=plan.take_profit_price,
        risk_r=1.0,
        opened_at_ms=now_ms,
        broker_order_id=broker_order_id,
        dry_run=dry_run,
    )
    nxt.stats.trades_placed += 1
    nxt.stats.last_trade_at_ms = now_ms

    if dry_run:
        nxt.state = State.DONE
        logger.info(f"{nxt.symbol}: dry-run entry {plan.side.value} @ {plan.entry_reference_price:.5f}")
        return nxt, ["ENTRY_DRYRUN_SIMULATED"]

    nxt.state = State.IN_TRADE
    logger.info(f"{nxt.symbol}: entry placed {plan.side.value} {plan.notional_usd:.2f} USD ref={broker_order_id}")
    return nxt, ["ENTRY_PLACED"]
