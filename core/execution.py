"""
rotator Core: Execution Engine

Runs one TradeInstruction through sell -> buy with retrying order placement,
settlement waits for fund legs and execution confirmation.

Paths (by which side is the backup fund):
- Cash -> Instrument: fund SELL, wait for on-account date, confirm, instrument BUY, confirm
- Instrument -> Cash: instrument SELL, confirm, fund BUY, wait for on-account date, confirm
- Instrument -> Instrument: SELL, confirm, BUY, confirm

Each engine call touches only its own TradeState; the broker hands out a
fresh session for every remote call.
"""

import math
import time
import threading
from dataclasses import dataclass
from datetime import date, datetime, time as dtime
from typing import Any, Callable, Dict, Optional
import logging

from core.broker_avanza import FULLY_EXECUTED, OrderResponse
from core.exceptions import ExecutionMismatch, PlacementFailed
from core.order_state import (
    LegKind,
    LegState,
    LegStatus,
    TradeState,
    TradeStateMachine,
    TradeStatus,
)
from core.reconciler import TradeInstruction

logger = logging.getLogger(__name__)


@dataclass
class ExecutionConfig:
    """Execution parameters (app.yaml `execution` block)"""
    mode: str = "DRY_RUN"
    max_placement_attempts: int = 10
    retry_backoff_seconds: float = 10.0
    settlement_hour: int = 11
    max_settlement_wait_hours: float = 96.0

    @classmethod
    def from_dict(cls, mode: str, raw: Optional[Dict[str, Any]]) -> "ExecutionConfig":
        raw = raw or {}
        return cls(
            mode=mode.upper(),
            max_placement_attempts=int(raw.get("max_placement_attempts", 10)),
            retry_backoff_seconds=float(raw.get("retry_backoff_seconds", 10.0)),
            settlement_hour=int(raw.get("settlement_hour", 11)),
            max_settlement_wait_hours=float(raw.get("max_settlement_wait_hours", 96.0)),
        )


@dataclass
class TradeOutcome:
    """Terminal result of one trade as reported to the operator"""
    trade: TradeInstruction
    status: str  # "COMPLETED" | "FAILED" | "IN_FLIGHT"
    state: Optional[TradeState] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == "COMPLETED"

    @property
    def sell_order_id(self) -> Optional[str]:
        return self.state.sell.order_id if self.state else None

    @property
    def buy_order_id(self) -> Optional[str]:
        return self.state.buy.order_id if self.state else None

    @property
    def attempts(self) -> Dict[str, int]:
        if not self.state:
            return {"sell": 0, "buy": 0}
        return {"sell": self.state.sell.attempts, "buy": self.state.buy.attempts}


class ExecutionEngine:
    """
    Order execution state machine.

    Responsibilities:
    - Place orders with a bounded, fixed-backoff retry loop
    - Wait for fund settlement before confirming
    - Confirm FULLY_EXECUTED before moving to the next leg
    - Report a terminal outcome per trade without raising

    Safety:
    - DRY_RUN mode never calls the broker
    - Stop event halts further placement retries; placed orders are still tracked
    """

    def __init__(self, broker, account_id: str, backup_asset: str,
                 config: Optional[ExecutionConfig] = None,
                 stop_event: Optional[threading.Event] = None,
                 state_machine: Optional[TradeStateMachine] = None,
                 metrics=None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            broker: AvanzaBroker (or compatible) handing out sessions
            account_id: Internal broker account id
            backup_asset: Fund id treated as cash
            config: Execution parameters
            stop_event: Run-level cancellation flag
            state_machine: Shared trade registry
            metrics: Optional MetricsRecorder
            clock: Local wall clock (settlement deadlines are local time)
        """
        self.broker = broker
        self.account_id = account_id
        self.backup_asset = backup_asset
        self.config = config or ExecutionConfig()
        self.mode = self.config.mode.upper()
        self.stop_event = stop_event or threading.Event()
        self.state_machine = state_machine or TradeStateMachine()
        self.metrics = metrics
        self._clock = clock or datetime.now

        if self.mode not in {"DRY_RUN", "LIVE"}:
            raise ValueError(f"Invalid mode: {self.mode}")
        if self.mode == "LIVE" and getattr(broker, "read_only", False):
            raise ValueError(
                "Cannot execute LIVE orders with read_only broker. "
                "Set broker.read_only=false in config/app.yaml to enable real trading."
            )

        logger.info(
            f"ExecutionEngine ready: mode={self.mode}, attempts={self.config.max_placement_attempts}, "
            f"backoff={self.config.retry_backoff_seconds}s, settlement_hour={self.config.settlement_hour}"
        )

    def leg_kind(self, asset_id: str) -> LegKind:
        return LegKind.FUND if asset_id == self.backup_asset else LegKind.INSTRUMENT

    def execute(self, trade: TradeInstruction, trade_id: str) -> TradeOutcome:
        """
        Execute a trade end to end.

        Never raises for trade-level failures; the outcome carries the error
        and the trade state shows which leg was left mid-flight.
        """
        state = self.state_machine.create_trade(
            trade_id,
            sell=LegState(side="SELL", asset_id=trade.sell_asset,
                          kind=self.leg_kind(trade.sell_asset), value=trade.sell_value),
            buy=LegState(side="BUY", asset_id=trade.buy_asset,
                         kind=self.leg_kind(trade.buy_asset), value=trade.buy_value),
        )
        self.state_machine.transition(state, TradeStatus.SELL_EXECUTING)

        try:
            if self.mode == "DRY_RUN":
                self._execute_dry_run(trade, state)
            elif state.sell.kind == LegKind.FUND:
                self._fund_to_instrument(trade, state)
            elif state.buy.kind == LegKind.FUND:
                self._instrument_to_fund(trade, state)
            else:
                self._instrument_to_instrument(trade, state)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            self._fail(state, error)
            stuck = state.stuck_leg()
            logger.error(
                f"Trade {trade_id} FAILED: {error}" + (f" ({stuck})" if stuck else ""),
                exc_info=not isinstance(e, (PlacementFailed, ExecutionMismatch)),
            )
            return TradeOutcome(trade=trade, status="FAILED", state=state, error=error)

        self.state_machine.transition(state, TradeStatus.COMPLETED)
        logger.info(
            f"✅ Trade {trade_id} completed: sold {trade.sell_asset} (order {state.sell.order_id}), "
            f"bought {trade.buy_asset} (order {state.buy.order_id})"
        )
        return TradeOutcome(trade=trade, status="COMPLETED", state=state)

    # ===== Paths =====

    def _fund_to_instrument(self, trade: TradeInstruction, state: TradeState) -> None:
        resp = self._place_leg(state, state.sell, volume=trade.volume)
        self._await_settlement(state, state.sell, resp.settlement_date)
        self._confirm(state, state.sell)

        self.state_machine.transition(state, TradeStatus.BUY_EXECUTING)
        self._place_leg(state, state.buy, volume=0)
        self._confirm(state, state.buy)

    def _instrument_to_fund(self, trade: TradeInstruction, state: TradeState) -> None:
        self._place_leg(state, state.sell, volume=trade.volume)
        self._confirm(state, state.sell)

        self.state_machine.transition(state, TradeStatus.BUY_EXECUTING)
        resp = self._place_leg(state, state.buy, volume=0)
        self._await_settlement(state, state.buy, resp.settlement_date)
        self._confirm(state, state.buy)

    def _instrument_to_instrument(self, trade: TradeInstruction, state: TradeState) -> None:
        self._place_leg(state, state.sell, volume=trade.volume)
        self._confirm(state, state.sell)

        self.state_machine.transition(state, TradeStatus.BUY_EXECUTING)
        self._place_leg(state, state.buy, volume=0)
        self._confirm(state, state.buy)

    def _execute_dry_run(self, trade: TradeInstruction, state: TradeState) -> None:
        for leg in (state.sell, state.buy):
            if leg is state.buy:
                self.state_machine.transition(state, TradeStatus.BUY_EXECUTING)
            logger.info(
                f"DRY_RUN: Would {leg.side} {leg.kind.value} {leg.asset_id} "
                f"for {leg.value:.2f}" + (f" (volume {trade.volume:g})" if leg is state.sell else "")
            )
            self.state_machine.transition_leg(state, leg, LegStatus.PLACED, order_id=f"dry_run_{state.trade_id}_{leg.side.lower()}")
            self.state_machine.transition_leg(state, leg, LegStatus.CONFIRMING)
            self.state_machine.transition_leg(state, leg, LegStatus.EXECUTED)

    # ===== Legs =====

    def order_volume(self, leg: LegState, volume: float, price: float) -> int:
        """
        Units to send for a leg.

        Fund orders are always sized by value; instrument orders use the
        explicit volume unless it is 0.
        """
        if leg.kind == LegKind.FUND or volume == 0:
            if price <= 0:
                raise PlacementFailed(leg.asset_id, 0, f"invalid last price {price}")
            return int(math.floor(leg.value / price))
        return int(volume)

    def _place_leg(self, state: TradeState, leg: LegState, volume: float) -> OrderResponse:
        resp = self.place_with_retries(leg, volume)
        self.state_machine.transition_leg(state, leg, LegStatus.PLACED, order_id=resp.order_id)
        if resp.settlement_date:
            leg.settlement_date = resp.settlement_date.isoformat()
        return resp

    def place_with_retries(self, leg: LegState, volume: float) -> OrderResponse:
        """
        Place an order, retrying non-SUCCESS responses.

        The price is looked up once before the loop and reused for every
        attempt, so a long retry sequence trades at a possibly stale price.

        Raises:
            PlacementFailed: When every attempt failed or the run was stopped
        """
        with self.broker.session() as session:
            price = session.get_last_price(leg.asset_id)

        units = self.order_volume(leg, volume, price)
        if units <= 0:
            raise PlacementFailed(leg.asset_id, 0, f"value {leg.value:.2f} buys less than one unit at {price}")

        max_attempts = self.config.max_placement_attempts
        last_reason: Optional[str] = None

        for attempt in range(1, max_attempts + 1):
            leg.attempts = attempt
            resp: Optional[OrderResponse] = None
            try:
                with self.broker.session() as session:
                    if leg.kind == LegKind.FUND:
                        resp = session.place_fund_order(self.account_id, leg.asset_id, leg.side, price, units)
                    else:
                        resp = session.place_instrument_order(self.account_id, leg.asset_id, leg.side, units, price)
            except Exception as e:
                last_reason = str(e)
                logger.warning(
                    f"{leg.side} {leg.asset_id} placement error on attempt {attempt}/{max_attempts}: {e}"
                )

            if self.metrics:
                self.metrics.record_placement_attempt(leg.kind.value, bool(resp and resp.placed))

            if resp is not None:
                if resp.placed:
                    logger.info(
                        f"Placed {leg.side} {units} x {leg.asset_id} @ {price} "
                        f"(order {resp.order_id}, attempt {attempt})"
                    )
                    return resp
                last_reason = f"status={resp.status} {resp.message}".strip()
                logger.warning(
                    f"{leg.side} {leg.asset_id} not placed on attempt {attempt}/{max_attempts}: {last_reason}"
                )

            if attempt < max_attempts:
                # Event.wait returns True once a stop was requested
                if self.stop_event.wait(self.config.retry_backoff_seconds):
                    raise PlacementFailed(leg.asset_id, attempt, "run cancelled before retry")

        raise PlacementFailed(leg.asset_id, max_attempts, last_reason)

    def settlement_deadline(self, settlement_date: date) -> datetime:
        """Local time at which a fund order is assumed settled."""
        return datetime.combine(settlement_date, dtime(hour=self.config.settlement_hour))

    def _await_settlement(self, state: TradeState, leg: LegState, settlement_date: Optional[date]) -> None:
        if settlement_date is None:
            raise ExecutionMismatch(leg.asset_id, leg.order_id, "NO_SETTLEMENT_DATE")

        self.state_machine.transition_leg(state, leg, LegStatus.AWAITING_SETTLEMENT)
        deadline = self.settlement_deadline(settlement_date)
        wait_seconds = (deadline - self._clock()).total_seconds()

        if wait_seconds > self.config.max_settlement_wait_hours * 3600:
            raise ExecutionMismatch(leg.asset_id, leg.order_id, f"SETTLEMENT_TOO_FAR ({deadline.isoformat()})")

        if wait_seconds > 0:
            logger.info(
                f"Trade {state.trade_id}: waiting {wait_seconds / 3600:.1f}h for {leg.asset_id} "
                f"to settle ({deadline.isoformat()})"
            )
            # Placed orders are tracked to completion even when the run is stopping
            time.sleep(wait_seconds)

    def _confirm(self, state: TradeState, leg: LegState) -> None:
        self.state_machine.transition_leg(state, leg, LegStatus.CONFIRMING)
        try:
            with self.broker.session() as session:
                status = session.get_order_status(self.account_id, leg.order_id)
        except Exception as e:
            raise ExecutionMismatch(leg.asset_id, leg.order_id, f"LOOKUP_FAILED ({e})") from e

        if status != FULLY_EXECUTED:
            raise ExecutionMismatch(leg.asset_id, leg.order_id, status)

        self.state_machine.transition_leg(state, leg, LegStatus.EXECUTED)
        logger.info(f"Trade {state.trade_id}: {leg.side} {leg.asset_id} fully executed (order {leg.order_id})")

    def _fail(self, state: TradeState, error: str) -> None:
        leg = state.sell if state.sell.status != LegStatus.EXECUTED else state.buy
        if not leg.is_terminal():
            self.state_machine.transition_leg(state, leg, LegStatus.FAILED, error=error)
        self.state_machine.transition(state, TradeStatus.FAILED, error=error)
