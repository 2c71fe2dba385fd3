"""
rotator Core: Trade State Machine

Explicit lifecycle for each sell -> buy swap and for each of its two legs.

Trade: PENDING → SELL_EXECUTING → BUY_EXECUTING → (COMPLETED | FAILED)
Leg:   PLACING → PLACED → [AWAITING_SETTLEMENT] → CONFIRMING → (EXECUTED | FAILED)

A FAILED trade is never resumed; the next rebalance derives fresh targets.
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import threading
import logging

logger = logging.getLogger(__name__)


class TradeStatus(Enum):
    PENDING = "pending"
    SELL_EXECUTING = "sell_executing"
    BUY_EXECUTING = "buy_executing"
    COMPLETED = "completed"
    FAILED = "failed"


class LegStatus(Enum):
    PLACING = "placing"
    PLACED = "placed"
    AWAITING_SETTLEMENT = "awaiting_settlement"
    CONFIRMING = "confirming"
    EXECUTED = "executed"
    FAILED = "failed"


class LegKind(Enum):
    """Instrument orders execute immediately; fund orders settle on a later date"""
    INSTRUMENT = "instrument"
    FUND = "fund"


@dataclass
class LegState:
    """One order leg (sell or buy) of a trade"""
    side: str  # "SELL" | "BUY"
    asset_id: str
    kind: LegKind
    value: float
    status: LegStatus = LegStatus.PLACING
    order_id: Optional[str] = None
    attempts: int = 0
    settlement_date: Optional[str] = None
    error: Optional[str] = None

    def is_terminal(self) -> bool:
        return self.status in {LegStatus.EXECUTED, LegStatus.FAILED}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "side": self.side,
            "asset_id": self.asset_id,
            "kind": self.kind.value,
            "value": round(self.value, 2),
            "status": self.status.value,
            "order_id": self.order_id,
            "attempts": self.attempts,
            "settlement_date": self.settlement_date,
            "error": self.error,
        }


@dataclass
class TradeState:
    """Lifecycle of a single trade instruction"""
    trade_id: str
    sell: LegState
    buy: LegState
    status: TradeStatus = TradeStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def is_terminal(self) -> bool:
        return self.status in {TradeStatus.COMPLETED, TradeStatus.FAILED}

    def stuck_leg(self) -> Optional[str]:
        """Describe what was left mid-flight for a failed trade."""
        if self.status != TradeStatus.FAILED:
            return None
        if self.sell.status == LegStatus.EXECUTED:
            return f"sold {self.sell.asset_id} but buy of {self.buy.asset_id} did not complete"
        if self.sell.order_id:
            return f"sell order {self.sell.order_id} for {self.sell.asset_id} not confirmed"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "status": self.status.value,
            "sell": self.sell.to_dict(),
            "buy": self.buy.to_dict(),
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


class TradeStateMachine:
    """
    Trade/leg state machine with transition validation.

    Each trade runs on its own worker thread; the registry lock only guards
    the shared dict, never a trade's own state.
    """

    TRADE_TRANSITIONS = {
        TradeStatus.PENDING: {TradeStatus.SELL_EXECUTING, TradeStatus.FAILED},
        TradeStatus.SELL_EXECUTING: {TradeStatus.BUY_EXECUTING, TradeStatus.FAILED},
        TradeStatus.BUY_EXECUTING: {TradeStatus.COMPLETED, TradeStatus.FAILED},
        TradeStatus.COMPLETED: set(),
        TradeStatus.FAILED: set(),
    }

    LEG_TRANSITIONS = {
        LegStatus.PLACING: {LegStatus.PLACED, LegStatus.FAILED},
        LegStatus.PLACED: {LegStatus.AWAITING_SETTLEMENT, LegStatus.CONFIRMING, LegStatus.FAILED},
        LegStatus.AWAITING_SETTLEMENT: {LegStatus.CONFIRMING, LegStatus.FAILED},
        LegStatus.CONFIRMING: {LegStatus.EXECUTED, LegStatus.FAILED},
        LegStatus.EXECUTED: set(),
        LegStatus.FAILED: set(),
    }

    def __init__(self):
        self.trades: Dict[str, TradeState] = {}
        self._lock = threading.Lock()

    def create_trade(self, trade_id: str, sell: LegState, buy: LegState) -> TradeState:
        with self._lock:
            if trade_id in self.trades:
                logger.warning(f"Trade {trade_id} already exists")
                return self.trades[trade_id]
            trade = TradeState(trade_id=trade_id, sell=sell, buy=buy)
            self.trades[trade_id] = trade
        logger.info(
            f"Created trade {trade_id}: SELL {sell.asset_id} ({sell.kind.value}) -> "
            f"BUY {buy.asset_id} ({buy.kind.value})"
        )
        return trade

    def transition(self, trade: TradeState, new_status: TradeStatus, error: Optional[str] = None) -> bool:
        """
        Move a trade to `new_status`.

        Returns:
            True if the transition was valid and applied
        """
        current = trade.status
        if new_status not in self.TRADE_TRANSITIONS.get(current, set()):
            logger.warning(f"Invalid transition for trade {trade.trade_id}: {current.value} → {new_status.value}")
            return False

        trade.status = new_status
        if trade.is_terminal():
            trade.completed_at = datetime.now(timezone.utc)
        if error:
            trade.error = error
        logger.info(f"Trade {trade.trade_id} transitioned: {current.value} → {new_status.value}")
        return True

    def transition_leg(self, trade: TradeState, leg: LegState, new_status: LegStatus,
                       order_id: Optional[str] = None, error: Optional[str] = None) -> bool:
        current = leg.status
        if new_status not in self.LEG_TRANSITIONS.get(current, set()):
            logger.warning(
                f"Invalid {leg.side} leg transition for trade {trade.trade_id}: "
                f"{current.value} → {new_status.value}"
            )
            return False

        leg.status = new_status
        if order_id:
            leg.order_id = order_id
        if error:
            leg.error = error
        logger.debug(f"Trade {trade.trade_id} {leg.side} leg: {current.value} → {new_status.value}")
        return True

    def get_trade(self, trade_id: str) -> Optional[TradeState]:
        return self.trades.get(trade_id)

    def get_summary(self) -> Dict[str, Any]:
        status_counts = {status.value: 0 for status in TradeStatus}
        for trade in self.trades.values():
            status_counts[trade.status.value] += 1
        return {
            "total_trades": len(self.trades),
            "status_breakdown": status_counts,
        }
