"""
Rebalance Cycle Pipeline - Single-threaded planning phase

Everything that must see one consistent picture before any order is placed:
1. Resolve account and read holdings
2. Rank universe into target holdings
3. Translate + normalize positions
4. Reconcile into trades and allocate free cash

Execution of the resulting trades is delegated to the caller.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
import logging

from core.exceptions import DataUnavailable, RotatorError
from core.instrument_selector import InstrumentSelector
from core.positions import Position, translate_positions
from core.reconciler import DEFAULT_CASH_BUFFER, TradeInstruction, TradeReconciler, allocate_cash
from core.universe import Universe
from strategy.momentum import MomentumRanker

logger = logging.getLogger(__name__)


@dataclass
class RebalancePlan:
    """Result of the planning phase"""
    success: bool
    timestamp: datetime
    account_id: Optional[str] = None
    upcoming_holdings: List[str] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)
    trades: List[TradeInstruction] = field(default_factory=list)
    total_cash: float = 0.0
    no_trade_reason: Optional[str] = None
    error: Optional[str] = None


class RebalancePipeline:
    """
    Planning pipeline shared by live runs and dry runs.

    Any failure here aborts the whole run: holding stale positions is
    preferred to acting on an incomplete target set.
    """

    def __init__(self, universe: Universe, broker, account_url_id: str,
                 cash_buffer: float = DEFAULT_CASH_BUFFER,
                 instrument_sub_type: str = "mini_future", search_limit: int = 20):
        """
        Args:
            universe: Asset universe and strategy settings
            broker: Broker handing out authenticated sessions
            account_url_id: Account URL parameter id to rebalance
            cash_buffer: Fraction of each free-cash share added to buys
            instrument_sub_type: Leveraged instrument type to search
            search_limit: Max candidates per instrument search
        """
        self.universe = universe
        self.broker = broker
        self.account_url_id = account_url_id
        self.cash_buffer = cash_buffer
        self.instrument_sub_type = instrument_sub_type
        self.search_limit = search_limit

    def plan(self, current_time: Optional[datetime] = None) -> RebalancePlan:
        current_time = current_time or datetime.now()
        try:
            with self.broker.session() as session:
                logger.debug("Pipeline Step 1: Reading account")
                try:
                    account_id = session.resolve_account_id(self.account_url_id)
                    account = session.get_account_positions(self.account_url_id)
                except DataUnavailable:
                    raise
                except Exception as e:
                    raise DataUnavailable(f"account:{self.account_url_id}", e) from e

                logger.debug("Pipeline Step 2: Ranking universe")
                upcoming = MomentumRanker(self.universe, session).find_upcoming_holdings()

                logger.debug("Pipeline Step 3: Translating positions")
                positions = translate_positions(
                    account.asset_positions, self.universe.backup_asset, session
                )

                logger.debug("Pipeline Step 4: Reconciling trades")
                reconciler = TradeReconciler(
                    self.universe, InstrumentSelector(session, self.instrument_sub_type, self.search_limit)
                )
                trades = reconciler.find_trades(positions, upcoming)

        except RotatorError as e:
            logger.error(f"Rebalance planning aborted: {e}")
            return RebalancePlan(
                success=False,
                timestamp=current_time,
                no_trade_reason=f"planning_error_{e.__class__.__name__}",
                error=str(e),
            )
        except Exception as e:
            logger.error(f"Rebalance planning failed: {e}", exc_info=True)
            return RebalancePlan(
                success=False,
                timestamp=current_time,
                no_trade_reason="pipeline_error",
                error=str(e),
            )

        allocate_cash(trades, account.total_cash, self.cash_buffer)

        if not trades:
            logger.info("Holdings already match targets; nothing to trade")

        for trade in trades:
            logger.info(
                f"Planned trade: SELL {trade.sell_asset} ({trade.sell_value:.2f}, {trade.volume:g} units) "
                f"-> BUY {trade.buy_asset} ({trade.buy_value:.2f})"
            )

        return RebalancePlan(
            success=True,
            timestamp=current_time,
            account_id=account_id,
            upcoming_holdings=upcoming,
            positions=positions,
            trades=trades,
            total_cash=account.total_cash,
            no_trade_reason=None if trades else "already_on_target",
        )
