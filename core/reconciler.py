"""
rotator Core: Trade Reconciler

Diffs normalized positions against the target holding list and emits the
minimal ordered list of sell -> buy swaps. Holdings that are already targeted
are left alone.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging

from core.exceptions import NormalizationError
from core.instrument_selector import InstrumentSelector
from core.positions import Position, normalize_positions
from core.universe import Universe

logger = logging.getLogger(__name__)

DEFAULT_CASH_BUFFER = 0.95


@dataclass
class TradeInstruction:
    """One complete sell-then-buy swap"""
    sell_asset: str        # instrument id being sold
    buy_asset: str         # instrument id being bought
    sell_value: float      # value moved out of the sold position
    volume: float          # units sold
    extra_buy_cash: float = 0.0

    def __post_init__(self):
        if self.sell_asset == self.buy_asset:
            raise ValueError(f"Trade would sell and buy the same instrument {self.sell_asset}")

    @property
    def buy_value(self) -> float:
        return self.sell_value + self.extra_buy_cash


def diff_holdings(positions: List[Position], upcoming: List[str]) -> Tuple[List[Position], List[str]]:
    """
    Split into (sells, buys), both in encounter order.

    Each held position consumes at most one matching target occurrence, so
    duplicate backup targets pair with distinct backup slots. Buys are the
    target occurrences left unconsumed.
    """
    remaining: List[Optional[str]] = list(upcoming)
    sells: List[Position] = []

    for pos in positions:
        try:
            idx = remaining.index(pos.underlying_id)
        except ValueError:
            sells.append(pos)
            continue
        remaining[idx] = None

    buys = [target for target in remaining if target is not None]
    return sells, buys


class TradeReconciler:
    """
    Builds TradeInstructions for one rebalance.

    Responsibilities:
    - Normalize positions to N slots
    - Pair sells with buys by list index
    - Resolve non-backup buys to a concrete instrument
    """

    def __init__(self, universe: Universe, selector: InstrumentSelector):
        self.universe = universe
        self.selector = selector

    def find_trades(self, current_positions: List[Position], upcoming: List[str]) -> List[TradeInstruction]:
        settings = self.universe.settings
        normalized = normalize_positions(current_positions, settings.agg, settings.backup_asset)

        if len(upcoming) != len(normalized):
            raise NormalizationError(
                f"{len(normalized)} normalized positions vs {len(upcoming)} target holdings"
            )

        sells, buys = diff_holdings(normalized, upcoming)
        logger.info(f"Sells: {[p.instrument_id for p in sells]}")
        logger.info(f"Buys: {buys}")

        if len(sells) != len(buys):
            raise NormalizationError(f"Unbalanced diff: {len(sells)} sells vs {len(buys)} buys")

        trades = []
        for sell, buy_underlying in zip(sells, buys):
            if self.universe.is_backup(buy_underlying):
                buy_asset = buy_underlying
            else:
                asset = self.universe.require_asset(buy_underlying)
                buy_asset = self.selector.select(asset, asset.target_leverage)

            trades.append(
                TradeInstruction(
                    sell_asset=sell.instrument_id,
                    buy_asset=buy_asset,
                    sell_value=sell.value,
                    volume=sell.volume,
                )
            )
        return trades


def allocate_cash(trades: List[TradeInstruction], total_cash: float,
                  buffer: float = DEFAULT_CASH_BUFFER) -> List[TradeInstruction]:
    """Spread free cash equally over all trades, withholding (1 - buffer) of each share."""
    if not trades or total_cash <= 0:
        return trades
    share = (total_cash / len(trades)) * buffer
    for trade in trades:
        trade.extra_buy_cash += share
    logger.info(f"Allocated {share:.2f} extra buy cash to each of {len(trades)} trade(s)")
    return trades
