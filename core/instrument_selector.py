"""
rotator Core: Instrument Selector

Resolves an underlying to a concrete leveraged tracker (mini future) whose
leverage is closest to the asset's target leverage.
"""

from typing import List, Optional
import logging

from core.broker_avanza import InstrumentCandidate, InstrumentSearch
from core.exceptions import DataUnavailable, NoSuitableInstrument
from core.universe import Asset

logger = logging.getLogger(__name__)


def pick_instrument(candidates: List[InstrumentCandidate], target_leverage: int) -> InstrumentCandidate:
    """
    Choose among search results.

    Rule (two stages, applied literally):
    1. Stable-sort by |leverage - target|
    2. First candidate with traded value > 0 and leverage < target + 1
    3. Otherwise the closest candidate regardless of volume or ceiling

    Raises:
        NoSuitableInstrument: If there are no candidates
    """
    if not candidates:
        raise NoSuitableInstrument("")

    by_distance = sorted(candidates, key=lambda c: abs(c.leverage - float(target_leverage)))
    ceiling = float(target_leverage) + 1.0

    for candidate in by_distance:
        if candidate.traded_value > 0 and candidate.leverage < ceiling:
            return candidate

    fallback = by_distance[0]
    logger.warning(
        f"No traded candidate under leverage {ceiling:.1f}; falling back to "
        f"{fallback.instrument_id} (leverage={fallback.leverage:.2f}, traded={fallback.traded_value:.0f})"
    )
    return fallback


class InstrumentSelector:
    """Searches long mini futures per underlying and picks the best match."""

    def __init__(self, market, sub_type: str = "mini_future", limit: int = 20):
        self.market = market
        self.sub_type = sub_type
        self.limit = limit

    def build_search(self, asset: Asset) -> InstrumentSearch:
        # Some underlyings (broad indices) are only findable by name
        if asset.name_query:
            return InstrumentSearch(name_query=asset.name_query, sub_type=self.sub_type, limit=self.limit)
        return InstrumentSearch(underlying_id=asset.asset_id, sub_type=self.sub_type, limit=self.limit)

    def select(self, asset: Asset, target_leverage: Optional[int] = None) -> str:
        """Return the instrument id to buy for `asset`."""
        target = asset.target_leverage if target_leverage is None else target_leverage
        search = self.build_search(asset)
        try:
            candidates = self.market.get_leveraged_instruments(search)
        except Exception as e:
            raise DataUnavailable(f"instrument_search:{asset.asset_id}", e) from e

        if not candidates:
            raise NoSuitableInstrument(asset.asset_id)

        chosen = pick_instrument(candidates, target)
        logger.info(
            f"Selected {chosen.instrument_id} {chosen.name!r} for {asset.name} "
            f"(leverage={chosen.leverage:.2f}, target={target}x, traded={chosen.traded_value:.0f})"
        )
        return chosen.instrument_id
