"""
rotator Strategy: Momentum Ranker

Ranks the universe by lookback momentum and applies an SMA trend filter to pick
the N underlyings to hold next period. Assets failing the filter are replaced
by the backup asset.
"""

from dataclasses import dataclass
from typing import List, Sequence
import logging

from core.exceptions import ConfigurationError, DataUnavailable
from core.universe import Asset, Universe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetSignal:
    """Momentum and trend reading for one asset"""
    asset: Asset
    percentage_change: float  # last / compare; > 1 means up over the lookback
    relative_sma: float       # last close / SMA; > 1 means above trend

    @property
    def above_trend(self) -> bool:
        return self.relative_sma > 1.0


def relative_sma(closes: Sequence[float], window: int) -> float:
    """
    Latest close divided by the simple moving average of the last `window` closes.

    Args:
        closes: Daily closes, oldest first
        window: SMA length in days

    Raises:
        ValueError: If the history is shorter than the window or the SMA is not positive
    """
    if window <= 0:
        raise ValueError(f"SMA window must be positive, got {window}")
    if len(closes) < window:
        raise ValueError(f"need {window} closes, have {len(closes)}")
    recent = closes[-window:]
    sma = sum(recent) / float(window)
    if sma <= 0:
        raise ValueError(f"non-positive SMA {sma}")
    return closes[-1] / sma


class MomentumRanker:
    """
    Signal ranker.

    Flow:
    1. Fetch momentum (index quote) and trend (price history) per asset
    2. Stable sort by momentum, strongest first
    3. Take top N; swap in the backup asset for any below its SMA
    """

    def __init__(self, universe: Universe, market):
        """
        Args:
            universe: Asset universe and strategy settings
            market: Authenticated broker session providing market data
        """
        self.universe = universe
        self.market = market

    def compute_signal(self, asset: Asset) -> AssetSignal:
        settings = self.universe.settings
        try:
            quote = self.market.get_index_signal(asset.asset_id, settings.lookback_period)
            if quote.compare_price <= 0 or quote.last_price <= 0:
                raise ValueError(
                    f"non-positive prices last={quote.last_price} compare={quote.compare_price}"
                )
            change = quote.last_price / quote.compare_price

            candles = self.market.get_price_history(asset.asset_id)
            rel_sma = relative_sma([c.close for c in candles], settings.sma_filter_length)
        except DataUnavailable:
            raise
        except Exception as e:
            raise DataUnavailable(f"signal:{asset.asset_id}", e) from e

        return AssetSignal(asset=asset, percentage_change=change, relative_sma=rel_sma)

    def compute_signals(self) -> List[AssetSignal]:
        signals = []
        for asset in self.universe.assets:
            signal = self.compute_signal(asset)
            logger.info(
                f"Signal {asset.name} ({asset.asset_id}): change={signal.percentage_change:.4f} "
                f"rel_sma={signal.relative_sma:.4f}"
            )
            signals.append(signal)
        return signals

    def select_holdings(self, signals: List[AssetSignal]) -> List[str]:
        """Pick N target underlying ids from already computed signals."""
        settings = self.universe.settings
        agg = settings.agg
        if len(signals) < agg:
            raise ConfigurationError(
                f"Universe has {len(signals)} assets but AGG={agg} holdings are required"
            )

        # sorted() is stable: ties keep universe order
        ranked = sorted(signals, key=lambda s: s.percentage_change, reverse=True)

        holdings = []
        for signal in ranked[:agg]:
            if signal.above_trend:
                holdings.append(signal.asset.asset_id)
            else:
                logger.info(
                    f"{signal.asset.name} below SMA{settings.sma_filter_length} "
                    f"(rel_sma={signal.relative_sma:.4f}); holding {settings.backup_asset} instead"
                )
                holdings.append(settings.backup_asset)
        return holdings

    def find_upcoming_holdings(self) -> List[str]:
        """Return the ordered list of N underlying ids to hold next period."""
        agg = self.universe.settings.agg
        if agg <= 0:
            raise ConfigurationError(f"AGG must be positive, got {agg}")
        if len(self.universe.assets) < agg:
            raise ConfigurationError(
                f"Universe has {len(self.universe.assets)} assets but AGG={agg} holdings are required"
            )
        holdings = self.select_holdings(self.compute_signals())
        logger.info(f"Upcoming holdings: {holdings}")
        return holdings
