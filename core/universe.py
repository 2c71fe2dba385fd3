"""
rotator Core: Universe

Loads the asset universe and strategy settings from strategy.yaml and answers
lookups used by the ranker, reconciler and instrument selector.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional
import logging

import yaml

from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class LookbackPeriod(Enum):
    """Momentum lookback windows supported by the index quote endpoint"""
    ONE_WEEK = "ONE_WEEK"
    ONE_MONTH = "ONE_MONTH"
    THREE_MONTHS = "THREE_MONTHS"
    ONE_YEAR = "ONE_YEAR"


class HoldPeriodType(Enum):
    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"


@dataclass(frozen=True)
class Asset:
    """Underlying asset in the rotation universe"""
    name: str
    asset_id: str
    target_leverage: int
    # When set, instrument search filters by name instead of underlying id
    name_query: Optional[str] = None


@dataclass(frozen=True)
class StrategySettings:
    agg: int
    lookback_period: LookbackPeriod
    sma_filter_length: int
    backup_asset: str
    hold_period: int = 1
    hold_period_type: HoldPeriodType = HoldPeriodType.MONTH


class Universe:
    """
    Rotation universe plus the settings that drive one rebalance.

    Responsibilities:
    - Build immutable Asset/StrategySettings from config
    - Reject universes that cannot fill N target slots
    - Look up assets by id (target leverage, search strategy)
    """

    def __init__(self, settings: StrategySettings, assets: List[Asset]):
        self.settings = settings
        self.assets = list(assets)
        self._by_id: Dict[str, Asset] = {}
        for asset in self.assets:
            if asset.asset_id in self._by_id:
                raise ConfigurationError(f"Duplicate asset id in universe: {asset.asset_id}")
            self._by_id[asset.asset_id] = asset

        if not settings.backup_asset:
            raise ConfigurationError("backup_asset must be set")
        if settings.backup_asset in self._by_id:
            raise ConfigurationError(
                f"backup_asset {settings.backup_asset} must not be part of the ranked universe"
            )

        logger.info(
            f"Loaded universe: {len(self.assets)} assets, AGG={settings.agg}, "
            f"lookback={settings.lookback_period.value}, SMA={settings.sma_filter_length}d, "
            f"backup={settings.backup_asset}"
        )

    @classmethod
    def from_config(cls, config: dict) -> "Universe":
        """Build from a parsed strategy.yaml payload."""
        raw_settings = config.get("settings") or {}
        try:
            settings = StrategySettings(
                agg=int(raw_settings["agg"]),
                lookback_period=LookbackPeriod(str(raw_settings["lookback_period"]).upper()),
                sma_filter_length=int(raw_settings["sma_filter_length"]),
                backup_asset=str(raw_settings["backup_asset"]),
                hold_period=int(raw_settings.get("hold_period", 1)),
                hold_period_type=HoldPeriodType(str(raw_settings.get("hold_period_type", "MONTH")).upper()),
            )
        except KeyError as e:
            raise ConfigurationError(f"Missing strategy setting: {e.args[0]}") from e
        except ValueError as e:
            raise ConfigurationError(f"Invalid strategy setting: {e}") from e

        assets = []
        for raw in config.get("assets") or []:
            search = raw.get("search") or {}
            assets.append(
                Asset(
                    name=str(raw.get("name", raw["asset_id"])),
                    asset_id=str(raw["asset_id"]),
                    target_leverage=int(raw["target_leverage"]),
                    name_query=search.get("name_query"),
                )
            )
        return cls(settings, assets)

    @classmethod
    def from_config_path(cls, config_path: str) -> "Universe":
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with open(path) as f:
            return cls.from_config(yaml.safe_load(f) or {})

    @property
    def backup_asset(self) -> str:
        return self.settings.backup_asset

    def is_backup(self, instrument_id: str) -> bool:
        return instrument_id == self.settings.backup_asset

    def get_asset(self, asset_id: str) -> Optional[Asset]:
        return self._by_id.get(asset_id)

    def require_asset(self, asset_id: str) -> Asset:
        asset = self._by_id.get(asset_id)
        if asset is None:
            raise ConfigurationError(f"Asset {asset_id} is not part of the universe")
        return asset
