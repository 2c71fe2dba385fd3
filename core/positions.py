"""
Position Management: Translation and Normalization

Turns raw broker holdings into Positions keyed by the underlying they track and
reshapes them so that exactly N slots exist before reconciliation. The backup
(cash-like fund) position absorbs any shortfall by being split into equal-value
slots.
"""
import logging
from dataclasses import dataclass, replace
from typing import List

from core.broker_avanza import RawPosition
from core.exceptions import DataUnavailable, NormalizationError

logger = logging.getLogger(__name__)


@dataclass
class Position:
    """Held instrument and the underlying it tracks"""
    instrument_id: str   # orderbook id
    underlying_id: str   # equals instrument_id for the backup asset
    value: float
    volume: float

    def __post_init__(self):
        if not self.underlying_id:
            raise ValueError(f"Position {self.instrument_id} has no underlying id")


def translate_positions(raw_positions: List[RawPosition], backup_asset: str, market) -> List[Position]:
    """
    Build Positions from raw broker holdings.

    Args:
        raw_positions: Asset positions reported for the account
        backup_asset: Backup fund id (tracks itself)
        market: Broker session used to resolve warrant underlyings

    Raises:
        DataUnavailable: If an instrument's underlying cannot be resolved
    """
    positions = []
    for raw in raw_positions:
        if raw.instrument_id == backup_asset:
            underlying = backup_asset
        else:
            try:
                underlying = market.get_underlying_for(raw.instrument_id)
            except Exception as e:
                raise DataUnavailable(f"underlying:{raw.instrument_id}", e) from e
            if not underlying:
                raise DataUnavailable(f"underlying:{raw.instrument_id}")

        positions.append(
            Position(
                instrument_id=raw.instrument_id,
                underlying_id=underlying,
                value=raw.value,
                volume=raw.volume,
            )
        )
    logger.info(
        "Current positions: "
        + ", ".join(f"{p.instrument_id}->{p.underlying_id} ({p.value:.2f})" for p in positions)
    )
    return positions


def normalize_positions(positions: List[Position], target_count: int, backup_asset: str) -> List[Position]:
    """
    Return exactly `target_count` positions.

    A shortfall of `missing` slots is covered by splitting the backup position
    into `missing + 1` equal-value slots. Volume is copied unchanged onto every
    backup slot since fund orders are sized by value. Input is not mutated.

    Raises:
        NormalizationError: If the backup asset is not held when slots are
            missing, or more than `target_count` positions are held
    """
    count = len(positions)
    if count == target_count:
        return list(positions)

    if count > target_count:
        raise NormalizationError(
            f"Holding {count} positions but only {target_count} target slots exist"
        )

    backup_index = -1
    for idx, pos in enumerate(positions):
        if pos.instrument_id == backup_asset:
            backup_index = idx

    if backup_index == -1:
        raise NormalizationError(
            f"Couldn't normalize positions, backup asset {backup_asset} not found in positions"
        )

    missing = target_count - count
    backup = positions[backup_index]
    split = replace(backup, value=backup.value / (missing + 1))

    normalized = list(positions)
    normalized[backup_index] = split
    normalized.extend(replace(split) for _ in range(missing))

    logger.info(
        f"Normalized {count} -> {target_count} positions: split {backup_asset} "
        f"into {missing + 1} slots of {split.value:.2f}"
    )
    return normalized
