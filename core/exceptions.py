"""Shared exception types for rebalancing and execution logic."""

from typing import Optional


class RotatorError(RuntimeError):
    """Base class for every failure raised by the rebalancing engine."""


class DataUnavailable(RotatorError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        message = source if original is None else f"{source}: {original}"
        super().__init__(message)
        self.source = source
        self.original = original


class ConfigurationError(RotatorError):
    """Raised when strategy or application settings cannot produce a valid run."""


class NormalizationError(RotatorError):
    """Raised when current positions cannot be shaped into N comparable slots."""


class NoSuitableInstrument(RotatorError):
    """Raised when the instrument search returns no candidates for an underlying."""

    def __init__(self, underlying_id: str):
        super().__init__(f"No leveraged instrument found for underlying {underlying_id}")
        self.underlying_id = underlying_id


class PlacementFailed(RotatorError):
    """Raised when an order could not be placed within the allowed attempts."""

    def __init__(self, asset_id: str, attempts: int, reason: Optional[str] = None):
        message = f"Could not place order for {asset_id} after {attempts} attempt(s)"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.asset_id = asset_id
        self.attempts = attempts
        self.reason = reason


class ExecutionMismatch(RotatorError):
    """Raised when a placed order did not reach FULLY_EXECUTED."""

    def __init__(self, asset_id: str, order_id: Optional[str], status: Optional[str]):
        super().__init__(
            f"Order {order_id} for {asset_id} ended in status {status or 'UNKNOWN'}"
        )
        self.asset_id = asset_id
        self.order_id = order_id
        self.status = status
