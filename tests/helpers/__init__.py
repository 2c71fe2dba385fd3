"""Test helpers for the rotator test suite"""

from tests.helpers.broker_stubs import (
    FakeBroker,
    FakeSession,
    make_candles,
    trending_closes,
)

__all__ = [
    "FakeBroker",
    "FakeSession",
    "make_candles",
    "trending_closes",
]
