"""Test helpers for the scanpilot test suite"""

from tests.helpers.stubs import (
    StubMarketData,
    make_candles,
    make_position,
    make_volatile_candles,
)

__all__ = [
    "StubMarketData",
    "make_candles",
    "make_position",
    "make_volatile_candles",
]
