"""
Deterministic stand-ins for market data.

StubMarketData serves quotes and candles from dicts, can be switched into
an upstream cool-down, and records every call so tests can assert on the
fetch pattern.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from core.exceptions import MarketDataBlocked, MarketDataUnavailable
from core.interfaces import MarketDataSource
from core.models import Candle, Position, Quote, TradeSource


def make_candles(count: int, price: float = 100.0, spread_pct: float = 2.0, drift: float = 0.0) -> List[Candle]:
    """Flat (or drifting) series whose high-low range is ``spread_pct`` of price."""
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    candles = []
    close = price
    for i in range(count):
        close = close + drift
        half = close * spread_pct / 200.0
        candles.append(
            Candle(
                timestamp=start + timedelta(hours=i),
                open=close,
                high=close + half,
                low=close - half,
                close=close,
                volume=1000.0,
            )
        )
    return candles


def make_volatile_candles(count: int, price: float = 100.0) -> List[Candle]:
    """Wide bars: ATR around 10% of price."""
    return make_candles(count, price=price, spread_pct=10.0)


def make_position(symbol: str = "BTCUSDT", entry_price: float = 100.0, quantity: float = 1.0, **kwargs) -> Position:
    kwargs.setdefault("source", TradeSource.AUTOPILOT)
    return Position(symbol=symbol, entry_price=entry_price, quantity=quantity, **kwargs)


class StubMarketData(MarketDataSource):
    """Dict-backed MarketDataSource."""

    def __init__(self, prices: Optional[Dict[str, float]] = None, candles: Optional[Dict[str, List[Candle]]] = None):
        self.prices: Dict[str, float] = dict(prices or {})
        self.candles: Dict[str, List[Candle]] = dict(candles or {})
        self.unavailable = set()
        self.blocked = False
        self.block_after_quotes: Optional[int] = None
        self.quote_calls: List[str] = []
        self.candle_calls: List[tuple] = []
        self._lock = threading.Lock()

    def set_symbol(self, symbol: str, price: float, candle_count: int = 120, spread_pct: float = 2.0) -> None:
        self.prices[symbol] = price
        self.candles[symbol] = make_candles(candle_count, price=price, spread_pct=spread_pct)

    @property
    def blocked_until(self) -> Optional[datetime]:
        if not self.blocked:
            return None
        return datetime(2030, 1, 1, tzinfo=timezone.utc)

    def is_blocked(self) -> bool:
        return self.blocked

    def get_quote(self, symbol: str) -> Optional[Quote]:
        with self._lock:
            self.quote_calls.append(symbol)
            if self.block_after_quotes is not None and len(self.quote_calls) >= self.block_after_quotes:
                self.blocked = True
        if self.blocked:
            raise MarketDataBlocked(self.blocked_until, source="stub")
        if symbol in self.unavailable:
            raise MarketDataUnavailable(f"{symbol} unavailable", source="stub")
        price = self.prices.get(symbol)
        if price is None:
            return None
        return Quote(symbol=symbol, price=price)

    def get_candles(self, symbol: str, interval: str, count: int) -> List[Candle]:
        with self._lock:
            self.candle_calls.append((symbol, interval, count))
        if self.blocked:
            raise MarketDataBlocked(self.blocked_until, source="stub")
        if symbol in self.unavailable:
            raise MarketDataUnavailable(f"{symbol} unavailable", source="stub")
        return list(self.candles.get(symbol, []))[-count:]

    def load_universe(self) -> List[str]:
        return sorted(self.prices)
