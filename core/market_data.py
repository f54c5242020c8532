"""
scanpilot Core: Market Data (Binance public REST)

Quotes, klines and the tradable universe from Binance spot. No
authentication; every call is a public GET.

Upstream throttling is tracked here: HTTP 418 (automated-abuse ban) blocks
every call for 15 minutes, HTTP 429 for the Retry-After period. While
blocked, calls raise MarketDataBlocked without touching the network.
"""

import logging
import random
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests

from core.exceptions import MarketDataBlocked, MarketDataUnavailable
from core.interfaces import MarketDataSource, PriceCallback
from core.models import Candle, Quote, utcnow

logger = logging.getLogger(__name__)

BINANCE_BASE_URLS = (
    "https://api.binance.com/api/v3",
    "https://api1.binance.com/api/v3",
    "https://api2.binance.com/api/v3",
)

BAN_COOLDOWN_SECONDS = 15 * 60
RATE_LIMIT_COOLDOWN_SECONDS = 60

QUOTE_ASSET = "USDT"
MIN_QUOTE_VOLUME = 100_000.0

# Stablecoins, fiat and wrapped assets carry no volatility worth scanning
EXCLUDED_BASE_ASSETS = frozenset({
    "FDUSD", "USDC", "TUSD", "USDE", "DAI", "BUSD", "USDP",
    "TRY", "EUR", "GBP", "JPY", "PAX", "AEUR", "USDT",
    "WBTC", "WETH", "WBNB", "USDS", "PYUSD",
})
LEVERAGED_SUFFIXES = ("UP", "DOWN", "BULL", "BEAR")

FALLBACK_UNIVERSE = [
    "BTCUSDT", "ETHUSDT", "BNBUSDT", "SOLUSDT", "XRPUSDT",
    "ADAUSDT", "DOGEUSDT", "AVAXUSDT", "TRXUSDT", "DOTUSDT",
    "LINKUSDT", "MATICUSDT", "LTCUSDT", "SHIBUSDT", "BCHUSDT",
    "ATOMUSDT", "UNIUSDT", "ARBUSDT", "NEARUSDT", "OPUSDT",
]


def is_tradable_symbol(symbol: str) -> bool:
    """USDT spot pair that is not a stablecoin, fiat or leveraged token."""
    if not symbol or not symbol.endswith(QUOTE_ASSET):
        return False
    base = symbol[: -len(QUOTE_ASSET)]
    if not base or base in EXCLUDED_BASE_ASSETS:
        return False
    return not any(base.endswith(suffix) and len(base) > len(suffix) + 1 for suffix in LEVERAGED_SUFFIXES)


def parse_kline(row: Sequence[Any]) -> Candle:
    """Binance kline row: [open_time, open, high, low, close, volume, ...]"""
    return Candle(
        timestamp=datetime.fromtimestamp(int(row[0]) / 1000.0, tz=timezone.utc),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


class BinanceMarketData(MarketDataSource):
    """
    Binance spot market data with a shared price cache.

    Features:
    - Bulk /ticker/price refresh feeding a quote cache and price subscribers
    - Optional background polling as the streaming feed
    - Short-lived kline cache
    - Upstream cool-down tracking (418 / 429)
    """

    def __init__(
        self,
        base_urls: Sequence[str] = BINANCE_BASE_URLS,
        timeout: float = 10.0,
        quote_ttl_seconds: float = 10.0,
        candle_ttl_seconds: float = 300.0,
        min_quote_volume: float = MIN_QUOTE_VOLUME,
        session: Optional[requests.Session] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.base_urls = list(base_urls) or list(BINANCE_BASE_URLS)
        self.timeout = timeout
        self.quote_ttl_seconds = quote_ttl_seconds
        self.candle_ttl_seconds = candle_ttl_seconds
        self.min_quote_volume = min_quote_volume
        self._session = session or requests.Session()
        self._rng = rng or random.Random()
        self._clock = clock

        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._blocked_until: Optional[datetime] = None
        self._prices: Dict[str, float] = {}
        self._prices_at: Optional[datetime] = None
        self._candle_cache: Dict[Tuple[str, str, int], Tuple[float, List[Candle]]] = {}
        self._listeners: List[PriceCallback] = []

        self._poll_thread: Optional[threading.Thread] = None
        self._poll_stop = threading.Event()

    # ------------------------------------------------------------ blocking

    @property
    def blocked_until(self) -> Optional[datetime]:
        with self._lock:
            return self._blocked_until

    def is_blocked(self) -> bool:
        with self._lock:
            if self._blocked_until is None:
                return False
            if self._clock() >= self._blocked_until:
                logger.info("Binance cool-down expired")
                self._blocked_until = None
                return False
            return True

    def _block(self, seconds: float, why: str) -> None:
        until = self._clock() + timedelta(seconds=seconds)
        with self._lock:
            if self._blocked_until is None or until > self._blocked_until:
                self._blocked_until = until
        logger.error("Binance %s: blocking market data until %s", why, until.isoformat())

    # ------------------------------------------------------------- transport

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if self.is_blocked():
            raise MarketDataBlocked(self.blocked_until, source="binance")

        url = f"{self._rng.choice(self.base_urls)}{path}"
        try:
            response = self._session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise MarketDataUnavailable(f"GET {path} failed: {exc}", source="binance", original=exc) from exc

        if response.status_code == 418:
            self._block(BAN_COOLDOWN_SECONDS, "flagged automated traffic (418)")
            raise MarketDataBlocked(self.blocked_until, source="binance")
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                seconds = float(retry_after) if retry_after else RATE_LIMIT_COOLDOWN_SECONDS
            except ValueError:
                seconds = RATE_LIMIT_COOLDOWN_SECONDS
            self._block(seconds, "rate limit (429)")
            raise MarketDataBlocked(self.blocked_until, source="binance")

        try:
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as exc:
            raise MarketDataUnavailable(
                f"GET {path} returned HTTP {response.status_code}", source="binance", original=exc
            ) from exc
        except ValueError as exc:
            raise MarketDataUnavailable(f"GET {path} returned invalid JSON", source="binance", original=exc) from exc

    # --------------------------------------------------------------- quotes

    def refresh_quotes(self) -> Dict[str, float]:
        """Bulk price refresh; pushes the new prices to subscribers."""
        data = self._get("/ticker/price")
        prices: Dict[str, float] = {}
        for row in data if isinstance(data, list) else []:
            try:
                price = float(row["price"])
            except (KeyError, TypeError, ValueError):
                continue
            if price > 0:
                prices[str(row.get("symbol"))] = price

        with self._lock:
            self._prices.update(prices)
            self._prices_at = self._clock()
            listeners = list(self._listeners)

        for callback in listeners:
            try:
                callback(dict(prices))
            except Exception as exc:
                logger.error("Price subscriber failed: %s", exc)
        logger.debug("Refreshed %d prices", len(prices))
        return prices

    def _prices_stale(self) -> bool:
        with self._lock:
            if self._prices_at is None:
                return True
            age = (self._clock() - self._prices_at).total_seconds()
        return age > self.quote_ttl_seconds

    def get_quote(self, symbol: str) -> Optional[Quote]:
        if self._prices_stale():
            # Scan workers share one bulk refresh
            with self._refresh_lock:
                if self._prices_stale():
                    try:
                        self.refresh_quotes()
                    except MarketDataBlocked:
                        raise
                    except MarketDataUnavailable as exc:
                        logger.warning("Bulk price refresh failed, fetching %s directly: %s", symbol, exc)
                        return self._fetch_single_quote(symbol)

        with self._lock:
            price = self._prices.get(symbol)
            stamp = self._prices_at or self._clock()
        if price is None:
            return None
        return Quote(symbol=symbol, price=price, timestamp=stamp)

    def _fetch_single_quote(self, symbol: str) -> Optional[Quote]:
        try:
            data = self._get("/ticker/price", params={"symbol": symbol})
            price = float(data["price"])
        except MarketDataBlocked:
            raise
        except MarketDataUnavailable as exc:
            logger.debug("No quote for %s: %s", symbol, exc)
            return None
        except (KeyError, TypeError, ValueError):
            return None
        if price <= 0:
            return None
        with self._lock:
            self._prices[symbol] = price
        return Quote(symbol=symbol, price=price, timestamp=self._clock())

    # -------------------------------------------------------------- candles

    def get_candles(self, symbol: str, interval: str, count: int) -> List[Candle]:
        """
        Up to ``count`` klines, oldest first.

        Raises:
            MarketDataBlocked: While upstream cool-down is active
            MarketDataUnavailable: On transport or payload errors
        """
        key = (symbol, interval, count)
        now = time.monotonic()
        with self._lock:
            cached = self._candle_cache.get(key)
        if cached and now - cached[0] < self.candle_ttl_seconds:
            return list(cached[1])

        data = self._get("/klines", params={"symbol": symbol, "interval": interval, "limit": count})
        try:
            candles = [parse_kline(row) for row in data]
        except (TypeError, ValueError, IndexError) as exc:
            raise MarketDataUnavailable(f"malformed klines for {symbol}", source="binance", original=exc) from exc
        candles.sort(key=lambda c: c.timestamp)

        with self._lock:
            self._candle_cache[key] = (now, candles)
            if len(self._candle_cache) > 4096:
                self._purge_candle_cache(now)
        return list(candles)

    def _purge_candle_cache(self, now: float) -> None:
        expired = [k for k, (at, _) in self._candle_cache.items() if now - at >= self.candle_ttl_seconds]
        for k in expired:
            del self._candle_cache[k]

    # ------------------------------------------------------------- universe

    def load_universe(self) -> List[str]:
        """
        USDT spot pairs above the 24h quote-volume floor, most liquid first.

        Falls back to a fixed list of major pairs when the exchange cannot be
        reached.
        """
        try:
            data = self._get("/ticker/24hr")
        except MarketDataUnavailable as exc:
            logger.warning("Universe load failed (%s); using %d fallback pairs", exc, len(FALLBACK_UNIVERSE))
            return list(FALLBACK_UNIVERSE)

        ranked = []
        prices: Dict[str, float] = {}
        for row in data if isinstance(data, list) else []:
            symbol = str(row.get("symbol", ""))
            if not is_tradable_symbol(symbol):
                continue
            try:
                volume = float(row.get("quoteVolume") or 0)
                price = float(row.get("lastPrice") or 0)
            except (TypeError, ValueError):
                continue
            if volume < self.min_quote_volume:
                continue
            ranked.append((volume, symbol))
            if price > 0:
                prices[symbol] = price

        if not ranked:
            logger.warning("Exchange returned no tradable pairs; using fallback universe")
            return list(FALLBACK_UNIVERSE)

        with self._lock:
            self._prices.update(prices)
            self._prices_at = self._clock()

        ranked.sort(reverse=True)
        symbols = [symbol for _, symbol in ranked]
        logger.info("Loaded universe: %d pairs (24h volume >= $%.0f)", len(symbols), self.min_quote_volume)
        return symbols

    # ------------------------------------------------------------ streaming

    def subscribe(self, callback: PriceCallback) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)
            snapshot = dict(self._prices)
        if snapshot:
            try:
                callback(snapshot)
            except Exception as exc:
                logger.error("Price subscriber failed: %s", exc)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def start_polling(self, interval_seconds: float) -> None:
        """Refresh prices in the background every ``interval_seconds``."""
        if self._poll_thread and self._poll_thread.is_alive():
            return
        self._poll_stop.clear()
        self._poll_thread = threading.Thread(
            target=self._poll_loop, args=(interval_seconds,), name="price-poller", daemon=True
        )
        self._poll_thread.start()
        logger.info("Price polling started (every %.0fs)", interval_seconds)

    def stop_polling(self) -> None:
        self._poll_stop.set()
        if self._poll_thread:
            self._poll_thread.join(timeout=5)
            self._poll_thread = None

    def _poll_loop(self, interval_seconds: float) -> None:
        while not self._poll_stop.is_set():
            if not self.is_blocked():
                try:
                    self.refresh_quotes()
                except MarketDataUnavailable as exc:
                    logger.warning("Price poll failed: %s", exc)
            self._poll_stop.wait(interval_seconds)

    def close(self) -> None:
        self.stop_polling()
        self._session.close()


def create_market_data_from_config(market_cfg: Optional[Dict[str, Any]]) -> BinanceMarketData:
    market_cfg = market_cfg or {}
    return BinanceMarketData(
        base_urls=market_cfg.get("base_urls") or BINANCE_BASE_URLS,
        timeout=float(market_cfg.get("timeout_seconds", 10.0)),
        quote_ttl_seconds=float(market_cfg.get("quote_ttl_seconds", 10.0)),
        candle_ttl_seconds=float(market_cfg.get("candle_ttl_seconds", 300.0)),
        min_quote_volume=float(market_cfg.get("min_quote_volume", MIN_QUOTE_VOLUME)),
    )
