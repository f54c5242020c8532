"""
Dynamic Risk Calculator

Derives stop-loss and take-profit distances (percent of entry) from recent
volatility, measured as a Wilder-smoothed 14-period average true range.
Pure functions, no shared state.
"""

import logging
import math
from typing import Any, Sequence

from core.models import RiskLevels

logger = logging.getLogger(__name__)

ATR_PERIOD = 14
MIN_CANDLES = 15

FALLBACK_STOP_LOSS_PCT = 5.0
FALLBACK_TAKE_PROFIT_PCT = 15.0

STOP_LOSS_ATR_MULT = 2.0
STOP_LOSS_MIN_PCT = 2.0
STOP_LOSS_MAX_PCT = 6.5

TAKE_PROFIT_ATR_MULT = 3.5
MIN_REWARD_RISK = 1.6
TAKE_PROFIT_MIN_PCT = 4.0
TAKE_PROFIT_MAX_PCT = 50.0


def _value(candle: Any, name: str) -> float:
    if isinstance(candle, dict):
        return float(candle[name])
    return float(getattr(candle, name))


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def average_true_range(candles: Sequence[Any], period: int = ATR_PERIOD) -> float:
    """
    Wilder ATR of the series, returned for the most recent bar.

    The first true range is the bar's own high-low span; the seed is the
    simple mean of the first ``period`` true ranges.
    """
    if len(candles) < period:
        raise ValueError(f"need at least {period} candles, got {len(candles)}")

    true_ranges = []
    prev_close = None
    for candle in candles:
        high = _value(candle, "high")
        low = _value(candle, "low")
        if prev_close is None:
            tr = high - low
        else:
            tr = max(high - low, abs(high - prev_close), abs(low - prev_close))
        true_ranges.append(tr)
        prev_close = _value(candle, "close")

    atr = sum(true_ranges[:period]) / period
    for tr in true_ranges[period:]:
        atr = (atr * (period - 1) + tr) / period
    return atr


def levels_from_atr_percent(atr_percent: float) -> RiskLevels:
    """Map ATR% to stop/target percentages; target is always >= 1.6x stop."""
    stop_loss = _clamp(atr_percent * STOP_LOSS_ATR_MULT, STOP_LOSS_MIN_PCT, STOP_LOSS_MAX_PCT)
    target = max(atr_percent * TAKE_PROFIT_ATR_MULT, stop_loss * MIN_REWARD_RISK)
    take_profit = _clamp(target, TAKE_PROFIT_MIN_PCT, TAKE_PROFIT_MAX_PCT)
    return RiskLevels(stop_loss_pct=stop_loss, take_profit_pct=take_profit)


def fallback_levels() -> RiskLevels:
    return RiskLevels(stop_loss_pct=FALLBACK_STOP_LOSS_PCT, take_profit_pct=FALLBACK_TAKE_PROFIT_PCT)


def calculate_dynamic_levels(candles: Sequence[Any], entry_price: float) -> RiskLevels:
    """
    Stop-loss / take-profit percentages for a position entered at ``entry_price``.

    Args:
        candles: Recent candles, oldest first (Candle objects or dicts)
        entry_price: Reference price the percentages are relative to

    Returns:
        RiskLevels; the 5% / 15% fallback when history is too short or the
        inputs are unusable.
    """
    if not candles or len(candles) < MIN_CANDLES or not entry_price or entry_price <= 0:
        return fallback_levels()

    try:
        atr = average_true_range(candles, ATR_PERIOD)
    except (KeyError, AttributeError, TypeError, ValueError) as exc:
        logger.error("ATR calculation failed: %s", exc)
        return fallback_levels()

    atr_percent = atr / entry_price * 100.0
    if not math.isfinite(atr_percent) or atr_percent < 0:
        return fallback_levels()
    return levels_from_atr_percent(atr_percent)
