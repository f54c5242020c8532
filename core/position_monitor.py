"""
Position Monitor: Exit Logic for Open Positions

Re-evaluates every open position on each cycle, independent of new signals.
Stop/target percentages are re-derived from current volatility first, then
exit rules are checked in a fixed priority order (first match wins):

    stop loss > take profit > trailing stop > breakeven > timeout
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from core.exceptions import MarketDataBlocked
from core.interfaces import MarketDataSource
from core.models import ExitReason, Position, utcnow
from core.profiles import RiskProfile, get_risk_profile
from core.risk_calculator import calculate_dynamic_levels

logger = logging.getLogger(__name__)

REFRESH_INTERVAL = "1h"
REFRESH_CANDLES = 30
REFRESH_MIN_CANDLES = 20

BREAKEVEN_ARM_PCT = 2.0
BREAKEVEN_FLOOR_PCT = 0.5
TIMEOUT_MAX_PNL_PCT = -1.0


@dataclass
class PositionExitSignal:
    """Signal to exit a position"""
    position: Position
    reason: str
    current_price: float
    pnl_pct: float
    highest_pnl_pct: float
    hold_hours: float
    detail: str = ""


class PositionMonitor:
    """
    Protects open positions against adverse moves.

    Closing goes through the ledger; the monitor itself only reads positions
    and asks the ledger to update risk levels and high-water marks.
    """

    def __init__(
        self,
        ledger,
        market_data: MarketDataSource,
        profile: Optional[RiskProfile] = None,
        clock: Callable[[], datetime] = utcnow,
        refresh_levels: bool = True,
    ):
        self.ledger = ledger
        self.market_data = market_data
        self.profile = profile or get_risk_profile("balanced")
        self.clock = clock
        self.refresh_levels = refresh_levels

    def set_profile(self, profile: RiskProfile) -> None:
        logger.info("Position monitor switched to %s profile", profile.name)
        self.profile = profile

    def check_positions(self) -> List[PositionExitSignal]:
        """
        Run one protection pass over all open positions.

        Returns:
            Exit signals for the positions that were closed
        """
        closed: List[PositionExitSignal] = []
        for position in self.ledger.open_positions():
            try:
                signal = self._check_position(position)
            except MarketDataBlocked as exc:
                logger.warning("Market data blocked, stopping position checks: %s", exc)
                break
            except Exception as exc:
                logger.error("Position check failed for %s: %s", position.symbol, exc, exc_info=True)
                continue

            if signal is None:
                continue
            profit = self.ledger.sell(position, signal.current_price, signal.reason, detail=signal.detail)
            if profit is not None:
                closed.append(signal)

        if closed:
            logger.info("Position monitor closed %d position(s)", len(closed))
        return closed

    def _check_position(self, position: Position) -> Optional[PositionExitSignal]:
        quote = self.market_data.get_quote(position.symbol)
        if quote is None or not quote.price or quote.price <= 0:
            logger.debug("No valid quote for %s, skipping exit check", position.symbol)
            return None

        price = quote.price
        if self.refresh_levels:
            self._refresh_levels(position, price)

        pnl_pct = position.pnl_percent(price)
        highest = self.ledger.record_high_water(position, pnl_pct)
        hold_hours = position.hold_hours(self.clock())

        signal = self.evaluate(position, price, pnl_pct, highest, hold_hours)
        if signal is not None:
            logger.info(
                "EXIT SIGNAL: %s %s - PnL: %+.2f%% (max %+.2f%%), Hold: %.1fh, Price: $%.4f -> $%.4f",
                position.symbol,
                signal.reason.upper(),
                pnl_pct,
                highest,
                hold_hours,
                position.entry_price,
                price,
            )
        return signal

    def _refresh_levels(self, position: Position, price: float) -> None:
        """Re-derive stop/target from recent volatility; keep old levels on failure."""
        try:
            candles = self.market_data.get_candles(position.symbol, REFRESH_INTERVAL, REFRESH_CANDLES)
        except MarketDataBlocked:
            raise
        except Exception as exc:
            logger.debug("Level refresh skipped for %s: %s", position.symbol, exc)
            return
        if not candles or len(candles) < REFRESH_MIN_CANDLES:
            return
        levels = calculate_dynamic_levels(candles, price)
        self.ledger.update_risk_levels(position, levels)

    def evaluate(
        self,
        position: Position,
        price: float,
        pnl_pct: float,
        highest_pnl_pct: float,
        hold_hours: float,
    ) -> Optional[PositionExitSignal]:
        """
        Check a position against the exit rules.

        Priority order: stop loss > take profit > trailing stop > breakeven > timeout

        Returns:
            PositionExitSignal if an exit condition is met, None otherwise
        """
        profile = self.profile

        def signal(reason: str, detail: str) -> PositionExitSignal:
            return PositionExitSignal(
                position=position,
                reason=reason,
                current_price=price,
                pnl_pct=pnl_pct,
                highest_pnl_pct=highest_pnl_pct,
                hold_hours=hold_hours,
                detail=detail,
            )

        stop_loss = position.stop_loss_pct or profile.stop_loss_pct
        take_profit = position.take_profit_pct or profile.take_profit_pct

        if pnl_pct <= -abs(stop_loss):
            return signal(ExitReason.STOP_LOSS, f"stop loss hit ({pnl_pct:.2f}% <= -{abs(stop_loss):.2f}%)")

        if pnl_pct >= take_profit:
            return signal(ExitReason.TAKE_PROFIT, f"take profit hit ({pnl_pct:.2f}% >= {take_profit:.2f}%)")

        if highest_pnl_pct > profile.trailing_start_pct and pnl_pct < highest_pnl_pct - profile.trailing_giveback_pct:
            return signal(
                ExitReason.TRAILING_STOP,
                f"trailing stop ({profile.name}): max {highest_pnl_pct:.2f}%, now {pnl_pct:.2f}%",
            )

        if highest_pnl_pct > BREAKEVEN_ARM_PCT and pnl_pct < BREAKEVEN_FLOOR_PCT:
            return signal(ExitReason.BREAKEVEN, f"breakeven guard: max {highest_pnl_pct:.2f}%, now {pnl_pct:.2f}%")

        if hold_hours > profile.timeout_hours and pnl_pct < TIMEOUT_MAX_PNL_PCT:
            return signal(ExitReason.TIMEOUT, f"timeout after {hold_hours:.1f}h at {pnl_pct:.2f}%")

        return None
