"""
scanpilot Core: Autopilot Controller

The operator-facing surface of the core: toggle the autopilot, tune settings,
place manual buys and closes, reset the ledger, and subscribe to full state
snapshots. Everything underneath is injected at construction.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional

from core.exceptions import MarketDataUnavailable
from core.models import ExitReason, StateSnapshot, TradeSource
from core.risk_calculator import calculate_dynamic_levels, fallback_levels
from tools.config_validator import TradingSettings

logger = logging.getLogger(__name__)

MANUAL_CANDLE_INTERVAL = "1h"
MANUAL_CANDLE_COUNT = 30
DEFAULT_MIN_MANUAL_NOTIONAL = 10.0

SnapshotCallback = Callable[[StateSnapshot], None]


class AutopilotController:
    """
    Wires ledger, orchestrator and settings together for operators.

    Subscribers receive a StateSnapshot immediately on subscribe and again
    after every ledger mutation (including every scan batch).
    """

    def __init__(
        self,
        ledger,
        orchestrator,
        market_data,
        settings: Optional[TradingSettings] = None,
        auditor=None,
        min_manual_notional: float = DEFAULT_MIN_MANUAL_NOTIONAL,
    ):
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.market_data = market_data
        self.auditor = auditor
        self.min_manual_notional = min_manual_notional
        self.settings = settings or TradingSettings()
        self._subscribers: List[SnapshotCallback] = []
        self._subscribers_lock = threading.Lock()
        self._apply_limits()
        self.orchestrator.interval_seconds = self.settings.scan_interval_seconds
        self.ledger.subscribe(self._broadcast)

    # ------------------------------------------------------------ snapshots

    def snapshot(self) -> StateSnapshot:
        state = self.ledger.export()
        return StateSnapshot(
            cash=state["cash"],
            positions=state["positions"],
            logs=state["logs"],
            realized_pnl=state["realized_pnl"],
            autopilot_enabled=state["autopilot_enabled"],
            scan_results=self.orchestrator.scan_results(),
            settings=self.settings.model_dump(),
        )

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register ``callback``; it is called right away with the current state."""
        with self._subscribers_lock:
            self._subscribers.append(callback)
        callback(self.snapshot())

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _broadcast(self) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        if not subscribers:
            return
        snapshot = self.snapshot()
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception as exc:
                logger.error("State subscriber failed: %s", exc, exc_info=True)

    # ------------------------------------------------------------- autopilot

    @property
    def autopilot_enabled(self) -> bool:
        return self.ledger.autopilot_enabled

    def toggle_autopilot(self) -> bool:
        """Flip the autopilot; starting it triggers an immediate scan."""
        enabled = not self.ledger.autopilot_enabled
        if enabled:
            self.ledger.add_log("System", "Autopilot started")
            self.orchestrator.start()
        else:
            self.ledger.add_log("System", "Autopilot stopped")
            self.orchestrator.stop()
        self.ledger.set_autopilot(enabled)
        logger.info("Autopilot %s", "enabled" if enabled else "disabled")
        return enabled

    def resume(self) -> None:
        """Restart the timer if the persisted state says the autopilot was on."""
        if self.ledger.autopilot_enabled and not self.orchestrator.is_running:
            logger.info("Resuming autopilot from persisted state")
            self.ledger.add_log("System", "Autopilot resumed after restart")
            self.orchestrator.start()

    def apply_settings(self, updates: Mapping[str, Any]) -> TradingSettings:
        """
        Merge and validate new settings.

        An interval change takes effect immediately when the timer runs.

        Raises:
            ValueError: If the merged settings are invalid; nothing changes
        """
        new_settings = self.settings.merged(updates)
        interval_changed = new_settings.scan_interval_seconds != self.settings.scan_interval_seconds
        self.settings = new_settings
        self._apply_limits()
        if interval_changed:
            self.orchestrator.reschedule(new_settings.scan_interval_seconds)
        self.ledger.add_log("System", "Settings updated")
        logger.info("Settings updated: %s", new_settings.model_dump())
        self.ledger.publish()
        return new_settings

    def _apply_limits(self) -> None:
        if self.auditor is not None and hasattr(self.auditor, "update_limits"):
            self.auditor.update_limits(self.settings.max_position_percent, self.settings.max_open_trades)

    # ---------------------------------------------------------------- manual

    def manual_buy(self, symbol: str, notional: float, price: float) -> Dict[str, Any]:
        """
        Buy ``notional`` USD of ``symbol`` at ``price`` for the operator.

        Returns:
            {"success": True} or {"success": False, "error": "..."}
        """
        try:
            notional = float(notional)
            price = float(price)
        except (TypeError, ValueError):
            return {"success": False, "error": "amount and price must be numbers"}

        cash = self.ledger.cash
        if cash < notional:
            return {"success": False, "error": f"insufficient balance (${cash:.2f} available)"}
        if notional < self.min_manual_notional:
            return {"success": False, "error": f"minimum trade is ${self.min_manual_notional:.0f}"}
        if price <= 0:
            return {"success": False, "error": "price must be positive"}

        levels = fallback_levels()
        try:
            candles = self.market_data.get_candles(symbol, MANUAL_CANDLE_INTERVAL, MANUAL_CANDLE_COUNT)
            levels = calculate_dynamic_levels(candles, price)
        except MarketDataUnavailable as exc:
            logger.warning("Dynamic levels unavailable for manual %s buy, using defaults: %s", symbol, exc)

        # Commission comes out of the same notional so the order always clears
        quantity = notional / price / (1.0 + self.ledger.commission_rate)
        context = {"reason": "Manual buy", "score": 0.0, "manual": True}
        position = self.ledger.buy(
            symbol,
            price,
            quantity,
            context=context,
            source=TradeSource.USER,
            stop_loss=levels.stop_loss_pct,
            take_profit=levels.take_profit_pct,
        )
        if position is None:
            return {"success": False, "error": "order rejected by ledger"}
        return {"success": True}

    def manual_close(self, position_id: str, price: Optional[float] = None) -> Dict[str, Any]:
        """Close an open position at ``price`` (default: latest quote)."""
        position = next((p for p in self.ledger.open_positions() if p.id == position_id), None)
        if position is None:
            return {"success": False, "error": f"no open position {position_id}"}

        if price is None:
            try:
                quote = self.market_data.get_quote(position.symbol)
            except MarketDataUnavailable as exc:
                return {"success": False, "error": str(exc)}
            if quote is None:
                return {"success": False, "error": f"no price for {position.symbol}"}
            price = quote.price

        profit = self.ledger.sell(position, price, ExitReason.MANUAL)
        if profit is None:
            return {"success": False, "error": "position could not be closed"}
        return {"success": True, "profit": profit}

    def reset_ledger(self) -> None:
        self.ledger.reset()

    def shutdown(self, timeout: Optional[float] = 30.0) -> None:
        """Stop the timer, let an in-flight scan finish, persist once more."""
        self.orchestrator.stop()
        if not self.orchestrator.wait_idle(timeout=timeout):
            logger.warning("In-flight scan did not finish within %.0fs", timeout)
        self.ledger.publish()
