"""
scanpilot Core: Position Ledger

Sole owner of cash, positions and realized P&L for the paper account.
Every mutation notifies subscribers and writes through the state store.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.models import LedgerState, Position, RiskLevels, TradeSource, utcnow

logger = logging.getLogger(__name__)

DEFAULT_STARTING_CASH = 1000.0
DEFAULT_COMMISSION_RATE = 0.001
DEFAULT_CLOSED_RETENTION = 200
DEFAULT_LOG_LIMIT = 50
# Float slack when an order is sized to exactly the available cash
CASH_EPSILON = 1e-9

Listener = Callable[[], None]


class PositionLedger:
    """
    Paper position ledger.

    Responsibilities:
    - Open positions, averaging into an existing one for the same symbol
    - Close positions, booking realized P&L net of both commissions
    - Keep a capped operator event log and closed-trade history
    - Publish every change to subscribers and the state store

    Mutations are serialized on an internal lock; the scan loop is the only
    regular writer, manual operator calls may arrive from other threads.
    """

    def __init__(
        self,
        state: Optional[LedgerState] = None,
        store=None,
        notifier=None,
        learning=None,
        commission_rate: float = DEFAULT_COMMISSION_RATE,
        starting_cash: float = DEFAULT_STARTING_CASH,
        closed_retention: int = DEFAULT_CLOSED_RETENTION,
        log_limit: int = DEFAULT_LOG_LIMIT,
        metrics=None,
    ):
        """
        Initialize ledger.

        Args:
            state: Loaded ledger state (default: empty with starting_cash)
            store: StateStore used for write-through persistence
            notifier: Notifier for open/close messages
            learning: Optional LearningCollaborator fed with closed trades
            commission_rate: Fraction of notional charged on each side
            starting_cash: Balance restored by reset()
            closed_retention: Closed positions kept in memory
            log_limit: Event log lines kept in memory
            metrics: Optional MetricsRecorder
        """
        self.state = state or LedgerState(cash=starting_cash)
        self.store = store
        self.notifier = notifier
        self.learning = learning
        self.commission_rate = commission_rate
        self.starting_cash = starting_cash
        self.closed_retention = closed_retention
        self.log_limit = log_limit
        self.metrics = metrics
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._trim_closed()

    # ------------------------------------------------------------ accessors

    @property
    def cash(self) -> float:
        return self.state.cash

    @property
    def realized_pnl(self) -> float:
        return self.state.realized_pnl

    @property
    def autopilot_enabled(self) -> bool:
        return self.state.autopilot_enabled

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def positions(self) -> List[Position]:
        with self._lock:
            return list(self.state.positions)

    def open_positions(self) -> List[Position]:
        with self._lock:
            return self.state.open_positions()

    def find_open(self, symbol: str) -> Optional[Position]:
        with self._lock:
            return self.state.find_open(symbol)

    def equity(self, price_lookup: Optional[Callable[[str], Optional[float]]] = None) -> float:
        """Cash plus open positions, marked at ``price_lookup`` or at entry."""
        with self._lock:
            cash = self.state.cash
            holdings = [(p.symbol, p.entry_price, p.quantity) for p in self.state.open_positions()]
        # Lookups may hit the network; keep them outside the lock
        total = cash
        for symbol, entry_price, quantity in holdings:
            price = price_lookup(symbol) if price_lookup else None
            total += (price if price else entry_price) * quantity
        return total

    def export(self) -> Dict[str, Any]:
        """Copy of ledger state for snapshots."""
        with self._lock:
            return {
                "cash": self.state.cash,
                "positions": [p.copy() for p in self.state.positions],
                "logs": list(self.state.logs),
                "realized_pnl": self.state.realized_pnl,
                "autopilot_enabled": self.state.autopilot_enabled,
            }

    # ---------------------------------------------------------- subscribers

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self) -> None:
        """Notify subscribers and persist the current state."""
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception as exc:
                logger.error("Ledger subscriber failed: %s", exc, exc_info=True)
        if self.store is not None:
            with self._lock:
                self.store.save(self.state)
        if self.metrics is not None:
            self.metrics.record_ledger(self.state.cash, len(self.state.open_positions()))

    # ------------------------------------------------------------ event log

    def add_log(self, source: str, message: str) -> None:
        line = f"[{datetime.now().strftime('%H:%M:%S')}][{source}] {message}"
        with self._lock:
            self.state.logs.insert(0, line)
            del self.state.logs[self.log_limit:]

    def clear_logs(self) -> None:
        with self._lock:
            self.state.logs.clear()

    # ------------------------------------------------------------ mutations

    def set_autopilot(self, enabled: bool) -> None:
        with self._lock:
            self.state.autopilot_enabled = bool(enabled)
        self.publish()

    def buy(
        self,
        symbol: str,
        price: float,
        quantity: float,
        context: Optional[Dict[str, Any]] = None,
        source: TradeSource = TradeSource.USER,
        stop_loss: float = 5.0,
        take_profit: float = 15.0,
    ) -> Optional[Position]:
        """
        Open a position or average into the open one for ``symbol``.

        Cash is debited by notional plus commission. Orders that cash cannot
        cover are dropped (never partially filled).

        Returns:
            The new or updated Position, or None if the order was rejected
        """
        context = dict(context or {})
        if not symbol or not price or price <= 0 or not quantity or quantity <= 0:
            logger.warning("Rejected invalid buy: %s qty=%s price=%s", symbol, quantity, price)
            return None

        cost = price * quantity
        commission = cost * self.commission_rate

        with self._lock:
            if self.state.cash + CASH_EPSILON < cost + commission:
                logger.warning(
                    "Insufficient cash for %s: need $%.2f, have $%.2f",
                    symbol,
                    cost + commission,
                    self.state.cash,
                )
                self.add_log("Trade", f"Buy {symbol} rejected: insufficient cash (${self.state.cash:.2f})")
                return None

            existing = self.state.find_open(symbol)
            if existing is not None:
                existing.average_in(price, quantity)
                new_qty = existing.quantity
                existing.stop_loss_pct = stop_loss
                existing.take_profit_pct = take_profit
                self._debit(cost + commission)
                position = existing
                self.add_log(
                    "Trade",
                    f"PYRAMID {symbol}: +{quantity:.6f} @ ${price:.4f}, new avg ${existing.entry_price:.4f}",
                )
                logger.info("Pyramided %s: qty=%.6f avg=%.4f", symbol, new_qty, existing.entry_price)
            else:
                position = Position(
                    symbol=symbol,
                    entry_price=price,
                    quantity=quantity,
                    source=source,
                    rationale=str(context.get("reason", "")),
                    decision_context=context,
                    stop_loss_pct=stop_loss,
                    take_profit_pct=take_profit,
                )
                self.state.positions.append(position)
                self._debit(cost + commission)
                self.add_log("Trade", f"BUY {symbol} @ ${price:.4f} x {quantity:.6f} (commission ${commission:.2f})")
                logger.info("Opened %s @ %.4f x %.6f (%s)", symbol, price, quantity, source.value)

        self._notify_open(position)
        self.publish()
        return position

    def sell(self, position: Position, price: float, reason: str, detail: Optional[str] = None) -> Optional[float]:
        """
        Close ``position`` at ``price``.

        Realized profit is net sell proceeds minus entry cost including the
        buy-side commission. Closing an already-closed position is a no-op.

        Returns:
            Realized profit, or None if nothing was closed
        """
        if not price or price <= 0:
            logger.warning("Rejected sell of %s at invalid price %s", getattr(position, "symbol", "?"), price)
            return None

        with self._lock:
            tracked = self._resolve(position)
            if tracked is None or not tracked.is_open:
                return None

            revenue = price * tracked.quantity
            net_revenue = revenue - revenue * self.commission_rate
            buy_cost = tracked.cost_basis
            total_cost = buy_cost + buy_cost * self.commission_rate
            profit = net_revenue - total_cost
            profit_percent = tracked.pnl_percent(price)

            tracked.is_open = False
            tracked.exit_price = price
            tracked.exit_date = utcnow()
            tracked.exit_reason = reason
            tracked.realized_pnl = profit

            self.state.cash += net_revenue
            self.state.realized_pnl += profit
            self._trim_closed()

            self.add_log(
                "Trade",
                f"CLOSED {tracked.symbol} | P&L {profit:+.2f} USD ({profit_percent:+.2f}%) | {detail or reason}",
            )
            logger.info(
                "Closed %s @ %.4f reason=%s profit=%.2f (%+.2f%%)",
                tracked.symbol,
                price,
                reason,
                profit,
                profit_percent,
            )

        if self.metrics is not None:
            self.metrics.record_close(reason)
        self._report_learning(tracked)
        self._notify_close(tracked, profit, profit_percent)
        self.publish()
        return profit

    def update_risk_levels(self, position: Position, levels: RiskLevels) -> None:
        """Overwrite stop/target percentages of an open position."""
        with self._lock:
            if position.is_open:
                position.stop_loss_pct = levels.stop_loss_pct
                position.take_profit_pct = levels.take_profit_pct

    def record_high_water(self, position: Position, pnl_pct: float) -> float:
        with self._lock:
            if pnl_pct > position.highest_pnl_pct:
                position.highest_pnl_pct = pnl_pct
            return position.highest_pnl_pct

    def reset(self) -> None:
        """Back to an empty ledger with the starting cash."""
        with self._lock:
            enabled = self.state.autopilot_enabled
            self.state = LedgerState(cash=self.starting_cash, autopilot_enabled=enabled)
            self.add_log("System", "Ledger reset")
        logger.warning("Ledger reset to $%.2f", self.starting_cash)
        self.publish()

    # -------------------------------------------------------------- helpers

    def _debit(self, amount: float) -> None:
        self.state.cash = max(self.state.cash - amount, 0.0)

    def _resolve(self, position: Position) -> Optional[Position]:
        for tracked in self.state.positions:
            if tracked is position or tracked.id == position.id:
                return tracked
        logger.warning("Sell requested for unknown position %s (%s)", position.id, position.symbol)
        return None

    def _trim_closed(self) -> None:
        closed = [p for p in self.state.positions if not p.is_open]
        excess = len(closed) - self.closed_retention
        if excess <= 0:
            return
        drop = {id(p) for p in closed[:excess]}
        self.state.positions = [p for p in self.state.positions if id(p) not in drop]

    def _report_learning(self, position: Position) -> None:
        if self.learning is None:
            return
        try:
            self.learning.evaluate_closed_trade(position)
        except Exception as exc:
            logger.error("Learning collaborator failed for %s: %s", position.symbol, exc)

    def _notify_open(self, position: Position) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify_open(position)
        except Exception as exc:
            logger.error("Open notification failed for %s: %s", position.symbol, exc)

    def _notify_close(self, position: Position, profit: float, profit_percent: float) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify_close(position, profit, profit_percent)
        except Exception as exc:
            logger.error("Close notification failed for %s: %s", position.symbol, exc)
