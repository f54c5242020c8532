"""
Tests for the paper position ledger.

Covers:
- Opening, pyramiding and cash debits including commission
- Rejection of orders cash cannot cover
- Realized P&L on close and idempotent closes
- Closed-history retention and event log cap
- Containment of notifier / learning / subscriber failures
"""

import threading
from unittest.mock import Mock

import pytest

from core.ledger import PositionLedger
from core.models import ExitReason, LedgerState, TradeSource


class TestBuy:
    def test_new_position_debits_cost_plus_commission(self, ledger):
        position = ledger.buy("BTCUSDT", 100.0, 1.0, context={"reason": "breakout", "score": 80})

        assert position is not None
        assert position.is_open
        assert position.rationale == "breakout"
        assert position.decision_context["score"] == 80
        assert ledger.cash == pytest.approx(1000.0 - 100.1)

    def test_pyramid_averages_entry(self, ledger):
        first = ledger.buy("ETHUSDT", 100.0, 1.0)
        second = ledger.buy("ETHUSDT", 120.0, 1.0, stop_loss=3.0, take_profit=9.0)

        assert second is first
        assert len(ledger.open_positions()) == 1
        assert first.quantity == pytest.approx(2.0)
        assert first.entry_price == pytest.approx(110.0)
        assert first.is_pyramided
        assert first.stop_loss_pct == 3.0
        assert first.take_profit_pct == 9.0
        assert ledger.cash == pytest.approx(1000.0 - 100.1 - 120.12)

    def test_insufficient_cash_is_rejected(self):
        ledger = PositionLedger(LedgerState(cash=50.0))

        assert ledger.buy("BTCUSDT", 100.0, 1.0) is None
        assert ledger.cash == 50.0
        assert ledger.positions() == []
        assert "insufficient cash" in ledger.state.logs[0]

    def test_order_for_exactly_available_cash_clears(self):
        ledger = PositionLedger(LedgerState(cash=100.1), commission_rate=0.001)

        assert ledger.buy("BTCUSDT", 100.0, 1.0) is not None
        assert ledger.cash >= 0.0
        assert ledger.cash == pytest.approx(0.0, abs=1e-6)

    @pytest.mark.parametrize("price,quantity", [(0.0, 1.0), (-5.0, 1.0), (100.0, 0.0), (100.0, -1.0)])
    def test_invalid_orders_are_rejected(self, ledger, price, quantity):
        assert ledger.buy("BTCUSDT", price, quantity) is None
        assert ledger.cash == 1000.0

    def test_source_is_recorded(self, ledger):
        position = ledger.buy("BTCUSDT", 100.0, 1.0, source=TradeSource.AUTOPILOT)
        assert position.source == TradeSource.AUTOPILOT


class TestSell:
    def test_loss_is_net_of_both_commissions(self, ledger):
        position = ledger.buy("BTCUSDT", 100.0, 1.0)

        profit = ledger.sell(position, 94.0, ExitReason.STOP_LOSS)

        # 94 - 0.094 revenue, 100 + 0.1 cost
        assert profit == pytest.approx(-6.194)
        assert ledger.realized_pnl == pytest.approx(-6.194)
        assert ledger.cash == pytest.approx(1000.0 - 100.1 + 93.906)
        assert not position.is_open
        assert position.exit_price == 94.0
        assert position.exit_reason == ExitReason.STOP_LOSS
        assert position.exit_date is not None
        assert position.realized_pnl == pytest.approx(-6.194)

    def test_second_close_is_a_no_op(self, ledger):
        position = ledger.buy("BTCUSDT", 100.0, 1.0)
        ledger.sell(position, 110.0, ExitReason.TAKE_PROFIT)
        cash = ledger.cash

        assert ledger.sell(position, 120.0, ExitReason.MANUAL) is None
        assert ledger.cash == cash
        assert position.exit_price == 110.0

    def test_close_by_snapshot_copy(self, ledger):
        position = ledger.buy("BTCUSDT", 100.0, 1.0)
        snapshot = ledger.export()["positions"][0]

        assert ledger.sell(snapshot, 105.0, ExitReason.MANUAL) is not None
        assert not position.is_open

    def test_invalid_price_is_rejected(self, ledger):
        position = ledger.buy("BTCUSDT", 100.0, 1.0)
        assert ledger.sell(position, 0.0, ExitReason.MANUAL) is None
        assert position.is_open

    def test_detail_goes_to_event_log(self, ledger):
        position = ledger.buy("BTCUSDT", 100.0, 1.0)
        ledger.sell(position, 100.0, ExitReason.SELL_SIGNAL, detail="sell signal: momentum lost")
        assert "sell signal: momentum lost" in ledger.state.logs[0]
        assert "CLOSED BTCUSDT" in ledger.state.logs[0]

    def test_closed_history_is_capped(self):
        ledger = PositionLedger(LedgerState(cash=10_000.0), closed_retention=3)
        for i in range(5):
            position = ledger.buy(f"S{i}USDT", 10.0, 1.0)
            ledger.sell(position, 10.0, ExitReason.MANUAL)

        closed = [p for p in ledger.positions() if not p.is_open]
        assert [p.symbol for p in closed] == ["S2USDT", "S3USDT", "S4USDT"]


class TestCollaborators:
    def test_learning_failure_does_not_block_close(self, ledger):
        ledger.learning = Mock()
        ledger.learning.evaluate_closed_trade.side_effect = RuntimeError("model offline")
        position = ledger.buy("BTCUSDT", 100.0, 1.0)

        assert ledger.sell(position, 105.0, ExitReason.TAKE_PROFIT) is not None
        ledger.learning.evaluate_closed_trade.assert_called_once_with(position)

    def test_notifier_failure_does_not_block_trades(self, ledger):
        ledger.notifier = Mock()
        ledger.notifier.notify_open.side_effect = RuntimeError("telegram down")
        ledger.notifier.notify_close.side_effect = RuntimeError("telegram down")

        position = ledger.buy("BTCUSDT", 100.0, 1.0)
        assert position is not None
        assert ledger.sell(position, 105.0, ExitReason.MANUAL) is not None

    def test_publish_saves_even_if_a_subscriber_fails(self, ledger):
        ledger.store = Mock()
        ledger.subscribe(Mock(side_effect=RuntimeError("ui gone")))
        good = Mock()
        ledger.subscribe(good)

        ledger.publish()

        good.assert_called_once()
        ledger.store.save.assert_called_once_with(ledger.state)

    def test_unsubscribe(self, ledger):
        listener = Mock()
        unsubscribe = ledger.subscribe(listener)
        unsubscribe()
        ledger.publish()
        listener.assert_not_called()

    def test_metrics_recorded_on_close(self, ledger):
        ledger.metrics = Mock()
        position = ledger.buy("BTCUSDT", 100.0, 1.0)
        ledger.sell(position, 90.0, ExitReason.STOP_LOSS)
        ledger.metrics.record_close.assert_called_once_with(ExitReason.STOP_LOSS)
        ledger.metrics.record_ledger.assert_called()


class TestMisc:
    def test_event_log_is_capped_newest_first(self):
        ledger = PositionLedger(log_limit=5)
        for i in range(10):
            ledger.add_log("Test", f"line {i}")

        assert len(ledger.state.logs) == 5
        assert ledger.state.logs[0].endswith("[Test] line 9")
        assert ledger.state.logs[-1].endswith("[Test] line 5")

    def test_equity_marks_open_positions(self, ledger):
        ledger.buy("BTCUSDT", 100.0, 2.0)
        prices = {"BTCUSDT": 110.0}

        assert ledger.equity(prices.get) == pytest.approx(ledger.cash + 220.0)
        assert ledger.equity() == pytest.approx(ledger.cash + 200.0)

    def test_equity_prices_outside_the_lock(self, ledger):
        ledger.buy("BTCUSDT", 100.0, 1.0)
        lock_free = []

        def lookup(symbol):
            # A manual operation on another thread must not wait on the lookup
            def try_lock():
                acquired = ledger.lock.acquire(timeout=1)
                lock_free.append(acquired)
                if acquired:
                    ledger.lock.release()

            worker = threading.Thread(target=try_lock)
            worker.start()
            worker.join()
            return 105.0

        assert ledger.equity(lookup) == pytest.approx(ledger.cash + 105.0)
        assert lock_free == [True]

    def test_high_water_only_rises(self, ledger):
        position = ledger.buy("BTCUSDT", 100.0, 1.0)
        assert ledger.record_high_water(position, 4.0) == 4.0
        assert ledger.record_high_water(position, 1.0) == 4.0

    def test_reset_keeps_autopilot_flag(self, ledger):
        ledger.set_autopilot(True)
        ledger.buy("BTCUSDT", 100.0, 1.0)

        ledger.reset()

        assert ledger.cash == 1000.0
        assert ledger.positions() == []
        assert ledger.autopilot_enabled
        assert "Ledger reset" in ledger.state.logs[0]
