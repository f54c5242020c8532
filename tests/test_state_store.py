"""
Tests for ledger persistence.

Validates:
- Normal documents (trace stripping, closed-history cap)
- Emergency write when the store is out of space
- Critical path when even the emergency write fails
- Tolerant loading of corrupt or partial documents
"""

import errno
import json
from unittest.mock import Mock

import pytest

from core.exceptions import StorageQuotaExceeded
from core.ledger import PositionLedger
from core.models import ExitReason, LedgerState
from infra.metrics import MetricsRecorder
from infra.state_store import JsonFileBackend, StateStore, create_state_store_from_config
from tests.helpers import make_position


class FakeBackend:
    """In-memory backend failing the first writes with the given exceptions."""

    def __init__(self, failures=(), text=None):
        self.failures = list(failures)
        self.writes = []
        self.text = text
        self.quarantined = False

    def describe(self):
        return "fake"

    def read(self):
        return self.text

    def write(self, text):
        if self.failures:
            raise self.failures.pop(0)
        self.writes.append(json.loads(text))
        self.text = text

    def quarantine(self):
        self.quarantined = True
        return None


def _state():
    open_pos = make_position(
        "BTCUSDT",
        decision_context={"reason": "breakout", "score": 81.0, "traces": ["..."] * 50, "indicators": {"rsi": 61}},
    )
    closed = []
    for i in range(5):
        position = make_position(f"C{i}USDT", decision_context={"reason": "x", "traces": ["t"]})
        position.is_open = False
        position.exit_price = 101.0
        position.exit_reason = ExitReason.TAKE_PROFIT
        closed.append(position)
    return LedgerState(cash=750.0, positions=[open_pos] + closed, realized_pnl=12.5, logs=["a", "b"])


class TestSave:
    def test_normal_document(self):
        backend = FakeBackend()
        store = StateStore(backend=backend, closed_history=2)

        assert store.save(_state())

        doc = backend.writes[0]
        assert doc["cash"] == 750.0
        assert doc["logs"] == ["a", "b"]
        open_docs = [p for p in doc["positions"] if p["is_open"]]
        closed_docs = [p for p in doc["positions"] if not p["is_open"]]
        assert "traces" not in open_docs[0]["decision_context"]
        assert open_docs[0]["decision_context"]["indicators"] == {"rsi": 61}
        assert [p["symbol"] for p in closed_docs] == ["C3USDT", "C4USDT"]
        assert all("decision_context" not in p for p in closed_docs)

    def test_quota_triggers_emergency_write(self):
        backend = FakeBackend(failures=[StorageQuotaExceeded("full")])
        metrics = MetricsRecorder(enabled=False)
        store = StateStore(backend=backend, metrics=metrics)
        state = _state()

        assert store.save(state)

        doc = backend.writes[0]
        assert doc["logs"] == []
        assert [p["symbol"] for p in doc["positions"]] == ["BTCUSDT"]
        assert doc["cash"] == 750.0
        context = doc["positions"][0]["decision_context"]
        assert "traces" not in context and "indicators" not in context
        assert context["score"] == 81.0
        assert state.logs == []
        assert metrics.persist_outcomes == {"emergency": 1}

    def test_ledger_event_log_is_empty_after_emergency_write(self):
        store = StateStore(backend=FakeBackend(failures=[StorageQuotaExceeded("full")]))
        ledger = PositionLedger(LedgerState(cash=500.0), store=store)
        ledger.add_log("Scanner", "batch 1 done")

        ledger.publish()

        assert ledger.state.logs == []

    def test_errno_quota_is_recognised(self):
        backend = FakeBackend(failures=[OSError(errno.ENOSPC, "No space left on device")])
        store = StateStore(backend=backend)
        assert store.save(_state())
        assert backend.writes[0]["logs"] == []

    def test_emergency_failure_is_critical(self):
        backend = FakeBackend(failures=[StorageQuotaExceeded("full"), StorageQuotaExceeded("still full")])
        on_critical = Mock()
        metrics = MetricsRecorder(enabled=False)
        store = StateStore(backend=backend, on_critical=on_critical, metrics=metrics)
        state = _state()

        assert store.save(state) is False

        on_critical.assert_called_once()
        assert state.logs[0].startswith("CRITICAL")
        assert metrics.persist_outcomes == {"critical": 1}

    def test_critical_alert_is_sent_once_until_a_write_succeeds(self):
        full = [StorageQuotaExceeded("full") for _ in range(6)]
        backend = FakeBackend(failures=full)
        on_critical = Mock()
        store = StateStore(backend=backend, on_critical=on_critical)
        state = _state()

        assert store.save(state) is False
        assert store.save(state) is False
        assert store.save(state) is False
        on_critical.assert_called_once()
        assert len(state.logs) == 1

        # Store recovers, then fills up again
        assert store.save(state)
        backend.failures = [StorageQuotaExceeded("full"), StorageQuotaExceeded("full")]
        assert store.save(state) is False
        assert on_critical.call_count == 2

    def test_other_errors_do_not_degrade(self):
        backend = FakeBackend(failures=[PermissionError("read-only")])
        store = StateStore(backend=backend)
        state = _state()

        assert store.save(state) is False
        assert state.logs == ["a", "b"]
        assert backend.writes == []

    def test_file_backend_over_budget_is_critical(self, state_path):
        store = StateStore(backend=JsonFileBackend(state_path, max_bytes=10))
        state = _state()

        assert store.save(state) is False
        assert not state_path.exists()

    def test_file_backend_round_trip(self, state_path):
        store = StateStore(state_file=str(state_path))
        state = _state()
        store.save(state)

        loaded = StateStore(state_file=str(state_path)).load()

        assert loaded.cash == 750.0
        assert loaded.realized_pnl == 12.5
        assert len(loaded.open_positions()) == 1
        assert loaded.open_positions()[0].id == state.positions[0].id
        assert len(loaded.closed_positions()) == 5


class TestLoad:
    def test_missing_file_gives_empty_ledger(self, state_path):
        state = StateStore(state_file=str(state_path)).load(default_cash=500.0)
        assert state.cash == 500.0
        assert state.positions == []

    def test_corrupt_file_gives_empty_ledger(self, state_path):
        state_path.parent.mkdir(parents=True, exist_ok=True)
        state_path.write_text("{not json")

        state = StateStore(state_file=str(state_path)).load(default_cash=1000.0)

        assert state.cash == 1000.0
        assert state.positions == []
        assert list(state_path.parent.glob("state.json.corrupt-*"))

    def test_non_mapping_document(self):
        backend = FakeBackend(text="[1, 2, 3]")
        state = StateStore(backend=backend).load(default_cash=1000.0)
        assert state.cash == 1000.0
        assert backend.quarantined

    def test_malformed_fields_are_repaired(self):
        document = {
            "cash": -5,
            "positions": [
                {"id": "a", "symbol": "BTCUSDT", "entry_price": 100, "quantity": 1, "opened_at": "not-a-date"},
                {"id": "b", "symbol": "ETHUSDT", "entry_price": 10, "quantity": 1, "is_open": False},
                {"id": "c", "symbol": "", "entry_price": 10, "quantity": 1},
                {"id": "d", "symbol": "XRPUSDT", "entry_price": "abc", "quantity": 1},
                "garbage",
            ],
            "logs": "not a list",
        }
        state = StateStore(backend=FakeBackend(text=json.dumps(document))).load()

        assert state.cash == 0.0
        assert [p.id for p in state.positions] == ["a", "b"]
        assert state.positions[0].opened_at is not None
        closed = state.positions[1]
        assert closed.exit_reason == ExitReason.UNKNOWN
        assert closed.exit_price == 10.0
        assert state.logs == []

    def test_duplicate_open_positions_are_merged(self):
        document = {
            "cash": 100.0,
            "positions": [
                {"id": "a", "symbol": "BTCUSDT", "entry_price": 100, "quantity": 1},
                {"id": "b", "symbol": "BTCUSDT", "entry_price": 120, "quantity": 1},
            ],
        }
        state = StateStore(backend=FakeBackend(text=json.dumps(document))).load()

        assert len(state.open_positions()) == 1
        merged = state.open_positions()[0]
        assert merged.id == "a"
        assert merged.quantity == pytest.approx(2.0)
        assert merged.entry_price == pytest.approx(110.0)

    def test_merge_rebases_high_water_mark(self):
        document = {
            "cash": 100.0,
            "positions": [
                {"id": "a", "symbol": "BTCUSDT", "entry_price": 100, "quantity": 1, "highest_pnl_pct": 10.0},
                {"id": "b", "symbol": "BTCUSDT", "entry_price": 105, "quantity": 1, "highest_pnl_pct": 0.0},
            ],
        }
        merged = StateStore(backend=FakeBackend(text=json.dumps(document))).load().open_positions()[0]

        # Peak of 110 seen by the first position, against the 102.5 average
        assert merged.entry_price == pytest.approx(102.5)
        assert merged.highest_pnl_pct == pytest.approx(7.5 / 102.5 * 100.0)

    def test_legacy_field_names(self):
        document = {
            "balance": 321.0,
            "isAutoPilotActive": True,
            "portfolio": [
                {"id": "a", "symbol": "BTCUSDT", "entryPrice": 100, "quantity": 1, "date": 1_700_000_000_000},
            ],
        }
        state = StateStore(backend=FakeBackend(text=json.dumps(document))).load()

        assert state.cash == 321.0
        assert state.autopilot_enabled
        assert state.positions[0].opened_at.year == 2023


def test_create_from_config(state_path):
    store = create_state_store_from_config({"path": str(state_path), "closed_history": 7, "log_limit": 3})
    assert store.closed_history == 7
    assert store.log_limit == 3
    assert store.describe() == f"json:{state_path}"
