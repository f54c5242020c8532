"""
Pytest configuration and fixtures for scanpilot tests.

This conftest.py provides shared fixtures for all tests.
"""
import pytest

from core.ledger import PositionLedger
from core.models import LedgerState
from tests.helpers import StubMarketData


@pytest.fixture
def market():
    """In-memory market data with no quotes loaded."""
    return StubMarketData()


@pytest.fixture
def ledger():
    """Ledger with $1000, 0.1% commission and no store."""
    return PositionLedger(LedgerState(cash=1000.0), commission_rate=0.001, starting_cash=1000.0)


@pytest.fixture
def state_path(tmp_path):
    """State file location inside the per-test temp dir."""
    return tmp_path / "data" / "state.json"
