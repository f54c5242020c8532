"""
Collaborator Interfaces

Boundaries to the parts of the system the core consumes but does not own:
market data, the decision (scoring) function, the risk auditor and the
learning collaborator. The notifier lives in infra.notifier.

All collaborators are injected at construction; nothing here imports the
ledger or orchestrator back.
"""

import importlib
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from core.models import AuditResult, Candle, Decision, Position, Quote, Verdict

logger = logging.getLogger(__name__)

# (symbol, candles_by_interval, asset_type) -> Decision (or a loose mapping)
DecisionFunction = Callable[[str, Dict[str, List[Candle]], str], Any]

PriceCallback = Callable[[Dict[str, float]], None]


class MarketDataSource(ABC):
    """Quotes, candles and the upstream cool-down signal."""

    @abstractmethod
    def get_quote(self, symbol: str) -> Optional[Quote]:
        """Latest quote, or None when the symbol has no price."""

    @abstractmethod
    def get_candles(self, symbol: str, interval: str, count: int) -> List[Candle]:
        """Up to ``count`` candles, oldest first."""

    @abstractmethod
    def is_blocked(self) -> bool:
        """True while upstream has asked us to back off."""

    @property
    def blocked_until(self) -> Optional[datetime]:
        return None

    def subscribe(self, callback: PriceCallback) -> Callable[[], None]:
        """Register for price updates; returns an unsubscribe function."""
        return lambda: None

    def load_universe(self) -> List[str]:
        return []


class RiskAuditor(ABC):
    """Approves, rejects or resizes a proposed entry."""

    @abstractmethod
    def audit(
        self,
        decision: Decision,
        positions: Sequence[Position],
        cash: float,
        equity: float,
        price: float,
    ) -> AuditResult:
        ...


class LearningCollaborator(ABC):
    """Receives closed trades on a best-effort basis."""

    @abstractmethod
    def evaluate_closed_trade(self, position: Position) -> None:
        ...


def hold_decision(symbol: str, candles_by_interval: Dict[str, List[Candle]], asset_type: str) -> Decision:
    """Decision function that never trades; the daemon then only manages exits."""
    return Decision(symbol=symbol, verdict=Verdict.HOLD, score=0.0, reason="no decision function configured")


def load_decision_function(path: str) -> DecisionFunction:
    """
    Resolve a ``package.module:attribute`` path to a decision callable.

    Raises:
        ValueError: If the path is malformed or does not name a callable
    """
    module_name, sep, attr = (path or "").partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Decision function path must look like 'module:attr', got {path!r}")
    module = importlib.import_module(module_name)
    target = module
    for part in attr.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise ValueError(f"{path} is not callable")
    logger.info("Loaded decision function %s", path)
    return target
