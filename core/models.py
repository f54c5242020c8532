"""
scanpilot Core: Data Models

Positions, ledger state, candles, decisions and the snapshots handed to
subscribers. Positions round-trip through plain dicts for persistence; the
reader is tolerant of missing or malformed fields.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


def new_id() -> str:
    """Collision-resistant identifier for positions."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Best-effort timestamp parsing.

    Accepts datetimes, ISO-8601 strings (with or without ``Z``) and epoch
    numbers in seconds or milliseconds. Returns None for anything else.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError:
            return None
        return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    return None


def _as_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class Verdict(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"

    @classmethod
    def parse(cls, value: Any) -> "Verdict":
        if isinstance(value, Verdict):
            return value
        if isinstance(value, Mapping):
            value = value.get("id") or value.get("label")
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return cls.HOLD


class TradeSource(str, Enum):
    USER = "user"
    AUTOPILOT = "autopilot"

    @classmethod
    def parse(cls, value: Any) -> "TradeSource":
        text = str(value or "").strip().lower()
        if text in ("autopilot", "auto_pilot"):
            return cls.AUTOPILOT
        return cls.USER


class ExitReason:
    STOP_LOSS = "stop loss"
    TAKE_PROFIT = "take profit"
    TRAILING_STOP = "trailing stop"
    BREAKEVEN = "breakeven"
    TIMEOUT = "timeout"
    SELL_SIGNAL = "sell signal"
    MANUAL = "manual"
    UNKNOWN = "unknown"


@dataclass
class Candle:
    """OHLCV bar"""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass
class Quote:
    symbol: str
    price: float
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class Decision:
    """Verdict returned by the pluggable decision function."""
    symbol: str
    verdict: Verdict
    score: float = 0.0
    reason: str = ""
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, symbol: str, raw: Any) -> "Decision":
        """Accept a Decision or a loose mapping from third-party scorers."""
        if isinstance(raw, Decision):
            return raw
        if not isinstance(raw, Mapping):
            raise TypeError(f"decision for {symbol} must be a Decision or mapping, got {type(raw).__name__}")
        verdict = raw.get("verdict", raw.get("final_decision", raw.get("finalDecision")))
        score = raw.get("score", raw.get("total_score", raw.get("totalScore")))
        context = {k: v for k, v in raw.items() if k not in ("verdict", "score", "reason")}
        return cls(
            symbol=raw.get("symbol") or symbol,
            verdict=Verdict.parse(verdict),
            score=_as_float(score, 0.0),
            reason=str(raw.get("reason") or ""),
            context=context,
        )

    def summary(self) -> Dict[str, Any]:
        """Snapshot stored on the position that this decision opened."""
        return {
            "reason": self.reason,
            "score": self.score,
            "verdict": self.verdict.value,
            **self.context,
        }


@dataclass
class Position:
    """
    One position (a.k.a. trade) in the paper ledger.

    Open positions have ``quantity > 0`` and no exit fields; closed positions
    carry exit price, exit time and exit reason together.
    """
    symbol: str
    entry_price: float
    quantity: float
    source: TradeSource = TradeSource.USER
    rationale: str = ""
    decision_context: Dict[str, Any] = field(default_factory=dict)
    stop_loss_pct: float = 5.0
    take_profit_pct: float = 15.0
    highest_pnl_pct: float = 0.0
    opened_at: datetime = field(default_factory=utcnow)
    is_open: bool = True
    is_pyramided: bool = False
    exit_price: Optional[float] = None
    exit_date: Optional[datetime] = None
    exit_reason: Optional[str] = None
    realized_pnl: Optional[float] = None
    id: str = field(default_factory=new_id)

    @property
    def cost_basis(self) -> float:
        return self.entry_price * self.quantity

    def pnl_percent(self, price: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price * 100.0

    @property
    def peak_price(self) -> float:
        """Price implied by the high-water P&L mark."""
        return self.entry_price * (1.0 + self.highest_pnl_pct / 100.0)

    def average_in(self, price: float, quantity: float, peak_price: Optional[float] = None) -> None:
        """
        Add ``quantity`` at ``price`` and re-average the entry.

        The high-water mark is rebased onto the new average so it still
        describes the same peak price.
        """
        peak = max(self.peak_price, peak_price or 0.0)
        total_qty = self.quantity + quantity
        self.entry_price = (self.cost_basis + price * quantity) / total_qty
        self.quantity = total_qty
        self.is_pyramided = True
        self.highest_pnl_pct = max(0.0, (peak - self.entry_price) / self.entry_price * 100.0)

    def hold_hours(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return (now - self.opened_at).total_seconds() / 3600.0

    def copy(self) -> "Position":
        return replace(self, decision_context=dict(self.decision_context))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "entry_price": self.entry_price,
            "quantity": self.quantity,
            "opened_at": self.opened_at.isoformat(),
            "is_open": self.is_open,
            "source": self.source.value,
            "rationale": self.rationale,
            "decision_context": dict(self.decision_context),
            "stop_loss_pct": self.stop_loss_pct,
            "take_profit_pct": self.take_profit_pct,
            "highest_pnl_pct": self.highest_pnl_pct,
            "is_pyramided": self.is_pyramided,
            "exit_price": self.exit_price,
            "exit_date": self.exit_date.isoformat() if self.exit_date else None,
            "exit_reason": self.exit_reason,
            "realized_pnl": self.realized_pnl,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["Position"]:
        """
        Rebuild a position from persisted data.

        Unknown fields are ignored and missing ones get safe defaults. A bad
        ``opened_at`` is reconstructed as now; a closed record missing its exit
        fields is completed from what is known. Returns None when the record
        has no usable symbol, price or quantity.
        """
        symbol = data.get("symbol")
        entry_price = _as_float(data.get("entry_price", data.get("entryPrice")))
        quantity = _as_float(data.get("quantity"))
        if not symbol or entry_price is None or entry_price <= 0 or quantity is None:
            return None

        opened_at = parse_datetime(data.get("opened_at", data.get("date")))
        if opened_at is None:
            logger.warning("Reconstructing open time for %s position %s", symbol, data.get("id"))
            opened_at = utcnow()

        is_open = data.get("is_open", data.get("isOpen", True)) is not False
        context = data.get("decision_context", data.get("decisionContext"))

        position = cls(
            id=str(data.get("id") or new_id()),
            symbol=str(symbol),
            entry_price=entry_price,
            quantity=quantity,
            opened_at=opened_at,
            is_open=is_open,
            source=TradeSource.parse(data.get("source")),
            rationale=str(data.get("rationale") or ""),
            decision_context=dict(context) if isinstance(context, Mapping) else {},
            stop_loss_pct=_as_float(data.get("stop_loss_pct", data.get("stopLossPercent")), 5.0),
            take_profit_pct=_as_float(data.get("take_profit_pct", data.get("takeProfitPercent")), 15.0),
            highest_pnl_pct=_as_float(data.get("highest_pnl_pct", data.get("highestPnL")), 0.0),
            is_pyramided=bool(data.get("is_pyramided", data.get("isPyramided", False))),
            exit_price=_as_float(data.get("exit_price", data.get("exitPrice"))),
            exit_date=parse_datetime(data.get("exit_date", data.get("exitDate"))),
            exit_reason=data.get("exit_reason", data.get("exitReason")),
            realized_pnl=_as_float(data.get("realized_pnl")),
        )

        if position.is_open:
            position.exit_price = None
            position.exit_date = None
            position.exit_reason = None
            if position.quantity <= 0:
                logger.warning("Dropping open %s position with quantity %s", symbol, quantity)
                return None
        else:
            if position.exit_price is None:
                position.exit_price = position.entry_price
            if position.exit_date is None:
                position.exit_date = position.opened_at
            if not position.exit_reason:
                position.exit_reason = ExitReason.UNKNOWN
        return position


@dataclass
class LedgerState:
    """Everything the ledger owns and the persistence layer writes."""
    cash: float
    positions: List[Position] = field(default_factory=list)
    realized_pnl: float = 0.0
    logs: List[str] = field(default_factory=list)
    autopilot_enabled: bool = False

    def open_positions(self) -> List[Position]:
        return [p for p in self.positions if p.is_open]

    def closed_positions(self) -> List[Position]:
        return [p for p in self.positions if not p.is_open]

    def find_open(self, symbol: str) -> Optional[Position]:
        for position in self.positions:
            if position.is_open and position.symbol == symbol:
                return position
        return None


@dataclass
class ScanResult:
    """Row of the live scan feed (not persisted)."""
    symbol: str
    price: float
    score: float
    verdict: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class AuditResult:
    approved: bool
    adjusted_quantity: float = 0.0
    reason: str = ""


@dataclass
class RiskLevels:
    stop_loss_pct: float
    take_profit_pct: float


@dataclass
class StateSnapshot:
    """Full state delivered to subscribers on every mutation."""
    cash: float
    positions: List[Position]
    logs: List[str]
    realized_pnl: float
    autopilot_enabled: bool
    scan_results: List[ScanResult] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def open_positions(self) -> List[Position]:
        return [p for p in self.positions if p.is_open]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cash": self.cash,
            "realized_pnl": self.realized_pnl,
            "autopilot_enabled": self.autopilot_enabled,
            "positions": [p.to_dict() for p in self.positions],
            "logs": list(self.logs),
            "scan_results": [
                {
                    "symbol": r.symbol,
                    "price": r.price,
                    "score": r.score,
                    "verdict": r.verdict,
                    "timestamp": r.timestamp.isoformat(),
                }
                for r in self.scan_results
            ],
            "settings": dict(self.settings),
        }
