"""
scanpilot Infrastructure: State Store

Durable, size-bounded persistence of the paper ledger with atomic writes.

Normal writes keep open positions in full (minus heavy trace fields) and
only the most recent closed positions without their decision snapshots.
When the store rejects a write for lack of space, the event log is cleared,
every remaining diagnostic field is stripped and exactly one emergency write
of open positions plus balance is attempted. If that fails too the failure
is logged as critical and left for the operator.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.exceptions import StorageQuotaExceeded, is_quota_error
from core.models import LedgerState, Position

logger = logging.getLogger(__name__)

STATE_VERSION = 1

DEFAULT_STARTING_CASH = 1000.0
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_CLOSED_HISTORY = 50
DEFAULT_LOG_LIMIT = 50

# Stripped from open positions on every write
TRACE_KEYS = ("traces",)
# Stripped from everything during an emergency write
DIAGNOSTIC_KEYS = ("traces", "trace", "diagnostics", "debug", "indicators", "candles", "breakdown", "engines", "raw")

_SCALARS = (str, int, float, bool, type(None))


def strip_keys(context: Dict[str, Any], keys: Iterable[str]) -> Dict[str, Any]:
    drop = set(keys)
    return {k: v for k, v in context.items() if k not in drop}


def summarize_context(context: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only scalar, non-diagnostic fields of a decision snapshot."""
    return {k: v for k, v in strip_keys(context, DIAGNOSTIC_KEYS).items() if isinstance(v, _SCALARS)}


class JsonFileBackend:
    """
    Single JSON document on disk with a hard size budget.

    Writes go to a temp file in the same directory and are renamed into
    place, so a failed write never leaves a truncated document behind.
    """

    def __init__(self, path: os.PathLike, max_bytes: Optional[int] = DEFAULT_MAX_BYTES):
        self.path = Path(path)
        self.max_bytes = max_bytes
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def describe(self) -> str:
        return f"json:{self.path}"

    def read(self) -> Optional[str]:
        if not self.path.exists():
            return None
        return self.path.read_text(encoding="utf-8")

    def write(self, text: str) -> None:
        size = len(text.encode("utf-8"))
        if self.max_bytes is not None and size > self.max_bytes:
            raise StorageQuotaExceeded(f"state document is {size} bytes, budget is {self.max_bytes}")

        temp_fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".state_", suffix=".json.tmp")
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(temp_path, self.path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def quarantine(self) -> Optional[Path]:
        """Move an unreadable document aside so it is not overwritten."""
        if not self.path.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        target = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            os.replace(self.path, target)
        except OSError as exc:
            logger.warning("Could not move corrupt state file aside: %s", exc)
            return None
        return target


class StateStore:
    """
    Persistence gateway for the ledger.

    Features:
    - Atomic writes under a byte budget
    - Closed-history cap and trace stripping on every write
    - One-shot emergency write on quota exhaustion
    - Tolerant reads (missing/corrupt document -> empty, valid ledger)
    """

    def __init__(
        self,
        state_file: Optional[str] = None,
        backend: Optional[JsonFileBackend] = None,
        max_bytes: Optional[int] = DEFAULT_MAX_BYTES,
        closed_history: int = DEFAULT_CLOSED_HISTORY,
        log_limit: int = DEFAULT_LOG_LIMIT,
        on_critical: Optional[Callable[[str], None]] = None,
        metrics=None,
    ):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: $STATE_FILE or data/state.json)
            backend: Pre-built backend; overrides state_file/max_bytes
            max_bytes: Size budget for the serialized document
            closed_history: Closed positions kept per normal write
            log_limit: Event log lines kept per normal write
            on_critical: Called with a message when the emergency write fails
            metrics: Optional MetricsRecorder
        """
        if backend is None:
            path = state_file or os.getenv("STATE_FILE", "data/state.json")
            backend = JsonFileBackend(path, max_bytes=max_bytes)
        self._backend = backend
        self.closed_history = closed_history
        self.log_limit = log_limit
        self.on_critical = on_critical
        self.metrics = metrics
        self._critical_alerted = False
        logger.info("Initialized StateStore at %s", self._backend.describe())

    # ------------------------------------------------------------------ read

    def load(self, default_cash: float = DEFAULT_STARTING_CASH) -> LedgerState:
        """
        Load ledger state.

        Returns:
            LedgerState; an empty ledger with ``default_cash`` when nothing
            usable is stored.
        """
        try:
            raw = self._backend.read()
        except OSError as exc:
            logger.error("Failed to read state: %s", exc)
            return LedgerState(cash=default_cash)

        if raw is None:
            logger.debug("No state file found, using defaults")
            return LedgerState(cash=default_cash)

        try:
            data = json.loads(raw)
        except ValueError as exc:
            logger.error("State file is corrupt (%s); starting from an empty ledger", exc)
            self._backend.quarantine()
            return LedgerState(cash=default_cash)

        if not isinstance(data, dict):
            logger.warning("Invalid state file format, using defaults")
            self._backend.quarantine()
            return LedgerState(cash=default_cash)

        return self._state_from_document(data, default_cash)

    def _state_from_document(self, data: Dict[str, Any], default_cash: float) -> LedgerState:
        cash = _float_or(data.get("cash", data.get("balance")), default_cash)
        if cash < 0:
            logger.warning("Stored cash %.2f is negative; clamping to 0", cash)
            cash = 0.0

        positions: List[Position] = []
        raw_positions = data.get("positions", data.get("portfolio"))
        for item in raw_positions if isinstance(raw_positions, list) else []:
            if not isinstance(item, dict):
                continue
            position = Position.from_dict(item)
            if position is None:
                logger.warning("Skipping unusable stored position: %s", item.get("id"))
                continue
            positions.append(position)

        logs = data.get("logs")
        logs = [str(line) for line in logs][: self.log_limit] if isinstance(logs, list) else []

        state = LedgerState(
            cash=cash,
            positions=_merge_duplicate_open(positions),
            realized_pnl=_float_or(data.get("realized_pnl", data.get("totalPnLRealized")), 0.0),
            logs=logs,
            autopilot_enabled=bool(data.get("autopilot_enabled", data.get("isAutoPilotActive", False))),
        )
        logger.info(
            "Loaded state: cash=$%.2f, %d open / %d closed positions",
            state.cash,
            len(state.open_positions()),
            len(state.closed_positions()),
        )
        return state

    # ----------------------------------------------------------------- write

    def build_document(self, state: LedgerState) -> Dict[str, Any]:
        """Normal document: full open positions, capped and stripped closed ones."""
        open_docs = []
        for position in state.open_positions():
            doc = position.to_dict()
            doc["decision_context"] = strip_keys(position.decision_context, TRACE_KEYS)
            open_docs.append(doc)

        closed = state.closed_positions()
        if self.closed_history >= 0:
            closed = closed[-self.closed_history:] if self.closed_history else []
        closed_docs = []
        for position in closed:
            doc = position.to_dict()
            doc.pop("decision_context", None)
            closed_docs.append(doc)

        return {
            "version": STATE_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "cash": state.cash,
            "realized_pnl": state.realized_pnl,
            "autopilot_enabled": state.autopilot_enabled,
            "logs": list(state.logs[: self.log_limit]),
            "positions": open_docs + closed_docs,
        }

    def build_emergency_document(self, state: LedgerState) -> Dict[str, Any]:
        """Emergency document: open positions and balance, no diagnostics, no logs."""
        return {
            "version": STATE_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "cash": state.cash,
            "realized_pnl": state.realized_pnl,
            "autopilot_enabled": state.autopilot_enabled,
            "logs": [],
            "positions": [p.to_dict() for p in state.open_positions()],
        }

    def save(self, state: LedgerState) -> bool:
        """
        Persist ledger state, degrading on quota exhaustion.

        Never raises. Returns True if some document (normal or emergency)
        was written.
        """
        try:
            self._write(self.build_document(state))
            self._record("ok")
            self._critical_alerted = False
            logger.debug("Saved state")
            return True
        except Exception as exc:
            if not is_quota_error(exc):
                logger.error("Failed to save state: %s", exc)
                self._record("error")
                return False
            logger.warning("State store is full (%s); attempting emergency write", exc)

        # Degrade in memory, then retry exactly once
        state.logs.clear()
        for position in state.positions:
            position.decision_context = summarize_context(position.decision_context)

        try:
            self._write(self.build_emergency_document(state))
        except Exception as exc:
            message = f"CRITICAL: emergency state write failed, ledger is not being persisted ({exc})"
            state.logs.insert(0, message)
            self._record("critical")
            if self._critical_alerted:
                logger.error("Emergency state write still failing: %s", exc)
                return False
            logger.critical(message)
            self._critical_alerted = True
            if self.on_critical:
                try:
                    self.on_critical(message)
                except Exception as alert_exc:
                    logger.error("Critical-persistence alert failed: %s", alert_exc)
            return False

        logger.warning("State store full: history dropped, open positions and balance saved")
        self._record("emergency")
        self._critical_alerted = False
        return True

    def _write(self, document: Dict[str, Any]) -> None:
        self._backend.write(json.dumps(document, indent=2))

    def _record(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_persist(outcome)

    def describe(self) -> str:
        return self._backend.describe()


def _float_or(value: Any, default: float) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if result == result else default


def _merge_duplicate_open(positions: List[Position]) -> List[Position]:
    """Fold several open positions on one symbol into a single averaged one."""
    merged: List[Position] = []
    open_by_symbol: Dict[str, Position] = {}
    for position in positions:
        if not position.is_open:
            merged.append(position)
            continue
        existing = open_by_symbol.get(position.symbol)
        if existing is None:
            open_by_symbol[position.symbol] = position
            merged.append(position)
            continue
        logger.warning("Merging duplicate open %s position %s into %s", position.symbol, position.id, existing.id)
        existing.average_in(position.entry_price, position.quantity, peak_price=position.peak_price)
        existing.opened_at = min(existing.opened_at, position.opened_at)
    return merged


def create_state_store_from_config(state_cfg: Optional[Dict[str, Any]], on_critical=None, metrics=None) -> StateStore:
    state_cfg = state_cfg or {}
    return StateStore(
        state_file=state_cfg.get("path"),
        max_bytes=state_cfg.get("max_bytes", DEFAULT_MAX_BYTES),
        closed_history=int(state_cfg.get("closed_history", DEFAULT_CLOSED_HISTORY)),
        log_limit=int(state_cfg.get("log_limit", DEFAULT_LOG_LIMIT)),
        on_critical=on_critical,
        metrics=metrics,
    )
