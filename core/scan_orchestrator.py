"""
scanpilot Core: Scan Orchestrator

Timer-driven discovery loop:

    tick -> position monitor -> batched symbol scan -> route verdicts -> publish

Symbols are fetched and scored concurrently inside a batch (fan-out, barrier
join); verdicts are then routed to the ledger one by one on the scan thread,
so the ledger only ever sees a single writer from the loop.
"""

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.exceptions import MarketDataBlocked, MarketDataUnavailable
from core.interfaces import DecisionFunction, MarketDataSource, RiskAuditor
from core.models import Candle, Decision, ExitReason, ScanResult, TradeSource, Verdict
from core.risk_calculator import calculate_dynamic_levels

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30.0
DEFAULT_BATCH_SIZE = 15
DEFAULT_BATCH_DELAY_SECONDS = 0.4
DEFAULT_WATCHDOG_SECONDS = 300.0
DEFAULT_SCAN_RESULTS_LIMIT = 200

DAILY_INTERVAL = "1d"
HOURLY_INTERVAL = "1h"
DEFAULT_CANDLE_COUNT = 120
MIN_DAILY_CANDLES = 20
MIN_ORDER_QUANTITY = 1e-6

EVALUATED = "evaluated"
SKIPPED = "skipped"
ERROR = "error"
BLOCKED = "blocked"


@dataclass
class SymbolOutcome:
    """Result of fetch-and-decide for one symbol (produced on a worker thread)."""
    symbol: str
    status: str
    price: float = 0.0
    decision: Optional[Decision] = None
    daily_candles: List[Candle] = field(default_factory=list)
    detail: str = ""


@dataclass
class ScanReport:
    """Counters for one completed (or aborted) scan."""
    universe_size: int = 0
    evaluated: int = 0
    skipped: int = 0
    errors: int = 0
    signals: int = 0
    buys: int = 0
    sells: int = 0
    monitor_closed: int = 0
    batches: int = 0
    aborted: bool = False
    duration_seconds: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


def chunked(items: List[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class ScanOrchestrator:
    """
    Drives periodic scans of the watch universe.

    Responsibilities:
    - Recurring timer with an immediate first tick
    - Reentrancy guard with a watchdog for wedged scans
    - Open-position symbols first, the rest shuffled
    - Fixed-size batches separated by a throttle delay
    - Early abort while upstream is in cool-down
    - Publish and persist after every batch
    """

    def __init__(
        self,
        ledger,
        monitor,
        market_data: MarketDataSource,
        decision_fn: DecisionFunction,
        auditor: RiskAuditor,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay_seconds: float = DEFAULT_BATCH_DELAY_SECONDS,
        watchdog_seconds: float = DEFAULT_WATCHDOG_SECONDS,
        scan_results_limit: int = DEFAULT_SCAN_RESULTS_LIMIT,
        max_symbols: Optional[int] = None,
        candle_count: int = DEFAULT_CANDLE_COUNT,
        asset_type: str = "crypto",
        universe: Optional[List[str]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        metrics=None,
    ):
        """
        Initialize orchestrator.

        Args:
            ledger: PositionLedger receiving routed verdicts
            monitor: PositionMonitor run at the start of every scan
            market_data: Quote/candle source
            decision_fn: (symbol, candles_by_interval, asset_type) -> Decision
            auditor: RiskAuditor gating autopilot buys
            interval_seconds: Timer period
            batch_size: Symbols fetched concurrently per batch
            batch_delay_seconds: Pause between batches
            watchdog_seconds: Age after which an in-flight scan's guard is force-cleared
            scan_results_limit: Size of the live scan feed
            max_symbols: Optional cap on symbols per scan (open positions always included)
            sleep: Injectable sleep (tests)
            clock: Injectable monotonic clock (tests)
            rng: Injectable RNG for the universe shuffle (tests)
            metrics: Optional MetricsRecorder
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.ledger = ledger
        self.monitor = monitor
        self.market_data = market_data
        self.decision_fn = decision_fn
        self.auditor = auditor
        self.interval_seconds = float(interval_seconds)
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.watchdog_seconds = watchdog_seconds
        self.scan_results_limit = scan_results_limit
        self.max_symbols = max_symbols
        self.candle_count = candle_count
        self.asset_type = asset_type
        self.metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

        self._universe: List[str] = list(universe or [])
        self._scan_results: List[ScanResult] = []
        self._results_lock = threading.Lock()

        # Reentrancy guard; the generation token keeps a wedged scan from
        # clearing the guard of the scan that replaced it
        self._guard = threading.Condition()
        self._scanning = False
        self._scan_started: Optional[float] = None
        self._generation = 0

        self._timer_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._dispatch_count = 0

    # ------------------------------------------------------------ universe

    def set_universe(self, symbols: Iterable[str]) -> None:
        seen = set()
        ordered = []
        for symbol in symbols:
            if symbol and symbol not in seen:
                seen.add(symbol)
                ordered.append(symbol)
        self._universe = ordered
        logger.info("Watch universe set to %d symbols", len(ordered))

    @property
    def universe(self) -> List[str]:
        return list(self._universe)

    def scan_results(self) -> List[ScanResult]:
        with self._results_lock:
            return list(self._scan_results)

    # --------------------------------------------------------------- timer

    @property
    def is_running(self) -> bool:
        return self._timer_thread is not None and self._timer_thread.is_alive()

    @property
    def is_scanning(self) -> bool:
        with self._guard:
            return self._scanning

    def start(self) -> None:
        """Start the recurring timer; the first scan is dispatched immediately."""
        if self.is_running:
            logger.debug("Scan timer already running")
            return
        self._stop_event.clear()
        self._wake_event.clear()
        self._timer_thread = threading.Thread(target=self._run_timer, name="scan-timer", daemon=True)
        self._timer_thread.start()
        logger.info("Scan timer started (every %.0fs)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Clear the timer. An in-flight scan is left to finish."""
        self._stop_event.set()
        self._wake_event.set()
        thread = self._timer_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._timer_thread = None
        logger.info("Scan timer stopped")

    def reschedule(self, interval_seconds: float) -> None:
        """Change the period; a running timer restarts its wait with the new value."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = float(interval_seconds)
        if self.is_running:
            self._wake_event.set()
        logger.info("Scan interval set to %.0fs", self.interval_seconds)

    def _run_timer(self) -> None:
        self._dispatch()
        while not self._stop_event.is_set():
            woken = self._wake_event.wait(self.interval_seconds)
            if self._stop_event.is_set():
                break
            if woken:
                self._wake_event.clear()
                continue
            self._dispatch()

    def _dispatch(self) -> None:
        self._dispatch_count += 1
        threading.Thread(target=self.tick, name=f"scan-{self._dispatch_count}", daemon=True).start()

    def tick(self) -> Optional[ScanReport]:
        """One timer firing. Never raises."""
        try:
            return self.scan_market()
        except Exception as exc:
            logger.error("Scan tick failed: %s", exc, exc_info=True)
            return None

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no scan is in flight."""
        with self._guard:
            return self._guard.wait_for(lambda: not self._scanning, timeout=timeout)

    # --------------------------------------------------------------- guard

    def _acquire_guard(self) -> Optional[int]:
        with self._guard:
            now = self._clock()
            if self._scanning:
                age = now - (self._scan_started or now)
                if age <= self.watchdog_seconds:
                    logger.warning("Scan already in progress (%.0fs), skipping tick", age)
                    return None
                logger.error("Scan wedged for %.0fs; forcing reentrancy guard clear", age)
                self.ledger.add_log("System", f"Scan watchdog fired after {age:.0f}s, guard reset")
            self._generation += 1
            self._scanning = True
            self._scan_started = now
            return self._generation

    def _release_guard(self, generation: int) -> None:
        with self._guard:
            if generation != self._generation:
                logger.warning("Superseded scan #%d finished late; guard left to scan #%d", generation, self._generation)
                return
            self._scanning = False
            self._scan_started = None
            self._guard.notify_all()

    # ---------------------------------------------------------------- scan

    def scan_market(self) -> Optional[ScanReport]:
        """
        Run one full scan unless one is already in flight.

        Returns:
            ScanReport, or None if the tick was skipped by the guard
        """
        generation = self._acquire_guard()
        if generation is None:
            return None
        try:
            return self._run_scan()
        finally:
            self._release_guard(generation)

    def _run_scan(self) -> ScanReport:
        started = time.monotonic()
        report = ScanReport()

        try:
            report.monitor_closed = len(self.monitor.check_positions())
        except Exception as exc:
            logger.error("Position monitor failed: %s", exc, exc_info=True)

        symbols = self.build_scan_list()
        report.universe_size = len(symbols)
        logger.info("Scan started: %d symbols in batches of %d", len(symbols), self.batch_size)

        batches = list(chunked(symbols, self.batch_size))
        for index, batch in enumerate(batches):
            if self.market_data.is_blocked():
                report.aborted = True
                logger.warning(
                    "Market data blocked until %s; stopping scan after %d/%d batches",
                    self.market_data.blocked_until,
                    report.batches,
                    len(batches),
                )
                break

            for outcome in self._run_batch(batch):
                self._route(outcome, report)
            report.batches += 1
            percent = round(report.batches / len(batches) * 100)
            self.ledger.add_log("System", f"Analysis: {percent}% complete")
            self.ledger.publish()
            logger.debug("Batch %d/%d done", index + 1, len(batches))

            if index < len(batches) - 1:
                self._sleep(self.batch_delay_seconds)

        report.duration_seconds = time.monotonic() - started
        summary = (
            f"Scan {'aborted' if report.aborted else 'complete'}: {report.evaluated} evaluated, "
            f"{report.skipped} skipped, {report.errors} errors, {report.signals} signals"
        )
        logger.info("%s (%.1fs)", summary, report.duration_seconds)
        self.ledger.add_log("System", summary)
        self.ledger.publish()
        if self.metrics is not None:
            self.metrics.record_scan(report)
        return report

    def build_scan_list(self) -> List[str]:
        """Open-position symbols first, then the rest of the universe shuffled."""
        open_symbols: List[str] = []
        for position in self.ledger.open_positions():
            if position.symbol not in open_symbols:
                open_symbols.append(position.symbol)

        held = set(open_symbols)
        rest = [s for s in self._universe if s not in held]
        self._rng.shuffle(rest)

        if self.max_symbols is not None:
            rest = rest[: max(0, self.max_symbols - len(open_symbols))]
        return open_symbols + rest

    def _run_batch(self, batch: List[str]) -> List[SymbolOutcome]:
        with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="scan-worker") as pool:
            return list(pool.map(self.evaluate_symbol, batch))

    def evaluate_symbol(self, symbol: str) -> SymbolOutcome:
        """Fetch data and run the decision function for one symbol. Never raises."""
        try:
            quote = self.market_data.get_quote(symbol)
            if quote is None or not quote.price or quote.price <= 0:
                return SymbolOutcome(symbol, SKIPPED, detail="no quote")

            daily = self.market_data.get_candles(symbol, DAILY_INTERVAL, self.candle_count)
            hourly = self.market_data.get_candles(symbol, HOURLY_INTERVAL, self.candle_count)
            if not daily or len(daily) < MIN_DAILY_CANDLES:
                return SymbolOutcome(symbol, SKIPPED, price=quote.price, detail="insufficient history")

            candles = {"15m": [], HOURLY_INTERVAL: hourly, "4h": [], DAILY_INTERVAL: daily}
            decision = Decision.coerce(symbol, self.decision_fn(symbol, candles, self.asset_type))
            return SymbolOutcome(symbol, EVALUATED, price=quote.price, decision=decision, daily_candles=daily)
        except MarketDataBlocked as exc:
            return SymbolOutcome(symbol, BLOCKED, detail=str(exc))
        except MarketDataUnavailable as exc:
            logger.debug("Skipping %s: %s", symbol, exc)
            return SymbolOutcome(symbol, SKIPPED, detail=str(exc))
        except Exception as exc:
            logger.error("Analysis failed for %s: %s", symbol, exc)
            return SymbolOutcome(symbol, ERROR, detail=str(exc))

    # ------------------------------------------------------------- routing

    def _route(self, outcome: SymbolOutcome, report: ScanReport) -> None:
        if outcome.status in (SKIPPED, BLOCKED):
            report.skipped += 1
            return
        if outcome.status == ERROR:
            report.errors += 1
            return

        report.evaluated += 1
        decision = outcome.decision
        self._record_result(outcome.symbol, outcome.price, decision)
        logger.debug(
            "[%s] score %.1f | %s | $%s", outcome.symbol, decision.score, decision.verdict.value, outcome.price
        )

        try:
            if decision.verdict == Verdict.BUY:
                report.signals += 1
                if self.handle_buy_signal(decision, outcome.price, outcome.daily_candles):
                    report.buys += 1
            elif decision.verdict == Verdict.SELL:
                if self.handle_sell_signal(decision, outcome.price):
                    report.sells += 1
        except Exception as exc:
            report.errors += 1
            logger.error("Routing %s verdict for %s failed: %s", decision.verdict.value, outcome.symbol, exc, exc_info=True)

    def _record_result(self, symbol: str, price: float, decision: Decision) -> None:
        result = ScanResult(symbol=symbol, price=price, score=decision.score, verdict=decision.verdict.value)
        with self._results_lock:
            self._scan_results.insert(0, result)
            del self._scan_results[self.scan_results_limit:]

    def _mark_price(self, symbol: str) -> Optional[float]:
        try:
            quote = self.market_data.get_quote(symbol)
        except MarketDataUnavailable:
            return None
        return quote.price if quote else None

    def handle_buy_signal(self, decision: Decision, price: float, candles: List[Candle]) -> bool:
        """Audit, size and open an autopilot position. Returns True if the ledger bought."""
        equity = self.ledger.equity(self._mark_price)
        audit = self.auditor.audit(decision, self.ledger.positions(), self.ledger.cash, equity, price)
        if not audit.approved:
            logger.debug("Buy %s blocked by risk audit: %s", decision.symbol, audit.reason)
            return False

        quantity = audit.adjusted_quantity or 0.0
        if quantity < MIN_ORDER_QUANTITY:
            logger.info("Buy %s approved with quantity %s; treating as rejection", decision.symbol, quantity)
            return False

        levels = calculate_dynamic_levels(candles, price)
        position = self.ledger.buy(
            decision.symbol,
            price,
            quantity,
            context=decision.summary(),
            source=TradeSource.AUTOPILOT,
            stop_loss=levels.stop_loss_pct,
            take_profit=levels.take_profit_pct,
        )
        return position is not None

    def handle_sell_signal(self, decision: Decision, price: float) -> bool:
        position = self.ledger.find_open(decision.symbol)
        if position is None:
            return False
        detail = f"sell signal: {decision.reason}" if decision.reason else None
        return self.ledger.sell(position, price, ExitReason.SELL_SIGNAL, detail=detail) is not None
