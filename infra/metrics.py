"""Prometheus-backed metrics hooks for the scan loop and ledger."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """
    Expose scan and ledger stats via Prometheus.

    Every recorder owns its CollectorRegistry, so several instances (tests,
    one-shot runs) never collide on metric registration. When disabled, calls
    only update the in-process ``last_*`` values.
    """

    def __init__(self, enabled: bool = True, port: int = 9090, registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        self.last_scan: Optional[Dict[str, object]] = None
        self.persist_outcomes: Dict[str, int] = {}
        self.closes_by_reason: Dict[str, int] = {}

        self._scan_summary = Summary(
            "scanpilot_scan_duration_seconds",
            "Duration of a full market scan",
            registry=self.registry,
        )
        self._scan_counter = Counter(
            "scanpilot_scans_total",
            "Completed scans by status",
            labelnames=("status",),
            registry=self.registry,
        )
        self._symbols_counter = Counter(
            "scanpilot_symbols_total",
            "Symbols processed by outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._closes_counter = Counter(
            "scanpilot_positions_closed_total",
            "Closed positions by exit reason",
            labelnames=("reason",),
            registry=self.registry,
        )
        self._persist_counter = Counter(
            "scanpilot_state_writes_total",
            "State store writes by outcome (ok, error, emergency, critical)",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._open_positions_gauge = Gauge(
            "scanpilot_open_positions",
            "Currently open positions",
            registry=self.registry,
        )
        self._cash_gauge = Gauge(
            "scanpilot_cash_usd",
            "Cash balance of the paper account",
            registry=self.registry,
        )

    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def port(self) -> int:
        return self._port

    def start(self) -> None:
        """Serve /metrics on the configured port (first free of port..port+3)."""
        if not self._enabled or self._started:
            return

        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None
        for port in ports_to_try:
            try:
                start_http_server(port, registry=self.registry)
            except OSError as exc:
                last_error = exc
                logger.debug("Port %s in use, trying next port...", port)
                continue
            self._started = True
            if port != self._port:
                logger.warning("Port %s in use, bound metrics exporter to %s instead", self._port, port)
                self._port = port
            logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
            return

        self._enabled = False
        logger.error("Failed to start metrics exporter after trying ports %s: %s", ports_to_try, last_error)

    def record_scan(self, report) -> None:
        self.last_scan = report.as_dict()
        if not self._enabled:
            return
        self._scan_summary.observe(report.duration_seconds)
        self._scan_counter.labels(status="aborted" if report.aborted else "complete").inc()
        self._symbols_counter.labels(outcome="evaluated").inc(report.evaluated)
        self._symbols_counter.labels(outcome="skipped").inc(report.skipped)
        self._symbols_counter.labels(outcome="error").inc(report.errors)

    def record_close(self, reason: str) -> None:
        self.closes_by_reason[reason] = self.closes_by_reason.get(reason, 0) + 1
        if self._enabled:
            self._closes_counter.labels(reason=reason).inc()

    def record_persist(self, outcome: str) -> None:
        self.persist_outcomes[outcome] = self.persist_outcomes.get(outcome, 0) + 1
        if self._enabled:
            self._persist_counter.labels(outcome=outcome).inc()

    def record_ledger(self, cash: float, open_positions: int) -> None:
        if self._enabled:
            self._cash_gauge.set(cash)
            self._open_positions_gauge.set(open_positions)
