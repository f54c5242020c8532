"""
scanpilot Runner: Main Loop

Builds every collaborator once from config and hands them to the core as
explicit objects; then runs the autopilot until SIGINT/SIGTERM.

Flow per tick (driven by the scan orchestrator's timer):
1. Protect open positions (position monitor)
2. Scan the universe in throttled batches
3. Route verdicts to the ledger
4. Publish state to subscribers and persist it
"""

import logging
import signal
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from core.autopilot import AutopilotController
from core.interfaces import DecisionFunction, MarketDataSource, load_decision_function
from core.ledger import PositionLedger
from core.market_data import create_market_data_from_config
from core.position_monitor import PositionMonitor
from core.profiles import get_risk_profile
from core.risk_auditor import BasicRiskAuditor
from core.scan_orchestrator import ScanOrchestrator, ScanReport
from infra.healthcheck import HealthServer
from infra.instance_lock import check_single_instance
from infra.metrics import MetricsRecorder
from infra.notifier import Notifier, create_notifier
from infra.state_store import create_state_store_from_config
from tools.config_validator import APP_CONFIG_FILE, AppConfig, validate_all_configs

logger = logging.getLogger(__name__)

LOCK_NAME = "scanpilot"


class AutopilotDaemon:
    """
    Process-level owner of the autopilot.

    Responsibilities:
    - Validate and load config
    - Configure logging, acquire the single-instance lock
    - Construct ledger, store, market data, monitor, orchestrator, controller
    - Serve metrics/health when enabled
    - Graceful shutdown: clear the timer, let the in-flight scan finish, persist
    """

    def __init__(
        self,
        config_dir: str = "config",
        market_data: Optional[MarketDataSource] = None,
        notifier: Optional[Notifier] = None,
        decision_fn: Optional[DecisionFunction] = None,
        configure_logging: bool = True,
        acquire_lock: bool = True,
    ):
        self.config_dir = Path(config_dir)
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if lines:
                    logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.config = AppConfig(**self._load_yaml(APP_CONFIG_FILE))

        if configure_logging:
            self._configure_logging()
        logger.info(f"Starting {self.config.app.name} (profile={self.config.risk.profile})")

        self.instance_lock = None
        if acquire_lock:
            lock_dir = Path(self.config.state.path).parent
            self.instance_lock = check_single_instance(LOCK_NAME, lock_dir=str(lock_dir))
            if not self.instance_lock:
                raise RuntimeError("Another scanpilot instance owns this state file")

        monitoring = self.config.monitoring
        self.metrics = MetricsRecorder(enabled=monitoring.metrics_enabled, port=monitoring.metrics_port)
        self.notifier = notifier or create_notifier(self.config.notifications.model_dump())

        state_cfg = self.config.state
        self.state_store = create_state_store_from_config(
            state_cfg.model_dump(), on_critical=self.notifier.alert, metrics=self.metrics
        )
        app_cfg = self.config.app
        self.ledger = PositionLedger(
            self.state_store.load(default_cash=app_cfg.starting_cash),
            store=self.state_store,
            notifier=self.notifier,
            commission_rate=app_cfg.commission_rate,
            starting_cash=app_cfg.starting_cash,
            closed_retention=state_cfg.closed_retention,
            log_limit=state_cfg.log_limit,
            metrics=self.metrics,
        )

        self.market_data = market_data or create_market_data_from_config(self.config.market_data.model_dump())
        self.monitor = PositionMonitor(self.ledger, self.market_data, get_risk_profile(self.config.risk.profile))
        settings = self.config.settings
        self.auditor = BasicRiskAuditor(
            max_position_percent=settings.max_position_percent,
            max_open_trades=settings.max_open_trades,
            max_per_prefix=self.config.risk.max_per_prefix,
            commission_rate=app_cfg.commission_rate,
        )

        loop_cfg = self.config.loop
        self.orchestrator = ScanOrchestrator(
            self.ledger,
            self.monitor,
            self.market_data,
            decision_fn or load_decision_function(self.config.decision.function),
            self.auditor,
            interval_seconds=settings.scan_interval_seconds,
            batch_size=loop_cfg.batch_size,
            batch_delay_seconds=loop_cfg.batch_delay_seconds,
            watchdog_seconds=loop_cfg.watchdog_seconds,
            scan_results_limit=loop_cfg.scan_results_limit,
            max_symbols=loop_cfg.max_symbols,
            candle_count=loop_cfg.candle_count,
            asset_type=app_cfg.asset_type,
            metrics=self.metrics,
        )
        self.controller = AutopilotController(
            self.ledger,
            self.orchestrator,
            self.market_data,
            settings=settings,
            auditor=self.auditor,
            min_manual_notional=self.config.risk.min_manual_notional,
        )

        self.health_server: Optional[HealthServer] = None
        if monitoring.health_enabled:
            self.health_server = HealthServer(
                monitoring.health_port, self.status, state_provider=lambda: self.controller.snapshot().to_dict()
            )

        self._stop_event = threading.Event()
        self._shutdown_done = False

    def _load_yaml(self, filename: str) -> dict:
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _configure_logging(self) -> None:
        log_cfg = self.config.logging
        handlers = [logging.StreamHandler()]
        if log_cfg.file:
            log_path = Path(log_cfg.file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path))
        logging.basicConfig(
            level=getattr(logging, log_cfg.level.upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=handlers,
        )

    # ---------------------------------------------------------------- status

    def status(self) -> Dict[str, Any]:
        blocked_until = self.market_data.blocked_until
        return {
            "ok": True,
            "autopilot_enabled": self.ledger.autopilot_enabled,
            "timer_running": self.orchestrator.is_running,
            "scanning": self.orchestrator.is_scanning,
            "market_data_blocked_until": blocked_until.isoformat() if blocked_until else None,
            "cash": self.ledger.cash,
            "open_positions": len(self.ledger.open_positions()),
            "universe_size": len(self.orchestrator.universe),
            "last_scan": self.metrics.last_scan,
            "state_writes": dict(self.metrics.persist_outcomes),
        }

    # ------------------------------------------------------------------- run

    def load_universe(self) -> int:
        static = self.config.market_data.universe
        symbols = list(static) if static else self.market_data.load_universe()
        self.orchestrator.set_universe(symbols)
        return len(self.orchestrator.universe)

    def run_once(self) -> Optional[ScanReport]:
        """Single scan regardless of the autopilot flag (cron-style use)."""
        self.load_universe()
        report = self.orchestrator.scan_market()
        self.ledger.publish()
        return report

    def run_forever(self, enable_autopilot: bool = False) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        self.metrics.start()
        if self.health_server:
            self.health_server.start()
        poll_seconds = self.config.market_data.poll_seconds
        if poll_seconds > 0 and hasattr(self.market_data, "start_polling"):
            self.market_data.start_polling(poll_seconds)

        count = self.load_universe()
        logger.info(f"Watching {count} symbols")

        if enable_autopilot and not self.ledger.autopilot_enabled:
            self.controller.toggle_autopilot()
        else:
            self.controller.resume()
        if not self.ledger.autopilot_enabled:
            logger.warning("Autopilot is off; start with --enable-autopilot to trade")

        try:
            while not self._stop_event.wait(1.0):
                pass
        finally:
            self.shutdown()

    def _handle_stop(self, signum, frame) -> None:
        logger.warning("=" * 80)
        logger.warning(f"SHUTDOWN SIGNAL RECEIVED ({signum}) - stopping after the in-flight scan")
        logger.warning("=" * 80)
        self._stop_event.set()

    def shutdown(self) -> None:
        if self._shutdown_done:
            return
        self._shutdown_done = True
        self.controller.shutdown()
        if hasattr(self.market_data, "stop_polling"):
            self.market_data.stop_polling()
        if self.health_server:
            self.health_server.stop()
        if self.instance_lock:
            self.instance_lock.release()
        logger.info("Shutdown complete")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="scanpilot paper-trading autopilot")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--once", action="store_true", help="Run a single scan and exit")
    parser.add_argument("--enable-autopilot", action="store_true", help="Switch the autopilot on at startup")
    parser.add_argument("--reset", action="store_true", help="Reset the paper ledger before starting")

    args = parser.parse_args()

    daemon = AutopilotDaemon(config_dir=args.config_dir)
    if args.reset:
        daemon.controller.reset_ledger()

    if args.once:
        try:
            report = daemon.run_once()
            if report is not None:
                logger.info(f"Scan report: {report.as_dict()}")
        finally:
            daemon.shutdown()
    else:
        daemon.run_forever(enable_autopilot=args.enable_autopilot)


if __name__ == "__main__":
    main()
