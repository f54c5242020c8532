"""Tests for metrics, health endpoint and the single-instance lock."""

import json
import os
from unittest.mock import Mock
from urllib.request import urlopen

import pytest

from core.scan_orchestrator import ScanReport
from infra.healthcheck import HealthServer
from infra.instance_lock import SingleInstanceLock, check_single_instance
from infra.metrics import MetricsRecorder


class TestMetrics:
    def test_records_without_exporter(self):
        metrics = MetricsRecorder(enabled=False)
        report = ScanReport(universe_size=10, evaluated=8, skipped=2, duration_seconds=1.5)

        metrics.record_scan(report)
        metrics.record_close("stop loss")
        metrics.record_close("stop loss")
        metrics.record_persist("ok")

        assert metrics.last_scan["evaluated"] == 8
        assert metrics.closes_by_reason == {"stop loss": 2}
        assert metrics.persist_outcomes == {"ok": 1}

    def test_counters_are_exported(self):
        metrics = MetricsRecorder(enabled=True)
        metrics.record_scan(ScanReport(evaluated=3, skipped=1, aborted=True, duration_seconds=0.2))
        metrics.record_close("take profit")
        metrics.record_ledger(512.0, 2)

        registry = metrics.registry
        assert registry.get_sample_value("scanpilot_scans_total", {"status": "aborted"}) == 1.0
        assert registry.get_sample_value("scanpilot_symbols_total", {"outcome": "evaluated"}) == 3.0
        assert registry.get_sample_value("scanpilot_positions_closed_total", {"reason": "take profit"}) == 1.0
        assert registry.get_sample_value("scanpilot_cash_usd") == 512.0
        assert registry.get_sample_value("scanpilot_open_positions") == 2.0

    def test_instances_do_not_share_registries(self):
        first = MetricsRecorder()
        second = MetricsRecorder()
        first.record_close("manual")
        assert second.registry.get_sample_value("scanpilot_positions_closed_total", {"reason": "manual"}) is None


class TestHealthServer:
    def test_health_and_state_endpoints(self):
        status = {"ok": True, "open_positions": 1}
        server = HealthServer(0, lambda: status, state_provider=lambda: {"cash": 10.0})
        server.start()
        try:
            base = f"http://127.0.0.1:{server.port}"
            with urlopen(f"{base}/health", timeout=5) as response:
                assert response.status == 200
                assert json.loads(response.read()) == status
            with urlopen(f"{base}/state", timeout=5) as response:
                assert json.loads(response.read()) == {"cash": 10.0}
        finally:
            server.stop()

    def test_unhealthy_status_is_503(self):
        from urllib.error import HTTPError

        server = HealthServer(0, lambda: {"ok": False})
        server.start()
        try:
            with pytest.raises(HTTPError) as excinfo:
                urlopen(f"http://127.0.0.1:{server.port}/health", timeout=5)
            assert excinfo.value.code == 503
        finally:
            server.stop()


class TestInstanceLock:
    def test_second_lock_is_refused(self, tmp_path):
        first = check_single_instance("t", lock_dir=str(tmp_path))
        assert first is not None
        try:
            # Same PID counts as ours; simulate another live process
            (tmp_path / "t.pid").write_text(str(os.getppid()))
            assert check_single_instance("t", lock_dir=str(tmp_path)) is None
        finally:
            first.release()

    def test_stale_lock_is_taken_over(self, tmp_path, monkeypatch):
        (tmp_path / "t.pid").write_text("999999")
        monkeypatch.setattr(SingleInstanceLock, "_is_process_running", staticmethod(lambda pid: False))

        lock = SingleInstanceLock("t", lock_dir=str(tmp_path))
        assert lock.acquire()
        assert (tmp_path / "t.pid").read_text() == str(os.getpid())
        lock.release()
        assert not (tmp_path / "t.pid").exists()

    def test_context_manager(self, tmp_path):
        with SingleInstanceLock("t", lock_dir=str(tmp_path)) as lock:
            assert lock.acquired
        assert not lock.acquired
