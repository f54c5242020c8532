"""
Tests for app.yaml validation.

Validates that:
- The shipped config is valid
- Schema errors name the offending field
- Sanity checks catch logically inconsistent settings
"""

from pathlib import Path

import pytest
import yaml

from tools.config_validator import (
    AppConfig,
    TradingSettings,
    load_app_config,
    validate_all_configs,
    validate_sanity_checks,
)

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


def _write(config_dir: Path, data) -> Path:
    config_dir.mkdir(parents=True, exist_ok=True)
    text = data if isinstance(data, str) else yaml.safe_dump(data)
    (config_dir / "app.yaml").write_text(text)
    return config_dir


def test_shipped_config_is_valid():
    assert validate_all_configs(str(REPO_CONFIG)) == []


def test_shipped_config_loads():
    config = load_app_config(str(REPO_CONFIG))
    assert config.risk.profile == "balanced"
    assert config.settings.scan_interval_seconds == 30.0
    assert config.decision.function == "core.interfaces:hold_decision"


def test_empty_file_means_defaults(tmp_path):
    config_dir = _write(tmp_path / "cfg", "")
    assert validate_all_configs(str(config_dir)) == []
    assert load_app_config(str(config_dir)).app.starting_cash == 1000.0


def test_missing_file(tmp_path):
    errors = validate_all_configs(str(tmp_path / "nowhere"))
    assert len(errors) == 1
    assert "not found" in errors[0]


def test_malformed_yaml_reports_location(tmp_path):
    config_dir = _write(tmp_path / "cfg", "app:\n  name: [unclosed\n")
    errors = validate_all_configs(str(config_dir))
    assert errors and "Invalid YAML" in errors[0]


def test_unknown_profile(tmp_path):
    config_dir = _write(tmp_path / "cfg", {"risk": {"profile": "yolo"}})
    errors = validate_all_configs(str(config_dir))
    assert any("risk -> profile" in e for e in errors)


def test_interval_bounds(tmp_path):
    config_dir = _write(tmp_path / "cfg", {"settings": {"scanIntervalSeconds": 1}})
    errors = validate_all_configs(str(config_dir))
    assert any("scanIntervalSeconds" in e or "scan_interval_seconds" in e for e in errors)


def test_load_app_config_raises(tmp_path):
    config_dir = _write(tmp_path / "cfg", {"loop": {"batch_size": 0}})
    with pytest.raises(ValueError, match="batch_size"):
        load_app_config(str(config_dir))


def test_base_urls_are_normalised():
    config = AppConfig(market_data={"base_urls": ["https://api.binance.com/api/v3/"]})
    assert config.market_data.base_urls == ["https://api.binance.com/api/v3"]


def test_base_urls_must_be_http():
    with pytest.raises(ValueError):
        AppConfig(market_data={"base_urls": ["ftp://example.test"]})


class TestSanityChecks:
    def test_defaults_are_consistent(self):
        assert validate_sanity_checks(AppConfig()) == []

    def test_oversized_batches(self):
        errors = validate_sanity_checks(AppConfig(loop={"batch_size": 60}))
        assert any("batch_size" in e for e in errors)

    def test_no_batch_delay(self):
        errors = validate_sanity_checks(AppConfig(loop={"batch_delay_seconds": 0}))
        assert any("batch_delay_seconds" in e for e in errors)

    def test_history_exceeds_retention(self):
        errors = validate_sanity_checks(AppConfig(state={"closed_history": 300, "closed_retention": 200}))
        assert any("closed_history" in e for e in errors)

    def test_watchdog_shorter_than_interval(self):
        errors = validate_sanity_checks(AppConfig(loop={"watchdog_seconds": 60}, settings={"scanIntervalSeconds": 120}))
        assert any("watchdog" in e for e in errors)

    def test_port_clash(self):
        monitoring = {"metrics_enabled": True, "health_enabled": True, "metrics_port": 9000, "health_port": 9000}
        errors = validate_sanity_checks(AppConfig(monitoring=monitoring))
        assert any("port" in e for e in errors)


class TestTradingSettings:
    def test_merge_accepts_aliases_and_field_names(self):
        merged = TradingSettings().merged({"scanIntervalSeconds": 60, "max_open_trades": 5})
        assert merged.scan_interval_seconds == 60.0
        assert merged.max_open_trades == 5

    def test_merge_rejects_invalid_values(self):
        original = TradingSettings()
        with pytest.raises(ValueError):
            original.merged({"maxPositionPercent": 150})
        assert original.max_position_percent == 10.0
