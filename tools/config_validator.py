"""
Configuration Validation Module

Validates app.yaml against Pydantic schemas.
Ensures the config is correct before the daemon starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.profiles import RISK_PROFILES

logger = logging.getLogger(__name__)

APP_CONFIG_FILE = "app.yaml"


# ===== App Schema =====
class AppSection(BaseModel):
    """Paper account parameters"""
    name: str = Field(default="scanpilot", min_length=1)
    starting_cash: float = Field(default=1000.0, gt=0, description="Balance after a ledger reset")
    commission_rate: float = Field(default=0.001, ge=0, lt=0.05, description="Per-side commission fraction")
    asset_type: str = Field(default="crypto", min_length=1, description="Passed to the decision function")


class LoopConfig(BaseModel):
    """Scan loop parameters"""
    batch_size: int = Field(default=15, ge=1, description="Symbols fetched concurrently per batch")
    batch_delay_seconds: float = Field(default=0.4, ge=0, description="Pause between batches")
    watchdog_seconds: float = Field(default=300.0, gt=0, description="Force-clear age for a wedged scan")
    scan_results_limit: int = Field(default=200, ge=1, description="Live scan feed size")
    max_symbols: Optional[int] = Field(default=None, gt=0, description="Optional cap on symbols per scan")
    candle_count: int = Field(default=120, ge=20, description="Candles fetched per interval")


class RiskSection(BaseModel):
    """Risk profile and manual-trade limits"""
    profile: str = Field(default="balanced", description="Trading mode")
    min_manual_notional: float = Field(default=10.0, ge=0, description="Smallest manual buy (USD)")
    max_per_prefix: int = Field(default=10, ge=1, description="Max open positions sharing a symbol prefix")

    @field_validator("profile")
    @classmethod
    def validate_profile(cls, v: str) -> str:
        """Profile must be one of the known trading modes"""
        name = v.lower()
        if name not in RISK_PROFILES:
            raise ValueError(f"unknown profile {v!r}, expected one of {sorted(RISK_PROFILES)}")
        return name


class TradingSettings(BaseModel):
    """Operator-tunable settings (also accepted at runtime)"""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    scan_interval_seconds: float = Field(default=30.0, ge=5, le=3600, alias="scanIntervalSeconds")
    max_position_percent: float = Field(default=10.0, gt=0, le=100, alias="maxPositionPercent")
    max_open_trades: int = Field(default=50, gt=0, alias="maxOpenTrades")

    def merged(self, updates: Mapping[str, Any]) -> "TradingSettings":
        """
        Validate ``updates`` on top of the current values.

        Raises:
            ValueError: If any merged value is invalid (self is left untouched)
        """
        data = self.model_dump()
        for key, value in updates.items():
            field_name = _SETTINGS_ALIASES.get(key, key)
            data[field_name] = value
        try:
            return TradingSettings(**data)
        except ValidationError as e:
            messages = []
            for error in e.errors():
                field = " -> ".join(str(loc) for loc in error["loc"])
                messages.append(f"{field}: {error['msg']}")
            raise ValueError("; ".join(messages)) from e


_SETTINGS_ALIASES = {
    field.alias: name for name, field in TradingSettings.model_fields.items() if field.alias
}


class StateSection(BaseModel):
    """Persistence parameters"""
    path: str = Field(default="data/state.json", min_length=1)
    max_bytes: int = Field(default=5 * 1024 * 1024, gt=0, description="Size budget of the state document")
    closed_history: int = Field(default=50, ge=0, description="Closed positions written per save")
    closed_retention: int = Field(default=200, ge=1, description="Closed positions kept in memory")
    log_limit: int = Field(default=50, ge=1, description="Event log lines kept")


class MarketDataSection(BaseModel):
    """Binance public API parameters"""
    base_urls: List[str] = Field(default_factory=lambda: [
        "https://api.binance.com/api/v3",
        "https://api1.binance.com/api/v3",
        "https://api2.binance.com/api/v3",
    ])
    timeout_seconds: float = Field(default=10.0, gt=0)
    quote_ttl_seconds: float = Field(default=10.0, ge=0)
    candle_ttl_seconds: float = Field(default=300.0, ge=0)
    min_quote_volume: float = Field(default=100_000.0, ge=0, description="24h quote volume floor (USD)")
    poll_seconds: float = Field(default=0.0, ge=0, description="Background price polling period (0 = off)")
    universe: Optional[List[str]] = Field(default=None, description="Static universe overriding the exchange list")

    @field_validator("base_urls")
    @classmethod
    def validate_base_urls(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one base URL is required")
        for url in v:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"base URL must be http(s), got {url!r}")
        return [url.rstrip("/") for url in v]


class TelegramSection(BaseModel):
    bot_token_env: str = Field(default="TELEGRAM_BOT_TOKEN", min_length=1)
    chat_id_env: str = Field(default="TELEGRAM_CHAT_ID", min_length=1)
    timeout_seconds: float = Field(default=5.0, gt=0)


class NotificationsSection(BaseModel):
    channel: str = Field(default="log", pattern="^(log|telegram)$")
    telegram: TelegramSection = Field(default_factory=TelegramSection)


class MonitoringSection(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9090, gt=0, lt=65536)
    health_enabled: bool = False
    health_port: int = Field(default=8080, gt=0, lt=65536)


class LoggingSection(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default="logs/scanpilot.log")


class DecisionSection(BaseModel):
    function: str = Field(default="core.interfaces:hold_decision", pattern=r"^[\w.]+:[\w.]+$")


class AppConfig(BaseModel):
    """Complete app.yaml schema"""
    app: AppSection = Field(default_factory=AppSection)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    risk: RiskSection = Field(default_factory=RiskSection)
    settings: TradingSettings = Field(default_factory=TradingSettings)
    state: StateSection = Field(default_factory=StateSection)
    market_data: MarketDataSection = Field(default_factory=MarketDataSection)
    notifications: NotificationsSection = Field(default_factory=NotificationsSection)
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    decision: DecisionSection = Field(default_factory=DecisionSection)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    problem = getattr(error, "problem", str(error))
    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'>' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}" for idx in range(start, end)
    )
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))
    return data or {}


def _schema_errors(e: ValidationError) -> List[str]:
    errors = []
    for error in e.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append(f"{APP_CONFIG_FILE}: {field}: {error['msg']}")
    return errors


def validate_app_config(config_dir: Path) -> List[str]:
    """
    Validate app.yaml against schema.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    try:
        AppConfig(**load_yaml_file(config_dir / APP_CONFIG_FILE))
        logger.info("app.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"{APP_CONFIG_FILE}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{APP_CONFIG_FILE}: Invalid YAML - {e}")
    except ValidationError as e:
        errors.extend(_schema_errors(e))
    except TypeError as e:
        errors.append(f"{APP_CONFIG_FILE}: top level must be a mapping ({e})")
    return errors


def validate_sanity_checks(config: AppConfig) -> List[str]:
    """
    Logical consistency checks the schema cannot express.

    Returns:
        List of error messages (empty if consistent)
    """
    errors = []

    if config.state.closed_history > config.state.closed_retention:
        errors.append(
            f"state.closed_history ({config.state.closed_history}) exceeds "
            f"state.closed_retention ({config.state.closed_retention}); "
            f"cannot persist more closed positions than are kept in memory"
        )

    if config.loop.batch_size > 50:
        errors.append(
            f"UNSAFE: loop.batch_size ({config.loop.batch_size}) > 50. "
            f"Large bursts get flagged as automated abuse upstream."
        )

    if config.loop.batch_size > 1 and config.loop.batch_delay_seconds < 0.1:
        errors.append(
            f"UNSAFE: loop.batch_delay_seconds ({config.loop.batch_delay_seconds}s) < 0.1s "
            f"between batches of {config.loop.batch_size}."
        )

    if config.loop.watchdog_seconds < config.settings.scan_interval_seconds:
        errors.append(
            f"loop.watchdog_seconds ({config.loop.watchdog_seconds}s) is shorter than the scan interval "
            f"({config.settings.scan_interval_seconds}s); healthy scans would be force-cleared"
        )

    if config.monitoring.metrics_enabled and config.monitoring.health_enabled:
        if config.monitoring.metrics_port == config.monitoring.health_port:
            errors.append("monitoring.metrics_port and monitoring.health_port must differ")

    if not errors:
        logger.info("Configuration sanity checks passed")
    else:
        logger.warning(f"{len(errors)} sanity check issue(s) found")
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Args:
        config_dir: Path to config directory (string or Path)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = validate_app_config(config_path)
    if not all_errors:
        config = AppConfig(**load_yaml_file(config_path / APP_CONFIG_FILE))
        all_errors.extend(validate_sanity_checks(config))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")
    return all_errors


def load_app_config(config_dir: str = "config") -> AppConfig:
    """
    Load and validate app.yaml.

    Raises:
        ValueError: With every validation error, one per line
    """
    errors = validate_all_configs(config_dir)
    if errors:
        raise ValueError("Invalid configuration:\n" + "\n".join(errors))
    return AppConfig(**load_yaml_file(Path(config_dir) / APP_CONFIG_FILE))


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    else:
        print("\nAll configuration files are valid!\n")
        sys.exit(0)
