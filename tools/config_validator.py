"""
Configuration Validation Module

Validates app.yaml and strategy.yaml against Pydantic schemas.
Ensures config files are correct before any broker session is opened.

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
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    """Run mode and target account"""
    mode: str = Field(pattern="^(DRY_RUN|LIVE)$", description="DRY_RUN logs trades, LIVE places orders")
    account_url_id: str = Field(min_length=1, description="Account URL parameter id")
    lock_dir: str = Field(default="data", min_length=1, description="Directory for the PID lock file")


class BrokerSection(BaseModel):
    """Broker connection parameters"""
    read_only: bool = Field(default=True, description="Refuse order placement when true")
    timeout_seconds: float = Field(default=20.0, gt=0, description="HTTP timeout per request")
    instrument_sub_type: str = Field(default="mini_future", min_length=1, description="Leveraged instrument sub type")
    search_limit: int = Field(default=20, gt=0, le=100, description="Max instruments per search")


class ExecutionSection(BaseModel):
    """Order execution parameters"""
    max_placement_attempts: int = Field(default=10, gt=0, description="Placement attempts per leg")
    retry_backoff_seconds: float = Field(default=10.0, ge=0, description="Fixed wait between attempts")
    settlement_hour: int = Field(default=11, ge=0, le=23, description="Local hour fund orders settle")
    max_settlement_wait_hours: float = Field(default=96.0, gt=0, description="Longest acceptable settlement wait")
    cash_buffer: float = Field(default=0.95, gt=0, le=1, description="Fraction of free cash share added to buys")
    max_concurrent_trades: int = Field(default=8, gt=0, description="Worker threads for trade execution")
    trade_timeout_seconds: float = Field(default=432000.0, gt=0, description="Join deadline for all trades")


class LoggingSection(BaseModel):
    """Logging parameters"""
    level: str = Field(default="INFO", description="Root log level")
    file: Optional[str] = Field(default="logs/rotator.log", description="Log file path (null disables)")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Accept standard logging level names in any case"""
        normalized = v.upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level {v}")
        return normalized


class AlertsSection(BaseModel):
    """Webhook alerting parameters"""
    enabled: bool = Field(default=False)
    webhook_url: Optional[str] = Field(default=None)
    webhook_env: str = Field(default="ALERT_WEBHOOK_URL", min_length=1)
    min_severity: str = Field(default="warning")
    dry_run: bool = Field(default=False)
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=300.0, ge=0)

    @field_validator('min_severity')
    @classmethod
    def validate_severity(cls, v: str) -> str:
        normalized = v.strip().lower()
        if normalized not in {"info", "warning", "critical"}:
            raise ValueError(f"Unknown severity {v}")
        return normalized


class MetricsSection(BaseModel):
    """Prometheus exporter parameters"""
    enabled: bool = Field(default=False)
    port: int = Field(default=9100, gt=0, le=65535)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection
    broker: BrokerSection = Field(default_factory=BrokerSection)
    execution: ExecutionSection = Field(default_factory=ExecutionSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    alerts: AlertsSection = Field(default_factory=AlertsSection)
    metrics: MetricsSection = Field(default_factory=MetricsSection)


# ===== Strategy Schema =====
class SettingsSection(BaseModel):
    """Strategy settings"""
    agg: int = Field(gt=0, description="Number of holdings (N)")
    lookback_period: str = Field(
        pattern="^(ONE_WEEK|ONE_MONTH|THREE_MONTHS|ONE_YEAR)$",
        description="Momentum lookback window",
    )
    sma_filter_length: int = Field(gt=0, description="SMA window in daily candles")
    backup_asset: str = Field(min_length=1, description="Cash-like fund instrument id")
    hold_period: int = Field(default=1, gt=0, description="Periods between rebalances")
    hold_period_type: str = Field(default="MONTH", pattern="^(DAY|WEEK|MONTH)$")


class SearchSection(BaseModel):
    """Instrument search override"""
    name_query: Optional[str] = Field(default=None, min_length=1)


class AssetEntry(BaseModel):
    """One underlying in the rotation universe"""
    name: str = Field(min_length=1)
    asset_id: str = Field(min_length=1)
    target_leverage: int = Field(gt=0)
    search: Optional[SearchSection] = None


class StrategySchema(BaseModel):
    """Complete strategy configuration schema"""
    settings: SettingsSection
    assets: List[AssetEntry] = Field(min_length=1)


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

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return (
            f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: "
            f"{getattr(error, 'problem', str(error))}"
        )

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))

    snippet_lines: List[str] = []
    for idx in range(start, end):
        pointer = "▶" if idx == line else " "
        snippet_lines.append(f"{pointer} {idx + 1:04d} | {raw_lines[idx]}")

    snippet = "\n".join(snippet_lines)
    problem = getattr(error, "problem", str(error))

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
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: Expected a mapping at top level - {e}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_strategy(config_dir: Path) -> List[str]:
    """Validate strategy.yaml against schema."""
    return _validate_file(config_dir, "strategy.yaml", StrategySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks across both files.

    Detects:
    - Duplicate asset ids
    - Backup asset listed inside the universe
    - Fewer assets than holdings
    - LIVE mode against a read-only broker
    """
    errors = []
    app = load_yaml_file(config_dir / "app.yaml")
    strategy = load_yaml_file(config_dir / "strategy.yaml")

    settings = strategy["settings"]
    asset_ids = [str(a["asset_id"]) for a in strategy["assets"]]

    seen = set()
    for asset_id in asset_ids:
        if asset_id in seen:
            errors.append(f"strategy.yaml: duplicate asset_id {asset_id}")
        seen.add(asset_id)

    backup = str(settings["backup_asset"])
    if backup in seen:
        errors.append(f"strategy.yaml: backup_asset {backup} must not be listed in assets")

    if int(settings["agg"]) > len(asset_ids):
        errors.append(
            f"strategy.yaml: agg ({settings['agg']}) exceeds number of assets ({len(asset_ids)})"
        )

    mode = app["app"]["mode"]
    read_only = (app.get("broker") or {}).get("read_only", True)
    if mode == "LIVE" and read_only:
        errors.append("app.yaml: app.mode is LIVE but broker.read_only is true")

    if not errors:
        logger.info("✅ Configuration sanity checks passed")
    else:
        logger.warning(f"⚠️  {len(errors)} sanity check issue(s) found")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (only if schema validation passed)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_strategy(config_path))

    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
