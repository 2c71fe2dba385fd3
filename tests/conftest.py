"""
Pytest configuration and fixtures for rotator tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
from pathlib import Path

import pytest
import yaml

from core.universe import Universe


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Cleanup lock file before test (prevents "instance already running" errors)
    lock_file = Path("data/rotator.pid")
    lock_file.unlink(missing_ok=True)

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()

    lock_file.unlink(missing_ok=True)


def strategy_config(agg=1, assets=None, backup="CASH", sma=5, lookback="THREE_MONTHS"):
    if assets is None:
        assets = [
            {"name": "Asset A", "asset_id": "A", "target_leverage": 2},
            {"name": "Asset B", "asset_id": "B", "target_leverage": 2},
        ]
    return {
        "settings": {
            "agg": agg,
            "lookback_period": lookback,
            "sma_filter_length": sma,
            "backup_asset": backup,
            "hold_period": 1,
            "hold_period_type": "MONTH",
        },
        "assets": assets,
    }


@pytest.fixture
def make_universe():
    """Factory building a Universe from strategy.yaml-shaped kwargs"""
    def _make(**kwargs):
        return Universe.from_config(strategy_config(**kwargs))
    return _make


@pytest.fixture
def config_dir(tmp_path):
    """Valid DRY_RUN config directory with fast execution settings."""
    app = {
        "app": {"mode": "DRY_RUN", "account_url_id": "1234567", "lock_dir": str(tmp_path / "data")},
        "broker": {"read_only": True},
        "execution": {
            "max_placement_attempts": 3,
            "retry_backoff_seconds": 0,
            "settlement_hour": 11,
            "max_settlement_wait_hours": 96,
            "cash_buffer": 0.95,
            "max_concurrent_trades": 4,
            "trade_timeout_seconds": 30,
        },
        "logging": {"level": "INFO", "file": None},
        "alerts": {"enabled": False},
        "metrics": {"enabled": False},
    }
    (tmp_path / "app.yaml").write_text(yaml.safe_dump(app))
    (tmp_path / "strategy.yaml").write_text(yaml.safe_dump(strategy_config()))
    return tmp_path
