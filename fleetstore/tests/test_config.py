"""
Configuration Tests.

Invalid storage settings are fatal at startup.
"""

import pytest

from fleetstore.app.core.config import Settings
from fleetstore.app.core.exceptions import ConfigurationError
from fleetstore.app.domain.engine import TelemetryEngine


@pytest.mark.parametrize("overrides", [
    {"partition_width_seconds": 0},
    {"compact_after_seconds": -1},
    {"refresh_interval_seconds": 0},
    {"grace_window_seconds": -5},
    {"refresh_lag_seconds": -1},
    {"spatial_cell_degrees": 0},
    {"compact_after_seconds": 7 * 86400, "retention_seconds": 86400},
])
def test_invalid_storage_settings(overrides):
    settings = Settings(_env_file=None, **overrides)
    with pytest.raises(ConfigurationError) as exc_info:
        TelemetryEngine.from_settings(settings)
    assert exc_info.value.error_code == "ERR_CONFIG_001"


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("STRICT_ORDERING", "true")
    monkeypatch.setenv("PARTITION_WIDTH_SECONDS", "3600")
    settings = Settings(_env_file=None)

    assert settings.strict_ordering is True
    assert settings.partition_width.total_seconds() == 3600
    assert settings.retention is None


def test_engine_uses_settings(test_settings):
    settings = test_settings.model_copy(update={"partition_width_seconds": 3600, "strict_ordering": True})
    telemetry = TelemetryEngine.from_settings(settings)

    assert telemetry.store.partition_width.total_seconds() == 3600
    assert telemetry.store.strict is True
    assert sorted(telemetry.rollups.names()) == [
        "daily_avg_speed", "daily_distance", "daily_last_fuel", "hourly_max_engine_temp",
    ]
