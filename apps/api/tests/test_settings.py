from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.core.config import Settings


def test_default_ttls_sit_below_the_refresh_interval() -> None:
    settings = Settings()

    assert settings.cache_detail_ttl_seconds < settings.cache_aggregate_ttl_seconds < settings.external_refresh_interval_seconds


@pytest.mark.parametrize(
    "overrides",
    [
        {"cache_aggregate_ttl_seconds": 86400},
        {"cache_detail_ttl_seconds": 0},
        {"external_refresh_interval_seconds": 3600},
    ],
)
def test_ttls_must_stay_below_the_refresh_interval(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        Settings(**overrides)


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REFRESH_COOLDOWN_MINUTES", "30")
    monkeypatch.setenv("CP_MIN_START_DATE", "2024-04-01")

    settings = Settings()

    assert settings.refresh_cooldown_minutes == 30
    assert settings.cp_min_start_date == "2024-04-01"
