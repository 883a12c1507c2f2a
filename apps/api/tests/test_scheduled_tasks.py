from __future__ import annotations

import pytest
from sqlalchemy.orm import Session

from app.core import celery_app as tasks
from app.platform.cache.gateway import ALL_CACHE_TAGS
from app.platform.refresh.pipeline import StubRefreshPipeline
from app.platform.refresh.service import RefreshCoordinator


@pytest.fixture()
def scheduled_session(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> Session:
    monkeypatch.setattr(tasks, "SessionLocal", lambda: db_session)
    return db_session


def test_beat_schedule_registers_both_jobs() -> None:
    schedule = tasks.celery_app.conf.beat_schedule

    assert schedule["scheduled-refresh"]["task"] == "app.tasks.scheduled_refresh"
    assert schedule["scheduled-cache-refresh"]["task"] == "app.tasks.scheduled_cache_refresh"


def test_scheduled_refresh_starts_a_run_then_reports_cooldown(
    scheduled_session: Session,
    coordinator: RefreshCoordinator,
    pipeline: StubRefreshPipeline,
) -> None:
    first = tasks.scheduled_refresh_task()
    assert first["success"] is True
    assert pipeline.start_calls == 1

    second = tasks.scheduled_refresh_task()
    assert second["success"] is False
    assert second["cooldown_minutes_remaining"] > 0
    assert pipeline.start_calls == 1


def test_scheduled_cache_refresh_clears_every_tag() -> None:
    result = tasks.scheduled_cache_refresh_task()

    assert set(result) == {str(tag) for tag in ALL_CACHE_TAGS}
    assert all(count == 0 for count in result.values())
