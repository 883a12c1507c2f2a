from celery import Celery
from celery.schedules import crontab

from app.core.config import get_settings
from app.core.database import SessionLocal
from app.platform.cache.gateway import get_cache_gateway
from app.platform.refresh.service import TriggerRejected, get_refresh_coordinator

settings = get_settings()

celery_app = Celery("insights_api", broker=settings.redis_url, backend=settings.redis_url)


def _crontab(expression: str) -> crontab:
    minute, hour, day_of_month, month_of_year, day_of_week = expression.split()
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


celery_app.conf.beat_schedule = {
    "scheduled-refresh": {
        "task": "app.tasks.scheduled_refresh",
        "schedule": _crontab(settings.refresh_schedule_cron),
    },
    "scheduled-cache-refresh": {
        "task": "app.tasks.scheduled_cache_refresh",
        "schedule": _crontab(settings.cache_refresh_schedule_cron),
    },
}


@celery_app.task(name="app.tasks.scheduled_refresh")
def scheduled_refresh_task() -> dict[str, object]:
    session = SessionLocal()
    try:
        outcome = get_refresh_coordinator().scheduled_trigger(session)
    finally:
        session.close()

    # A cooldown rejection is a normal outcome for the schedule, not a task failure.
    if isinstance(outcome, TriggerRejected):
        return {"success": False, "cooldown_minutes_remaining": outcome.minutes_remaining}
    return {"success": True, "run_id": str(outcome.run_id)}


@celery_app.task(name="app.tasks.scheduled_cache_refresh")
def scheduled_cache_refresh_task() -> dict[str, int]:
    return get_cache_gateway().invalidate_all(source="scheduled")
