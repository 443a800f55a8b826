from celery import Celery

from app.automation.engine import cleanup_history, run_time_based_tick
from app.core.config import get_settings
from app.core.database import SessionLocal

settings = get_settings()

celery_app = Celery("crm_automation", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "automation-time-based-tick": {
        "task": "app.tasks.run_time_based_tick",
        "schedule": settings.automation_scheduler_interval_seconds,
    },
    "history-retention-cleanup": {
        "task": "app.tasks.cleanup_history",
        "schedule": 24 * 60 * 60.0,
    },
}


@celery_app.task(name="app.tasks.run_time_based_tick")
def run_time_based_tick_task() -> int:
    return run_time_based_tick(SessionLocal)


@celery_app.task(name="app.tasks.cleanup_history")
def cleanup_history_task(days: int | None = None) -> int:
    return cleanup_history(SessionLocal, days)
