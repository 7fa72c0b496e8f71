"""Celery application instance shared across the backend.

Start a worker and the beat scheduler with:
    celery -A app.celery_app worker -Q checkins -l info --concurrency=2
    celery -A app.celery_app beat -l info
"""

from celery import Celery

from config import settings

celery_app = Celery("painoptix_checkins", broker=settings.REDIS_URL, backend=settings.REDIS_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds

celery_app.conf.task_routes = {
    "app.workers.checkins.dispatch_due": {"queue": "checkins"},
    "app.workers.checkins.enqueue_for_assessment": {"queue": "checkins"},
}

# Beat schedule: drain due check-ins on a fixed cadence
celery_app.conf.beat_schedule = {
    "dispatch-due-checkins": {
        "task": "app.workers.checkins.dispatch_due",
        "schedule": settings.CHECKINS_DISPATCH_INTERVAL,
    }
}

# --- Ensure tasks are registered ---
import app.workers.checkins  # noqa: E402,F401
