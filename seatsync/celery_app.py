from celery import Celery

from seatsync.config import settings


celery_app = Celery(
    "seatsync_tasks",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["seatsync.tasks.sweep"],
)

celery_app.conf.update(task_track_started=True)

# only scheduled when SWEEPER_MODE=celery; the in-process sweeper covers the other case
if settings.SWEEPER_MODE == "celery":
    celery_app.conf.beat_schedule = {
        "sweep-holds": {
            "task": "seatsync.tasks.sweep.sweep_holds_task",
            "schedule": float(settings.SWEEP_INTERVAL_SECONDS),
            "options": {"expires": float(settings.SWEEP_INTERVAL_SECONDS)},
        },
    }
