from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "chatsync",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "app.tasks.sync_tasks",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "cleanup-stale-client-states": {
            "task": "app.tasks.sync_tasks.cleanup_stale_client_states",
            "schedule": 3600.0,  # Hourly
        },
        "purge-expired-operations": {
            "task": "app.tasks.sync_tasks.purge_expired_operations",
            "schedule": 300.0,
        },
        "reclaim-stale-processing": {
            "task": "app.tasks.sync_tasks.reclaim_stale_processing",
            "schedule": 60.0,
        },
    }
)
