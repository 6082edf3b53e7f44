"""Celery application configuration."""
import logging

from celery import Celery
from celery.signals import setup_logging

from kessan.config import get_settings

settings = get_settings()

celery_app = Celery(
    "kessan",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "kessan.tasks.ingest",
        "kessan.tasks.regenerate",
    ]
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Tokyo",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    task_time_limit=900,  # 15 minutes per batch
    task_soft_time_limit=840,
    beat_schedule={
        "check-new-releases": {
            "task": "kessan.tasks.ingest.check_new_releases_task",
            "schedule": settings.poll_interval_minutes * 60.0,
        },
    },
)


@setup_logging.connect
def configure_logging(**kwargs):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
