"""Celery application factory and worker configuration.

Defines the shared Celery instance used by the background batch tasks
("regenerate all images", "fix missing images"), along with serialisation
settings. Batch tasks talk to the API over HTTP and do not share memory
with it.
"""
import logging
from celery import Celery
from celery.signals import worker_init
from citybingo.config import get_settings

settings = get_settings()

celery_app = Celery(
    "citybingo_worker",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["citybingo.tasks.batch"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=False,           # ACK immediately to prevent ghost re-delivery on restart
    worker_prefetch_multiplier=1,
    result_expires=86400,  # 24 hours
    broker_connection_retry_on_startup=True,
)


@worker_init.connect
def setup_worker(**kwargs):
    """Run once when the Celery worker process starts: configure logging."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
