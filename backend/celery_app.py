"""
Celery application configuration.

Configures Celery for batch formula evaluation with Redis as the broker.
"""
from celery import Celery
from celery.signals import worker_process_init

from backend.config import get_settings
from backend.middleware.logging import configure_logging

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "formula_engine",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["backend.tasks.calculation_tasks"],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,  # Acknowledge after task completes (not before)
    task_reject_on_worker_lost=True,  # Requeue if worker dies
    task_time_limit=600,  # 10 minute hard limit per batch
    task_soft_time_limit=540,  # 9 minute soft limit

    # Result settings
    result_expires=86400,  # Results expire after 24 hours

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Retry settings
    task_default_retry_delay=60,
    task_max_retries=3,
)

celery_app.conf.task_routes = {
    "backend.tasks.calculation_tasks.calculate_documents": {"queue": "calculations"},
}


@worker_process_init.connect
def _configure_worker_logging(**kwargs) -> None:
    configure_logging(settings.log_level, json_logs=not settings.debug)
