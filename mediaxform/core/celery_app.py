"""
Celery Application Configuration

Configures Celery with:
- A single durable transform queue
- Late acknowledgment so a crashed worker's message is redelivered
- Hard/soft time limits acting as a per-message visibility timeout
"""

from celery import Celery
from kombu import Exchange, Queue

from mediaxform.core.config import settings

TRANSFORM_TASK_NAME = "mediaxform.pipeline.tasks.transform_media"

celery_app = Celery(
    "mediaxform",
    broker=settings.broker_url,
    backend=settings.result_backend,
    include=[
        "mediaxform.pipeline.tasks",
    ]
)

transform_exchange = Exchange(settings.TRANSFORM_QUEUE_NAME, type="direct", durable=True)

celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Results are observed through the metadata store, never the backend
    task_ignore_result=True,

    task_time_limit=300,
    task_soft_time_limit=270,

    # Worker settings; concurrency is a deployment parameter
    worker_prefetch_multiplier=1,

    # Queue definitions (survive broker restart)
    task_default_queue=settings.TRANSFORM_QUEUE_NAME,
    task_queues=(
        Queue(
            settings.TRANSFORM_QUEUE_NAME,
            exchange=transform_exchange,
            routing_key=settings.TRANSFORM_QUEUE_NAME,
            durable=True,
        ),
    ),
    task_routes={
        TRANSFORM_TASK_NAME: {"queue": settings.TRANSFORM_QUEUE_NAME},
    },

    # Persistent messages and late acknowledgment for at-least-once delivery
    task_default_delivery_mode="persistent",
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)
