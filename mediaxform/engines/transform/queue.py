"""
Transform Queue

At-least-once channel between the dispatcher and the workers. The
dispatcher only ever publishes; consumption happens in the Celery task
(production) or by draining the in-process queue (local development, tests).
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from celery.exceptions import CeleryError
from kombu.exceptions import OperationalError as KombuOperationalError

from mediaxform.core.celery_app import TRANSFORM_TASK_NAME, celery_app
from mediaxform.core.config import settings
from mediaxform.core.exceptions import TransientIOError
from mediaxform.core.logging import get_logger
from mediaxform.engines.transform.schemas import TransformMessage

logger = get_logger(__name__)


class ITransformQueue(ABC):
    """Publishing side of the transform queue."""

    @abstractmethod
    async def publish(self, message: TransformMessage) -> None:
        """Enqueue one message. Raises TransientIOError if the broker is unreachable."""


class CeleryTransformQueue(ITransformQueue):
    """Publishes transform messages as Celery tasks on the durable queue."""

    def __init__(self, app=celery_app, queue_name: Optional[str] = None):
        self.app = app
        self.queue_name = queue_name or settings.TRANSFORM_QUEUE_NAME

    async def publish(self, message: TransformMessage) -> None:
        try:
            self.app.send_task(
                TRANSFORM_TASK_NAME,
                kwargs={"message": message.model_dump(mode="json")},
                queue=self.queue_name,
                task_id=message.message_id,
            )
        except (KombuOperationalError, CeleryError, OSError) as e:
            raise TransientIOError(f"Enqueue failed: {e}", service="broker")

        logger.info(
            "transform_enqueued",
            message_id=message.message_id,
            queue=self.queue_name,
            source_object_id=message.source_object_id
        )


class InProcessTransformQueue(ITransformQueue):
    """
    Process-local queue for development and tests.

    Messages wait until drain() hands them to a worker, which keeps the
    request path free of pixel work just like the broker-backed queue.
    """

    def __init__(self):
        self.pending: List[TransformMessage] = []

    async def publish(self, message: TransformMessage) -> None:
        self.pending.append(message)
        logger.info("transform_enqueued", message_id=message.message_id, queue="in_process")

    async def drain(self, worker) -> int:
        """Deliver every pending message to worker.handle; returns how many ran."""
        handled = 0
        while self.pending:
            message = self.pending.pop(0)
            await worker.handle(message)
            handled += 1
        return handled


def build_queue(backend: Optional[str] = None) -> ITransformQueue:
    backend = (backend or settings.QUEUE_BACKEND).lower()
    if backend == "memory":
        return InProcessTransformQueue()
    return CeleryTransformQueue()
