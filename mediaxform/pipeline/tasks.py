"""
Celery Tasks for the Transform Pipeline

One task consumes the transform queue. Each run builds its collaborators on
a fresh event loop and hands the message to TransformWorker.handle, which
owns error classification; only unexpected errors reach Celery.
"""

import asyncio
import traceback
from typing import Any, Dict

from mediaxform.container import build_container
from mediaxform.core.celery_app import TRANSFORM_TASK_NAME, celery_app
from mediaxform.core.logging import get_logger

logger = get_logger(__name__)


async def run_transform(message: Dict[str, Any], container=None) -> None:
    """Handle one message with a container built for this event loop."""
    owned = container is None
    container = container or build_container()
    try:
        if owned:
            await container.startup()
        await container.worker.handle(message)
    finally:
        if owned:
            await container.shutdown()


@celery_app.task(
    bind=True,
    name=TRANSFORM_TASK_NAME,
    acks_late=True
)
def transform_media(self, message: Dict[str, Any]) -> None:
    """
    Celery task for one transform message.

    Recoverable outcomes are logged and dropped inside the worker. A crash
    before the ack leaves the message on the broker for redelivery.
    """
    logger.info("task_transform_started", message_id=message.get("message_id"))

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_transform(message))
    except Exception as e:
        logger.error(
            "task_transform_unexpected_error",
            message_id=message.get("message_id"),
            error=str(e),
            traceback=traceback.format_exc()
        )
        raise
    finally:
        loop.close()
        asyncio.set_event_loop(None)

