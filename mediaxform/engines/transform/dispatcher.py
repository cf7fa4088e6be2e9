"""
Transform Dispatcher

Request-path half of a transform: validates the transform spec and the caller's
ownership of the source, publishes one queue message and returns. Pixel work
never happens here.
"""

from typing import Any, Dict, Union

from mediaxform.core.exceptions import InvalidSpecError, MediaXformError
from mediaxform.core.logging import get_logger
from mediaxform.core.metrics import record_transform_request
from mediaxform.core.retry import with_retries
from mediaxform.engines.transform.queue import ITransformQueue
from mediaxform.engines.transform.schemas import TransformMessage, TransformSpec
from mediaxform.modules.media.service import MediaService

logger = get_logger(__name__)

QUEUED = {"status": "queued"}


class TransformDispatcher:

    def __init__(self, media: MediaService, queue: ITransformQueue):
        self.media = media
        self.queue = queue

    async def request_transform(
        self,
        owner_id: str,
        source_object_id: str,
        spec: Union[TransformSpec, Dict[str, Any]],
    ) -> Dict[str, str]:
        """
        Validate and enqueue a transform of an owned media object.

        Raises:
            InvalidSpecError: malformed or empty spec
            UnsupportedFormatError: target format outside the allow-list
            NotFoundError: source absent or owned by someone else
            TransientIOError: the queue could not be reached
        """
        try:
            parsed = TransformSpec.parse(spec)
            if parsed.is_empty():
                raise InvalidSpecError("Transform spec requests no operations")
            parsed.ensure_supported_format()

            await self.media.get_object(owner_id, source_object_id)

            message = TransformMessage(
                owner_id=owner_id,
                source_object_id=source_object_id,
                transform_spec=parsed.model_dump(mode="json", exclude_defaults=True),
            )
            # Retrying a publish may deliver twice; workers are idempotent
            await with_retries(lambda: self.queue.publish(message), "queue_publish")
        except MediaXformError as e:
            record_transform_request(type(e).__name__)
            raise

        record_transform_request("queued")
        logger.info(
            "transform_requested",
            owner_id=owner_id,
            source_object_id=source_object_id,
            message_id=message.message_id
        )
        return dict(QUEUED)
