from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mediaxform.core.celery_app import TRANSFORM_TASK_NAME, celery_app
from mediaxform.pipeline.tasks import run_transform, transform_media

MESSAGE = {
    "message_id": "m-1",
    "owner_id": "alice",
    "source_object_id": "obj-1",
    "transform_spec": {"rotate": 90},
}


def make_container():
    container = MagicMock()
    container.startup = AsyncMock()
    container.shutdown = AsyncMock()
    container.worker.handle = AsyncMock()
    return container


def test_task_is_registered_on_transform_queue():
    assert transform_media.name == TRANSFORM_TASK_NAME
    assert celery_app.conf.task_acks_late is True
    assert celery_app.conf.task_routes[TRANSFORM_TASK_NAME]["queue"] == celery_app.conf.task_default_queue


def test_task_delegates_to_worker_on_fresh_container():
    container = make_container()

    with patch("mediaxform.pipeline.tasks.build_container", return_value=container):
        transform_media(MESSAGE)

    container.startup.assert_awaited_once()
    container.worker.handle.assert_awaited_once_with(MESSAGE)
    container.shutdown.assert_awaited_once()


def test_task_reraises_unexpected_errors_after_cleanup():
    container = make_container()
    container.worker.handle.side_effect = RuntimeError("boom")

    with patch("mediaxform.pipeline.tasks.build_container", return_value=container):
        with pytest.raises(RuntimeError):
            transform_media(MESSAGE)

    container.shutdown.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_transform_leaves_injected_container_open():
    container = make_container()

    await run_transform(MESSAGE, container=container)

    container.worker.handle.assert_awaited_once_with(MESSAGE)
    container.startup.assert_not_called()
    container.shutdown.assert_not_called()
