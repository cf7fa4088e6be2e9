import asyncio

import pytest
from unittest.mock import AsyncMock

from mediaxform.core.database import build_engine, build_session_maker, create_db_and_tables
from mediaxform.core.exceptions import TransientIOError
from mediaxform.engines.transform.fingerprint import fingerprint
from mediaxform.engines.transform.keys import lease_key, transform_key
from mediaxform.engines.transform.schemas import TransformMessage
from mediaxform.modules.media.repository import SqlMetadataStore
from mediaxform.modules.media.service import MediaService
from mediaxform.pipeline.engine import PipelineEngine

SPEC = {"resize": {"width": 32, "height": 24}, "format": "jpeg"}


def make_message(obj_id: str, spec=None, owner_id: str = "alice") -> TransformMessage:
    return TransformMessage(owner_id=owner_id, source_object_id=obj_id, transform_spec=spec or SPEC)


class SpyEngine(PipelineEngine):
    """Counts how often the pipeline actually runs."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.calls = 0

    async def apply(self, source_bytes, source_mime_type, spec):
        self.calls += 1
        return await super().apply(source_bytes, source_mime_type, spec)


@pytest.fixture
async def source(media_service, png_bytes):
    return await media_service.upload("alice", "photo.png", "image/png", png_bytes)


@pytest.mark.asyncio
async def test_cache_miss_runs_pipeline_and_persists(worker, source, metadata, storage, cache, ledger, decode):
    generation = await ledger.current("alice")

    await worker.handle(make_message(source.id))

    derived = await metadata.list_children("alice", source.id)
    assert len(derived) == 1
    child = derived[0]
    fp = fingerprint(source.id, SPEC)
    assert child.parent_id == source.id
    assert child.fingerprint == fp
    assert child.mime_type == "image/jpeg"
    assert child.filename == "photo-transformed.jpeg"
    assert child.storage_key == f"image-processing-service/alice/{fp}-transformed.jpeg"
    assert decode(await storage.get(child.storage_key)).size == (32, 24)
    assert await cache.get(transform_key(source.id, fp)) is not None
    assert await ledger.current("alice") > generation


@pytest.mark.asyncio
async def test_redelivery_hits_cache_without_running_pipeline(worker_factory, source, metadata):
    engine = SpyEngine()
    worker = worker_factory(engine=engine)
    message = make_message(source.id)

    await worker.handle(message)
    await worker.handle(message)

    assert engine.calls == 1
    assert len(await metadata.list_children("alice", source.id)) == 1


@pytest.mark.asyncio
async def test_reordered_spec_is_same_transform(worker_factory, source, metadata):
    engine = SpyEngine()
    worker = worker_factory(engine=engine)

    await worker.handle(make_message(source.id, {"format": "jpeg", "resize": {"height": 24, "width": 32}}))
    await worker.handle(make_message(source.id, SPEC))

    assert engine.calls == 1
    assert len(await metadata.list_children("alice", source.id)) == 1


@pytest.mark.asyncio
async def test_expired_cache_reuses_existing_derived_record(worker_factory, source, metadata, cache, clock):
    engine = SpyEngine()
    worker = worker_factory(engine=engine)
    message = make_message(source.id)

    await worker.handle(message)
    clock.advance(301)
    assert await cache.get(transform_key(source.id, fingerprint(source.id, SPEC))) is None

    await worker.handle(message)

    assert engine.calls == 1
    assert len(await metadata.list_children("alice", source.id)) == 1
    assert await cache.get(transform_key(source.id, fingerprint(source.id, SPEC))) is not None


@pytest.mark.asyncio
async def test_deleted_source_is_dropped(worker, media_service, source, metadata, tmp_path):
    message = make_message(source.id)
    await media_service.delete("alice", source.id)

    await worker.handle(message)

    assert await metadata.list_children("alice", source.id) == []
    assert not [p for p in (tmp_path / "blobs").rglob("*") if p.is_file()]


@pytest.mark.asyncio
async def test_wrong_owner_is_dropped(worker, source, metadata):
    await worker.handle(make_message(source.id, owner_id="mallory"))

    assert await metadata.list_children("alice", source.id) == []


@pytest.mark.asyncio
async def test_invalid_spec_in_message_is_dropped(worker, source, metadata):
    await worker.handle(make_message(source.id, {"crop": {"x": 0, "y": 0, "width": 999, "height": 10}}))
    await worker.handle(make_message(source.id, {"format": "bmp"}))
    await worker.handle({"owner_id": "alice", "source_object_id": source.id, "transform_spec": {"nope": 1}})

    assert await metadata.list_children("alice", source.id) == []


@pytest.mark.asyncio
async def test_pipeline_failure_is_dropped(worker, media_service, metadata):
    broken = await media_service.upload("alice", "broken.png", "image/png", b"definitely not a png")

    await worker.handle(make_message(broken.id))

    assert await metadata.list_children("alice", broken.id) == []


@pytest.mark.asyncio
async def test_transient_errors_are_retried_then_dropped(worker_factory, source, metadata):
    storage = AsyncMock()
    storage.get.side_effect = TransientIOError("disk unavailable", service="storage")
    worker = worker_factory(storage=storage)

    await worker.handle(make_message(source.id))

    assert storage.get.await_count == 3
    storage.put.assert_not_called()
    assert await metadata.list_children("alice", source.id) == []


@pytest.mark.asyncio
async def test_transient_error_then_success(worker_factory, source, storage, png_bytes, metadata):
    flaky = AsyncMock(wraps=storage)
    flaky.get.side_effect = [TransientIOError("blip"), png_bytes]
    worker = worker_factory(storage=flaky)

    await worker.handle(make_message(source.id))

    assert len(await metadata.list_children("alice", source.id)) == 1


@pytest.mark.asyncio
async def test_held_lease_drops_duplicate(worker_factory, source, metadata, cache):
    worker = worker_factory(lease_seconds=30)
    fp = fingerprint(source.id, SPEC)
    await cache.add(lease_key(source.id, fp), "other-message", 30)

    await worker.handle(make_message(source.id))

    assert await metadata.list_children("alice", source.id) == []


@pytest.mark.asyncio
async def test_lease_released_after_completion(worker_factory, source, metadata, cache):
    worker = worker_factory(lease_seconds=30)

    await worker.handle(make_message(source.id))

    assert len(await metadata.list_children("alice", source.id)) == 1
    assert await cache.get(lease_key(source.id, fingerprint(source.id, SPEC))) is None


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_again(worker_factory, source, metadata, cache, clock):
    worker = worker_factory(lease_seconds=30)
    await cache.add(lease_key(source.id, fingerprint(source.id, SPEC)), "crashed-worker", 30)
    clock.advance(30)

    await worker.handle(make_message(source.id))

    assert len(await metadata.list_children("alice", source.id)) == 1


class BarrierEngine(PipelineEngine):
    """Holds every apply() until `parties` callers have arrived."""

    def __init__(self, parties: int, **kwargs):
        super().__init__(**kwargs)
        self.parties = parties
        self.calls = 0

    async def apply(self, source_bytes, source_mime_type, spec):
        self.calls += 1
        while self.calls < self.parties:
            await asyncio.sleep(0)
        return await super().apply(source_bytes, source_mime_type, spec)


@pytest.fixture
async def file_metadata(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'metadata.db'}")
    await create_db_and_tables(engine)
    yield SqlMetadataStore(build_session_maker(engine))
    await engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_identical_transforms_share_one_record(
    worker_factory, file_metadata, storage, cache, ledger, png_bytes
):
    media = MediaService(metadata=file_metadata, storage=storage, cache=cache, ledger=ledger)
    source = await media.upload("alice", "photo.png", "image/png", png_bytes)
    engine = BarrierEngine(parties=2)
    worker = worker_factory(metadata=file_metadata, engine=engine)
    spec = {"rotate": 90}

    await asyncio.gather(
        worker.handle(make_message(source.id, spec)),
        worker.handle(make_message(source.id, spec)),
    )

    # Both workers ran the pipeline, yet only one row owns the derived blob
    assert engine.calls == 2
    derived = await file_metadata.list_children("alice", source.id)
    assert len(derived) == 1
    child = derived[0]
    data, mime_type = await media.get_content("alice", child.id)
    assert mime_type == "image/png"
    assert len(data) == child.size_bytes

    await media.delete("alice", child.id)
    assert await file_metadata.list_children("alice", source.id) == []
    assert not await storage.exists(child.storage_key)


@pytest.mark.asyncio
async def test_malformed_message_is_dropped(worker, source, metadata):
    await worker.handle({"message_id": "m-1", "transform_spec": {"rotate": 90}})
    await worker.handle("not a message")

    assert await metadata.list_children("alice", source.id) == []
