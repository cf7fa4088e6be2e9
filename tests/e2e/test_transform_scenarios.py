import pytest

from mediaxform.core.exceptions import UnsupportedFormatError
from mediaxform.engines.transform.fingerprint import fingerprint
from mediaxform.engines.transform.keys import transform_key


@pytest.mark.asyncio
async def test_resize_request_produces_one_derived_object(container, image_bytes, decode):
    """Upload 800x600, request 400x300: one derived object, cached, listed."""
    original = await container.media.upload("alice", "big.png", "image/png", image_bytes(size=(800, 600)))
    spec = {"resize": {"width": 400, "height": 300}}

    assert await container.dispatcher.request_transform("alice", original.id, spec) == {"status": "queued"}
    assert await container.media.list_derived("alice", original.id) == []

    await container.queue.drain(container.worker)

    derived = await container.media.list_derived("alice", original.id)
    assert len(derived) == 1
    data, mime_type = await container.media.get_content("alice", derived[0].id)
    assert decode(data).size == (400, 300)
    assert mime_type == "image/png"

    fp = fingerprint(original.id, spec)
    assert await container.cache.get(transform_key(original.id, fp)) is not None

    # The generation bump makes the new object visible in the owner's listing
    page = await container.media.list_objects("alice")
    assert {item.id for item in page.items} == {original.id, derived[0].id}


@pytest.mark.asyncio
async def test_jpeg_resize_keeps_codec_and_shrinks(container, gradient_bytes, decode):
    original = await container.media.upload("alice", "photo.jpg", "image/jpeg", gradient_bytes((640, 480), fmt="JPEG"))

    await container.dispatcher.request_transform("alice", original.id, {"resize": {"width": 100, "height": 100}})
    await container.queue.drain(container.worker)

    derived = await container.media.list_derived("alice", original.id)
    assert len(derived) == 1
    child = derived[0]
    assert child.mime_type == "image/jpeg"
    assert child.filename == "photo-transformed.jpeg"
    assert 0 < child.size_bytes <= original.size_bytes

    data, mime_type = await container.media.get_content("alice", child.id)
    assert mime_type == "image/jpeg"
    assert len(data) == child.size_bytes
    assert decode(data).size == (100, 100)


@pytest.mark.asyncio
async def test_repeated_request_keeps_one_canonical_record(container, png_bytes):
    original = await container.media.upload("alice", "photo.png", "image/png", png_bytes)

    for spec in ({"rotate": 90, "flip": True}, {"flip": True, "rotate": 90}):
        await container.dispatcher.request_transform("alice", original.id, spec)
    await container.queue.drain(container.worker)

    assert len(await container.media.list_derived("alice", original.id)) == 1


@pytest.mark.asyncio
async def test_unsupported_format_is_rejected_synchronously(container, png_bytes):
    original = await container.media.upload("alice", "photo.png", "image/png", png_bytes)

    with pytest.raises(UnsupportedFormatError):
        await container.dispatcher.request_transform("alice", original.id, {"format": "bmp"})

    assert container.queue.pending == []
    assert await container.media.list_derived("alice", original.id) == []


@pytest.mark.asyncio
async def test_delete_while_transform_pending(container, png_bytes, tmp_path):
    original = await container.media.upload("alice", "photo.png", "image/png", png_bytes)
    await container.dispatcher.request_transform("alice", original.id, {"rotate": 180})

    await container.media.delete("alice", original.id)
    handled = await container.queue.drain(container.worker)

    assert handled == 1
    assert await container.metadata.list_children("alice", original.id) == []
    assert not [p for p in (tmp_path / "blobs").rglob("*") if p.is_file()]
    page = await container.media.list_objects("alice")
    assert page.items == []
