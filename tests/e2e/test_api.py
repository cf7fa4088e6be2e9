import pytest

OWNER = {"X-Owner-Id": "alice"}


async def upload(client, data, owner=OWNER, filename="photo.png", content_type="image/png"):
    return await client.post(
        "/api/v1/media",
        files={"file": (filename, data, content_type)},
        headers=owner,
    )


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_upload_and_read_back(client, png_bytes):
    response = await upload(client, png_bytes)
    assert response.status_code == 201
    created = response.json()
    assert created["owner_id"] == "alice"
    assert created["mime_type"] == "image/png"

    response = await client.get(f"/api/v1/media/{created['id']}", headers=OWNER)
    assert response.status_code == 200
    assert response.json()["id"] == created["id"]

    response = await client.get(f"/api/v1/media/{created['id']}/content", headers=OWNER)
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content == png_bytes


@pytest.mark.asyncio
async def test_missing_owner_header(client, png_bytes):
    response = await client.get("/api/v1/media")
    assert response.status_code == 400
    assert "X-Owner-Id" in response.json()["error"]


@pytest.mark.asyncio
async def test_non_image_upload_rejected(client):
    response = await upload(client, b"hello", filename="notes.txt", content_type="text/plain")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_oversize_upload_rejected_after_bounded_read(client, container, monkeypatch, png_bytes):
    monkeypatch.setattr(container.media, "max_upload_bytes", 16)
    assert len(png_bytes) > 17

    response = await upload(client, png_bytes)

    assert response.status_code == 400
    assert response.json()["details"] == {"size_bytes": 17, "max_bytes": 16}
    listing = await client.get("/api/v1/media", headers=OWNER)
    assert listing.json()["items"] == []


@pytest.mark.asyncio
async def test_other_owner_gets_404(client, png_bytes):
    created = (await upload(client, png_bytes)).json()

    response = await client.get(f"/api/v1/media/{created['id']}", headers={"X-Owner-Id": "mallory"})
    assert response.status_code == 404
    body = response.json()
    assert body["code"] == 404
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_list_is_paged(client, png_bytes):
    for _ in range(3):
        await upload(client, png_bytes)

    response = await client.get("/api/v1/media", params={"page": 1, "limit": 2}, headers=OWNER)
    assert response.status_code == 200
    body = response.json()
    assert body["limit"] == 2
    assert len(body["items"]) == 2

    response = await client.get("/api/v1/media", params={"limit": 500}, headers=OWNER)
    assert response.json()["limit"] == 10


@pytest.mark.asyncio
async def test_transform_is_queued_then_derived(client, container, png_bytes):
    created = (await upload(client, png_bytes)).json()

    response = await client.post(
        f"/api/v1/media/{created['id']}/transform",
        json={"transformations": {"resize": {"width": 16, "height": 16}, "format": "webp"}},
        headers=OWNER,
    )
    assert response.status_code == 202
    assert response.json() == {"status": "queued"}

    response = await client.get(f"/api/v1/media/{created['id']}/derived", headers=OWNER)
    assert response.json() == []

    assert await container.queue.drain(container.worker) == 1

    response = await client.get(f"/api/v1/media/{created['id']}/derived", headers=OWNER)
    derived = response.json()
    assert len(derived) == 1
    assert derived[0]["mime_type"] == "image/webp"
    assert derived[0]["parent_id"] == created["id"]


@pytest.mark.asyncio
async def test_transform_rejections(client, container, png_bytes):
    created = (await upload(client, png_bytes)).json()
    url = f"/api/v1/media/{created['id']}/transform"

    response = await client.post(url, json={"transformations": {"format": "bmp"}}, headers=OWNER)
    assert response.status_code == 415

    response = await client.post(url, json={"transformations": {"rotate": "sideways"}}, headers=OWNER)
    assert response.status_code == 400
    assert response.json()["details"]["errors"]

    response = await client.post(
        "/api/v1/media/missing/transform", json={"transformations": {"rotate": 90}}, headers=OWNER
    )
    assert response.status_code == 404

    assert container.queue.pending == []


@pytest.mark.asyncio
async def test_delete(client, png_bytes):
    created = (await upload(client, png_bytes)).json()

    response = await client.delete(f"/api/v1/media/{created['id']}", headers=OWNER)
    assert response.status_code == 204

    response = await client.get(f"/api/v1/media/{created['id']}", headers=OWNER)
    assert response.status_code == 404

    response = await client.delete(f"/api/v1/media/{created['id']}", headers=OWNER)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    await client.get("/health")

    response = await client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text
