import io

import pytest
from PIL import Image

HEADERS = {"X-User-Id": "user-1"}


def _png(width=120, height=90) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (20, 120, 220)).save(buffer, format="PNG")
    return buffer.getvalue()


async def _upload(client, data=None, content_type="image/png"):
    return await client.post(
        "/api/v1/images",
        files={"image": ("photo.png", data if data is not None else _png(), content_type)},
        headers=HEADERS,
    )


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_ready_reports_dependencies(client):
    response = await client.get("/ready")
    assert response.status_code == 200
    assert response.json()["checks"] == {"database": True, "cache": True}


@pytest.mark.asyncio
async def test_missing_owner_header(client):
    response = await client.get("/api/v1/images")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_upload_and_fetch_metadata(client):
    response = await _upload(client)
    assert response.status_code == 201
    image = response.json()["image"]
    assert image["width"] == 120
    assert image["isProcessing"] is False

    response = await client.get(f"/api/v1/images/{image['id']}/metadata", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["image"]["id"] == image["id"]

    response = await client.get("/api/v1/images", headers=HEADERS)
    assert response.json()["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_upload_rejects_non_images(client):
    response = await _upload(client, data=b"hello", content_type="text/plain")
    assert response.status_code == 400
    assert response.json()["code"] == 400


@pytest.mark.asyncio
async def test_unknown_image_is_404(client):
    response = await client.get("/api/v1/images/does-not-exist/status", headers=HEADERS)
    assert response.status_code == 404
    assert response.json()["error"] == "Image not found"


@pytest.mark.asyncio
async def test_other_owner_gets_404(client):
    image_id = (await _upload(client)).json()["image"]["id"]

    response = await client.get(f"/api/v1/images/{image_id}", headers={"X-User-Id": "user-2"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_async_transform_flow(client, container, queue):
    image_id = (await _upload(client)).json()["image"]["id"]

    response = await client.post(
        f"/api/v1/images/{image_id}/transform",
        json={"transformations": {"rotate": 90}},
        headers=HEADERS,
    )
    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"
    job_id = body["jobId"]

    response = await client.post(
        f"/api/v1/images/{image_id}/transform",
        json={"transformations": {"flip": True}},
        headers=HEADERS,
    )
    assert response.status_code == 409

    # Deliver the published message to the worker directly
    message = queue.publish.call_args[0][0]
    result = container.worker.handle(message.to_payload())
    assert result.outcome.value == "completed"

    response = await client.get(f"/api/v1/jobs/{job_id}", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["result"]["width"] == 90

    response = await client.get(f"/api/v1/images/{image_id}/status", headers=HEADERS)
    status = response.json()
    assert status["isProcessing"] is False
    assert status["status"] == "completed"


@pytest.mark.asyncio
async def test_invalid_spec_is_400(client):
    image_id = (await _upload(client)).json()["image"]["id"]

    response = await client.post(
        f"/api/v1/images/{image_id}/transform",
        json={"transformations": {"resize": {"width": -5}}},
        headers=HEADERS,
    )
    assert response.status_code == 400
    assert response.json()["details"]["errors"]


@pytest.mark.asyncio
async def test_sync_transform_returns_bytes_and_caches(client):
    image_id = (await _upload(client)).json()["image"]["id"]
    spec = {"transformations": {"resize": {"width": 60}, "format": "webp"}}

    first = await client.post(f"/api/v1/images/{image_id}/transform/sync", json=spec, headers=HEADERS)
    assert first.status_code == 200
    assert first.headers["content-type"] == "image/webp"
    assert first.headers["x-cache"] == "MISS"
    assert Image.open(io.BytesIO(first.content)).size == (60, 45)

    second = await client.post(f"/api/v1/images/{image_id}/transform/sync", json=spec, headers=HEADERS)
    assert second.headers["x-cache"] == "HIT"
    assert second.content == first.content

    response = await client.get("/api/v1/cache/stats")
    assert response.json()["entries"] == 1


@pytest.mark.asyncio
async def test_delete_image(client):
    image_id = (await _upload(client)).json()["image"]["id"]

    response = await client.delete(f"/api/v1/images/{image_id}", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["deleted"] is True

    response = await client.get(f"/api/v1/images/{image_id}/metadata", headers=HEADERS)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    await client.get("/health")

    response = await client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text
