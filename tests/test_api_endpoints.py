"""Integration tests for the FastAPI endpoints.

The app runs over ASGITransport with a Services bundle built against an
in-memory store and a mocked engine transport, so every route exercises the
real orchestrator, poller and cache.
"""

import uuid
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

import homify.api.routes.workflows as _workflows_mod
from homify.main import app
from homify.services.container import build_services
from homify.utils.kv_store import MemoryKeyValueStore
from tests.fakes import jpeg_bytes


class _Engine:
    """Mock transport for the edge function and jobs table."""

    def __init__(self) -> None:
        self.job_id = str(uuid.uuid4())
        self.submit_status = 200
        self.status = "processing"
        self.submissions: list[bytes] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path.endswith("/empty-room"):
            self.submissions.append(request.content)
            if self.submit_status >= 400:
                return httpx.Response(self.submit_status, text="engine down")
            return httpx.Response(200, json={"jobId": self.job_id})
        if request.url.path.startswith("/rest/v1/"):
            if request.method == "HEAD":
                return httpx.Response(200)
            return httpx.Response(
                200,
                json=[{"id": self.job_id, "status": self.status, "original_path": "o/x.jpg"}],
            )
        return httpx.Response(404)


@pytest.fixture
def engine_transport() -> _Engine:
    return _Engine()


@pytest.fixture
async def services(config, engine_transport, tmp_path, monkeypatch):
    monkeypatch.setattr(_workflows_mod.settings, "upload_dir", str(tmp_path / "uploads"))
    slow = config.model_copy(update={"poll_interval_seconds": 60.0})
    http = httpx.AsyncClient(transport=httpx.MockTransport(engine_transport))
    svc = await build_services(slow, store=MemoryKeyValueStore(), http=http)
    app.state.services = svc
    yield svc
    await svc.aclose()


@pytest.fixture
async def client(services):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def _create_room(client: AsyncClient, room_type: str = "bedroom") -> httpx.Response:
    return await client.post(
        "/api/v1/workflows/room-creation",
        files={"file": ("room.jpg", jpeg_bytes(), "image/jpeg")},
        data={"room_type": room_type},
    )


class TestHealth:
    @pytest.mark.asyncio
    async def test_reports_counts(self, client):
        """Health reports photo and poll counts plus engine reachability."""
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["photos"] == 0
        assert body["active_polls"] == 0
        assert body["engine"] in {"connected", "disconnected", "unconfigured"}

    @pytest.mark.asyncio
    async def test_engine_disconnected_still_ok(self, client):
        """An unreachable engine is reported, not turned into a 5xx."""
        with patch(
            "homify.api.routes.health._check_engine",
            new_callable=AsyncMock,
            return_value="disconnected",
        ):
            resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["engine"] == "disconnected"

    @pytest.mark.asyncio
    async def test_echoes_request_id(self, client):
        """A caller-supplied X-Request-ID is echoed back."""
        resp = await client.get("/health", headers={"X-Request-ID": "req-42"})
        assert resp.headers["X-Request-ID"] == "req-42"


class TestRoomCreation:
    @pytest.mark.asyncio
    async def test_creates_workflow_photo_and_poll(self, client, services, engine_transport):
        """Upload creates a workflow, a processing photo and a running poll."""
        resp = await _create_room(client)

        assert resp.status_code == 201
        body = resp.json()
        assert body["job_id"] == engine_transport.job_id
        photo = services.cache.get(body["photo_id"])
        assert photo.status == "processing"
        assert photo.room_type == "bedroom"
        assert services.poller.is_polling(engine_transport.job_id)

    @pytest.mark.asyncio
    async def test_engine_failure_returns_502(self, client, services, engine_transport):
        """A 5xx from the engine becomes a retryable 502 and a failed photo."""
        engine_transport.submit_status = 503

        resp = await _create_room(client)

        assert resp.status_code == 502
        body = resp.json()
        assert body["error"] == "submission_failed"
        assert body["retryable"] is True
        assert [p.status for p in services.cache.get_photos()] == ["failed"]

    @pytest.mark.asyncio
    async def test_invalid_job_id_returns_502(self, client, services, engine_transport):
        """An engine that answers with a malformed job id fails the request for good."""
        engine_transport.job_id = "job-123"

        resp = await _create_room(client)

        assert resp.status_code == 502
        body = resp.json()
        assert body["error"] == "submission_failed"
        assert body["retryable"] is False
        assert [p.status for p in services.cache.get_photos()] == ["failed"]
        assert services.poller.get_active_polling_count() == 0

    @pytest.mark.asyncio
    async def test_records_image_dimensions(self, client, services, engine_transport):
        """The uploaded image's size reaches the engine form and the photo metadata."""
        resp = await _create_room(client)

        submit = engine_transport.submissions[0]
        assert b'name="imageWidth"' in submit and b'name="imageHeight"' in submit
        meta = services.cache.get(resp.json()["photo_id"]).metadata
        assert (meta.width, meta.height) == (16, 16)
        assert meta.file_size == len(jpeg_bytes())

    @pytest.mark.asyncio
    async def test_missing_file_is_validation_error(self, client):
        """Omitting the upload yields the shared validation_error shape."""
        resp = await client.post("/api/v1/workflows/room-creation", data={"room_type": "x"})
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"


class TestStyleApplication:
    @pytest.mark.asyncio
    async def test_unknown_photo_is_404(self, client):
        """Styling an unknown photo is a 404 with photo_not_found."""
        resp = await client.post(
            "/api/v1/workflows/style-application",
            json={"empty_image_uri": "https://x/e.jpg", "style": "boho", "photo_id": "nope"},
        )
        assert resp.status_code == 404
        assert resp.json()["error"] == "photo_not_found"

    @pytest.mark.asyncio
    async def test_empty_style_rejected(self, client):
        """An empty style fails request validation."""
        resp = await client.post(
            "/api/v1/workflows/style-application",
            json={"empty_image_uri": "https://x/e.jpg", "style": "", "photo_id": "p"},
        )
        assert resp.status_code == 422


class TestWorkflowQueries:
    @pytest.mark.asyncio
    async def test_get_list_fail_and_clear(self, client):
        """A workflow can be fetched, listed, failed and then cleared."""
        created = (await _create_room(client)).json()
        workflow_id = created["workflow_id"]

        resp = await client.get(f"/api/v1/workflows/{workflow_id}")
        assert resp.status_code == 200
        assert resp.json()["type"] == "room_creation"

        resp = await client.get("/api/v1/workflows")
        assert [w["id"] for w in resp.json()] == [workflow_id]

        resp = await client.post(f"/api/v1/workflows/{workflow_id}/fail", json={"reason": "stop"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "failed"

        resp = await client.delete("/api/v1/workflows/completed")
        assert resp.json() == {"count": 1}

        resp = await client.get(f"/api/v1/workflows/{workflow_id}")
        assert resp.status_code == 404
        assert resp.json()["error"] == "workflow_not_found"


class TestPhotos:
    @pytest.mark.asyncio
    async def test_list_get_delete(self, client):
        """Photos are listed in camelCase, filtered by status and deleted once."""
        created = (await _create_room(client)).json()
        photo_id = created["photo_id"]

        resp = await client.get("/api/v1/photos")
        assert [p["id"] for p in resp.json()] == [photo_id]
        assert "originalUrl" in resp.json()[0]

        resp = await client.get("/api/v1/photos", params={"status": "completed"})
        assert resp.json() == []

        resp = await client.get(f"/api/v1/photos/{photo_id}")
        assert resp.json()["status"] == "processing"

        resp = await client.delete(f"/api/v1/photos/{photo_id}")
        assert resp.status_code == 204
        resp = await client.delete(f"/api/v1/photos/{photo_id}")
        assert resp.status_code == 404


class TestPolling:
    @pytest.mark.asyncio
    async def test_status_resume_and_clear(self, client, services, engine_transport):
        """Polling status counts loops; resume restarts bound processing photos."""
        await _create_room(client)
        resp = await client.get("/api/v1/polling")
        assert resp.json() == {"active_polling_count": 1, "failed_jobs_count": 0}

        services.poller.stop_all_polling()
        resp = await client.post("/api/v1/polling/resume")
        assert resp.json() == {"count": 1}

        resp = await client.delete("/api/v1/polling/failed-jobs")
        assert resp.json()["failed_jobs_count"] == 0

    @pytest.mark.asyncio
    async def test_notifications_start_empty(self, client):
        resp = await client.get("/api/v1/notifications")
        assert resp.status_code == 200
        assert resp.json() == []
