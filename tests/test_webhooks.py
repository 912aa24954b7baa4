"""
Webhook and health endpoint tests
Provider callbacks are reconciled against the provider job audit trail
"""
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from songstudio.api.routes.webhooks import get_database, parse_roex_webhook, parse_suno_callback
from songstudio.database.repositories import ProviderJobRepository
from songstudio.database.schemas import ProviderJobCreate
from songstudio.jobs.base import JobState
from songstudio.main import app


def suno_complete(task_id="task-1", audio_url="https://cdn.suno.test/a.mp3"):
    return {
        "code": 200,
        "msg": "All generated successfully.",
        "data": {
            "callbackType": "complete",
            "task_id": task_id,
            "data": [{"id": "clip-0", "audio_url": ""}, {"id": "clip-1", "audio_url": audio_url}],
        },
    }


class UnavailableDatabase:
    """Database whose sessions fail to open"""

    @asynccontextmanager
    async def get_session(self):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))
        yield


async def add_job(database, provider, job_id, status="processing", role="intro"):
    async with database.get_session() as session:
        await ProviderJobRepository(session).create(ProviderJobCreate(
            provider=provider, kind="intro_generation", job_id=job_id, role=role, status=status
        ))


async def get_job(database, provider, job_id):
    async with database.get_session() as session:
        return await ProviderJobRepository(session).get_by_job_id(provider, job_id)


@pytest.fixture
async def api(database):
    """HTTP client against the app with the test database injected"""
    app.dependency_overrides[get_database] = lambda: database
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.mark.unit
class TestCallbackParsing:

    def test_suno_complete_picks_first_track_with_audio(self):
        status = parse_suno_callback(suno_complete())

        assert status.outputs == {"audio": "https://cdn.suno.test/a.mp3"}

    def test_suno_progress_and_errors(self):
        text = parse_suno_callback({"code": 200, "data": {"callbackType": "text", "task_id": "t"}})
        error = parse_suno_callback({"code": 200, "msg": "Audio generation failed", "data": {"callbackType": "error"}})
        bad_code = parse_suno_callback({"code": 501, "msg": "Internal error"})
        no_audio = parse_suno_callback({"code": 200, "data": {"callbackType": "complete", "data": []}})

        assert text.state == JobState.PROCESSING
        assert text.progress == "text"
        assert error.reason == "Audio generation failed"
        assert bad_code.reason == "Internal error"
        assert no_audio.state == JobState.FAILED

    def test_roex_variants(self):
        flat = parse_roex_webhook({"multitrack_task_id": "m", "preview_mix_url": "https://roex.test/p.wav"})
        nested = parse_roex_webhook({
            "multitrack_task_id": "m",
            "previewMixTaskResults": {"download_url_preview_mixed": "https://roex.test/n.wav"},
        })
        failed = parse_roex_webhook({"error": True})

        assert flat.outputs == {"mix": "https://roex.test/p.wav"}
        assert nested.outputs == {"mix": "https://roex.test/n.wav"}
        assert failed.reason == "Processing failed"


@pytest.mark.integration
class TestSunoWebhook:

    @pytest.mark.asyncio
    async def test_success_marks_processing_job_succeeded(self, api, database):
        await add_job(database, "suno", "task-1")

        response = await api.post("/api/webhooks/suno", json=suno_complete())

        assert response.status_code == 200
        assert response.json()["status"] == "succeeded"
        job = await get_job(database, "suno", "task-1")
        assert job.status == "succeeded"
        assert job.output_url == "https://cdn.suno.test/a.mp3"
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_late_success_is_recovered(self, api, database):
        await add_job(database, "suno", "task-2", status="timed_out", role="section:0")

        response = await api.post("/api/webhooks/suno", json=suno_complete("task-2"))

        assert response.json()["status"] == "recovered"
        job = await get_job(database, "suno", "task-2")
        assert job.status == "recovered"
        assert job.output_url == "https://cdn.suno.test/a.mp3"

    @pytest.mark.asyncio
    async def test_consumed_job_is_left_alone(self, api, database):
        await add_job(database, "suno", "task-3", status="consumed")

        response = await api.post("/api/webhooks/suno", json=suno_complete("task-3"))

        assert response.json()["status"] == "ignored"
        assert (await get_job(database, "suno", "task-3")).status == "consumed"

    @pytest.mark.asyncio
    async def test_error_callback_marks_failed(self, api, database):
        await add_job(database, "suno", "task-4")

        response = await api.post("/api/webhooks/suno", json={
            "code": 200, "msg": "Sensitive word", "data": {"callbackType": "error", "task_id": "task-4"}
        })

        body = response.json()
        assert body["status"] == "failed"
        assert body["error"] == "Sensitive word"
        assert (await get_job(database, "suno", "task-4")).error_message == "Sensitive word"

    @pytest.mark.asyncio
    async def test_progress_callback_is_ignored(self, api, database):
        await add_job(database, "suno", "task-5")

        response = await api.post("/api/webhooks/suno", json={
            "code": 200, "data": {"callbackType": "first", "task_id": "task-5"}
        })

        assert response.json()["status"] == "ignored"
        assert (await get_job(database, "suno", "task-5")).status == "processing"

    @pytest.mark.asyncio
    async def test_unknown_job_is_acknowledged(self, api):
        response = await api.post("/api/webhooks/suno", json=suno_complete("never-started"))

        assert response.status_code == 200
        assert response.json()["status"] == "unknown_job"

    @pytest.mark.asyncio
    async def test_provider_error_without_task_is_acknowledged(self, api):
        response = await api.post("/api/webhooks/suno", json={"code": 451, "msg": "Download failed"})

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert response.json()["error"] == "Download failed"


@pytest.mark.integration
class TestRoexWebhook:

    @pytest.mark.asyncio
    async def test_mix_result_marks_job(self, api, database):
        await add_job(database, "roex", "mix-1", role="mix")

        response = await api.post("/api/webhooks/roex", json={
            "multitrack_task_id": "mix-1", "preview_mix_url": "https://roex.test/mix.wav"
        })

        assert response.json()["status"] == "succeeded"
        assert (await get_job(database, "roex", "mix-1")).output_url == "https://roex.test/mix.wav"

    @pytest.mark.asyncio
    async def test_missing_task_id(self, api):
        response = await api.post("/api/webhooks/roex", json={"preview_mix_url": "https://roex.test/mix.wav"})

        assert response.status_code == 200
        assert response.json()["error"] == "No task id"

    @pytest.mark.asyncio
    async def test_database_errors_are_acknowledged(self, api):
        app.dependency_overrides[get_database] = lambda: UnavailableDatabase()

        response = await api.post("/api/webhooks/roex", json={
            "task_id": "mix-2", "preview_mix_url": "https://roex.test/mix.wav"
        })

        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["job_id"] == "mix-2"
        assert "connection refused" in body["error"]


@pytest.mark.integration
class TestHealth:

    @pytest.mark.asyncio
    async def test_healthy(self, api):
        with patch("songstudio.main.database_manager.check_health", new=AsyncMock(return_value=True)):
            response = await api.get("/health")

        assert response.status_code == 200
        assert response.json()["services"]["database"] == "healthy"

    @pytest.mark.asyncio
    async def test_unhealthy_database_returns_503(self, api):
        with patch("songstudio.main.database_manager.check_health", new=AsyncMock(return_value=False)):
            response = await api.get("/health")

        assert response.status_code == 503
        assert response.json() == {"status": "unhealthy", "services": {"database": "unhealthy"}}
