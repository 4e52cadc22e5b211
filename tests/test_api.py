"""Tests for API endpoints."""

import pytest
from httpx import AsyncClient

from stemflow.api import health
from stemflow.services.file_service import file_service
from stemflow.services.usage_limiter import Identity


def audio_file(name: str = "song.mp3", content: bytes = b"ID3 audio", mime: str = "audio/mpeg"):
    return ("files", (name, content, mime))


@pytest.mark.asyncio
async def test_root_endpoint(client: AsyncClient):
    """Test root endpoint."""
    response = await client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "Stemflow"


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient, monkeypatch):
    """Test health check endpoint."""
    monkeypatch.setattr(health, "_ping_redis", lambda: True)

    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] == "ok"
    assert data["engine"] == "ok"


@pytest.mark.asyncio
async def test_health_reports_engine_outage(client: AsyncClient, fake_engine, monkeypatch):
    monkeypatch.setattr(health, "_ping_redis", lambda: True)
    fake_engine.healthy = False

    response = await client.get("/health")
    data = response.json()
    assert data["status"] == "degraded"
    assert data["engine"] == "error"


@pytest.mark.asyncio
async def test_upload_creates_batch(client: AsyncClient, fake_storage):
    """Test a single anonymous upload."""
    response = await client.post(
        "/v1/audio/upload",
        data={"tool_type": "vocal_remover", "fingerprint": "fp-1"},
        files=[audio_file()],
    )
    assert response.status_code == 201
    data = response.json()
    assert data["batch_id"]
    assert len(data["files"]) == 1
    uploaded = data["files"][0]
    assert uploaded["status"] == "uploaded"
    assert uploaded["original_file_name"] == "song.mp3"
    assert uploaded["batch_id"] == data["batch_id"]
    assert len(fake_storage.blobs) == 1


@pytest.mark.asyncio
async def test_upload_batch_for_registered_user(client: AsyncClient):
    response = await client.post(
        "/v1/audio/upload",
        data={"tool_type": "audio_splitter", "user_id": "user-1"},
        files=[audio_file("a.mp3"), audio_file("b.wav", mime="audio/wav"), audio_file("c.flac", mime="audio/flac")],
    )
    assert response.status_code == 201
    data = response.json()
    assert len(data["files"]) == 3
    assert {f["batch_id"] for f in data["files"]} == {data["batch_id"]}


@pytest.mark.asyncio
async def test_upload_requires_identity(client: AsyncClient):
    response = await client.post(
        "/v1/audio/upload",
        data={"tool_type": "vocal_remover", "fingerprint": "  "},
        files=[audio_file()],
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_upload_rejects_unknown_tool(client: AsyncClient):
    response = await client.post(
        "/v1/audio/upload",
        data={"tool_type": "karaoke", "fingerprint": "fp-1"},
        files=[audio_file()],
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_upload_rejects_too_many_files(client: AsyncClient):
    response = await client.post(
        "/v1/audio/upload",
        data={"tool_type": "vocal_remover", "user_id": "user-1"},
        files=[audio_file(f"{i}.mp3") for i in range(4)],
    )
    assert response.status_code == 400
    assert "Maximum 3 files" in response.json()["detail"]


@pytest.mark.asyncio
async def test_upload_rejects_non_audio(client: AsyncClient, fake_storage):
    response = await client.post(
        "/v1/audio/upload",
        data={"tool_type": "vocal_remover", "user_id": "user-1"},
        files=[audio_file("notes.txt", b"hello", "text/plain")],
    )
    assert response.status_code == 400
    assert fake_storage.blobs == {}


@pytest.mark.asyncio
async def test_upload_rejects_empty_file(client: AsyncClient):
    response = await client.post(
        "/v1/audio/upload",
        data={"tool_type": "vocal_remover", "user_id": "user-1"},
        files=[audio_file(content=b"")],
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_upload_blocked_when_daily_limit_used(client: AsyncClient, session_maker, usage):
    async with session_maker() as db:
        await usage.increment(db, Identity("fp-1", registered=False), "vocal_remover")
        await db.commit()

    response = await client.post(
        "/v1/audio/upload",
        data={"tool_type": "vocal_remover", "fingerprint": "fp-1"},
        files=[audio_file()],
    )
    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["remaining"] == 0
    assert "Please register" in detail["message"]


@pytest.mark.asyncio
async def test_upload_blocked_when_batch_exceeds_remaining(client: AsyncClient):
    response = await client.post(
        "/v1/audio/upload",
        data={"tool_type": "vocal_remover", "fingerprint": "fp-1"},
        files=[audio_file("a.mp3"), audio_file("b.mp3")],
    )
    assert response.status_code == 403
    assert response.json()["detail"]["requested"] == 2


@pytest.mark.asyncio
async def test_process_dispatches_file(client: AsyncClient, make_file, dispatched):
    uploaded = await make_file()

    response = await client.post("/v1/audio/process", json={"file_id": uploaded.id})
    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "queued"
    assert data["file_ids"] == [uploaded.id]
    assert dispatched == [([uploaded.id], None, None)]


@pytest.mark.asyncio
async def test_process_dispatches_batch_with_sound_source(
    client: AsyncClient, make_file, dispatched
):
    first = await make_file(tool_type="audio_splitter", user_id="user-1", batch_id="batch-1")
    second = await make_file(tool_type="audio_splitter", user_id="user-1", batch_id="batch-1")

    response = await client.post(
        "/v1/audio/process",
        json={"batch_id": "batch-1", "tool_code": "audio_splitter", "sound_source": "guitar"},
    )
    assert response.status_code == 202
    assert dispatched == [([first.id, second.id], "audio_splitter", "guitar")]


@pytest.mark.asyncio
async def test_process_requires_target(client: AsyncClient):
    response = await client.post("/v1/audio/process", json={})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_process_rejects_unknown_sound_source(client: AsyncClient, make_file):
    uploaded = await make_file()
    response = await client.post(
        "/v1/audio/process", json={"file_id": uploaded.id, "sound_source": "kazoo"}
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_process_missing_file(client: AsyncClient, dispatched):
    response = await client.post("/v1/audio/process", json={"file_id": 999})
    assert response.status_code == 404
    assert dispatched == []


@pytest.mark.asyncio
async def test_process_rejects_file_already_started(
    client: AsyncClient, make_file, session_maker, dispatched
):
    uploaded = await make_file()
    async with session_maker() as db:
        await file_service.claim_for_processing(db, uploaded.id)
        await db.commit()

    response = await client.post("/v1/audio/process", json={"file_id": uploaded.id})
    assert response.status_code == 409
    assert dispatched == []


@pytest.mark.asyncio
async def test_process_blocked_once_separate_uploads_use_the_allotment(
    client: AsyncClient, orchestrator, dispatched
):
    file_ids = []
    for name in ("a.mp3", "b.mp3", "c.mp3"):
        response = await client.post(
            "/v1/audio/upload",
            data={"tool_type": "vocal_remover", "fingerprint": "fp-solo"},
            files=[audio_file(name)],
        )
        assert response.status_code == 201
        file_ids.append(response.json()["files"][0]["id"])

    response = await client.post("/v1/audio/process", json={"file_id": file_ids[0]})
    assert response.status_code == 202
    result = await orchestrator.process(file_ids[0])
    assert result.succeeded

    response = await client.post("/v1/audio/process", json={"file_id": file_ids[1]})
    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["remaining"] == 0
    assert detail["requested"] == 1
    assert "Please register" in detail["message"]
    assert dispatched == [([file_ids[0]], None, None)]


@pytest.mark.asyncio
async def test_process_counts_files_already_in_flight(
    client: AsyncClient, make_file, session_maker, dispatched
):
    started = await make_file(fingerprint="fp-busy", name="a.mp3")
    waiting = await make_file(fingerprint="fp-busy", name="b.mp3")
    async with session_maker() as db:
        await file_service.claim_for_processing(db, started.id)
        await db.commit()

    response = await client.post("/v1/audio/process", json={"file_id": waiting.id})
    assert response.status_code == 403
    assert response.json()["detail"]["remaining"] == 0
    assert dispatched == []


@pytest.mark.asyncio
async def test_process_rejects_batch_larger_than_remaining(
    client: AsyncClient, make_file, dispatched
):
    await make_file(fingerprint="fp-pair", batch_id="batch-2", name="a.mp3")
    await make_file(fingerprint="fp-pair", batch_id="batch-2", name="b.mp3")

    response = await client.post("/v1/audio/process", json={"batch_id": "batch-2"})
    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["remaining"] == 1
    assert detail["requested"] == 2
    assert dispatched == []


@pytest.mark.asyncio
async def test_file_status(client: AsyncClient, make_file):
    uploaded = await make_file()

    response = await client.get("/v1/audio/status", params={"file_id": uploaded.id})
    assert response.status_code == 200
    data = response.json()
    assert data["file_id"] == uploaded.id
    assert data["status"] == "uploaded"


@pytest.mark.asyncio
async def test_batch_status_aggregates(client: AsyncClient, make_file, session_maker):
    first = await make_file(batch_id="batch-1")
    await make_file(batch_id="batch-1")
    async with session_maker() as db:
        await file_service.claim_for_processing(db, first.id)
        await db.commit()

    response = await client.get("/v1/audio/status", params={"batch_id": "batch-1"})
    assert response.status_code == 200
    data = response.json()
    assert data["overall_status"] == "processing"
    assert data["total"] == 2
    assert data["processed"] == 0
    assert [f["status"] for f in data["files"]] == ["processing", "uploaded"]


@pytest.mark.asyncio
async def test_status_requires_file_or_batch(client: AsyncClient):
    response = await client.get("/v1/audio/status")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_status_unknown_batch(client: AsyncClient):
    response = await client.get("/v1/audio/status", params={"batch_id": "nope"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_results_after_processing(client: AsyncClient, make_file, orchestrator):
    uploaded = await make_file(batch_id="batch-1")
    await orchestrator.process(uploaded.id)

    response = await client.get("/v1/audio/results", params={"file_id": uploaded.id})
    assert response.status_code == 200
    data = response.json()
    assert data["file"]["status"] == "processed"
    assert data["task"]["task_status"] == "completed"
    assert data["task"]["processing_time_ms"] == 90500
    assert [r["result_type"] for r in data["results"]] == ["vocals.mp3", "no_vocals.mp3"]
    assert data["results"][0]["download_url"].startswith(
        f"https://storage.test/results/{uploaded.id}/vocals.mp3"
    )

    response = await client.get("/v1/audio/results", params={"batch_id": "batch-1"})
    assert response.status_code == 200
    data = response.json()
    assert data["overall_status"] == "processed"
    assert len(data["files"][0]["results"]) == 2


@pytest.mark.asyncio
async def test_results_missing_file(client: AsyncClient):
    response = await client.get("/v1/audio/results", params={"file_id": 999})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_limits_check(client: AsyncClient):
    response = await client.post(
        "/v1/audio/limits/check",
        json={"tool_code": "vocal_remover", "fingerprint": "fp-new"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["allowed"] is True
    assert data["remaining"] == 1
    assert data["limit"] == 1


@pytest.mark.asyncio
async def test_limits_check_requires_identity(client: AsyncClient):
    response = await client.post("/v1/audio/limits/check", json={"tool_code": "vocal_remover"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_list_user_files(client: AsyncClient, make_file):
    await make_file(user_id="user-1", name="a.mp3")
    await make_file(user_id="user-1", name="b.mp3")
    await make_file(fingerprint="fp-other")

    response = await client.get("/v1/audio/files", params={"user_id": "user-1"})
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert data["total_pages"] == 1
    assert {f["file"]["original_file_name"] for f in data["files"]} == {"a.mp3", "b.mp3"}
