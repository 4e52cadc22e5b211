"""Tests for file, task and result persistence."""

import pytest

from stemflow.db.models import FileStatus
from stemflow.services.file_service import InvalidTransition, file_service
from stemflow.services.result_store import result_store
from stemflow.services.status_service import aggregate_batch_status
from stemflow.services.task_store import task_store


@pytest.mark.asyncio
async def test_upload_stores_blob_under_tool_prefix(db_session, fake_storage):
    uploaded = await file_service.create_uploaded_file(
        db_session,
        fake_storage,
        b"audio",
        original_file_name="My Song.WAV",
        mime_type="audio/wav",
        tool_type="audio_splitter",
        fingerprint="fp-1",
    )
    await db_session.commit()

    assert uploaded.status == FileStatus.UPLOADED
    assert uploaded.batch_id
    assert uploaded.file_size == 5
    assert uploaded.storage_key.startswith("uploads/audio_splitter/")
    assert uploaded.storage_key.endswith(".wav")
    assert fake_storage.blobs[uploaded.storage_key] == b"audio"


@pytest.mark.asyncio
async def test_upload_requires_an_owner(db_session, fake_storage):
    with pytest.raises(ValueError):
        await file_service.create_uploaded_file(
            db_session,
            fake_storage,
            b"audio",
            original_file_name="song.mp3",
            mime_type="audio/mpeg",
            tool_type="vocal_remover",
        )


@pytest.mark.asyncio
async def test_claim_is_exclusive(db_session, make_file):
    uploaded = await make_file()

    assert await file_service.claim_for_processing(db_session, uploaded.id) is True
    assert await file_service.claim_for_processing(db_session, uploaded.id) is False
    await db_session.commit()

    stored = await file_service.get_file(db_session, uploaded.id)
    assert stored.status == FileStatus.PROCESSING


@pytest.mark.asyncio
async def test_status_only_moves_forward(db_session, make_file):
    uploaded = await make_file()
    await file_service.claim_for_processing(db_session, uploaded.id)
    await file_service.update_file_status(db_session, uploaded.id, FileStatus.PROCESSED)
    await db_session.commit()

    with pytest.raises(InvalidTransition):
        await file_service.update_file_status(
            db_session, uploaded.id, FileStatus.FAILED, error_message="late failure"
        )
    with pytest.raises(InvalidTransition):
        await file_service.update_file_status(db_session, uploaded.id, FileStatus.PROCESSING)


@pytest.mark.asyncio
async def test_uploaded_file_cannot_skip_processing(db_session, make_file):
    uploaded = await make_file()

    with pytest.raises(InvalidTransition):
        await file_service.update_file_status(db_session, uploaded.id, FileStatus.PROCESSED)


@pytest.mark.asyncio
async def test_terminal_task_is_not_overwritten(db_session, make_file):
    uploaded = await make_file()
    await task_store.create_task(db_session, uploaded.id, "engine-1", "queued", "Task queued")

    assert await task_store.update_task(db_session, uploaded.id, "running", progress=0.4)
    assert await task_store.update_task(db_session, uploaded.id, "completed", "Done", progress=1.0)
    assert not await task_store.update_task(db_session, uploaded.id, "running", progress=0.1)
    await db_session.commit()

    task = await task_store.get_task_by_file(db_session, uploaded.id)
    await db_session.refresh(task)
    assert task.engine_task_id == "engine-1"
    assert task.task_status == "completed"
    assert task.task_message == "Done"
    assert task.progress == 1.0
    assert task.is_terminal


@pytest.mark.asyncio
async def test_batch_overview_loads_tasks_and_results(db_session, fake_storage, make_file):
    first = await make_file(batch_id="batch-9", name="a.mp3")
    second = await make_file(batch_id="batch-9", name="b.mp3")
    await make_file(batch_id="other", name="c.mp3")

    await task_store.create_task(db_session, first.id, "engine-1", "completed")
    await result_store.save_result(
        db_session, fake_storage, first.id, "vocals.mp3", b"v", "audio/mpeg"
    )
    await db_session.commit()

    files = await task_store.get_batch_overview(db_session, "batch-9")

    assert [f.id for f in files] == [first.id, second.id]
    assert files[0].task.engine_task_id == "engine-1"
    assert [r.storage_key for r in files[0].results] == [f"results/{first.id}/vocals.mp3"]
    assert files[1].task is None
    assert files[1].results == []


@pytest.mark.asyncio
async def test_list_user_files_paginates(db_session, make_file):
    for i in range(3):
        await make_file(user_id="user-1", name=f"{i}.mp3")
    await make_file(user_id="user-1", tool_type="audio_splitter", name="split.mp3")
    await make_file(user_id="someone-else")

    files, total = await file_service.list_user_files(
        db_session, "user-1", tool_type="vocal_remover", page=1, page_size=2
    )

    assert total == 3
    assert len(files) == 2
    assert all(f.tool_type == "vocal_remover" for f in files)


@pytest.mark.parametrize(
    "statuses,expected",
    [
        (["processed", "processed"], FileStatus.PROCESSED),
        (["processed", "failed"], FileStatus.FAILED),
        (["failed", "processing"], FileStatus.FAILED),
        (["processed", "processing"], FileStatus.PROCESSING),
        (["uploaded", "processing"], FileStatus.PROCESSING),
        (["uploaded", "processed"], FileStatus.UPLOADED),
        (["uploaded"], FileStatus.UPLOADED),
        ([], FileStatus.UPLOADED),
    ],
)
def test_aggregate_batch_status(statuses, expected):
    assert aggregate_batch_status(statuses) == expected


@pytest.mark.asyncio
async def test_saving_a_result_twice_keeps_one_row(db_session, fake_storage, make_file):
    uploaded = await make_file()

    first = await result_store.save_result(
        db_session, fake_storage, uploaded.id, "vocals.mp3", b"first run", "audio/mpeg"
    )
    await db_session.commit()
    second = await result_store.save_result(
        db_session, fake_storage, uploaded.id, "vocals.mp3", b"second run", "audio/mpeg"
    )
    await db_session.commit()

    assert second.id == first.id
    results = await result_store.list_results(db_session, uploaded.id)
    assert [r.result_type for r in results] == ["vocals.mp3"]
    assert results[0].file_size == len(b"first run")


@pytest.mark.asyncio
async def test_count_in_flight_matches_the_charged_owner(db_session, make_file):
    anonymous = await make_file(fingerprint="fp-1", name="a.mp3")
    await make_file(fingerprint="fp-1", name="b.mp3")
    registered = await make_file(user_id="user-1", fingerprint="fp-1", name="c.mp3")
    other_tool = await make_file(fingerprint="fp-1", tool_type="audio_splitter", name="d.mp3")
    for uploaded in (anonymous, registered, other_tool):
        await file_service.claim_for_processing(db_session, uploaded.id)
    await db_session.commit()

    assert await file_service.count_in_flight(db_session, None, "fp-1", "vocal_remover") == 1
    assert (
        await file_service.count_in_flight(
            db_session, None, "fp-1", "vocal_remover", exclude_file_id=anonymous.id
        )
        == 0
    )
    assert await file_service.count_in_flight(db_session, "user-1", "fp-1", "vocal_remover") == 1
    assert await file_service.count_in_flight(db_session, None, "fp-1", "audio_splitter") == 1
