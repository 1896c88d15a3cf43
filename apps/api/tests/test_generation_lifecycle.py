import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import ValidationError
from sqlalchemy.orm.exc import StaleDataError

from services.errors import (
    ConcurrentUpdateError,
    InvalidTransitionError,
    MediaNotFoundError,
    RecordNotFoundError,
)
from services.generations import (
    RECORD_WRITE_MAX_ATTEMPTS,
    _write_with_retry,
    complete_from_provider_callback,
    get_generation,
    mark_completed,
    mark_failed,
    soft_delete,
    start_generation,
    update_generation,
)
from services.payloads import (
    CompleteGenerationPayload,
    FailGenerationPayload,
    GenerationUpdatePayload,
    ProviderCallbackPayload,
    StartGenerationPayload,
)
from services.record_store import require_record
from services.stats import get_stats


USER_ID = "lifecycle-user"


def _start(**overrides) -> StartGenerationPayload:
    payload = {"prompt": "a red fox in snow", "model": "flux-dev", "generation_type": "text-to-image"}
    payload.update(overrides)
    return StartGenerationPayload(**payload)


def _complete(*media, **overrides) -> CompleteGenerationPayload:
    return CompleteGenerationPayload(media=list(media), **overrides)


def _image(image_id: str, **extra):
    return {"kind": "image", "id": image_id, "url": f"https://cdn.test/{image_id}.png", **extra}


@pytest.mark.asyncio
async def test_start_seeds_generating_private_record(db, engine_ctx, mirror_queue):
    created = await start_generation(USER_ID, _start(), db, engine_ctx)

    record = created["record"]
    assert record["id"] == created["id"]
    assert record["status"] == "generating"
    assert record["is_deleted"] is False
    assert record["is_public"] is False
    assert record["visibility"] == "private"
    assert mirror_queue.ops_for(created["id"]) == ["upsert"]
    assert (await get_stats(USER_ID, db)) == {
        "total": 1,
        "by_status": {"generating": 1},
        "by_type": {"text-to-image": 1},
    }


@pytest.mark.asyncio
async def test_only_transitions_out_of_generating_are_allowed(db, engine_ctx):
    completed = await start_generation(USER_ID, _start(), db, engine_ctx)
    failed = await start_generation(USER_ID, _start(), db, engine_ctx)

    await mark_completed(USER_ID, completed["id"], _complete(_image("img-1")), db, engine_ctx)
    await mark_failed(USER_ID, failed["id"], FailGenerationPayload(error="provider timeout"), db, engine_ctx)

    with pytest.raises(InvalidTransitionError):
        await mark_failed(USER_ID, completed["id"], FailGenerationPayload(error="late"), db, engine_ctx)
    with pytest.raises(InvalidTransitionError):
        await mark_completed(USER_ID, failed["id"], _complete(_image("img-2")), db, engine_ctx)
    with pytest.raises(InvalidTransitionError):
        await mark_failed(USER_ID, failed["id"], FailGenerationPayload(error="again"), db, engine_ctx)
    with pytest.raises(InvalidTransitionError):
        await mark_completed(USER_ID, completed["id"], _complete(_image("img-other")), db, engine_ctx)

    completed_record = await get_generation(USER_ID, completed["id"], db, engine_ctx)
    failed_record = await get_generation(USER_ID, failed["id"], db, engine_ctx)
    assert completed_record["status"] == "completed"
    assert [image["id"] for image in completed_record["images"]] == ["img-1"]
    assert failed_record["status"] == "failed"
    assert failed_record["error"] == "provider timeout"
    assert (await get_stats(USER_ID, db))["by_status"] == {"generating": 0, "completed": 1, "failed": 1}


@pytest.mark.asyncio
async def test_repeated_identical_completion_is_a_no_op(db, engine_ctx, mirror_queue):
    created = await start_generation(USER_ID, _start(), db, engine_ctx)
    first = await mark_completed(USER_ID, created["id"], _complete(_image("img-1")), db, engine_ctx)
    mirror_queue.drain()

    second = await mark_completed(USER_ID, created["id"], _complete(_image("img-1")), db, engine_ctx)

    assert second == first
    assert mirror_queue.tasks == []
    assert (await get_stats(USER_ID, db))["by_status"]["completed"] == 1


def test_status_is_not_patchable_and_undelete_is_rejected():
    with pytest.raises(ValidationError):
        GenerationUpdatePayload(status="completed")
    with pytest.raises(ValidationError):
        GenerationUpdatePayload(is_deleted=False)
    with pytest.raises(ValidationError):
        GenerationUpdatePayload(is_deleted=True, tags=["keep"])
    assert GenerationUpdatePayload(is_deleted=True).is_deleted is True


@pytest.mark.asyncio
async def test_media_flags_keep_generation_public_until_cleared(db, engine_ctx):
    created = await start_generation(USER_ID, _start(), db, engine_ctx)
    await mark_completed(
        USER_ID,
        created["id"],
        _complete(_image("img-1", is_public=True), _image("img-2")),
        db,
        engine_ctx,
    )

    hidden = await update_generation(USER_ID, created["id"], GenerationUpdatePayload(is_public=False), db, engine_ctx)
    assert hidden["is_public"] is True

    cleared = await update_generation(
        USER_ID,
        created["id"],
        GenerationUpdatePayload(media={"kind": "image", "id": "img-1", "is_public": False}),
        db,
        engine_ctx,
    )
    assert cleared["is_public"] is False
    assert cleared["visibility"] == "private"

    published = await update_generation(USER_ID, created["id"], GenerationUpdatePayload(is_public=True), db, engine_ctx)
    assert published["is_public"] is True


@pytest.mark.asyncio
async def test_media_patch_matches_by_url_or_storage_path(db, engine_ctx):
    created = await start_generation(USER_ID, _start(), db, engine_ctx)
    await mark_completed(
        USER_ID,
        created["id"],
        _complete(_image("img-1", storage_path="users/u/img-1.png", provider_meta={"seed": 7})),
        db,
        engine_ctx,
    )

    by_url = await update_generation(
        USER_ID,
        created["id"],
        GenerationUpdatePayload(
            media={
                "kind": "image",
                "url": "https://cdn.test/img-1.png",
                "avif_url": "https://cdn.test/img-1.avif",
                "optimized": True,
            }
        ),
        db,
        engine_ctx,
    )
    by_path = await update_generation(
        USER_ID,
        created["id"],
        GenerationUpdatePayload(
            media={"kind": "image", "storage_path": "users/u/img-1.png", "provider_meta": {"nsfw_score": 0.01}}
        ),
        db,
        engine_ctx,
    )

    assert by_url["images"][0]["avif_url"] == "https://cdn.test/img-1.avif"
    assert by_path["images"][0]["optimized"] is True
    assert by_path["images"][0]["provider_meta"] == {"seed": 7, "nsfw_score": 0.01}

    with pytest.raises(MediaNotFoundError):
        await update_generation(
            USER_ID,
            created["id"],
            GenerationUpdatePayload(media={"kind": "video", "id": "img-1", "optimized": True}),
            db,
            engine_ctx,
        )


@pytest.mark.asyncio
async def test_soft_delete_is_monotonic_and_blocks_republish(db, engine_ctx):
    created = await start_generation(USER_ID, _start(is_public=True), db, engine_ctx)
    await mark_completed(USER_ID, created["id"], _complete(_image("img-1")), db, engine_ctx)

    deleted = await soft_delete(USER_ID, created["id"], db, engine_ctx)
    assert deleted["is_deleted"] is True
    assert deleted["is_public"] is False

    republished = await update_generation(
        USER_ID,
        created["id"],
        GenerationUpdatePayload(is_public=True, media={"kind": "image", "id": "img-1", "is_public": True}),
        db,
        engine_ctx,
    )
    assert republished["is_deleted"] is True
    assert republished["is_public"] is False

    again = await soft_delete(USER_ID, created["id"], db, engine_ctx)
    assert again["is_deleted"] is True
    assert (await get_stats(USER_ID, db))["total"] == 0


@pytest.mark.asyncio
async def test_deleting_last_media_item_escalates_to_full_delete(db, engine_ctx):
    created = await start_generation(USER_ID, _start(), db, engine_ctx)
    await mark_completed(USER_ID, created["id"], _complete(_image("img-1"), _image("img-2")), db, engine_ctx)

    partial = await soft_delete(USER_ID, created["id"], db, engine_ctx, media_id="img-1")
    assert partial["is_deleted"] is False
    assert [image["id"] for image in partial["images"]] == ["img-2"]

    with pytest.raises(MediaNotFoundError):
        await soft_delete(USER_ID, created["id"], db, engine_ctx, media_id="img-1")

    final = await soft_delete(USER_ID, created["id"], db, engine_ctx, media_id="img-2")
    assert final["is_deleted"] is True
    assert final["images"] == []


@pytest.mark.asyncio
async def test_records_are_scoped_to_their_owner(db, engine_ctx):
    created = await start_generation(USER_ID, _start(), db, engine_ctx)

    with pytest.raises(RecordNotFoundError):
        await mark_completed("someone-else", created["id"], _complete(), db, engine_ctx)


@pytest.mark.asyncio
async def test_updated_at_never_moves_backwards(db, engine_ctx):
    created = await start_generation(USER_ID, _start(), db, engine_ctx)
    completed = await mark_completed(USER_ID, created["id"], _complete(_image("img-1")), db, engine_ctx)
    patched = await update_generation(USER_ID, created["id"], GenerationUpdatePayload(tags=["fox"]), db, engine_ctx)

    assert created["record"]["updated_at"] <= completed["updated_at"] <= patched["updated_at"]


@pytest.mark.asyncio
async def test_provider_callback_completes_by_task_id_and_tolerates_retries(db, engine_ctx):
    created = await start_generation(
        USER_ID,
        _start(generation_type="text-to-video", provider="runway", provider_task_id="task-9"),
        db,
        engine_ctx,
    )
    callback = ProviderCallbackPayload(
        provider="runway",
        task_id="task-9",
        status="completed",
        media=[{"kind": "video", "id": "vid-1", "url": "https://cdn.test/vid-1.mp4", "duration_seconds": 5}],
    )

    first = await complete_from_provider_callback(USER_ID, callback, db, engine_ctx)
    retried = await complete_from_provider_callback(USER_ID, callback, db, engine_ctx)

    assert first["id"] == created["id"]
    assert first["status"] == "completed"
    assert first["videos"][0]["duration_seconds"] == 5
    assert retried == first

    missing = ProviderCallbackPayload(provider="runway", task_id="nope", status="failed", error="x")
    with pytest.raises(RecordNotFoundError):
        await complete_from_provider_callback(USER_ID, missing, db, engine_ctx)


@pytest.mark.asyncio
async def test_repeated_full_delete_still_enqueues_mirror_removal(db, engine_ctx, mirror_queue):
    created = await start_generation(USER_ID, _start(is_public=True), db, engine_ctx)
    await mark_completed(USER_ID, created["id"], _complete(_image("img-1")), db, engine_ctx)
    await soft_delete(USER_ID, created["id"], db, engine_ctx)
    mirror_queue.drain()

    again = await soft_delete(USER_ID, created["id"], db, engine_ctx)

    assert again["is_deleted"] is True
    assert mirror_queue.ops_for(created["id"]) == ["remove"]
    assert (await get_stats(USER_ID, db))["total"] == 0


@pytest.mark.asyncio
async def test_concurrent_complete_and_fail_only_one_wins(db, engine_ctx, session_maker):
    created = await start_generation(USER_ID, _start(is_public=True), db, engine_ctx)
    history_id = created["id"]

    async def _complete_it():
        async with session_maker() as session:
            return await mark_completed(USER_ID, history_id, _complete(_image("img-1")), session, engine_ctx)

    async def _fail_it():
        async with session_maker() as session:
            return await mark_failed(USER_ID, history_id, FailGenerationPayload(error="timeout"), session, engine_ctx)

    completed, failed = await asyncio.gather(_complete_it(), _fail_it(), return_exceptions=True)

    outcomes = [result for result in (completed, failed) if isinstance(result, dict)]
    errors = [result for result in (completed, failed) if isinstance(result, Exception)]
    assert len(outcomes) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], InvalidTransitionError)

    stored = await get_generation(USER_ID, history_id, db, engine_ctx)
    assert stored["status"] == outcomes[0]["status"]
    if stored["status"] == "failed":
        assert stored["is_public"] is False
        assert stored["images"] == []
    by_status = (await get_stats(USER_ID, db))["by_status"]
    assert by_status.get("generating", 0) == 0
    assert by_status.get("completed", 0) + by_status.get("failed", 0) == 1


async def _two_image_generation(db, engine_ctx):
    created = await start_generation(USER_ID, _start(), db, engine_ctx)
    await mark_completed(USER_ID, created["id"], _complete(_image("i1"), _image("i2")), db, engine_ctx)
    return created["id"]


@pytest.mark.asyncio
async def test_concurrent_media_delete_and_patch_keep_both_edits(db, engine_ctx, session_maker):
    history_id = await _two_image_generation(db, engine_ctx)
    patch_i2 = GenerationUpdatePayload(media={"kind": "image", "id": "i2", "avif_url": "https://cdn.test/i2.avif"})

    async def _delete_i1():
        async with session_maker() as session:
            return await soft_delete(USER_ID, history_id, session, engine_ctx, media_id="i1")

    async def _patch_i2():
        async with session_maker() as session:
            return await update_generation(USER_ID, history_id, patch_i2, session, engine_ctx)

    await asyncio.gather(_delete_i1(), _patch_i2())

    stored = await get_generation(USER_ID, history_id, db, engine_ctx)
    assert [image["id"] for image in stored["images"]] == ["i2"]
    assert stored["images"][0]["avif_url"] == "https://cdn.test/i2.avif"
    assert stored["is_deleted"] is False


@pytest.mark.asyncio
async def test_media_patch_retries_on_top_of_a_write_that_landed_after_its_read(db, engine_ctx, session_maker):
    history_id = await _two_image_generation(db, engine_ctx)
    reads = []

    async def _read_then_lose_race(uid, record_id, session):
        record = await require_record(uid, record_id, session)
        reads.append([image["id"] for image in record.images])
        if len(reads) == 1:
            async with session_maker() as other:
                competing = await require_record(uid, record_id, other)
                competing.images = [image for image in competing.images if image["id"] != "i1"]
                await other.commit()
        return record

    with patch("services.generations.require_record", side_effect=_read_then_lose_race):
        patched = await update_generation(
            USER_ID,
            history_id,
            GenerationUpdatePayload(media={"kind": "image", "id": "i2", "thumbnail_url": "https://cdn.test/i2.jpg"}),
            db,
            engine_ctx,
        )

    assert reads == [["i1", "i2"], ["i2"]]
    assert [image["id"] for image in patched["images"]] == ["i2"]
    assert patched["images"][0]["thumbnail_url"] == "https://cdn.test/i2.jpg"


@pytest.mark.asyncio
async def test_write_gives_up_with_conflict_after_bounded_retries():
    session = AsyncMock()
    attempt = AsyncMock(side_effect=StaleDataError("version mismatch"))

    with pytest.raises(ConcurrentUpdateError) as excinfo:
        await _write_with_retry(session, "gen-1", "update", attempt)

    assert excinfo.value.status_code == 409
    assert attempt.await_count == RECORD_WRITE_MAX_ATTEMPTS
    assert session.rollback.await_count == RECORD_WRITE_MAX_ATTEMPTS
