"""Generation lifecycle: state transitions, visibility, mirror propagation.

Each mutation writes the authoritative record first, then adjusts stats,
invalidates the cache and enqueues a mirror task. Transitions that publish
also attempt an inline mirror write. Transitions that unpublish or delete
remove the mirror row before the authoritative write and always enqueue a
backup remove task.

Records carry a version column. A write that lost a race to another writer
is rolled back and re-run against the fresh record a bounded number of times.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.generation import GenerationRecord
from services import stats
from services.context import EngineContext
from services.errors import (
    ConcurrentUpdateError,
    InvalidTransitionError,
    MediaNotFoundError,
    PropagationFailure,
    RecordNotFoundError,
)
from services.mirror import is_publishable, remove_mirror, sync_mirror_from_source
from services.pagination import list_page
from services.payloads import (
    MEDIA_KIND_FIELDS,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_GENERATING,
    CompleteGenerationPayload,
    FailGenerationPayload,
    GenerationListQuery,
    GenerationUpdatePayload,
    MediaPatch,
    ProviderCallbackPayload,
    StartGenerationPayload,
    dump_media_item,
)
from services.record_store import (
    create_record,
    find_by_provider_task_id,
    refresh_visibility,
    require_record,
    serialize_generation,
    touch,
)


logger = logging.getLogger(__name__)

RECORD_WRITE_MAX_ATTEMPTS = 3


async def _sync_mirror(ctx: EngineContext, uid: str, history_id: str) -> None:
    """Best-effort inline mirror write. Failures are left to the queued task."""
    if not ctx.mirror_sync_enabled:
        return
    try:
        async with ctx.mirror_session() as mirror_db:
            await asyncio.wait_for(
                sync_mirror_from_source(mirror_db, uid, history_id),
                timeout=max(float(settings.MIRROR_SYNC_TIMEOUT_SECONDS), 0.1),
            )
    except Exception as exc:
        failure = PropagationFailure(f"Inline mirror sync failed for {history_id}: {exc!r}")
        logger.warning("%s; queued task will retry", failure)


async def _remove_from_mirror_first(ctx: EngineContext, history_id: str) -> None:
    try:
        async with ctx.mirror_session() as mirror_db:
            await asyncio.wait_for(
                remove_mirror(mirror_db, history_id),
                timeout=max(float(settings.MIRROR_SYNC_TIMEOUT_SECONDS), 0.1),
            )
    except Exception as exc:
        failure = PropagationFailure(f"Direct mirror removal failed for {history_id}: {exc!r}")
        logger.warning("%s; backup remove task will retry", failure)


async def _invalidate(ctx: EngineContext, uid: str, history_id: str) -> None:
    try:
        await ctx.cache.invalidate(uid, history_id)
    except Exception as exc:
        logger.warning("Generation cache invalidation failed for %s/%s: %s", uid, history_id, exc)


async def _write_with_retry(
    db: AsyncSession,
    history_id: str,
    label: str,
    attempt_write: Callable[[], Awaitable[Dict[str, Any]]],
) -> Dict[str, Any]:
    """Run a read-modify-write of one record, re-reading it after a lost race.

    The retried attempt validates against the winning writer's state, so a
    second status transition fails with ``InvalidTransitionError`` and a
    media edit is re-applied on top of the other writer's media.
    """
    for attempt in range(1, RECORD_WRITE_MAX_ATTEMPTS + 1):
        try:
            return await attempt_write()
        except StaleDataError:
            await db.rollback()
            if attempt >= RECORD_WRITE_MAX_ATTEMPTS:
                raise ConcurrentUpdateError(f"Generation {history_id} kept changing during {label}")
            logger.info("Concurrent write on generation %s during %s, retrying (%s)", history_id, label, attempt)
    raise ConcurrentUpdateError(f"Generation {history_id} kept changing during {label}")


async def _commit_mutation(
    ctx: EngineContext,
    db: AsyncSession,
    record: GenerationRecord,
    *,
    was_published: bool,
    publish_inline: bool,
    queue_patch: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Persist an in-memory mutation of ``record`` and propagate it."""
    uid, history_id = record.user_id, record.id
    now_published = is_publishable(record)
    unpublishing = was_published and not now_published
    if unpublishing:
        await _remove_from_mirror_first(ctx, history_id)

    await db.commit()
    serialized = serialize_generation(record)
    await _invalidate(ctx, uid, history_id)

    if unpublishing or record.is_deleted:
        await ctx.mirror_queue.enqueue_remove(history_id, uid=uid)
    elif queue_patch is None:
        await ctx.mirror_queue.enqueue_upsert(uid, history_id, serialized)
    else:
        await ctx.mirror_queue.enqueue_update(uid, history_id, queue_patch)

    if now_published and publish_inline:
        await _sync_mirror(ctx, uid, history_id)
    return serialized


async def start_generation(
    uid: str,
    payload: StartGenerationPayload,
    db: AsyncSession,
    ctx: EngineContext,
) -> Dict[str, Any]:
    record = await create_record(uid, payload, db)
    serialized = serialize_generation(record)
    await stats.increment_on_create(uid, db, status=record.status, generation_type=record.generation_type)
    await _invalidate(ctx, uid, record.id)
    await ctx.mirror_queue.enqueue_upsert(uid, record.id, serialized)
    if is_publishable(record):
        await _sync_mirror(ctx, uid, record.id)
    logger.info("Generation %s started for %s (%s)", record.id, uid, record.generation_type)
    return {"id": record.id, "record": serialized}


def _split_media(payload_media) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {"images": [], "videos": [], "audios": []}
    for item in payload_media:
        grouped[MEDIA_KIND_FIELDS[item.kind]].append(dump_media_item(item))
    return grouped


def _media_signature(items_by_field: Dict[str, List[Dict[str, Any]]]) -> Tuple:
    return tuple(
        (field_name, tuple(sorted((item.get("id"), item.get("url")) for item in items_by_field[field_name])))
        for field_name in ("images", "videos", "audios")
    )


async def mark_completed(
    uid: str,
    history_id: str,
    payload: CompleteGenerationPayload,
    db: AsyncSession,
    ctx: EngineContext,
) -> Dict[str, Any]:
    """Complete a generating record. Re-applying the same completion is a no-op."""
    media = _split_media(payload.media)

    async def _attempt() -> Dict[str, Any]:
        record = await require_record(uid, history_id, db)
        if record.status == STATUS_COMPLETED:
            current = {name: list(getattr(record, name) or []) for name in ("images", "videos", "audios")}
            if _media_signature(current) == _media_signature(media):
                logger.info("Duplicate completion for %s ignored", history_id)
                return serialize_generation(record)
        if record.status != STATUS_GENERATING:
            raise InvalidTransitionError(f"Invalid status transition: {record.status} -> {STATUS_COMPLETED}")

        was_published = is_publishable(record)
        record.status = STATUS_COMPLETED
        record.images = media["images"]
        record.videos = media["videos"]
        record.audios = media["audios"]
        record.error = None
        if payload.is_public is not None:
            record.public_requested = bool(payload.is_public)
        if payload.tags is not None:
            record.tags = list(payload.tags)
        if payload.nsfw is not None:
            record.nsfw = bool(payload.nsfw)
        if payload.aspect_ratio is not None:
            record.aspect_ratio = payload.aspect_ratio
        refresh_visibility(record)
        touch(record)

        serialized = await _commit_mutation(ctx, db, record, was_published=was_published, publish_inline=True)
        if not record.is_deleted:
            await stats.update_on_status_change(uid, db, old_status=STATUS_GENERATING, new_status=STATUS_COMPLETED)
        logger.info("Generation %s completed with %s media items", history_id, len(payload.media))
        return serialized

    return await _write_with_retry(db, history_id, "completion", _attempt)


async def mark_failed(
    uid: str,
    history_id: str,
    payload: FailGenerationPayload,
    db: AsyncSession,
    ctx: EngineContext,
) -> Dict[str, Any]:
    async def _attempt() -> Dict[str, Any]:
        record = await require_record(uid, history_id, db)
        if record.status != STATUS_GENERATING:
            raise InvalidTransitionError(f"Invalid status transition: {record.status} -> {STATUS_FAILED}")

        was_published = is_publishable(record)
        record.status = STATUS_FAILED
        record.error = payload.error
        record.public_requested = False
        refresh_visibility(record)
        touch(record)

        serialized = await _commit_mutation(
            ctx,
            db,
            record,
            was_published=was_published,
            publish_inline=False,
            queue_patch={"status": STATUS_FAILED, "is_public": False},
        )
        if not record.is_deleted:
            await stats.update_on_status_change(uid, db, old_status=STATUS_GENERATING, new_status=STATUS_FAILED)
        logger.info("Generation %s failed: %s", history_id, payload.error)
        return serialized

    return await _write_with_retry(db, history_id, "failure", _attempt)


def _media_matches(item: Dict[str, Any], patch: MediaPatch) -> bool:
    if patch.id and item.get("id") == patch.id:
        return True
    if patch.url and patch.url in (item.get("url"), item.get("original_url")):
        return True
    if patch.storage_path and item.get("storage_path") == patch.storage_path:
        return True
    return False


def _apply_media_patch(record: GenerationRecord, patch: MediaPatch) -> None:
    field_name = MEDIA_KIND_FIELDS[patch.kind]
    items = [dict(item) for item in getattr(record, field_name) or []]
    changes = patch.changes()
    for index, item in enumerate(items):
        if _media_matches(item, patch):
            if "provider_meta" in changes:
                changes["provider_meta"] = {**(item.get("provider_meta") or {}), **changes["provider_meta"]}
            items[index] = {**item, **changes}
            setattr(record, field_name, items)
            return
    raise MediaNotFoundError(f"No {patch.kind} matching the patch on generation {record.id}")


def _mark_deleted(record: GenerationRecord) -> None:
    record.is_deleted = True
    record.public_requested = False
    refresh_visibility(record)


async def update_generation(
    uid: str,
    history_id: str,
    patch: GenerationUpdatePayload,
    db: AsyncSession,
    ctx: EngineContext,
) -> Dict[str, Any]:
    """Partial update. Status is not patchable and deletion cannot be undone.

    A patch carrying ``is_deleted`` is a pure delete; the payload model rejects
    it when combined with other fields.
    """
    if patch.is_deleted:
        return await soft_delete(uid, history_id, db, ctx)

    async def _attempt() -> Dict[str, Any]:
        record = await require_record(uid, history_id, db)
        was_published = is_publishable(record)
        if patch.media is not None:
            _apply_media_patch(record, patch.media)
        if patch.is_public is not None:
            record.public_requested = bool(patch.is_public)
        if patch.tags is not None:
            record.tags = list(patch.tags)
        if patch.nsfw is not None:
            record.nsfw = bool(patch.nsfw)
        if patch.aspect_ratio is not None:
            record.aspect_ratio = patch.aspect_ratio
        refresh_visibility(record)
        touch(record)

        queue_patch = patch.model_dump(exclude_none=True, mode="json")
        queue_patch["is_public"] = bool(record.is_public)
        return await _commit_mutation(
            ctx,
            db,
            record,
            was_published=was_published,
            publish_inline=not was_published and is_publishable(record),
            queue_patch=queue_patch,
        )

    return await _write_with_retry(db, history_id, "update", _attempt)


async def soft_delete(
    uid: str,
    history_id: str,
    db: AsyncSession,
    ctx: EngineContext,
    *,
    media_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Delete one media item, or the whole record when ``media_id`` is omitted.

    Removing the last remaining media item escalates to a full soft delete.
    A repeated full delete writes nothing but still enqueues a backup remove.
    """

    async def _attempt() -> Dict[str, Any]:
        record = await require_record(uid, history_id, db)
        already_deleted = bool(record.is_deleted)
        was_published = is_publishable(record)

        if media_id:
            removed = False
            for field_name in ("images", "videos", "audios"):
                items = list(getattr(record, field_name) or [])
                kept = [item for item in items if item.get("id") != media_id]
                if len(kept) != len(items):
                    setattr(record, field_name, kept)
                    removed = True
            if not removed:
                raise MediaNotFoundError(f"Media {media_id} not found on generation {history_id}")
            if not (record.images or record.videos or record.audios):
                _mark_deleted(record)
            else:
                refresh_visibility(record)
        else:
            if already_deleted:
                await ctx.mirror_queue.enqueue_remove(history_id, uid=uid)
                return serialize_generation(record)
            _mark_deleted(record)
        touch(record)

        serialized = await _commit_mutation(
            ctx,
            db,
            record,
            was_published=was_published,
            publish_inline=True,
            queue_patch={"removed_media_id": media_id, "is_public": bool(record.is_public)},
        )
        if record.is_deleted and not already_deleted:
            await stats.decrement_on_delete(uid, db, status=record.status, generation_type=record.generation_type)
            logger.info("Generation %s soft-deleted for %s", history_id, uid)
        return serialized

    return await _write_with_retry(db, history_id, "delete", _attempt)


async def get_generation(uid: str, history_id: str, db: AsyncSession, ctx: EngineContext) -> Dict[str, Any]:
    cached = await ctx.cache.get_item(uid, history_id)
    if cached is not None:
        return cached
    record = await require_record(uid, history_id, db)
    serialized = serialize_generation(record)
    await ctx.cache.set_item(uid, history_id, serialized)
    return serialized


async def list_generations(
    uid: str,
    query: GenerationListQuery,
    db: AsyncSession,
    ctx: EngineContext,
) -> Dict[str, Any]:
    cache_params = query.model_dump(mode="json")
    cached = await ctx.cache.get_list(uid, cache_params)
    if cached is not None:
        return cached

    page = await list_page(
        db,
        GenerationRecord,
        collection="generations",
        query=query,
        indexes=ctx.indexes,
        partition=(GenerationRecord.user_id == uid,),
    )
    types = query.generation_type or []
    total_count = None
    if not (query.search or query.date_start or query.date_end or len(types) > 1):
        total_count = await stats.get_total_count(
            uid,
            db,
            status=query.status,
            generation_type=types[0] if types else None,
        )
    result = {
        "items": [serialize_generation(record) for record in page.items],
        "next_cursor": page.next_cursor,
        "has_more": page.has_more,
        "total_count": total_count,
    }
    await ctx.cache.set_list(uid, cache_params, result)
    return result


async def complete_from_provider_callback(
    uid: str,
    payload: ProviderCallbackPayload,
    db: AsyncSession,
    ctx: EngineContext,
) -> Dict[str, Any]:
    """Apply a provider webhook to the generation created for its task."""
    record = await find_by_provider_task_id(uid, payload.provider, payload.task_id, db)
    if record is None:
        raise RecordNotFoundError(f"No generation for {payload.provider} task {payload.task_id}")
    if payload.status == STATUS_FAILED:
        if record.status == STATUS_FAILED:
            return serialize_generation(record)
        return await mark_failed(
            uid,
            record.id,
            FailGenerationPayload(error=payload.error or f"{payload.provider} task failed"),
            db,
            ctx,
        )
    return await mark_completed(uid, record.id, CompleteGenerationPayload(media=payload.media), db, ctx)
