"""Public mirror writes, task application, reconciliation and the public feed.

A mirror row exists iff its source generation is public and not deleted.
Every write path re-reads the authoritative record, so repeated, concurrent
and out-of-order task delivery all converge on that rule.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.generation import GenerationRecord
from models.public_generation import PublicGeneration
from services.document_store import IndexRegistry
from services.mirror_queue import MIRROR_OP_REMOVE, MirrorTask
from services.pagination import PageResult, list_page
from services.payloads import PublicFeedQuery
from services.timestamps import isoformat, utcnow


logger = logging.getLogger(__name__)

MEDIA_FIELDS = ("images", "videos", "audios")
UPSERT_MAX_ATTEMPTS = 3


def is_publishable(record: Optional[GenerationRecord]) -> bool:
    return record is not None and bool(record.is_public) and not bool(record.is_deleted)


def build_mirror_projection(record: GenerationRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "prompt": record.prompt or "",
        "model": record.model,
        "generation_type": record.generation_type,
        "status": record.status,
        "visibility": "public",
        "is_public": True,
        "is_deleted": False,
        "images": [dict(item) for item in record.images or []],
        "videos": [dict(item) for item in record.videos or []],
        "audios": [dict(item) for item in record.audios or []],
        "tags": list(record.tags or []),
        "nsfw": bool(record.nsfw),
        "aspect_ratio": record.aspect_ratio,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def merge_media(existing: List[Dict[str, Any]], incoming: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge media arrays by id, keeping fields only the mirror has (e.g. optimized derivatives)."""
    by_id = {item.get("id"): item for item in existing or [] if isinstance(item, dict) and item.get("id")}
    merged = []
    for item in incoming or []:
        previous = by_id.get(item.get("id"))
        merged.append({**previous, **item} if previous else dict(item))
    return merged


async def upsert_mirror(db: AsyncSession, projection: Dict[str, Any]) -> None:
    """Merge-set the projection. Concurrent first inserts retry as a merge."""
    for attempt in range(1, UPSERT_MAX_ATTEMPTS + 1):
        try:
            result = await db.execute(
                select(PublicGeneration)
                .where(PublicGeneration.id == projection["id"])
                .execution_options(populate_existing=True)
            )
            row = result.scalar_one_or_none()
            if row is None:
                db.add(PublicGeneration(**projection, mirrored_at=utcnow()))
            else:
                for key, value in projection.items():
                    if key in MEDIA_FIELDS:
                        value = merge_media(getattr(row, key) or [], value)
                    setattr(row, key, value)
                row.mirrored_at = utcnow()
            await db.commit()
            return
        except IntegrityError:
            await db.rollback()
            if attempt >= UPSERT_MAX_ATTEMPTS:
                raise
            logger.info("Mirror insert race on %s, retrying as merge", projection["id"])


async def remove_mirror(db: AsyncSession, history_id: str) -> bool:
    """Delete-if-exists."""
    result = await db.execute(delete(PublicGeneration).where(PublicGeneration.id == history_id))
    await db.commit()
    return bool(result.rowcount)


async def sync_mirror_from_source(db: AsyncSession, uid: str, history_id: str) -> str:
    """Make the mirror row for one source match the publishability rule."""
    result = await db.execute(
        select(GenerationRecord)
        .where(GenerationRecord.id == history_id, GenerationRecord.user_id == uid)
        .execution_options(populate_existing=True)
    )
    record = result.scalar_one_or_none()
    if is_publishable(record):
        await upsert_mirror(db, build_mirror_projection(record))
        return "upserted"
    removed = await remove_mirror(db, history_id)
    return "removed" if removed else "absent"


async def apply_mirror_task(db: AsyncSession, task: MirrorTask) -> str:
    if task.op == MIRROR_OP_REMOVE:
        removed = await remove_mirror(db, task.history_id)
        return "removed" if removed else "absent"
    return await sync_mirror_from_source(db, task.uid, task.history_id)


async def reconcile_mirror(db: AsyncSession, *, limit: int = 500) -> Dict[str, int]:
    """Repair drift left by lost tasks: drop stale rows, backfill missing public rows."""
    batch = max(int(limit), 1)
    stale_result = await db.execute(
        select(PublicGeneration.id)
        .outerjoin(GenerationRecord, GenerationRecord.id == PublicGeneration.id)
        .where(
            or_(
                GenerationRecord.id.is_(None),
                GenerationRecord.is_deleted.is_(True),
                GenerationRecord.is_public.is_(False),
            )
        )
        .limit(batch)
    )
    stale_ids = [row[0] for row in stale_result.all()]
    removed = 0
    for history_id in stale_ids:
        if await remove_mirror(db, history_id):
            removed += 1

    missing_result = await db.execute(
        select(GenerationRecord)
        .outerjoin(PublicGeneration, PublicGeneration.id == GenerationRecord.id)
        .where(
            PublicGeneration.id.is_(None),
            GenerationRecord.is_public.is_(True),
            GenerationRecord.is_deleted.is_(False),
        )
        .limit(batch)
    )
    missing = list(missing_result.scalars().all())
    for record in missing:
        await upsert_mirror(db, build_mirror_projection(record))

    if removed or missing:
        logger.info("Mirror reconcile removed=%s upserted=%s", removed, len(missing))
    return {"removed": removed, "upserted": len(missing)}


def serialize_public_generation(row: PublicGeneration) -> Dict[str, Any]:
    return {
        "id": row.id,
        "created_by": row.user_id,
        "prompt": row.prompt,
        "model": row.model,
        "generation_type": row.generation_type,
        "status": row.status,
        "visibility": row.visibility,
        "images": list(row.images or []),
        "videos": list(row.videos or []),
        "audios": list(row.audios or []),
        "tags": list(row.tags or []),
        "nsfw": bool(row.nsfw),
        "aspect_ratio": row.aspect_ratio,
        "created_at": isoformat(row.created_at),
        "updated_at": isoformat(row.updated_at),
    }


async def list_public_feed(db: AsyncSession, query: PublicFeedQuery, indexes: IndexRegistry) -> Dict[str, Any]:
    extra = {"user_id": query.created_by} if query.created_by else None
    page: PageResult = await list_page(
        db,
        PublicGeneration,
        collection="public_generations",
        query=query,
        indexes=indexes,
        partition=(PublicGeneration.is_public.is_(True),),
        extra_equality=extra,
    )
    return {
        "items": [serialize_public_generation(row) for row in page.items],
        "next_cursor": page.next_cursor,
        "has_more": page.has_more,
    }
