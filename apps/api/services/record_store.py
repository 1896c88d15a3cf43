"""Generation record persistence and serialization."""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.generation import GenerationRecord
from services.errors import RecordNotFoundError
from services.payloads import STATUS_GENERATING, StartGenerationPayload, dump_media_item
from services.timestamps import as_utc, isoformat, utcnow


def media_is_public(record: GenerationRecord) -> bool:
    for field_name in ("images", "videos", "audios"):
        for item in getattr(record, field_name) or []:
            if isinstance(item, dict) and item.get("is_public") is True:
                return True
    return False


def refresh_visibility(record: GenerationRecord) -> None:
    """Recompute the aggregate public flag from the explicit flag and per-media flags."""
    if record.is_deleted or record.status == "failed":
        record.is_public = False
    else:
        record.is_public = bool(record.public_requested) or media_is_public(record)
    record.visibility = "public" if record.is_public else "private"


def touch(record: GenerationRecord) -> None:
    """Advance updated_at, never moving it backwards."""
    now = utcnow()
    previous = as_utc(record.updated_at)
    record.updated_at = previous if previous and previous > now else now


async def create_record(uid: str, payload: StartGenerationPayload, db: AsyncSession) -> GenerationRecord:
    now = utcnow()
    record = GenerationRecord(
        id=str(uuid.uuid4()),
        user_id=uid,
        prompt=payload.prompt,
        model=payload.model,
        generation_type=payload.generation_type,
        status=STATUS_GENERATING,
        is_deleted=False,
        public_requested=bool(payload.is_public),
        images=[],
        videos=[],
        audios=[],
        input_images=[dump_media_item(item) for item in payload.input_images],
        input_videos=[dump_media_item(item) for item in payload.input_videos],
        tags=list(payload.tags),
        nsfw=bool(payload.nsfw),
        aspect_ratio=payload.aspect_ratio,
        provider=payload.provider,
        provider_task_id=payload.provider_task_id,
        created_at=now,
        updated_at=now,
    )
    refresh_visibility(record)
    db.add(record)
    await db.commit()
    return record


async def get_record(uid: str, history_id: str, db: AsyncSession) -> Optional[GenerationRecord]:
    result = await db.execute(
        select(GenerationRecord).where(
            GenerationRecord.id == history_id,
            GenerationRecord.user_id == uid,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_record(uid: str, history_id: str, db: AsyncSession) -> GenerationRecord:
    record = await get_record(uid, history_id, db)
    if record is None:
        raise RecordNotFoundError(f"Generation {history_id} not found")
    return record


async def find_by_provider_task_id(
    uid: str,
    provider: str,
    task_id: str,
    db: AsyncSession,
) -> Optional[GenerationRecord]:
    result = await db.execute(
        select(GenerationRecord)
        .where(
            GenerationRecord.user_id == uid,
            GenerationRecord.provider == provider,
            GenerationRecord.provider_task_id == task_id,
        )
        .order_by(GenerationRecord.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def _copy_media(items: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    return [dict(item) for item in items or [] if isinstance(item, dict)]


def serialize_generation(record: GenerationRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "uid": record.user_id,
        "prompt": record.prompt,
        "model": record.model,
        "generation_type": record.generation_type,
        "status": record.status,
        "visibility": record.visibility,
        "is_public": bool(record.is_public),
        "is_deleted": bool(record.is_deleted),
        "images": _copy_media(record.images),
        "videos": _copy_media(record.videos),
        "audios": _copy_media(record.audios),
        "input_images": _copy_media(record.input_images),
        "input_videos": _copy_media(record.input_videos),
        "tags": list(record.tags or []),
        "nsfw": bool(record.nsfw),
        "aspect_ratio": record.aspect_ratio,
        "provider": record.provider,
        "provider_task_id": record.provider_task_id,
        "error": record.error,
        "created_at": isoformat(record.created_at),
        "updated_at": isoformat(record.updated_at),
    }
