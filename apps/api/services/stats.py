"""Per-user generation counters.

Counters are adjusted in their own transaction after the authoritative record
write. They are advisory: a failed adjustment is logged and never undoes or
blocks the record mutation.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.generation_stat import GenerationStatCounter


logger = logging.getLogger(__name__)

DIMENSION_TOTAL = "total"
DIMENSION_STATUS = "status"
DIMENSION_TYPE = "type"
TOTAL_KEY = "all"


def _insert_for(db: AsyncSession):
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


async def _increment(db: AsyncSession, uid: str, dimension: str, key: str, delta: int) -> None:
    insert = _insert_for(db)
    stmt = insert(GenerationStatCounter).values(user_id=uid, dimension=dimension, key=key, value=delta)
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "dimension", "key"],
        set_={"value": GenerationStatCounter.value + delta},
    )
    await db.execute(stmt)


async def _apply(db: AsyncSession, uid: str, deltas: Dict[tuple, int], label: str) -> bool:
    try:
        for (dimension, key), delta in deltas.items():
            if delta:
                await _increment(db, uid, dimension, key, delta)
        await db.commit()
        return True
    except Exception as exc:
        await db.rollback()
        logger.warning("Generation stats %s failed for %s: %s", label, uid, exc)
        return False


async def increment_on_create(uid: str, db: AsyncSession, *, status: str, generation_type: str) -> bool:
    return await _apply(
        db,
        uid,
        {
            (DIMENSION_TOTAL, TOTAL_KEY): 1,
            (DIMENSION_STATUS, status): 1,
            (DIMENSION_TYPE, generation_type): 1,
        },
        "increment",
    )


async def update_on_status_change(uid: str, db: AsyncSession, *, old_status: str, new_status: str) -> bool:
    if old_status == new_status:
        return True
    return await _apply(
        db,
        uid,
        {(DIMENSION_STATUS, old_status): -1, (DIMENSION_STATUS, new_status): 1},
        "status change",
    )


async def decrement_on_delete(uid: str, db: AsyncSession, *, status: str, generation_type: str) -> bool:
    return await _apply(
        db,
        uid,
        {
            (DIMENSION_TOTAL, TOTAL_KEY): -1,
            (DIMENSION_STATUS, status): -1,
            (DIMENSION_TYPE, generation_type): -1,
        },
        "decrement",
    )


async def get_stats(uid: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(select(GenerationStatCounter).where(GenerationStatCounter.user_id == uid))
    stats: Dict[str, Any] = {"total": 0, "by_status": {}, "by_type": {}}
    for counter in result.scalars().all():
        value = max(int(counter.value or 0), 0)
        if counter.dimension == DIMENSION_TOTAL:
            stats["total"] = value
        elif counter.dimension == DIMENSION_STATUS:
            stats["by_status"][counter.key] = value
        elif counter.dimension == DIMENSION_TYPE:
            stats["by_type"][counter.key] = value
    return stats


async def get_total_count(
    uid: str,
    db: AsyncSession,
    *,
    status: Optional[str] = None,
    generation_type: Optional[str] = None,
) -> Optional[int]:
    """Counter-backed total for simple filters; ``None`` when counters cannot answer."""
    if status and generation_type:
        return None
    stats = await get_stats(uid, db)
    if status:
        return int(stats["by_status"].get(status, 0))
    if generation_type:
        return int(stats["by_type"].get(generation_type, 0))
    return int(stats["total"])
