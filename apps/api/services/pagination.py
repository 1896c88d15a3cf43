"""Cursor pagination with over-fetch and a bounded in-memory fallback scan.

Both paths walk the store in (sort field, id) order starting after the cursor,
apply every filter in memory and stop once ``limit + 1`` matches are found or
the iteration cap is reached. The next cursor always encodes the last item
returned, so no matching item is skipped or repeated across pages.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services.document_store import (
    IN_FILTER_MAX_VALUES,
    CursorPosition,
    IndexRegistry,
    decode_cursor,
    encode_cursor,
    fetch_ordered,
)
from services.errors import MissingIndexError
from services.payloads import GenerationListQuery
from services.timestamps import as_utc


logger = logging.getLogger(__name__)

FALLBACK_MIN_BATCH = 100
FALLBACK_BATCH_MULTIPLIER = 10


@dataclass
class PageResult:
    items: List[Any] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False
    used_fallback: bool = False
    scanned: int = 0


def pushdown_equality(query: GenerationListQuery, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Equality filters the store can apply directly."""
    equality: Dict[str, Any] = dict(extra or {})
    if query.status:
        equality["status"] = query.status
    types = query.generation_type or []
    if len(types) == 1:
        equality["generation_type"] = types[0]
    elif 1 < len(types) <= IN_FILTER_MAX_VALUES:
        equality["generation_type"] = list(types)
    return equality


def build_row_filter(
    query: GenerationListQuery,
    extra: Optional[Dict[str, Any]] = None,
) -> Callable[[Any], bool]:
    """In-memory predicate equivalent to the full query."""
    type_set = set(query.generation_type or [])
    search = query.search.lower() if query.search else None
    date_start = as_utc(query.date_start)
    date_end = as_utc(query.date_end)
    extra = dict(extra or {})

    def _matches(row: Any) -> bool:
        if getattr(row, "is_deleted", False):
            return False
        if query.status and row.status != query.status:
            return False
        if type_set and row.generation_type not in type_set:
            return False
        for field_name, expected in extra.items():
            if getattr(row, field_name) != expected:
                return False
        if date_start or date_end:
            created_at = as_utc(row.created_at)
            if created_at is None:
                return False
            if date_start and created_at < date_start:
                return False
            if date_end and created_at > date_end:
                return False
        if search and search not in (row.prompt or "").lower():
            return False
        return True

    return _matches


def _cursor_for(row: Any, sort_by: str) -> str:
    return encode_cursor(sort_by, getattr(row, sort_by), row.id)


async def list_page(
    db: AsyncSession,
    model,
    *,
    collection: str,
    query: GenerationListQuery,
    indexes: IndexRegistry,
    partition: Sequence[Any] = (),
    extra_equality: Optional[Dict[str, Any]] = None,
    max_iterations: Optional[int] = None,
) -> PageResult:
    limit = int(query.limit)
    descending = query.sort_order == "desc"
    after: Optional[CursorPosition] = decode_cursor(query.cursor, query.sort_by) if query.cursor else None
    matches = build_row_filter(query, extra_equality)
    equality = pushdown_equality(query, extra_equality)
    iterations = max(int(max_iterations or settings.LIST_MAX_SCAN_ITERATIONS), 1)

    used_fallback = False
    batch_size = limit * max(int(settings.LIST_OVERFETCH_FACTOR), 1) + 1

    async def _fetch(position: Optional[CursorPosition]) -> List[Any]:
        return await fetch_ordered(
            db,
            model,
            collection=collection,
            indexes=indexes,
            partition=partition,
            equality={} if used_fallback else equality,
            sort_by=query.sort_by,
            descending=descending,
            after=position,
            limit=batch_size,
        )

    matched: List[Any] = []
    position = after
    scanned = 0
    exhausted = False
    for _ in range(iterations):
        try:
            rows = await _fetch(position)
        except MissingIndexError as exc:
            if used_fallback:
                raise
            logger.info("Falling back to in-memory scan on %s: %s", collection, exc)
            used_fallback = True
            batch_size = max(limit * FALLBACK_BATCH_MULTIPLIER, FALLBACK_MIN_BATCH)
            rows = await _fetch(position)

        for row in rows:
            scanned += 1
            position = CursorPosition(query.sort_by, getattr(row, query.sort_by), row.id)
            if matches(row):
                matched.append(row)
                if len(matched) > limit:
                    break
        if len(matched) > limit:
            break
        if len(rows) < batch_size:
            exhausted = True
            break

    page = matched[:limit]
    has_more = len(matched) > limit or not exhausted
    next_cursor = None
    if has_more:
        if page:
            next_cursor = _cursor_for(page[-1], query.sort_by)
        elif position is not None:
            next_cursor = encode_cursor(query.sort_by, position.sort_value, position.record_id)
        else:
            has_more = False
    return PageResult(
        items=page,
        next_cursor=next_cursor,
        has_more=has_more,
        used_fallback=used_fallback,
        scanned=scanned,
    )
