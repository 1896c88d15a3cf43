"""Public feed router backed by the generation mirror."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import get_engine_context
from services.context import EngineContext
from services.mirror import list_public_feed
from services.payloads import PublicFeedQuery

router = APIRouter()


def _feed_query(
    limit: Optional[int] = Query(default=None),
    cursor: Optional[str] = Query(default=None),
    generation_type: Optional[List[str]] = Query(default=None),
    mode: Optional[str] = Query(default=None),
    created_by: Optional[str] = Query(default=None),
    date_start: Optional[datetime] = Query(default=None),
    date_end: Optional[datetime] = Query(default=None),
    search: Optional[str] = Query(default=None),
    sort_by: Optional[str] = Query(default=None),
    sort_order: Optional[Literal["asc", "desc"]] = Query(default=None),
) -> PublicFeedQuery:
    raw: Dict[str, Any] = {
        "limit": limit,
        "cursor": cursor,
        "generation_type": generation_type,
        "mode": mode,
        "created_by": created_by,
        "date_start": date_start,
        "date_end": date_end,
        "search": search,
        "sort_by": sort_by,
        "sort_order": sort_order,
    }
    try:
        return PublicFeedQuery(**{key: value for key, value in raw.items() if value is not None})
    except ValidationError as exc:
        raise RequestValidationError(exc.errors(include_url=False)) from exc


@router.get("")
async def public_feed(
    query: PublicFeedQuery = Depends(_feed_query),
    db: AsyncSession = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    """Public generations, newest first by default. No authentication required."""
    return await list_public_feed(db, query, ctx.indexes)
