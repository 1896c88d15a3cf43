"""Generation lifecycle router."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.exceptions import RequestValidationError
from pydantic import Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, get_engine_context
from services import stats
from services.context import EngineContext
from services.credits import post_generation_debit
from services.generations import (
    complete_from_provider_callback,
    get_generation,
    list_generations,
    mark_completed,
    mark_failed,
    soft_delete,
    start_generation,
    update_generation,
)
from services.payloads import (
    CompleteGenerationPayload,
    FailGenerationPayload,
    GenerationListQuery,
    GenerationUpdatePayload,
    ProviderCallbackPayload,
    StartGenerationPayload,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class CompleteGenerationRequest(CompleteGenerationPayload):
    credit_cost: Optional[int] = Field(default=None, ge=0, le=100000)
    pricing_version: Optional[str] = None


def _list_query(
    limit: Optional[int] = Query(default=None),
    cursor: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    generation_type: Optional[List[str]] = Query(default=None),
    mode: Optional[str] = Query(default=None),
    date_start: Optional[datetime] = Query(default=None),
    date_end: Optional[datetime] = Query(default=None),
    search: Optional[str] = Query(default=None),
    sort_by: Optional[str] = Query(default=None),
    sort_order: Optional[Literal["asc", "desc"]] = Query(default=None),
) -> GenerationListQuery:
    raw: Dict[str, Any] = {
        "limit": limit,
        "cursor": cursor,
        "status": status,
        "generation_type": generation_type,
        "mode": mode,
        "date_start": date_start,
        "date_end": date_end,
        "search": search,
        "sort_by": sort_by,
        "sort_order": sort_order,
    }
    try:
        return GenerationListQuery(**{key: value for key, value in raw.items() if value is not None})
    except ValidationError as exc:
        raise RequestValidationError(exc.errors(include_url=False)) from exc


@router.post("")
async def create_generation(
    request: StartGenerationPayload,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    return await start_generation(auth.user_id, request, db, ctx)


@router.get("")
async def list_user_generations(
    query: GenerationListQuery = Depends(_list_query),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    return await list_generations(auth.user_id, query, db, ctx)


@router.get("/stats")
async def generation_stats(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await stats.get_stats(auth.user_id, db)


@router.post("/provider-callback")
async def provider_callback(
    request: ProviderCallbackPayload,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    return await complete_from_provider_callback(auth.user_id, request, db, ctx)


@router.get("/{history_id}")
async def read_generation(
    history_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    return await get_generation(auth.user_id, history_id, db, ctx)


@router.post("/{history_id}/complete")
async def complete_generation(
    history_id: str,
    request: CompleteGenerationRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    record = await mark_completed(auth.user_id, history_id, request, db, ctx)
    debit = await post_generation_debit(
        auth.user_id,
        db,
        history_id=history_id,
        cost=request.credit_cost or 0,
        provider=record.get("provider"),
        model=record.get("model"),
        pricing_version=request.pricing_version,
    )
    return {"record": record, "debit": debit}


@router.post("/{history_id}/fail")
async def fail_generation(
    history_id: str,
    request: FailGenerationPayload,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    return await mark_failed(auth.user_id, history_id, request, db, ctx)


@router.patch("/{history_id}")
async def patch_generation(
    history_id: str,
    request: GenerationUpdatePayload,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    return await update_generation(auth.user_id, history_id, request, db, ctx)


@router.delete("/{history_id}")
async def delete_generation(
    history_id: str,
    media_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    return await soft_delete(auth.user_id, history_id, db, ctx, media_id=media_id)
