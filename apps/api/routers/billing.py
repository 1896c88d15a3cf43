"""Billing and credits router."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.credits import (
    debit_if_absent,
    ensure_account,
    get_credit_summary,
    grant_and_set_plan_if_absent,
    read_user_info,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class DebitRequest(BaseModel):
    idempotency_key: str = Field(min_length=1, max_length=200)
    amount: int = Field(ge=1, le=100000)
    reason: str = Field(min_length=1, max_length=200)
    meta: Dict[str, Any] = Field(default_factory=dict)


class PlanGrantRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=200)
    idempotency_key: str = Field(min_length=1, max_length=200)
    credits: int = Field(ge=0, le=10_000_000)
    plan_code: str = Field(min_length=1, max_length=50)
    reason: str = Field(default="plan.grant", max_length=200)
    meta: Dict[str, Any] = Field(default_factory=dict)


def _require_plan_grant_secret(supplied: Optional[str]) -> None:
    configured = (settings.PLAN_GRANT_SECRET or "").strip()
    if not configured:
        raise HTTPException(status_code=503, detail="Plan grants are not configured.")
    if not supplied or not hmac.compare_digest(configured, supplied.strip()):
        raise HTTPException(status_code=403, detail="Invalid plan grant secret.")


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(auth.user_id, db)


@router.post("/debit")
async def debit_credits(
    request: DebitRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_account(auth.user_id, db)
    outcome = await debit_if_absent(
        auth.user_id,
        db,
        idempotency_key=request.idempotency_key,
        amount=request.amount,
        reason=request.reason,
        meta=request.meta,
    )
    info = await read_user_info(auth.user_id, db) or {}
    return {"outcome": outcome, "credit_balance": info.get("credit_balance", 0)}


@router.post("/plan-grant")
async def plan_grant(
    request: PlanGrantRequest,
    x_plan_grant_secret: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Apply a purchased plan. Called by the payment webhook relay, keyed by payment id."""
    _require_plan_grant_secret(x_plan_grant_secret)
    outcome = await grant_and_set_plan_if_absent(
        request.user_id,
        db,
        idempotency_key=request.idempotency_key,
        credits=request.credits,
        plan_code=request.plan_code,
        reason=request.reason,
        meta=request.meta,
    )
    info = await read_user_info(request.user_id, db) or {}
    return {"outcome": outcome, **info}
