"""
Authentication router: email one-time codes exchanged for session tokens.
"""

import hashlib
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, get_engine_context
from services.context import EngineContext
from services.credits import ensure_account
from services.session_token import create_session_token

router = APIRouter()
logger = logging.getLogger(__name__)

LOGIN_CODE_PURPOSE = "login"


class CodeRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if "@" not in normalized:
            raise ValueError("email must contain '@'")
        return normalized


class CodeRequestResponse(BaseModel):
    sent: bool
    expires_in: int
    code: Optional[str] = None


class CodeVerifyRequest(CodeRequest):
    code: str = Field(min_length=4, max_length=12)


class SessionResponse(BaseModel):
    user_id: str
    email: str
    session_token: str
    session_expires_at: int
    credit_balance: int
    plan_code: str


def user_id_for_email(email: str) -> str:
    return "u_" + hashlib.sha256(email.encode("utf-8")).hexdigest()[:24]


def _generate_code() -> str:
    length = min(max(int(settings.SHORT_CODE_LENGTH), 4), 12)
    return "".join(secrets.choice("0123456789") for _ in range(length))


@router.post("/code", response_model=CodeRequestResponse)
async def request_login_code(
    request: CodeRequest,
    ctx: EngineContext = Depends(get_engine_context),
):
    """Issue a one-time login code. Delivery is handled by the mail relay."""
    code = _generate_code()
    ttl = max(int(settings.SHORT_CODE_TTL_SECONDS), 1)
    await ctx.code_store.put(LOGIN_CODE_PURPOSE, request.email, code, ttl_seconds=ttl)
    logger.info("Login code issued for %s", user_id_for_email(request.email))
    return CodeRequestResponse(
        sent=True,
        expires_in=ttl,
        code=code if settings.SHORT_CODE_ECHO_IN_RESPONSE else None,
    )


@router.post("/code/verify", response_model=SessionResponse)
async def verify_login_code(
    request: CodeVerifyRequest,
    db: AsyncSession = Depends(get_db),
    ctx: EngineContext = Depends(get_engine_context),
):
    """Consume a login code and open a session, creating the credit account on first login."""
    if not await ctx.code_store.consume(LOGIN_CODE_PURPOSE, request.email, request.code):
        raise HTTPException(status_code=401, detail="Invalid or expired code.")

    user_id = user_id_for_email(request.email)
    account = await ensure_account(user_id, db)
    session = create_session_token(user_id, email=request.email)
    return SessionResponse(
        user_id=user_id,
        email=request.email,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
        credit_balance=account["credit_balance"],
        plan_code=account["plan_code"],
    )


@router.get("/me")
async def get_current_user(auth: AuthContext = Depends(get_auth_context)):
    return {"user_id": auth.user_id, "email": auth.email}
