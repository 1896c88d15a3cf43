"""Idempotent credit ledger and account balance helpers.

Every balance change is written in the same transaction as exactly one
ledger entry, keyed by ``(user_id, idempotency_key)``. Replaying a key never
changes the balance a second time; concurrent replays race on the unique
constraint and the loser re-reads and reports ``SKIPPED``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import LedgerEntry
from models.user_account import UserAccount
from services.errors import (
    AccountNotFoundError,
    IdempotencyKeyConflictError,
    InsufficientCreditsError,
    StoreTransactionError,
    ValidationFailedError,
)
from services.timestamps import isoformat, utcnow


logger = logging.getLogger(__name__)

ENTRY_DEBIT = "DEBIT"
ENTRY_GRANT = "GRANT"
STATUS_CONFIRMED = "CONFIRMED"

WRITTEN = "WRITTEN"
SKIPPED = "SKIPPED"
NO_COST = "NO_COST"


def _sanitize_meta(value: Any) -> Any:
    """Drop ``None`` values so stored metadata stays compact."""
    if isinstance(value, dict):
        return {str(key): _sanitize_meta(item) for key, item in value.items() if item is not None}
    if isinstance(value, (list, tuple)):
        return [_sanitize_meta(item) for item in value if item is not None]
    return value


async def _run_ledger_transaction(
    db: AsyncSession,
    work: Callable[[], Awaitable[str]],
    *,
    label: str,
    user_id: str,
    idempotency_key: str,
) -> str:
    attempts = max(int(settings.LEDGER_TRANSACTION_MAX_ATTEMPTS), 1)
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            outcome = await work()
            await db.commit()
            return outcome
        except (IntegrityError, OperationalError) as exc:
            await db.rollback()
            last_error = exc
            logger.warning(
                "Ledger %s contention for %s key=%s (attempt %s/%s): %s",
                label,
                user_id,
                idempotency_key,
                attempt,
                attempts,
                exc.__class__.__name__,
            )
            await asyncio.sleep(min(0.02 * (2 ** (attempt - 1)), 0.5))
        except Exception:
            await db.rollback()
            raise
    logger.error("Ledger %s aborted for %s key=%s after %s attempts", label, user_id, idempotency_key, attempts)
    raise StoreTransactionError(f"Ledger {label} could not be committed after {attempts} attempts") from last_error


async def _existing_entry(user_id: str, idempotency_key: str, db: AsyncSession) -> Optional[LedgerEntry]:
    result = await db.execute(
        select(LedgerEntry)
        .where(
            LedgerEntry.user_id == user_id,
            LedgerEntry.idempotency_key == idempotency_key,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _get_account(user_id: str, db: AsyncSession) -> Optional[UserAccount]:
    result = await db.execute(
        select(UserAccount).where(UserAccount.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def debit_if_absent(
    user_id: str,
    db: AsyncSession,
    *,
    idempotency_key: str,
    amount: int,
    reason: str,
    meta: Optional[Dict[str, Any]] = None,
) -> str:
    """Debit ``amount`` once per idempotency key. Returns ``WRITTEN`` or ``SKIPPED``."""
    debit = int(amount)
    if debit < 0:
        raise ValidationFailedError("amount must not be negative")
    if not idempotency_key:
        raise ValidationFailedError("idempotency_key is required")

    async def _work() -> str:
        existing = await _existing_entry(user_id, idempotency_key, db)
        if existing is not None:
            if existing.entry_type == ENTRY_DEBIT and existing.status == STATUS_CONFIRMED:
                return SKIPPED
            raise IdempotencyKeyConflictError(
                f"Idempotency key {idempotency_key} already used for a {existing.entry_type} entry"
            )
        if await _get_account(user_id, db) is None:
            raise AccountNotFoundError(f"Credit account {user_id} not found")

        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            user_id=user_id,
            idempotency_key=idempotency_key,
            entry_type=ENTRY_DEBIT,
            amount=-debit,
            reason=reason,
            status=STATUS_CONFIRMED,
            meta=_sanitize_meta(meta or {}),
        )
        db.add(entry)
        await db.flush()
        await db.execute(
            update(UserAccount)
            .where(UserAccount.id == user_id)
            .values(credit_balance=UserAccount.credit_balance - debit, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        balance = await db.execute(select(UserAccount.credit_balance).where(UserAccount.id == user_id))
        entry.balance_after = int(balance.scalar() or 0)
        return WRITTEN

    outcome = await _run_ledger_transaction(
        db,
        _work,
        label="debit",
        user_id=user_id,
        idempotency_key=idempotency_key,
    )
    logger.info("Ledger debit %s for %s key=%s amount=%s", outcome, user_id, idempotency_key, debit)
    return outcome


async def grant_and_set_plan_if_absent(
    user_id: str,
    db: AsyncSession,
    *,
    idempotency_key: str,
    credits: int,
    plan_code: str,
    reason: str,
    meta: Optional[Dict[str, Any]] = None,
) -> str:
    """Grant a plan allotment once per key, overwriting the balance to ``credits``.

    Replays return ``SKIPPED`` but still re-assert the plan and balance as an
    absolute set.
    """
    target = max(int(credits), 0)
    if not idempotency_key:
        raise ValidationFailedError("idempotency_key is required")
    if not plan_code:
        raise ValidationFailedError("plan_code is required")

    async def _set_account(account: Optional[UserAccount]) -> None:
        if account is None:
            db.add(UserAccount(id=user_id, credit_balance=target, plan_code=plan_code))
        else:
            account.credit_balance = target
            account.plan_code = plan_code
            account.updated_at = utcnow()
        await db.flush()

    async def _work() -> str:
        existing = await _existing_entry(user_id, idempotency_key, db)
        account = await _get_account(user_id, db)
        if existing is not None:
            if existing.entry_type == ENTRY_GRANT and existing.status == STATUS_CONFIRMED:
                await _set_account(account)
                return SKIPPED
            raise IdempotencyKeyConflictError(
                f"Idempotency key {idempotency_key} already used for a {existing.entry_type} entry"
            )

        await _set_account(account)
        db.add(
            LedgerEntry(
                id=str(uuid.uuid4()),
                user_id=user_id,
                idempotency_key=idempotency_key,
                entry_type=ENTRY_GRANT,
                amount=target,
                balance_after=target,
                reason=reason,
                status=STATUS_CONFIRMED,
                meta=_sanitize_meta({**(meta or {}), "plan_code": plan_code}),
            )
        )
        await db.flush()
        return WRITTEN

    outcome = await _run_ledger_transaction(
        db,
        _work,
        label="grant",
        user_id=user_id,
        idempotency_key=idempotency_key,
    )
    logger.info("Ledger grant %s for %s key=%s plan=%s credits=%s", outcome, user_id, idempotency_key, plan_code, target)
    return outcome


async def ensure_account(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Create the account with the free-plan allotment on first use."""
    if await _get_account(user_id, db) is None:
        await grant_and_set_plan_if_absent(
            user_id,
            db,
            idempotency_key=f"INIT_{user_id}",
            credits=max(int(settings.FREE_PLAN_CREDITS), 0),
            plan_code=settings.FREE_PLAN_CODE,
            reason="plan.init",
        )
    info = await read_user_info(user_id, db)
    return info or {"credit_balance": 0, "plan_code": settings.FREE_PLAN_CODE}


async def read_user_info(user_id: str, db: AsyncSession) -> Optional[Dict[str, Any]]:
    account = await _get_account(user_id, db)
    if account is None:
        return None
    return {"credit_balance": int(account.credit_balance or 0), "plan_code": account.plan_code}


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    info = await read_user_info(user_id, db)
    return int(info["credit_balance"]) if info else 0


async def ensure_sufficient_credits(user_id: str, db: AsyncSession, *, cost: int) -> int:
    required = max(int(cost), 0)
    balance = await get_credit_balance(user_id, db)
    if balance < required:
        raise InsufficientCreditsError(required=required, available=balance)
    return balance


async def list_recent_ledger_entries(user_id: str, db: AsyncSession, *, limit: int = 10) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.user_id == user_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .limit(max(min(int(limit), 100), 1))
    )
    return [
        {
            "id": entry.id,
            "idempotency_key": entry.idempotency_key,
            "entry_type": entry.entry_type,
            "amount": entry.amount,
            "balance_after": entry.balance_after,
            "reason": entry.reason,
            "status": entry.status,
            "meta": entry.meta or {},
            "created_at": isoformat(entry.created_at),
        }
        for entry in result.scalars().all()
    ]


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    info = await ensure_account(user_id, db)
    return {
        "user_id": user_id,
        "credit_balance": info["credit_balance"],
        "plan_code": info["plan_code"],
        "recent_entries": await list_recent_ledger_entries(user_id, db, limit=30),
    }


async def post_generation_debit(
    user_id: str,
    db: AsyncSession,
    *,
    history_id: str,
    cost: int,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    pricing_version: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> str:
    """Charge a completed generation, keyed by its history id.

    With ``LEDGER_DEBIT_FAIL_OPEN`` enabled (the default) a failed debit is
    logged and reported as ``SKIPPED``: the generation stays completed and no
    credits are charged.
    """
    charge = max(int(cost or 0), 0)
    if charge == 0:
        return NO_COST
    try:
        return await debit_if_absent(
            user_id,
            db,
            idempotency_key=history_id,
            amount=charge,
            reason=f"{provider or 'generation'}.{model or 'default'}",
            meta={
                "history_id": history_id,
                "provider": provider,
                "model": model,
                "pricing_version": pricing_version,
                **(meta or {}),
            },
        )
    except Exception as exc:
        if not settings.LEDGER_DEBIT_FAIL_OPEN:
            raise
        logger.error(
            "Post-generation debit failed open for %s history=%s cost=%s: %s",
            user_id,
            history_id,
            charge,
            exc,
        )
        return SKIPPED
