"""LedgerEntry model for idempotent credit accounting."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class LedgerEntry(Base):
    """Immutable credit ledger entry, unique per (user, idempotency key)."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_credit_ledger_user_key"),
        Index("ix_credit_ledger_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("user_accounts.id"), nullable=False, index=True)
    idempotency_key = Column(String, nullable=False)
    entry_type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=True)
    reason = Column(String, nullable=True)
    status = Column(String, nullable=False, default="CONFIRMED")
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("UserAccount", back_populates="ledger_entries")
