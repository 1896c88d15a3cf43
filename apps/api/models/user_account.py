"""UserAccount model holding the spendable credit balance and plan."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class UserAccount(Base):
    """Per-user credit account. Only mutated alongside a ledger entry."""

    __tablename__ = "user_accounts"

    id = Column(String, primary_key=True)
    credit_balance = Column(Integer, nullable=False, default=0)
    plan_code = Column(String, nullable=False, default="FREE")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    ledger_entries = relationship("LedgerEntry", back_populates="account", cascade="all, delete-orphan")
