"""Per-user generation counters (best-effort aggregates)."""

from sqlalchemy import Column, Integer, String

from database import Base


class GenerationStatCounter(Base):
    """One counter cell: total, by status, or by generation type."""

    __tablename__ = "generation_stat_counters"

    user_id = Column(String, primary_key=True)
    dimension = Column(String, primary_key=True)
    key = Column(String, primary_key=True)
    value = Column(Integer, nullable=False, default=0)
