"""GenerationRecord model: the authoritative per-user generation job."""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text

from database import Base


class GenerationRecord(Base):
    """Authoritative record of one generation job and its media."""

    __tablename__ = "generations"
    __table_args__ = (
        Index("ix_generations_user_created", "user_id", "created_at", "id"),
        Index("ix_generations_user_updated", "user_id", "updated_at", "id"),
        Index("ix_generations_user_status_created", "user_id", "status", "created_at", "id"),
        Index("ix_generations_user_status_updated", "user_id", "status", "updated_at", "id"),
        Index("ix_generations_user_type_created", "user_id", "generation_type", "created_at", "id"),
        Index("ix_generations_user_type_updated", "user_id", "generation_type", "updated_at", "id"),
        Index("ix_generations_provider_task", "user_id", "provider", "provider_task_id"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    prompt = Column(Text, nullable=False, default="")
    model = Column(String, nullable=False)
    generation_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="generating")
    is_deleted = Column(Boolean, nullable=False, default=False)
    public_requested = Column(Boolean, nullable=False, default=False)
    is_public = Column(Boolean, nullable=False, default=False)
    visibility = Column(String, nullable=False, default="private")
    images = Column(JSON, nullable=False, default=list)
    videos = Column(JSON, nullable=False, default=list)
    audios = Column(JSON, nullable=False, default=list)
    input_images = Column(JSON, nullable=False, default=list)
    input_videos = Column(JSON, nullable=False, default=list)
    tags = Column(JSON, nullable=False, default=list)
    nsfw = Column(Boolean, nullable=False, default=False)
    aspect_ratio = Column(String, nullable=True)
    provider = Column(String, nullable=True)
    provider_task_id = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    # Bumped on every UPDATE; a stale writer gets StaleDataError.
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
