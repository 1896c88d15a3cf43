"""PublicGeneration model: the globally queryable mirror of public records."""

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String, Text

from database import Base


class PublicGeneration(Base):
    """Public feed projection keyed by the source generation id."""

    __tablename__ = "public_generations"
    __table_args__ = (
        Index("ix_public_generations_created", "created_at", "id"),
        Index("ix_public_generations_updated", "updated_at", "id"),
        Index("ix_public_generations_type_created", "generation_type", "created_at", "id"),
        Index("ix_public_generations_user_created", "user_id", "created_at", "id"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    prompt = Column(Text, nullable=False, default="")
    model = Column(String, nullable=False)
    generation_type = Column(String, nullable=False)
    status = Column(String, nullable=False)
    visibility = Column(String, nullable=False, default="public")
    is_public = Column(Boolean, nullable=False, default=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    images = Column(JSON, nullable=False, default=list)
    videos = Column(JSON, nullable=False, default=list)
    audios = Column(JSON, nullable=False, default=list)
    tags = Column(JSON, nullable=False, default=list)
    nsfw = Column(Boolean, nullable=False, default=False)
    aspect_ratio = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    mirrored_at = Column(DateTime(timezone=True), nullable=True)
