"""Request payloads and the closed media union used by the lifecycle service."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from config import settings
from services.timestamps import as_utc


STATUS_GENERATING = "generating"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
GENERATION_STATUSES = (STATUS_GENERATING, STATUS_COMPLETED, STATUS_FAILED)

VALID_GENERATION_TYPES = (
    "text-to-image",
    "logo",
    "sticker-generation",
    "text-to-video",
    "image-to-video",
    "video-to-video",
    "text-to-music",
    "mockup-generation",
    "product-generation",
    "ad-generation",
    "live-chat",
)

MODE_GENERATION_TYPES: Dict[str, List[str]] = {
    "video": ["text-to-video", "image-to-video", "video-to-video"],
    "image": ["text-to-image", "logo", "sticker-generation", "product-generation", "ad-generation"],
    "music": ["text-to-music"],
}

SORT_FIELDS = ("created_at", "updated_at", "prompt")


def _validate_generation_type(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized not in VALID_GENERATION_TYPES:
        raise ValueError(f"Unsupported generation_type '{value}'")
    return normalized


class _MediaBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, max_length=200)
    url: str = Field(min_length=1, max_length=4000)
    original_url: Optional[str] = None
    storage_path: Optional[str] = None
    is_public: Optional[bool] = None
    avif_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    blur_data_url: Optional[str] = None
    optimized: Optional[bool] = None
    provider_meta: Dict[str, Any] = Field(default_factory=dict)


class ImageMedia(_MediaBase):
    kind: Literal["image"] = "image"
    width: Optional[int] = Field(default=None, ge=1)
    height: Optional[int] = Field(default=None, ge=1)


class VideoMedia(_MediaBase):
    kind: Literal["video"] = "video"
    duration_seconds: Optional[float] = Field(default=None, ge=0)
    width: Optional[int] = Field(default=None, ge=1)
    height: Optional[int] = Field(default=None, ge=1)


class AudioMedia(_MediaBase):
    kind: Literal["audio"] = "audio"
    duration_seconds: Optional[float] = Field(default=None, ge=0)


MediaItem = Annotated[Union[ImageMedia, VideoMedia, AudioMedia], Field(discriminator="kind")]

MEDIA_KIND_FIELDS = {"image": "images", "video": "videos", "audio": "audios"}

_media_adapter: TypeAdapter = TypeAdapter(MediaItem)


def parse_media_item(payload: Dict[str, Any]) -> Union[ImageMedia, VideoMedia, AudioMedia]:
    """Validate a stored media dict back into its tagged model."""
    return _media_adapter.validate_python(payload)


def dump_media_item(item: Union[ImageMedia, VideoMedia, AudioMedia]) -> Dict[str, Any]:
    return item.model_dump(exclude_none=True)


class StartGenerationPayload(BaseModel):
    prompt: str = Field(default="", max_length=8000)
    model: str = Field(min_length=1, max_length=200)
    generation_type: str
    is_public: bool = False
    input_images: List[ImageMedia] = Field(default_factory=list)
    input_videos: List[VideoMedia] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    nsfw: bool = False
    aspect_ratio: Optional[str] = None
    provider: Optional[str] = None
    provider_task_id: Optional[str] = None

    @field_validator("generation_type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        return _validate_generation_type(value)


class CompleteGenerationPayload(BaseModel):
    media: List[MediaItem] = Field(default_factory=list)
    is_public: Optional[bool] = None
    tags: Optional[List[str]] = None
    nsfw: Optional[bool] = None
    aspect_ratio: Optional[str] = None

    @model_validator(mode="after")
    def _unique_media_ids(self) -> "CompleteGenerationPayload":
        seen = set()
        for item in self.media:
            key = (item.kind, item.id)
            if key in seen:
                raise ValueError(f"Duplicate {item.kind} id '{item.id}'")
            seen.add(key)
        return self


class FailGenerationPayload(BaseModel):
    error: str = Field(min_length=1, max_length=2000)


class MediaPatch(BaseModel):
    """Partial update for one media item, located by id, url or storage path."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["image", "video", "audio"]
    id: Optional[str] = None
    url: Optional[str] = None
    storage_path: Optional[str] = None
    is_public: Optional[bool] = None
    avif_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    blur_data_url: Optional[str] = None
    optimized: Optional[bool] = None
    provider_meta: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _require_locator(self) -> "MediaPatch":
        if not (self.id or self.url or self.storage_path):
            raise ValueError("media patch requires id, url or storage_path")
        return self

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(
            exclude_none=True,
            exclude={"kind", "id", "url", "storage_path"},
        )


class GenerationUpdatePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_public: Optional[bool] = None
    is_deleted: Optional[Literal[True]] = None
    tags: Optional[List[str]] = None
    nsfw: Optional[bool] = None
    aspect_ratio: Optional[str] = None
    media: Optional[MediaPatch] = None

    @model_validator(mode="after")
    def _delete_stands_alone(self) -> "GenerationUpdatePayload":
        if self.is_deleted and self.model_dump(exclude_none=True, exclude={"is_deleted"}):
            raise ValueError("is_deleted cannot be combined with other fields")
        return self


class ProviderCallbackPayload(BaseModel):
    provider: str = Field(min_length=1, max_length=100)
    task_id: str = Field(min_length=1, max_length=300)
    status: Literal["completed", "failed"]
    media: List[MediaItem] = Field(default_factory=list)
    error: Optional[str] = None


class GenerationListQuery(BaseModel):
    limit: int = Field(default=settings.LIST_DEFAULT_LIMIT, ge=1, le=settings.LIST_MAX_LIMIT)
    cursor: Optional[str] = None
    status: Optional[Literal["generating", "completed", "failed"]] = None
    generation_type: Optional[List[str]] = None
    mode: Optional[Literal["video", "image", "music", "all"]] = None
    date_start: Optional[datetime] = None
    date_end: Optional[datetime] = None
    search: Optional[str] = Field(default=None, max_length=200)
    sort_by: Literal["created_at", "updated_at", "prompt"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"

    @field_validator("generation_type")
    @classmethod
    def _check_types(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        normalized: List[str] = []
        for entry in value:
            for part in str(entry).split(","):
                if part.strip():
                    slug = _validate_generation_type(part)
                    if slug not in normalized:
                        normalized.append(slug)
        return normalized or None

    @field_validator("date_start", "date_end")
    @classmethod
    def _normalize_dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @field_validator("search")
    @classmethod
    def _normalize_search(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @model_validator(mode="after")
    def _resolve_mode(self) -> "GenerationListQuery":
        if self.generation_type is None and self.mode and self.mode != "all":
            self.generation_type = list(MODE_GENERATION_TYPES[self.mode])
        if self.date_start and self.date_end and self.date_start > self.date_end:
            raise ValueError("date_start must not be after date_end")
        return self


class PublicFeedQuery(GenerationListQuery):
    created_by: Optional[str] = None
