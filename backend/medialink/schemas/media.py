from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


MediaTypeLiteral = Literal["image", "video", "document"]
MediaStatusLiteral = Literal["pending", "uploaded", "processing", "ready", "failed"]
MediaPurposeLiteral = Literal["thumb", "feed", "full", "480p", "720p", "poster"]
QueueNameLiteral = Literal["image-processing", "video-processing"]


class UploadIntentRequest(BaseModel):
    mime_type: str = Field(min_length=1, max_length=100)
    declared_size: int | None = Field(default=None, ge=0)


class UploadTicket(BaseModel):
    upload_id: str
    signed_url: str
    blob_name: str
    media_id: str
    media_type: MediaTypeLiteral
    mime_type: str
    expires_at: datetime
    expires_in_seconds: int


class UploadCompleteRequest(BaseModel):
    upload_id: str = Field(min_length=1, max_length=64)
    blob_name: str = Field(min_length=1, max_length=255)
    media_type: MediaTypeLiteral
    mime_type: str = Field(min_length=1, max_length=100)
    declared_size: int | None = Field(default=None, ge=0)


class UploadCompleteResponse(BaseModel):
    descriptor_id: int
    status: MediaStatusLiteral


class MediaDescriptorRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner: str
    media_type: MediaTypeLiteral
    status: MediaStatusLiteral
    mime_type: str
    aspect_ratio: float | None = None
    dominant_color: str | None = None
    width: int | None = None
    height: int | None = None
    duration: int | None = None
    variants: dict[MediaPurposeLiteral, str] = Field(default_factory=dict)
    poster_url: str | None = None
    created_at: datetime
    updated_at: datetime


class MediaStatusRead(BaseModel):
    status: MediaStatusLiteral
    error: str | None = None
    variant_count: int = 0
    variants: dict[MediaPurposeLiteral, str] | None = None


class VariantUrlRead(BaseModel):
    descriptor_id: int
    purpose: MediaPurposeLiteral
    url: str


class AttachToPostRequest(BaseModel):
    post_id: str = Field(min_length=1, max_length=64)
    display_order: int = Field(default=0, ge=0)


class QueueStatsRead(BaseModel):
    queue: QueueNameLiteral
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0


class MediaActionResponse(BaseModel):
    descriptor_id: int
    status: MediaStatusLiteral
    job_id: str | None = None
    version: int | None = None
