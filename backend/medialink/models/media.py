from __future__ import annotations

import enum
import json
import uuid
from datetime import datetime, timezone
from typing import Mapping

from sqlalchemy import BigInteger, DateTime, Enum, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from medialink.core.errors import BadPurposeError
from medialink.db.base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MediaType(str, enum.Enum):
    image = "image"
    video = "video"
    document = "document"


class MediaStatus(str, enum.Enum):
    pending = "pending"
    uploaded = "uploaded"
    processing = "processing"
    ready = "ready"
    failed = "failed"


class MediaPurpose(str, enum.Enum):
    thumb = "thumb"
    feed = "feed"
    full = "full"
    sd_480p = "480p"
    hd_720p = "720p"
    poster = "poster"


IMAGE_PURPOSES: tuple[MediaPurpose, ...] = (MediaPurpose.thumb, MediaPurpose.feed, MediaPurpose.full)
VIDEO_RENDITIONS: tuple[MediaPurpose, ...] = (MediaPurpose.sd_480p, MediaPurpose.hd_720p)


class MediaJobStatus(str, enum.Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"


def coerce_purpose(value: str | MediaPurpose) -> MediaPurpose:
    if isinstance(value, MediaPurpose):
        return value
    try:
        return MediaPurpose(str(value or "").strip().lower())
    except ValueError as exc:
        raise BadPurposeError(f"Unknown variant purpose: {value!r}") from exc


def dump_variants(variants: Mapping[str | MediaPurpose, str]) -> str:
    """Serialize a purpose -> URL map as compact JSON, rejecting unknown purposes."""
    checked: dict[str, str] = {}
    for key, url in variants.items():
        purpose = coerce_purpose(key)
        if not isinstance(url, str) or not url:
            raise BadPurposeError(f"Variant {purpose.value} has no URL")
        checked[purpose.value] = url
    ordered = {p.value: checked[p.value] for p in MediaPurpose if p.value in checked}
    return json.dumps(ordered, separators=(",", ":"), ensure_ascii=False)


def load_variants(raw: str | None) -> dict[MediaPurpose, str]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise BadPurposeError("Stored variants are not valid JSON") from exc
    if not isinstance(data, dict):
        raise BadPurposeError("Stored variants must be a JSON object")
    return {coerce_purpose(key): str(url) for key, url in data.items()}


def _enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
        length=20,
    )


class MediaDescriptor(Base):
    __tablename__ = "media_descriptors"
    __table_args__ = (Index("ix_media_descriptors_post_order", "post_id", "display_order"),)

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    media_id: Mapped[str] = mapped_column(String(24), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    media_type: Mapped[MediaType] = mapped_column(_enum(MediaType, "media_type"), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    original_blob_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    upload_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[MediaStatus] = mapped_column(
        _enum(MediaStatus, "media_status"), nullable=False, default=MediaStatus.pending, index=True
    )
    processing_error: Mapped[str | None] = mapped_column(String(120), nullable=True)
    variants_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    aspect_ratio: Mapped[float | None] = mapped_column(Float, nullable=True)
    dominant_color: Mapped[str | None] = mapped_column(String(6), nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    post_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def variants(self) -> dict[MediaPurpose, str]:
        return load_variants(self.variants_json)


class MediaJob(Base):
    __tablename__ = "media_jobs"
    __table_args__ = (Index("ix_media_jobs_claim", "queue", "status", "available_at"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    queue: Mapped[str] = mapped_column(String(40), nullable=False)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    descriptor_id: Mapped[int | None] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        ForeignKey("media_descriptors.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    media_id: Mapped[str] = mapped_column(String(24), nullable=False)
    blob_name: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[MediaJobStatus] = mapped_column(
        _enum(MediaJobStatus, "media_job_status"), nullable=False, default=MediaJobStatus.queued
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    worker_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(120), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
