"""Row-per-media persistence with a guarded status lifecycle.

Every status write goes through :meth:`DescriptorStore.transition`, a
compare-and-set on ``status``; no other code updates the column.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medialink.core.errors import ConflictError, InvalidTransitionError, NotFoundError
from medialink.models.media import MediaDescriptor, MediaPurpose, MediaStatus, MediaType, dump_variants, utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[MediaStatus, frozenset[MediaStatus]] = {
    MediaStatus.pending: frozenset({MediaStatus.pending, MediaStatus.uploaded}),
    MediaStatus.uploaded: frozenset({MediaStatus.processing, MediaStatus.failed}),
    MediaStatus.processing: frozenset({MediaStatus.ready, MediaStatus.failed}),
    MediaStatus.failed: frozenset({MediaStatus.processing}),
    MediaStatus.ready: frozenset({MediaStatus.processing}),
}

_HEX_COLOR_RE = re.compile(r"^[0-9a-f]{6}$")
_PATCHABLE = {
    "processing_error",
    "aspect_ratio",
    "dominant_color",
    "width",
    "height",
    "duration",
    "version",
    "size_bytes",
}


class DuplicateBlobError(ConflictError):
    code = "duplicate_blob"


@dataclass(slots=True)
class DescriptorMetadata:
    aspect_ratio: float | None = None
    dominant_color: str | None = None
    width: int | None = None
    height: int | None = None
    duration: int | None = None

    def as_patch(self) -> dict[str, Any]:
        return {
            "aspect_ratio": self.aspect_ratio,
            "dominant_color": self.dominant_color,
            "width": self.width,
            "height": self.height,
            "duration": self.duration,
        }


def compute_aspect_ratio(width: int | None, height: int | None) -> float | None:
    if not width or not height or width <= 0 or height <= 0:
        return None
    ratio = width / height
    if not math.isfinite(ratio) or ratio <= 0:
        return None
    return ratio


def _validate_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(patch) - _PATCHABLE
    if unknown:
        raise ValueError(f"Unsupported descriptor fields: {sorted(unknown)}")
    values = dict(patch)
    ratio = values.get("aspect_ratio")
    if ratio is not None and (not math.isfinite(float(ratio)) or float(ratio) <= 0):
        raise ValueError("aspect_ratio must be null or strictly positive and finite")
    color = values.get("dominant_color")
    if color is not None and not _HEX_COLOR_RE.match(str(color)):
        raise ValueError("dominant_color must be six lowercase hex digits")
    return values


class DescriptorStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def insert_pending(
        self,
        *,
        owner: str,
        media_type: MediaType,
        mime: str,
        blob_name: str,
        media_id: str,
        version: int = 1,
        upload_id: str | None = None,
        size_bytes: int | None = None,
    ) -> MediaDescriptor:
        now = utcnow()
        row = MediaDescriptor(
            owner_id=owner,
            media_type=media_type,
            mime_type=mime,
            original_blob_name=blob_name,
            media_id=media_id,
            version=version,
            upload_id=upload_id,
            size_bytes=size_bytes,
            status=MediaStatus.pending,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateBlobError(f"Blob {blob_name} already has a descriptor") from exc
            await session.refresh(row)
        return row

    async def transition(
        self,
        descriptor_id: int,
        from_status: MediaStatus | Iterable[MediaStatus],
        to_status: MediaStatus,
        patch: Mapping[str, Any] | None = None,
        *,
        variants: Mapping[str | MediaPurpose, str] | None = None,
    ) -> MediaDescriptor:
        """Compare-and-set ``status``; raises ConflictError when the row moved on."""
        sources = {from_status} if isinstance(from_status, MediaStatus) else set(from_status)
        for source in sources:
            if to_status not in ALLOWED_TRANSITIONS[source]:
                raise InvalidTransitionError(f"{source.value} -> {to_status.value} is not a legal transition")
        values = _validate_patch(patch or {})
        if variants is not None:
            if to_status != MediaStatus.ready:
                raise InvalidTransitionError("variants are only written together with status=ready")
            values["variants_json"] = dump_variants(variants)
        elif to_status != MediaStatus.ready:
            values["variants_json"] = None
        if to_status != MediaStatus.failed:
            values.setdefault("processing_error", None)
        values["status"] = to_status
        values["updated_at"] = utcnow()

        async with self.session_factory() as session:
            result = await session.execute(
                update(MediaDescriptor)
                .where(MediaDescriptor.id == descriptor_id, MediaDescriptor.status.in_(sources))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                current = await session.scalar(select(MediaDescriptor.status).where(MediaDescriptor.id == descriptor_id))
                if current is None:
                    raise NotFoundError(f"Descriptor {descriptor_id} not found")
                raise ConflictError(
                    f"Descriptor {descriptor_id} is {current.value}, expected one of {sorted(s.value for s in sources)}",
                    current=current.value,
                )
            row = await session.scalar(select(MediaDescriptor).where(MediaDescriptor.id == descriptor_id))
        if row is None:
            raise NotFoundError(f"Descriptor {descriptor_id} was deleted during the transition")
        logger.info(
            "media_descriptor_transition",
            extra={"descriptor_id": descriptor_id, "to_status": to_status.value},
        )
        return row

    async def set_ready(
        self,
        descriptor_id: int,
        variants: Mapping[str | MediaPurpose, str],
        metadata: DescriptorMetadata,
    ) -> MediaDescriptor:
        return await self.transition(
            descriptor_id,
            MediaStatus.processing,
            MediaStatus.ready,
            metadata.as_patch(),
            variants=variants,
        )

    async def set_failed(self, descriptor_id: int, error: str) -> MediaDescriptor:
        return await self.transition(
            descriptor_id,
            MediaStatus.processing,
            MediaStatus.failed,
            {"processing_error": (error or "processing_failed")[:120]},
        )

    async def by_id(self, descriptor_id: int) -> MediaDescriptor | None:
        async with self.session_factory() as session:
            return await session.scalar(select(MediaDescriptor).where(MediaDescriptor.id == descriptor_id))

    async def by_blob_name(self, blob_name: str) -> MediaDescriptor | None:
        async with self.session_factory() as session:
            return await session.scalar(select(MediaDescriptor).where(MediaDescriptor.original_blob_name == blob_name))

    async def by_post(self, post_id: str) -> list[MediaDescriptor]:
        async with self.session_factory() as session:
            rows = await session.execute(
                select(MediaDescriptor)
                .where(MediaDescriptor.post_id == post_id)
                .order_by(MediaDescriptor.display_order.asc(), MediaDescriptor.id.asc())
            )
            return list(rows.scalars().all())

    async def attach_to_post(self, descriptor_id: int, post_id: str | None, display_order: int = 0) -> MediaDescriptor:
        async with self.session_factory() as session:
            result = await session.execute(
                update(MediaDescriptor)
                .where(MediaDescriptor.id == descriptor_id)
                .values(post_id=post_id, display_order=int(display_order), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                raise NotFoundError(f"Descriptor {descriptor_id} not found")
            row = await session.scalar(select(MediaDescriptor).where(MediaDescriptor.id == descriptor_id))
        if row is None:
            raise NotFoundError(f"Descriptor {descriptor_id} not found")
        return row

    async def delete(self, descriptor_id: int) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(delete(MediaDescriptor).where(MediaDescriptor.id == descriptor_id))
            await session.commit()
            return bool(result.rowcount)
