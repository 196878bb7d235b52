from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import ValidationError

from medialink.core.errors import ForbiddenError, NotFoundError, NotReadyError
from medialink.models.media import MediaDescriptor, MediaPurpose, MediaStatus, as_utc, coerce_purpose
from medialink.schemas.media import MediaDescriptorRead, MediaStatusRead, VariantUrlRead

if TYPE_CHECKING:
    from medialink.core.context import CoreContext

logger = logging.getLogger(__name__)


def descriptor_to_read(row: MediaDescriptor) -> MediaDescriptorRead:
    variants = {purpose.value: url for purpose, url in row.variants.items()}
    return MediaDescriptorRead(
        id=row.id,
        owner=row.owner_id,
        media_type=row.media_type.value,
        status=row.status.value,
        mime_type=row.mime_type,
        aspect_ratio=row.aspect_ratio,
        dominant_color=row.dominant_color,
        width=row.width,
        height=row.height,
        duration=row.duration,
        variants=variants,
        poster_url=variants.get(MediaPurpose.poster.value),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


async def get_descriptor(ctx: "CoreContext", descriptor_id: int) -> MediaDescriptorRead:
    """Cache first; a hit is authoritative until its TTL runs out."""
    cached = await ctx.cache.get_descriptor(descriptor_id)
    if cached:
        try:
            return MediaDescriptorRead.model_validate_json(cached)
        except ValidationError:
            logger.warning("media_cache_entry_invalid", extra={"descriptor_id": descriptor_id})
    row = await ctx.store.by_id(descriptor_id)
    if row is None:
        raise NotFoundError(f"Descriptor {descriptor_id} not found")
    read = descriptor_to_read(row)
    await ctx.cache.set_descriptor(descriptor_id, read.model_dump_json())
    return read


def _ready_url(descriptor: MediaDescriptorRead, purpose: MediaPurpose) -> str:
    status = MediaStatus(descriptor.status)
    if status != MediaStatus.ready:
        raise NotReadyError(f"Descriptor {descriptor.id} is {status.value}", reason=status.value)
    url = descriptor.variants.get(purpose.value)
    if not url:
        raise NotFoundError(f"Descriptor {descriptor.id} has no {purpose.value} variant")
    return url


async def get_variant_url(ctx: "CoreContext", descriptor_id: int, purpose: str | MediaPurpose) -> VariantUrlRead:
    purpose = coerce_purpose(purpose)
    cached = await ctx.cache.get_variant(descriptor_id, purpose)
    if cached:
        return VariantUrlRead(descriptor_id=descriptor_id, purpose=purpose.value, url=cached)
    descriptor = await get_descriptor(ctx, descriptor_id)
    if descriptor.status == MediaStatus.failed.value:
        row = await ctx.store.by_id(descriptor_id)
        reason = (row.processing_error if row is not None else None) or "processing_failed"
        raise NotReadyError(f"Descriptor {descriptor_id} failed processing", reason=reason)
    url = _ready_url(descriptor, purpose)
    await ctx.cache.set_variant(descriptor_id, purpose, url)
    return VariantUrlRead(descriptor_id=descriptor_id, purpose=purpose.value, url=url)


async def get_status(ctx: "CoreContext", descriptor_id: int) -> MediaStatusRead:
    row = await ctx.store.by_id(descriptor_id)
    if row is None:
        raise NotFoundError(f"Descriptor {descriptor_id} not found")
    variants = {purpose.value: url for purpose, url in row.variants.items()}
    return MediaStatusRead(
        status=row.status.value,
        error=row.processing_error if row.status == MediaStatus.failed else None,
        variant_count=len(variants),
        variants=variants if row.status == MediaStatus.ready else None,
    )


async def get_profile_picture_url(
    ctx: "CoreContext",
    user_id: str,
    descriptor_id: int,
    purpose: str | MediaPurpose = MediaPurpose.thumb,
) -> str:
    """Variant URL of the user's own profile picture, cached under the ``profile:`` family."""
    purpose = coerce_purpose(purpose)
    cached = await ctx.cache.get_profile(user_id, purpose, descriptor_id)
    if cached:
        return cached
    descriptor = await get_descriptor(ctx, descriptor_id)
    if descriptor.owner != user_id:
        raise ForbiddenError(f"Descriptor {descriptor_id} does not belong to {user_id}")
    url = (await get_variant_url(ctx, descriptor_id, purpose)).url
    await ctx.cache.set_profile(user_id, purpose, descriptor_id, url)
    return url
