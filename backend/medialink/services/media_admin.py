"""Owner and admin operations on existing descriptors."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from medialink.core.errors import ConflictError, ForbiddenError, NotFoundError
from medialink.core.security import AuthenticatedPrincipal
from medialink.models.media import MediaDescriptor, MediaStatus, MediaType
from medialink.schemas.media import MediaActionResponse, MediaDescriptorRead
from medialink.services import events
from medialink.services.blob_storage import PRIVATE, PUBLIC, variant_names_for
from medialink.services.job_bus import QUEUE_FOR_MEDIA_TYPE
from medialink.services.media_query import descriptor_to_read

if TYPE_CHECKING:
    from medialink.core.context import CoreContext

logger = logging.getLogger(__name__)


async def _load_managed(ctx: "CoreContext", principal: AuthenticatedPrincipal, descriptor_id: int) -> MediaDescriptor:
    row = await ctx.store.by_id(descriptor_id)
    if row is None:
        raise NotFoundError(f"Descriptor {descriptor_id} not found")
    if not principal.can_manage(row.owner_id):
        raise ForbiddenError(f"Descriptor {descriptor_id} belongs to another user")
    return row


def _queue_for(row: MediaDescriptor) -> str:
    queue = QUEUE_FOR_MEDIA_TYPE.get(row.media_type)
    if queue is None:
        raise ConflictError(f"{row.media_type.value} descriptors are not processed")
    return queue


async def retry_media(ctx: "CoreContext", principal: AuthenticatedPrincipal, descriptor_id: int) -> MediaActionResponse:
    """Queue a fresh job for a failed descriptor; the worker claims it via failed -> processing."""
    row = await _load_managed(ctx, principal, descriptor_id)
    if row.status != MediaStatus.failed:
        raise ConflictError(f"Descriptor {descriptor_id} is {row.status.value}, only failed media can be retried",
                            current=row.status.value)
    envelope = await ctx.bus.enqueue(
        _queue_for(row),
        descriptor_id=row.id,
        media_id=row.media_id,
        blob_name=row.original_blob_name,
        version=row.version,
    )
    logger.info("media_retry_enqueued", extra={"descriptor_id": row.id, "job_id": envelope.job_id})
    return MediaActionResponse(descriptor_id=row.id, status=row.status.value, job_id=envelope.job_id, version=row.version)


async def reingest_media(
    ctx: "CoreContext", principal: AuthenticatedPrincipal, descriptor_id: int
) -> MediaActionResponse:
    """Rebuild every variant of a ready descriptor under the next version number."""
    row = await _load_managed(ctx, principal, descriptor_id)
    queue = _queue_for(row)
    if row.status != MediaStatus.ready:
        raise ConflictError(f"Descriptor {descriptor_id} is {row.status.value}, only ready media can be re-ingested",
                            current=row.status.value)
    row = await ctx.store.transition(row.id, MediaStatus.ready, MediaStatus.processing, {"version": row.version + 1})
    await ctx.cache.invalidate(row.id, owner=row.owner_id)
    try:
        envelope = await ctx.bus.enqueue(
            queue,
            descriptor_id=row.id,
            media_id=row.media_id,
            blob_name=row.original_blob_name,
            version=row.version,
            payload={"reingest": True},
        )
    except Exception:
        logger.exception("media_enqueue_failed", extra={"descriptor_id": row.id})
        row = await ctx.store.set_failed(row.id, "enqueue_failed")
        await ctx.cache.invalidate(row.id, owner=row.owner_id)
        await ctx.events.for_descriptor(events.MEDIA_FAILED, row, error="enqueue_failed")
        return MediaActionResponse(descriptor_id=row.id, status=row.status.value, version=row.version)
    await ctx.events.for_descriptor(events.MEDIA_PROCESSING, row, reingest=True)
    logger.info("media_reingest_enqueued", extra={"descriptor_id": row.id, "version": row.version})
    return MediaActionResponse(descriptor_id=row.id, status=row.status.value, job_id=envelope.job_id, version=row.version)


async def delete_media(ctx: "CoreContext", principal: AuthenticatedPrincipal, descriptor_id: int) -> None:
    """Remove every blob the descriptor may own, then the row.

    A blob failure aborts before the row is touched so the call can be repeated.
    """
    row = await _load_managed(ctx, principal, descriptor_id)
    if row.status == MediaStatus.processing:
        raise ConflictError(f"Descriptor {descriptor_id} is being processed", current=row.status.value)

    removed = 0
    if row.media_type in (MediaType.image, MediaType.video):
        for version in range(1, row.version + 1):
            for name in variant_names_for(row.media_type, row.media_id, version):
                if await ctx.blobs.delete(PUBLIC, name):
                    removed += 1
    await ctx.blobs.delete(PRIVATE, row.original_blob_name)

    await ctx.store.delete(row.id)
    await ctx.cache.invalidate(row.id, owner=row.owner_id)
    await ctx.events.emit(
        events.MEDIA_DELETED,
        descriptor_id=row.id,
        media_id=row.media_id,
        owner=row.owner_id,
        media_type=row.media_type.value,
    )
    logger.info("media_deleted", extra={"descriptor_id": row.id, "variants_removed": removed})


async def attach_to_post(
    ctx: "CoreContext",
    principal: AuthenticatedPrincipal,
    descriptor_id: int,
    post_id: str | None,
    display_order: int = 0,
) -> MediaDescriptorRead:
    await _load_managed(ctx, principal, descriptor_id)
    row = await ctx.store.attach_to_post(descriptor_id, post_id, display_order)
    await ctx.cache.invalidate(row.id, owner=row.owner_id)
    return descriptor_to_read(row)


async def list_post_media(ctx: "CoreContext", post_id: str) -> list[MediaDescriptorRead]:
    return [descriptor_to_read(row) for row in await ctx.store.by_post(post_id)]
