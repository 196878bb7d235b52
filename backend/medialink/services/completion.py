from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from medialink.core import metrics
from medialink.core.errors import (
    ConflictError,
    ForbiddenError,
    NotUploadedError,
    TooLargeError,
    UnsupportedMediaError,
)
from medialink.core.security import AuthenticatedPrincipal
from medialink.models.media import MediaDescriptor, MediaStatus, MediaType
from medialink.schemas.media import UploadCompleteRequest, UploadCompleteResponse
from medialink.services import events
from medialink.services.blob_storage import PRIVATE, extension_for_mime, media_type_for_mime, normalize_mime, parse_blob_name
from medialink.services.descriptor_store import DuplicateBlobError
from medialink.services.job_bus import QUEUE_FOR_MEDIA_TYPE
from medialink.services.upload_broker import recall_ticket, size_cap

if TYPE_CHECKING:
    from medialink.core.context import CoreContext

logger = logging.getLogger(__name__)


def _check_blob_name(request: UploadCompleteRequest, media_type: MediaType, mime: str) -> str:
    parsed = parse_blob_name(request.blob_name)
    if (
        parsed is None
        or parsed.purpose is not None
        or parsed.prefix != media_type
        or parsed.ext != extension_for_mime(mime)
    ):
        raise UnsupportedMediaError(f"{request.blob_name!r} is not an original {media_type.value} blob for {mime}")
    return parsed.media_id


def _existing_result(row: MediaDescriptor, principal: AuthenticatedPrincipal) -> UploadCompleteResponse:
    if row.owner_id != principal.user_id:
        raise ConflictError(f"Blob {row.original_blob_name} belongs to another descriptor")
    return UploadCompleteResponse(descriptor_id=row.id, status=row.status.value)


async def complete_upload(
    ctx: "CoreContext",
    principal: AuthenticatedPrincipal,
    request: UploadCompleteRequest,
) -> UploadCompleteResponse:
    """Verify a finished direct upload, persist its descriptor and queue processing.

    Repeating the call for the same ``(owner, blob_name)`` returns the existing
    descriptor and queues nothing.
    """
    mime = normalize_mime(request.mime_type)
    media_type = media_type_for_mime(mime)
    if media_type.value != request.media_type:
        raise UnsupportedMediaError(f"{mime} is not a {request.media_type} type")
    cap = size_cap(ctx, media_type)
    media_id = _check_blob_name(request, media_type, mime)

    ticket = await recall_ticket(ctx, request.upload_id)
    if ticket is not None and (
        ticket.get("owner") != principal.user_id or ticket.get("blob_name") != request.blob_name
    ):
        raise ForbiddenError("Upload ticket does not match this completion")

    existing = await ctx.store.by_blob_name(request.blob_name)
    if existing is not None:
        return _existing_result(existing, principal)

    props = await ctx.blobs.properties(PRIVATE, request.blob_name)
    if props is None:
        raise NotUploadedError(f"Blob {request.blob_name} has not been uploaded")
    if props.size > cap:
        await ctx.blobs.delete(PRIVATE, request.blob_name)
        logger.warning(
            "media_upload_rejected_too_large",
            extra={"blob_name": request.blob_name, "size": props.size, "cap": cap},
        )
        raise TooLargeError(f"Uploaded blob is {props.size} bytes; the {media_type.value} limit is {cap}")

    try:
        row = await ctx.store.insert_pending(
            owner=principal.user_id,
            media_type=media_type,
            mime=mime,
            blob_name=request.blob_name,
            media_id=media_id,
            upload_id=request.upload_id,
            size_bytes=props.size,
        )
    except DuplicateBlobError:
        existing = await ctx.store.by_blob_name(request.blob_name)
        if existing is None:
            raise
        return _existing_result(existing, principal)
    row = await ctx.store.transition(row.id, MediaStatus.pending, MediaStatus.uploaded)
    metrics.record_upload_completed()
    await ctx.events.for_descriptor(events.MEDIA_UPLOADED, row)

    try:
        await ctx.bus.enqueue(
            QUEUE_FOR_MEDIA_TYPE[media_type],
            descriptor_id=row.id,
            media_id=row.media_id,
            blob_name=row.original_blob_name,
            version=row.version,
        )
    except Exception:
        logger.exception("media_enqueue_failed", extra={"descriptor_id": row.id})
        row = await ctx.store.transition(
            row.id, MediaStatus.uploaded, MediaStatus.failed, {"processing_error": "enqueue_failed"}
        )
        await ctx.cache.invalidate(row.id, owner=row.owner_id)
        await ctx.events.for_descriptor(events.MEDIA_FAILED, row, error="enqueue_failed")
        return UploadCompleteResponse(descriptor_id=row.id, status=row.status.value)

    await ctx.cache.invalidate(row.id, owner=row.owner_id)
    logger.info(
        "media_upload_completed",
        extra={"descriptor_id": row.id, "owner": row.owner_id, "media_type": media_type.value},
    )
    return UploadCompleteResponse(descriptor_id=row.id, status=row.status.value)
