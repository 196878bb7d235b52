from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING

from medialink.core import metrics
from medialink.core.errors import TooLargeError, UnsupportedMediaError
from medialink.core.redis_client import json_dumps, json_loads
from medialink.core.security import AuthenticatedPrincipal
from medialink.models.media import MediaType
from medialink.schemas.media import UploadIntentRequest, UploadTicket
from medialink.services.blob_storage import extension_for_mime, media_type_for_mime, normalize_mime, original_blob_name

if TYPE_CHECKING:
    from medialink.core.context import CoreContext

logger = logging.getLogger(__name__)

TICKET_KEY_PREFIX = "upload"


def ticket_key(upload_id: str) -> str:
    return f"{TICKET_KEY_PREFIX}:{upload_id}"


def size_cap(ctx: "CoreContext", media_type: MediaType) -> int:
    if media_type == MediaType.image:
        return int(ctx.settings.max_image_bytes)
    if media_type == MediaType.video:
        return int(ctx.settings.max_video_bytes)
    raise UnsupportedMediaError(f"No upload pipeline for {media_type.value}")


def new_media_id() -> str:
    return secrets.token_hex(12)


def new_upload_id() -> str:
    return secrets.token_hex(16)


async def mint_upload_ticket(
    ctx: "CoreContext",
    principal: AuthenticatedPrincipal,
    intent: UploadIntentRequest,
) -> UploadTicket:
    """Validate an upload intent and hand out a write-only URL for one new blob.

    No descriptor row is written here; abandoned tickets leave nothing behind
    but a cache entry that expires with the URL.
    """
    mime = normalize_mime(intent.mime_type)
    media_type = media_type_for_mime(mime)
    cap = size_cap(ctx, media_type)
    if intent.declared_size is not None and intent.declared_size > cap:
        raise TooLargeError(f"Declared size {intent.declared_size} exceeds the {media_type.value} limit of {cap} bytes")

    media_id = new_media_id()
    upload_id = new_upload_id()
    blob_name = original_blob_name(media_type, media_id, 1, extension_for_mime(mime))
    ttl = max(1, int(ctx.settings.signed_url_ttl_seconds))
    signed = await ctx.blobs.mint_write_url(blob_name, mime, ttl)

    ticket = UploadTicket(
        upload_id=upload_id,
        signed_url=signed.url,
        blob_name=blob_name,
        media_id=media_id,
        media_type=media_type.value,
        mime_type=mime,
        expires_at=signed.expires_at,
        expires_in_seconds=ttl,
    )
    await remember_ticket(ctx, principal, ticket)
    metrics.record_ticket_minted()
    logger.info(
        "media_upload_ticket_minted",
        extra={"owner": principal.user_id, "media_type": media_type.value, "blob_name": blob_name},
    )
    return ticket


async def remember_ticket(ctx: "CoreContext", principal: AuthenticatedPrincipal, ticket: UploadTicket) -> None:
    payload = {"owner": principal.user_id, "blob_name": ticket.blob_name, "mime_type": ticket.mime_type}
    try:
        await ctx.cache.kv.set(ticket_key(ticket.upload_id), json_dumps(payload), ticket.expires_in_seconds)
    except Exception as exc:
        logger.warning("media_upload_ticket_cache_failed", extra={"upload_id": ticket.upload_id, "error": str(exc)})


async def recall_ticket(ctx: "CoreContext", upload_id: str) -> dict[str, str] | None:
    try:
        raw = await ctx.cache.kv.get(ticket_key(upload_id))
    except Exception as exc:
        logger.warning("media_upload_ticket_lookup_failed", extra={"upload_id": upload_id, "error": str(exc)})
        return None
    if not raw:
        return None
    try:
        data = json_loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None
