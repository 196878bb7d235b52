from fastapi import APIRouter, Depends, Query, Response, status

from medialink.api.deps import get_context, get_principal, require_admin
from medialink.core.context import CoreContext
from medialink.core.security import AuthenticatedPrincipal
from medialink.schemas.media import (
    AttachToPostRequest,
    MediaActionResponse,
    MediaDescriptorRead,
    MediaPurposeLiteral,
    MediaStatusRead,
    QueueNameLiteral,
    QueueStatsRead,
    UploadCompleteRequest,
    UploadCompleteResponse,
    UploadIntentRequest,
    UploadTicket,
    VariantUrlRead,
)
from medialink.services import media_admin, media_query
from medialink.services.completion import complete_upload
from medialink.services.upload_broker import mint_upload_ticket

router = APIRouter(prefix="/media", tags=["media"])


@router.post("/uploads/ticket", response_model=UploadTicket, status_code=status.HTTP_201_CREATED)
async def create_upload_ticket(
    payload: UploadIntentRequest,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    ctx: CoreContext = Depends(get_context),
) -> UploadTicket:
    return await mint_upload_ticket(ctx, principal, payload)


@router.post("/uploads/complete", response_model=UploadCompleteResponse)
async def finish_upload(
    payload: UploadCompleteRequest,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    ctx: CoreContext = Depends(get_context),
) -> UploadCompleteResponse:
    return await complete_upload(ctx, principal, payload)


@router.get("/posts/{post_id}", response_model=list[MediaDescriptorRead])
async def list_post_media(post_id: str, ctx: CoreContext = Depends(get_context)) -> list[MediaDescriptorRead]:
    return await media_admin.list_post_media(ctx, post_id)


@router.get("/queues/{queue}/stats", response_model=QueueStatsRead)
async def queue_stats(
    queue: QueueNameLiteral,
    _: AuthenticatedPrincipal = Depends(require_admin),
    ctx: CoreContext = Depends(get_context),
) -> QueueStatsRead:
    stats = await ctx.bus.stats(queue)
    return QueueStatsRead(
        queue=queue,
        waiting=stats.waiting,
        active=stats.active,
        delayed=stats.delayed,
        completed=stats.completed,
        failed=stats.failed,
    )


@router.get("/users/{user_id}/profile-picture", response_model=VariantUrlRead)
async def profile_picture(
    user_id: str,
    descriptor_id: int = Query(ge=1),
    purpose: MediaPurposeLiteral = "thumb",
    ctx: CoreContext = Depends(get_context),
) -> VariantUrlRead:
    url = await media_query.get_profile_picture_url(ctx, user_id, descriptor_id, purpose)
    return VariantUrlRead(descriptor_id=descriptor_id, purpose=purpose, url=url)


@router.get("/{descriptor_id}", response_model=MediaDescriptorRead)
async def get_media(descriptor_id: int, ctx: CoreContext = Depends(get_context)) -> MediaDescriptorRead:
    return await media_query.get_descriptor(ctx, descriptor_id)


@router.get("/{descriptor_id}/status", response_model=MediaStatusRead)
async def get_media_status(descriptor_id: int, ctx: CoreContext = Depends(get_context)) -> MediaStatusRead:
    return await media_query.get_status(ctx, descriptor_id)


@router.get("/{descriptor_id}/variants/{purpose}", response_model=VariantUrlRead)
async def get_media_variant(descriptor_id: int, purpose: str, ctx: CoreContext = Depends(get_context)) -> VariantUrlRead:
    return await media_query.get_variant_url(ctx, descriptor_id, purpose)


@router.post("/{descriptor_id}/retry", response_model=MediaActionResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_media(
    descriptor_id: int,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    ctx: CoreContext = Depends(get_context),
) -> MediaActionResponse:
    return await media_admin.retry_media(ctx, principal, descriptor_id)


@router.post("/{descriptor_id}/reingest", response_model=MediaActionResponse, status_code=status.HTTP_202_ACCEPTED)
async def reingest_media(
    descriptor_id: int,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    ctx: CoreContext = Depends(get_context),
) -> MediaActionResponse:
    return await media_admin.reingest_media(ctx, principal, descriptor_id)


@router.put("/{descriptor_id}/post", response_model=MediaDescriptorRead)
async def attach_media_to_post(
    descriptor_id: int,
    payload: AttachToPostRequest,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    ctx: CoreContext = Depends(get_context),
) -> MediaDescriptorRead:
    return await media_admin.attach_to_post(ctx, principal, descriptor_id, payload.post_id, payload.display_order)


@router.delete("/{descriptor_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_media(
    descriptor_id: int,
    principal: AuthenticatedPrincipal = Depends(get_principal),
    ctx: CoreContext = Depends(get_context),
) -> Response:
    await media_admin.delete_media(ctx, principal, descriptor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
