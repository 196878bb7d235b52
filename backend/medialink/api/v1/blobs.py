from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from medialink.api.deps import get_context
from medialink.core.context import CoreContext
from medialink.services.blob_storage import PUBLIC, PUBLIC_CACHE_CONTROL, LocalBlobBackend

router = APIRouter(prefix="/blobs", tags=["blobs"])


def _local_backend(ctx: CoreContext = Depends(get_context)) -> LocalBlobBackend:
    if not isinstance(ctx.blobs, LocalBlobBackend):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return ctx.blobs


@router.put("/private/{blob_name}", status_code=status.HTTP_201_CREATED)
async def put_signed_blob(
    blob_name: str,
    request: Request,
    backend: LocalBlobBackend = Depends(_local_backend),
    ctx: CoreContext = Depends(get_context),
) -> Response:
    limit = max(ctx.settings.max_image_bytes, ctx.settings.max_video_bytes)
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Upload too large")
    chunks: list[bytes] = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Upload too large")
        chunks.append(chunk)
    await backend.accept_signed_write(
        blob_name,
        b"".join(chunks),
        content_type=request.headers.get("content-type"),
        params=dict(request.query_params),
    )
    return Response(status_code=status.HTTP_201_CREATED)


@router.get("/public/{blob_name}")
async def get_public_blob(blob_name: str, backend: LocalBlobBackend = Depends(_local_backend)) -> Response:
    blob = await backend.download(PUBLIC, blob_name)
    return Response(
        content=blob.data,
        media_type=blob.content_type or "application/octet-stream",
        headers={"Cache-Control": PUBLIC_CACHE_CONTROL},
    )
