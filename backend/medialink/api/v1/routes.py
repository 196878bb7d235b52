from fastapi import APIRouter, Depends

from medialink.api.deps import get_context
from medialink.api.v1 import media
from medialink.core.context import CoreContext
from medialink.core.metrics import snapshot as metrics_snapshot

api_router = APIRouter()

api_router.include_router(media.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/health/ready", tags=["health"])
async def readiness(ctx: CoreContext = Depends(get_context)) -> dict[str, object]:
    return {
        "status": "ok",
        "blob_backend": ctx.settings.blob_backend,
        "redis": ctx.redis is not None,
        "metrics": metrics_snapshot(),
    }
