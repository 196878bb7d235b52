from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from medialink.api.v1 import api_router
from medialink.api.v1 import blobs
from medialink.core.config import Settings, get_settings
from medialink.core.context import CoreContext, build_context
from medialink.core.errors import MediaError
from medialink.core.logging_config import configure_logging
from medialink.core.sentry import init_sentry
from medialink.core.startup_checks import validate_production_settings
from medialink.middleware import RequestLoggingMiddleware
from medialink.schemas.error import ErrorResponse


def get_application(settings: Settings | None = None, context: CoreContext | None = None) -> FastAPI:
    settings = settings or (context.settings if context is not None else get_settings())
    configure_logging(settings.log_json)
    init_sentry(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        validate_production_settings(settings)
        owned = context is None
        app.state.context = context or build_context(settings)
        try:
            yield
        finally:
            if owned:
                await app.state.context.aclose()

    tags_metadata = [
        {"name": "media", "description": "Upload tickets, descriptors and variants"},
        {"name": "blobs", "description": "Local blob backend endpoints"},
        {"name": "health", "description": "Liveness and readiness"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    if context is not None:
        app.state.context = context
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")
    app.include_router(blobs.router)

    @app.exception_handler(MediaError)
    async def media_error_handler(request: Request, exc: MediaError):
        payload = ErrorResponse(detail=exc.detail, code=exc.code, reason=getattr(exc, "reason", None))
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail=errors, code="validation_error")
        return JSONResponse(status_code=422, content=payload.model_dump())

    return app


app = get_application()
