from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import anyio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from medialink.core.config import Settings
from medialink.core.redis_client import close_redis, create_redis
from medialink.db.session import create_engine_for, create_session_factory
from medialink.services.blob_storage import BlobBackend, build_blob_backend
from medialink.services.descriptor_store import DescriptorStore
from medialink.services.events import EventPublisher
from medialink.services.job_bus import SqlJobBus, queue_configs
from medialink.services.media_cache import DescriptorCache, KVCache, MemoryKVCache, RedisKVCache
from medialink.services.video_pipeline import FfmpegToolchain, VideoToolchain

if TYPE_CHECKING:
    from redis.asyncio import Redis as RedisClient

logger = logging.getLogger(__name__)


@dataclass
class CoreContext:
    """Everything a pipeline call needs, passed explicitly instead of read from module globals."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    store: DescriptorStore
    blobs: BlobBackend
    cache: DescriptorCache
    bus: SqlJobBus
    events: EventPublisher
    video_tools: VideoToolchain
    engine: AsyncEngine | None = None
    redis: "RedisClient | None" = None
    cpu_workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    _cpu_limiter: anyio.CapacityLimiter | None = field(default=None, init=False, repr=False)

    @property
    def cpu_limiter(self) -> anyio.CapacityLimiter:
        # Created on first use so it binds to the running event loop.
        if self._cpu_limiter is None:
            self._cpu_limiter = anyio.CapacityLimiter(max(1, int(self.cpu_workers)))
        return self._cpu_limiter

    async def aclose(self) -> None:
        await close_redis(self.redis)
        self.redis = None
        if self.engine is not None:
            await self.engine.dispose()


def build_context(
    settings: Settings,
    *,
    engine: AsyncEngine | None = None,
    redis: "RedisClient | None" = None,
    blobs: BlobBackend | None = None,
    kv: KVCache | None = None,
    video_tools: VideoToolchain | None = None,
) -> CoreContext:
    engine = engine or create_engine_for(settings.database_url)
    session_factory = create_session_factory(engine)
    if redis is None:
        redis = create_redis(settings.redis_url)
    if kv is None:
        kv = RedisKVCache(redis) if redis is not None else MemoryKVCache()
    ctx = CoreContext(
        settings=settings,
        session_factory=session_factory,
        store=DescriptorStore(session_factory),
        blobs=blobs or build_blob_backend(settings),
        cache=DescriptorCache(kv, settings.descriptor_cache_ttl_seconds),
        bus=SqlJobBus(session_factory, queue_configs(settings), redis=redis),
        events=EventPublisher(redis),
        video_tools=video_tools or FfmpegToolchain(settings),
        engine=engine,
        redis=redis,
    )
    logger.info(
        "media_context_ready",
        extra={"blob_backend": settings.blob_backend, "redis": redis is not None},
    )
    return ctx
