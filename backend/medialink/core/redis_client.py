from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable
from typing import Any, TYPE_CHECKING, TypeVar, cast

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from redis.asyncio import Redis as RedisClient

T = TypeVar("T")


def create_redis(url: str | None) -> "RedisClient | None":
    """Return a Redis client for ``url``, or None when Redis is not configured."""
    value = (url or "").strip()
    if not value:
        return None
    from redis.asyncio import Redis

    return Redis.from_url(value, encoding="utf-8", decode_responses=True)


async def close_redis(client: "RedisClient | None") -> None:
    if client is None:
        return
    try:
        await client.aclose()
    except Exception:
        logger.exception("redis_close_failed")


async def await_if_needed(result: Awaitable[T] | T) -> T:
    if inspect.isawaitable(result):
        return await cast(Awaitable[T], result)
    return cast(T, result)


def json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def json_loads(raw: str) -> Any:
    return json.loads(raw)
