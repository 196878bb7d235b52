"""Purpose-keyed cache for descriptors and variant URLs.

Key families (all TTL bounded):

- ``media:{id}:descriptor``: the descriptor JSON exactly as served
- ``media:{id}:{purpose}``: one variant URL
- ``profile:{user_id}:{purpose}``: a profile-picture variant URL tagged with the
  descriptor it was read from

Cache failures never reach callers; reads fall through to the store.
"""

from __future__ import annotations

import logging
import time
from typing import Protocol, TYPE_CHECKING

from medialink.core import metrics
from medialink.core.redis_client import await_if_needed, json_dumps, json_loads
from medialink.models.media import MediaPurpose

if TYPE_CHECKING:
    from redis.asyncio import Redis as RedisClient

logger = logging.getLogger(__name__)


class KVCache(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> None: ...


class RedisKVCache:
    def __init__(self, client: "RedisClient") -> None:
        self.client = client

    async def get(self, key: str) -> str | None:
        return await await_if_needed(self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await await_if_needed(self.client.set(key, value, ex=max(1, int(ttl_seconds))))

    async def delete(self, *keys: str) -> None:
        if keys:
            await await_if_needed(self.client.delete(*keys))


class MemoryKVCache:
    """Process-local fallback used when Redis is not configured."""

    def __init__(self, clock=time.monotonic) -> None:
        self.clock = clock
        self._items: dict[str, tuple[float, str]] = {}

    async def get(self, key: str) -> str | None:
        item = self._items.get(key)
        if item is None:
            return None
        expires_at, value = item
        if expires_at <= self.clock():
            self._items.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._items[key] = (self.clock() + max(1, int(ttl_seconds)), value)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._items.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._items)


def descriptor_key(descriptor_id: int) -> str:
    return f"media:{descriptor_id}:descriptor"


def variant_key(descriptor_id: int, purpose: MediaPurpose) -> str:
    return f"media:{descriptor_id}:{purpose.value}"


def profile_key(user_id: str, purpose: MediaPurpose) -> str:
    return f"profile:{user_id}:{purpose.value}"


class DescriptorCache:
    def __init__(self, kv: KVCache, ttl_seconds: int = 3600) -> None:
        self.kv = kv
        self.ttl_seconds = int(ttl_seconds)

    async def _get(self, key: str) -> str | None:
        try:
            value = await self.kv.get(key)
        except Exception as exc:
            logger.warning("media_cache_get_failed", extra={"key": key, "error": str(exc)})
            return None
        if value is None:
            metrics.record_cache_miss()
        else:
            metrics.record_cache_hit()
        return value

    async def _set(self, key: str, value: str) -> None:
        try:
            await self.kv.set(key, value, self.ttl_seconds)
        except Exception as exc:
            logger.warning("media_cache_set_failed", extra={"key": key, "error": str(exc)})

    async def get_descriptor(self, descriptor_id: int) -> str | None:
        return await self._get(descriptor_key(descriptor_id))

    async def set_descriptor(self, descriptor_id: int, payload: str) -> None:
        await self._set(descriptor_key(descriptor_id), payload)

    async def get_variant(self, descriptor_id: int, purpose: MediaPurpose) -> str | None:
        return await self._get(variant_key(descriptor_id, purpose))

    async def set_variant(self, descriptor_id: int, purpose: MediaPurpose, url: str) -> None:
        await self._set(variant_key(descriptor_id, purpose), url)

    async def get_profile(self, user_id: str, purpose: MediaPurpose, descriptor_id: int) -> str | None:
        """Cached URL, or None when the entry was filled from another descriptor."""
        raw = await self._get(profile_key(user_id, purpose))
        if raw is None:
            return None
        try:
            entry = json_loads(raw)
        except ValueError:
            return None
        if not isinstance(entry, dict) or entry.get("descriptor_id") != descriptor_id:
            return None
        return entry.get("url")

    async def set_profile(self, user_id: str, purpose: MediaPurpose, descriptor_id: int, url: str) -> None:
        await self._set(profile_key(user_id, purpose), json_dumps({"descriptor_id": descriptor_id, "url": url}))

    async def invalidate(self, descriptor_id: int, *, owner: str | None = None) -> None:
        """Drop every key family for ``descriptor_id`` by enumerating the purpose set."""
        keys = [descriptor_key(descriptor_id)]
        keys.extend(variant_key(descriptor_id, purpose) for purpose in MediaPurpose)
        if owner:
            keys.extend(profile_key(owner, purpose) for purpose in MediaPurpose)
        try:
            await self.kv.delete(*keys)
        except Exception as exc:
            logger.warning("media_cache_invalidate_failed", extra={"descriptor_id": descriptor_id, "error": str(exc)})
