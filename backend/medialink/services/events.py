from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TYPE_CHECKING

from medialink.core.redis_client import await_if_needed, json_dumps
from medialink.models.media import MediaDescriptor, utcnow

if TYPE_CHECKING:
    from redis.asyncio import Redis as RedisClient

logger = logging.getLogger(__name__)

EVENTS_CHANNEL = "media:events"

MEDIA_UPLOADED = "media:uploaded"
MEDIA_PROCESSING = "media:processing"
MEDIA_READY = "media:ready"
MEDIA_FAILED = "media:failed"
MEDIA_DELETED = "media:deleted"
EVENT_TYPES = frozenset({MEDIA_UPLOADED, MEDIA_PROCESSING, MEDIA_READY, MEDIA_FAILED, MEDIA_DELETED})


@dataclass(frozen=True, slots=True)
class DescriptorEvent:
    type: str
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        return json_dumps({"type": self.type, "timestamp": self.timestamp.isoformat(), "data": self.data})


class EventPublisher:
    """Logs descriptor events and fans them out on a Redis channel when one is configured."""

    def __init__(self, redis: "RedisClient | None" = None) -> None:
        self.redis = redis
        self.sent: list[DescriptorEvent] = []
        self.keep_history = redis is None

    async def emit(self, event_type: str, **data: Any) -> DescriptorEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown descriptor event: {event_type}")
        event = DescriptorEvent(type=event_type, data=data)
        logger.info("media_event", extra={"event_type": event_type, "event_data": data})
        if self.keep_history:
            self.sent.append(event)
            del self.sent[:-500]
        if self.redis is not None:
            try:
                await await_if_needed(self.redis.publish(EVENTS_CHANNEL, event.to_json()))
            except Exception as exc:
                logger.warning("media_event_publish_failed", extra={"event_type": event_type, "error": str(exc)})
        return event

    async def for_descriptor(self, event_type: str, row: MediaDescriptor, **extra: Any) -> DescriptorEvent:
        return await self.emit(
            event_type,
            descriptor_id=row.id,
            media_id=row.media_id,
            owner=row.owner_id,
            media_type=row.media_type.value,
            status=row.status.value,
            **extra,
        )
