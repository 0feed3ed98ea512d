"""Index update events.

Index mutations are announced over Redis pub/sub so other processes holding
their own result caches can drop them. Producers publish JSON payloads on
namespaced channels derived from ``EventType``.

Key concepts
- ``EventType`` identifiers are versioned (``.v1`` suffix)
- ``EventPublisher`` composes channel names as ``{prefix}:{event_type}``
"""

import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List

import redis.asyncio as redis_async
import structlog

logger = structlog.get_logger("search_service.events")


class EventType(Enum):
    """Event types emitted by the indexer."""
    INDEX_UPDATED = "search.index.updated.v1"
    INDEX_CREATED = "search.index.created.v1"
    INDEX_DELETED = "search.index.deleted.v1"


@dataclass
class IndexUpdatedEvent:
    """Emitted after documents were indexed into or removed from an index."""
    index: str
    operation: str
    document_ids: List[str] = field(default_factory=list)
    event_type: str = EventType.INDEX_UPDATED.value
    timestamp: int = 0

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = int(time.time() * 1000)

    @property
    def count(self) -> int:
        return len(self.document_ids)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary."""
        payload = asdict(self)
        payload["count"] = self.count
        return payload

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps(self.to_dict())


class EventPublisher:
    """Publishes index events to Redis.

    Notes
    - Failures are logged and re-raised; the indexer decides whether a
      publish failure matters.
    - Messages are serialized as JSON to keep consumers language-agnostic.
    """

    def __init__(self, redis_url: str, channel_prefix: str = "search_events"):
        self.redis_client = redis_async.from_url(redis_url)
        self.channel_prefix = channel_prefix

    def channel_for(self, event: IndexUpdatedEvent) -> str:
        return f"{self.channel_prefix}:{event.event_type}"

    async def publish(self, event: IndexUpdatedEvent) -> None:
        """Publish an event on the channel derived from its type."""
        channel = self.channel_for(event)
        try:
            await self.redis_client.publish(channel, event.to_json())
            logger.info(
                "Event published",
                channel=channel,
                index=event.index,
                operation=event.operation,
                count=event.count
            )
        except Exception as e:
            logger.error("Failed to publish event", channel=channel, error=str(e))
            raise

    async def close(self) -> None:
        await self.redis_client.close()
