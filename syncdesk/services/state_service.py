from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional

from redis import asyncio as redis_asyncio

from syncdesk.core.config import get_settings
from syncdesk.services.commit_stream import CommitBroadcaster

logger = logging.getLogger(__name__)

_redis: Optional[redis_asyncio.Redis] = None


def get_redis_client() -> redis_asyncio.Redis:
    """Return the shared client for ``REDIS_URL``; connections open lazily."""
    global _redis
    if _redis is None:
        url = get_settings().redis_url
        if not url:
            raise RuntimeError("REDIS_URL is not configured")
        _redis = redis_asyncio.from_url(url, decode_responses=True)
    return _redis


async def close_redis_client() -> None:
    global _redis
    client, _redis = _redis, None
    if client is not None:
        await client.aclose()


class StateService:
    """Mirrors the latest view snapshot into Redis for out-of-process renderers."""

    snapshot_key = "syncdesk:state:latest"

    def __init__(self, redis_client: Optional[redis_asyncio.Redis] = None) -> None:
        self.redis = redis_client or get_redis_client()
        self.pubsub_channel = "syncdesk:state:channel"

    async def set_view_snapshot(self, snapshot: dict[str, Any]) -> None:
        serialized = json.dumps(snapshot, default=str)
        await self.redis.set(self.snapshot_key, serialized)
        await self.redis.publish(self.pubsub_channel, serialized)

    async def get_view_snapshot(self) -> Optional[dict[str, Any]]:
        data = await self.redis.get(self.snapshot_key)
        if not data:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Failed to decode persisted view snapshot; resetting store")
            await self.redis.delete(self.snapshot_key)
            return None

    async def subscribe_snapshots(self) -> AsyncIterator[dict[str, Any]]:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.pubsub_channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message" or not message.get("data"):
                    continue
                try:
                    yield json.loads(message["data"])
                except json.JSONDecodeError:
                    logger.debug("Skipping unreadable snapshot on %s", self.pubsub_channel)
        finally:
            await pubsub.unsubscribe(self.pubsub_channel)
            await pubsub.close()

    async def mirror(self, broadcaster: CommitBroadcaster) -> None:
        """Publish every committed view snapshot until cancelled."""
        async for snapshot in broadcaster.subscribe():
            try:
                await self.set_view_snapshot(snapshot)
            except Exception as exc:  # pragma: no cover - network dependent
                logger.warning("Failed to publish view snapshot: %s", exc)


__all__ = [
    "StateService",
    "close_redis_client",
    "get_redis_client",
]
