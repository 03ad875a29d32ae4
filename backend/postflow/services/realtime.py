"""
Realtime broadcaster: publication events over Redis pub/sub.

Events are published to `publications:{workspace}` and, when a brand is
given, also to `publications:{workspace}:{brand}`. A websocket gateway
subscribes to these channels and fans out to browsers. Best-effort: a
broadcast failure is logged and never reaches the caller.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from postflow.settings import get_settings

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "publications"


def channels_for(workspace_id: str, brand_id: str | None = None) -> list[str]:
    channels = [f"{CHANNEL_PREFIX}:{workspace_id}"]
    if brand_id:
        channels.append(f"{CHANNEL_PREFIX}:{workspace_id}:{brand_id}")
    return channels


class RedisBroadcaster:
    def __init__(self, client: aioredis.Redis | None = None):
        self._client = client

    def _get_redis(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(get_settings().redis_url, decode_responses=True)
        return self._client

    async def broadcast_event(
        self, workspace_id: str, event_type: str, data: dict[str, Any], brand_id: str | None = None
    ) -> None:
        message = json.dumps(
            {
                "type": event_type,
                "data": data,
                "ts": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        try:
            r = self._get_redis()
            for channel in channels_for(workspace_id, brand_id):
                await r.publish(channel, message)
        except (RedisError, OSError) as e:
            logger.warning(f"[realtime] broadcast {event_type} for workspace {workspace_id} failed: {e}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
