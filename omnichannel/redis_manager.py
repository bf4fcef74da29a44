from __future__ import annotations

import json
import logging
import uuid
from typing import TYPE_CHECKING, Optional

import redis.asyncio as redis
from fastapi import HTTPException, Request, Response
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter

if TYPE_CHECKING:
    from .realtime import ConnectionManager

log = logging.getLogger(__name__)

ROOM_EVENTS_CHANNEL = "ws_room_events"


class RedisManager:
    """Optional Redis link: cross-process room fan-out and the login rate limiter backend."""

    def __init__(self, redis_url: str | None = None, channel: str = ROOM_EVENTS_CHANNEL):
        self.redis_url = redis_url
        self.channel = channel
        self.redis_client: Optional[redis.Redis] = None
        # Lets a process skip its own publications; they were already delivered locally.
        self.origin = uuid.uuid4().hex

    async def connect(self) -> None:
        if not self.redis_url:
            return
        try:
            self.redis_client = redis.from_url(self.redis_url)
            await self.redis_client.ping()
            log.info("Redis connected")
        except Exception as exc:
            log.warning("Redis connection failed: %s", exc)
            self.redis_client = None

    async def close(self) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.aclose()
        except Exception as exc:
            log.debug("Redis close error: %s", exc)
        self.redis_client = None

    async def publish_room_event(self, room: str, frame: dict) -> None:
        """Publish a room broadcast so other processes can deliver it to their sockets."""
        if not self.redis_client:
            return
        try:
            payload = json.dumps({"origin": self.origin, "room": room, "frame": frame}, default=str)
            await self.redis_client.publish(self.channel, payload)
        except Exception as exc:
            log.warning("Redis publish error: %s", exc)

    async def subscribe_room_events(self, connection_manager: "ConnectionManager") -> None:
        """Subscribe to room events and forward them to local connections only."""
        if not self.redis_client:
            return
        try:
            pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
            await pubsub.subscribe(self.channel)
            async for msg in pubsub.listen():
                try:
                    if not msg or msg.get("type") != "message":
                        continue
                    data = json.loads(msg.get("data"))
                    if data.get("origin") == self.origin:
                        continue
                    room = data.get("room")
                    frame = data.get("frame")
                    if room and frame:
                        await connection_manager.send_local(room, frame)
                except Exception as inner_exc:
                    log.debug("room event subscriber error: %s", inner_exc)
        except Exception as exc:
            log.warning("Redis subscribe error: %s", exc)

    async def init_limiter(self) -> bool:
        if not self.redis_client:
            return False
        try:
            await FastAPILimiter.init(self.redis_client)
            return True
        except Exception as exc:
            log.warning("Rate limiter init failed: %s", exc)
            return False


def optional_rate_limit(times: int, seconds: int):
    """Rate-limit dependency that no-ops when the limiter was never initialised."""

    async def _limit(request: Request, response: Response):
        if not FastAPILimiter.redis or times <= 0:
            return
        limiter = RateLimiter(times=times, seconds=seconds)
        try:
            return await limiter(request, response)
        except HTTPException:
            raise
        except Exception as exc:
            log.warning("rate limiter unavailable: %s", exc)

    return _limit
