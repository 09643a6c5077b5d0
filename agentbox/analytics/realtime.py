"""Live feed of webhook outcomes for the demo dashboard."""

import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional, Set

from redis.asyncio import Redis
from redis.exceptions import RedisError

CHANNEL_NAME = os.getenv("DEMO_STREAM_CHANNEL", "agentbox:webhooks")
DEFAULT_MAX_QUEUE_SIZE = int(os.getenv("DEMO_STREAM_QUEUE", "256"))

logger = logging.getLogger("analytics.realtime")


class OutcomeFeed:
    """Delivers each recorded webhook outcome to every websocket listener.

    With a Redis URL, outcomes go through a pub/sub channel so that every
    API process sees them; a relay task per process copies the channel into
    the local listener queues. Without one, delivery stays in-process.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        channel: str = CHANNEL_NAME,
        queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
    ):
        self.redis_url = redis_url
        self.channel = channel
        self.queue_size = queue_size
        self._redis: Optional[Redis] = None
        self._relay: Optional[asyncio.Task] = None
        self._listeners: Set[asyncio.Queue] = set()

    def _client(self) -> Optional[Redis]:
        if self._redis is None:
            url = self.redis_url if self.redis_url is not None else os.getenv("REDIS_URL")
            if not url:
                return None
            try:
                self._redis = Redis.from_url(url)
            except ValueError as exc:
                logger.warning("Invalid REDIS_URL, keeping the feed in-process: %s", exc)
                self.redis_url = ""
                return None
        return self._redis

    async def publish(self, outcome: Dict[str, Any]) -> None:
        client = self._client()
        if client is not None:
            try:
                await client.publish(self.channel, json.dumps(outcome, default=str))
                return
            except RedisError as exc:
                logger.warning("Publishing to %s failed, delivering locally: %s", self.channel, exc)
        self._deliver(outcome)

    def _deliver(self, outcome: Dict[str, Any]) -> None:
        for queue in list(self._listeners):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(outcome)

    async def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._listeners.add(queue)
        client = self._client()
        if client is not None and (self._relay is None or self._relay.done()):
            self._relay = asyncio.create_task(self._relay_channel(client))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._listeners.discard(queue)

    async def _relay_channel(self, client: Redis) -> None:
        pubsub = client.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    outcome = json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("Dropping malformed outcome on %s", self.channel)
                    continue
                self._deliver(outcome)
        except RedisError as exc:
            logger.error("Relay from %s stopped: %s", self.channel, exc)
        finally:
            await pubsub.aclose()


feed = OutcomeFeed()
