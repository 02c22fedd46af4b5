import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional
import redis.asyncio as redis

from shared import metrics
from shared.models import utcnow

logger = logging.getLogger(__name__)


class RedisStreamClient:
    """Wrapper for Redis Streams with consumer group support."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.redis: Optional[redis.Redis] = None

    async def connect(self):
        self.redis = redis.from_url(self.redis_url, decode_responses=True)

    async def close(self):
        if self.redis:
            await self.redis.aclose()

    async def publish(self, stream: str, data: dict) -> str:
        """Publish a message to a stream. Returns message ID."""
        data["_timestamp"] = utcnow().isoformat()
        msg_id = await self.redis.xadd(stream, {"payload": json.dumps(data, default=str)})
        metrics.STREAM_MESSAGES_PUBLISHED.labels(stream=stream).inc()
        logger.info(f"Published to {stream}", extra={"stream": stream, "msg_id": msg_id})
        return msg_id

    async def ensure_consumer_group(self, stream: str, group: str):
        """Create consumer group if it doesn't exist."""
        try:
            await self.redis.xgroup_create(stream, group, id="0", mkstream=True)
            logger.info(f"Created consumer group {group} for stream {stream}")
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def consume(
        self,
        stream: str,
        group: str,
        consumer: str,
        handler: Callable[[dict], Awaitable[None]],
        batch_size: int = 10,
        block_ms: int = 5000
    ):
        """Consume messages from a stream with exponential backoff on failures.

        A message is acknowledged only after its handler returns; failed
        messages stay pending for the group.
        """
        await self.ensure_consumer_group(stream, group)
        backoff = 1
        max_backoff = 60

        while True:
            try:
                messages = await self.redis.xreadgroup(
                    groupname=group,
                    consumername=consumer,
                    streams={stream: ">"},
                    count=batch_size,
                    block=block_ms
                )

                if messages:
                    backoff = 1
                    for stream_name, stream_messages in messages:
                        for msg_id, msg_data in stream_messages:
                            try:
                                payload = json.loads(msg_data.get("payload", "{}"))
                                await handler(payload)
                                await self.redis.xack(stream, group, msg_id)
                                metrics.STREAM_MESSAGES_CONSUMED.labels(
                                    stream=stream, consumer_group=group
                                ).inc()
                            except Exception as e:
                                logger.error(
                                    f"Handler failed for {msg_id}: {e}",
                                    extra={"stream": stream, "msg_id": msg_id}
                                )

            except redis.ConnectionError as e:
                logger.warning(f"Redis connection error, backing off {backoff}s: {e}")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)
            except Exception as e:
                logger.error(f"Unexpected error in consumer: {e}")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)


async def publish_transition(publisher, stream: str, data: dict) -> Optional[str]:
    """Publish a transition event after its transaction has committed.

    The transition is already durable, so a failed publish is logged and
    counted rather than raised back to the caller.
    """
    if publisher is None:
        return None
    try:
        return await publisher.publish(stream, data)
    except Exception:
        metrics.STREAM_PUBLISH_FAILURES.labels(stream=stream).inc()
        logger.exception(
            f"Failed to publish to {stream}",
            extra={"stream": stream, "entry_id": data.get("entry_id")}
        )
        return None


# Stream names as constants
STREAM_CLAIM_INITIATED = "claims:initiated"
STREAM_CLAIM_VERIFIED = "claims:verified"
STREAM_CLAIM_REJECTED = "claims:rejected"
STREAM_AUTO_MISS_APPLIED = "entries:auto_missed"
