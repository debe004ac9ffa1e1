import json

import redis.asyncio as redis


def create_redis(redis_url: str) -> redis.Redis:
    return redis.from_url(redis_url, decode_responses=True)


async def close_redis(r: redis.Redis | None) -> None:
    if r is not None:
        await r.aclose()


async def publish_notification(r: redis.Redis, channel: str, message: dict) -> int:
    """
    Hand an order notification to external mailers/SMS senders subscribed on channel.
    Returns the number of subscribers that received it.
    """
    return await r.publish(channel, json.dumps(message, default=str))
