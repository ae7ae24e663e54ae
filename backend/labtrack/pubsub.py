from __future__ import annotations

import json
import os
from contextlib import suppress
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncIterator
from uuid import UUID

import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
_redis = None


async def get_redis():
    global _redis
    if _redis is None:
        if os.getenv("TESTING") == "1":
            from fakeredis import aioredis
            _redis = aioredis.FakeRedis()
        else:
            _redis = redis.from_url(REDIS_URL)
    return _redis


def reset_redis() -> None:
    # purpose: drop the cached client so each test (and event loop) gets a fresh one
    global _redis
    _redis = None


def change_channel(table: str) -> str:
    return f"changes:{table}"


def notification_channel(user_id: str | UUID) -> str:
    return f"notifications:{user_id}"


def _json_default(value: Any) -> Any:
    # purpose: convert datetime, uuid and numeric column values for event payloads
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def serialize_event(event: dict[str, Any]) -> str:
    # purpose: normalise event dictionaries into JSON strings for redis pub/sub
    return json.dumps(event, default=_json_default)


async def publish_change(table: str, event: dict[str, Any]) -> None:
    """Publish one committed row mutation to sessions watching ``table``."""

    r = await get_redis()
    await r.publish(change_channel(table), serialize_event(event))


async def publish_notification(user_id: str | UUID, payload: dict[str, Any]) -> None:
    # purpose: push a stored notification row to its recipient's channel
    r = await get_redis()
    await r.publish(notification_channel(user_id), serialize_event(payload))


async def open_subscription(channel: str):
    # purpose: subscribe before a session loads its snapshot so no event is missed
    r = await get_redis()
    pubsub = r.pubsub()
    await pubsub.subscribe(channel)
    return pubsub


async def iter_messages(pubsub) -> AsyncIterator[dict[str, Any]]:
    """Yield decoded pub/sub messages of an open subscription as a stream."""

    async for message in pubsub.listen():
        if message.get("type") != "message":
            continue
        data = message.get("data")
        if isinstance(data, bytes):
            data = data.decode()
        yield json.loads(data)


async def close_subscription(pubsub, channel: str) -> None:
    with suppress(Exception):
        await pubsub.unsubscribe(channel)
    with suppress(AttributeError):
        await pubsub.aclose()
