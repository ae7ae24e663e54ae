import os
from uuid import UUID

import redis
from celery import Celery
from celery.utils.log import get_task_logger

from .database import SessionLocal
from . import models, pubsub

logger = get_task_logger(__name__)

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
celery_app = Celery("labtrack", broker=CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or os.getenv("TESTING") == "1"
)

_sync_redis = None


def get_sync_redis():
    global _sync_redis
    if _sync_redis is None:
        if os.getenv("TESTING") == "1":
            import fakeredis
            _sync_redis = fakeredis.FakeRedis()
        else:
            _sync_redis = redis.Redis.from_url(pubsub.REDIS_URL)
    return _sync_redis


@celery_app.task(
    autoretry_for=(redis.exceptions.RedisError,),
    retry_backoff=True,
    max_retries=5,
)
def redeliver_notifications(event_id: str) -> int:
    """Republish every stored notification row of one event.

    Receivers deduplicate by notification id, so pushing a row twice is safe.
    """

    db = SessionLocal()
    try:
        rows = (
            db.query(models.Notification)
            .filter(models.Notification.event_id == UUID(event_id))
            .all()
        )
        client = get_sync_redis()
        for row in rows:
            payload = {
                "id": str(row.id),
                "event_id": str(row.event_id),
                "user_id": str(row.user_id),
                "actor_id": str(row.actor_id) if row.actor_id else None,
                "action_type": row.action_type,
                "entity_type": row.entity_type,
                "entity_id": str(row.entity_id) if row.entity_id else None,
                "entity_name": row.entity_name,
                "message": row.message,
                "is_read": row.is_read,
                "created_at": row.created_at,
                "type": "notification",
            }
            client.publish(pubsub.notification_channel(row.user_id), pubsub.serialize_event(payload))
        logger.info("Redelivered %d notification(s) for event %s", len(rows), event_id)
        return len(rows)
    finally:
        db.close()


def enqueue_redeliver_notifications(event_id: str):
    if celery_app.conf.task_always_eager:
        return redeliver_notifications(event_id)
    return redeliver_notifications.delay(event_id)
