"""Notification fan-out (sender side) and the server read model.

One logical event becomes one row per recipient, inserted by a single
statement in its own transaction, and only afterwards pushed to each
recipient's channel. Delivery is best effort: a failed insert or publish is
logged and handed to the redelivery task, never raised into the transition
that triggered it.
"""

# purpose: fan out deduplicated notification rows and expose read/unread state
# status: active
# depends_on: labtrack.store, labtrack.pubsub, labtrack.tasks

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable
from uuid import UUID

from redis.exceptions import RedisError
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from .. import models, pubsub
from ..exceptions import EntityNotFound, PartialFanoutFailure, StoreUnavailable
from ..store import EntityStore, build_message, row_to_dict

logger = logging.getLogger(__name__)

__all__ = [
    "FanoutResult",
    "build_message",
    "list_notifications",
    "mark_all_read",
    "mark_read",
    "notification_payload",
    "notify_all",
    "unread_count",
]


@dataclass
class FanoutResult:
    event_id: UUID
    delivered: list[UUID] = field(default_factory=list)
    failed: list[UUID] = field(default_factory=list)
    inserted: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.failed and self.error is None


def notification_payload(row: Any) -> dict[str, Any]:
    data = dict(row) if isinstance(row, dict) else row_to_dict(row)
    data["type"] = "notification"
    return data


async def _publish_rows(rows: list[dict[str, Any]], result: FanoutResult) -> None:
    for row in rows:
        recipient = row["user_id"]
        try:
            await pubsub.publish_notification(recipient, notification_payload(row))
            result.delivered.append(recipient)
        except (RedisError, OSError) as exc:
            logger.warning("Notification %s not pushed to %s: %s", row["id"], recipient, exc)
            result.failed.append(recipient)


async def notify_all(
    db: Session,
    actor_id: Any,
    action_verb: str,
    subject_type: str,
    subject_id: Any,
    subject_name: str | None,
    recipient_ids: Iterable[Any] | None = None,
    target_id: Any = None,
    event_id: UUID | None = None,
) -> FanoutResult:
    """Notify every recipient of one event exactly once.

    Recipients default to all active users. Calling again with the same
    ``event_id`` inserts and pushes nothing for recipients already notified.
    """

    event_id = event_id or uuid.uuid4()
    result = FanoutResult(event_id=event_id)
    store = EntityStore(db)
    try:
        rows = store.create_notification(
            action_verb,
            subject_type,
            subject_id,
            subject_name,
            actor_id,
            target_id=target_id,
            recipient_ids=recipient_ids,
            event_id=event_id,
        )
        store.commit()
    except StoreUnavailable as exc:
        logger.error(
            "Notification fan-out for %s %s (%s) not stored: %s",
            subject_type,
            subject_id,
            action_verb,
            exc,
        )
        result.error = exc.code
        return result

    result.inserted = len(rows)
    await _publish_rows(rows, result)
    if result.failed:
        failure = PartialFanoutFailure(event_id, result.failed)
        logger.warning("%s", failure.message, extra={"event_id": str(event_id)})
        _schedule_redelivery(event_id)
    return result


def _schedule_redelivery(event_id: UUID) -> None:
    from ..tasks import enqueue_redeliver_notifications

    enqueue_redeliver_notifications(str(event_id))


def list_notifications(
    db: Session,
    recipient_id: Any,
    is_read: bool | None = None,
    limit: int | None = None,
) -> list[models.Notification]:
    query = db.query(models.Notification).filter(models.Notification.user_id == recipient_id)
    if is_read is not None:
        query = query.filter(models.Notification.is_read.is_(is_read))
    query = query.order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def unread_count(db: Session, recipient_id: Any) -> int:
    return (
        db.query(func.count(models.Notification.id))
        .filter(
            models.Notification.user_id == recipient_id,
            models.Notification.is_read.is_(False),
        )
        .scalar()
        or 0
    )


def mark_read(db: Session, notification_id: Any, recipient_id: Any) -> models.Notification:
    notification = db.get(models.Notification, notification_id)
    if notification is None or notification.user_id != recipient_id:
        raise EntityNotFound("notifications", notification_id)
    if not notification.is_read:
        notification.is_read = True
        db.commit()
        db.refresh(notification)
    return notification


def mark_all_read(db: Session, recipient_id: Any) -> int:
    result = db.execute(
        update(models.Notification)
        .where(
            models.Notification.user_id == recipient_id,
            models.Notification.is_read.is_(False),
        )
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0
