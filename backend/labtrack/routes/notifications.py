from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user
from ..services import notifications as notification_service
from .. import models, schemas, pubsub


async def _publish_read_state(user: models.User, event_type: str, payload: dict) -> None:
    """Tell the user's other sessions that read state changed."""
    event = {
        "type": event_type,
        "data": payload,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    await pubsub.publish_notification(user.id, event)


router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=List[schemas.NotificationOut])
async def list_notifications(
    is_read: Optional[bool] = Query(None, description="Filter by read status"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return notification_service.list_notifications(db, user.id, is_read=is_read, limit=limit)


@router.get("/unread-count", response_model=schemas.UnreadCountOut)
async def unread_count(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return schemas.UnreadCountOut(unread=notification_service.unread_count(db, user.id))


@router.post("/mark-all-read")
async def mark_all_read(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    updated = notification_service.mark_all_read(db, user.id)
    await _publish_read_state(user, "notifications_read_all", {"updated": updated})
    return {"updated": updated}


@router.post("/{notification_id}/read", response_model=schemas.NotificationOut)
async def mark_read(
    notification_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    notification = notification_service.mark_read(db, notification_id, user.id)
    await _publish_read_state(user, "notification_read", {"id": str(notification.id)})
    return notification
