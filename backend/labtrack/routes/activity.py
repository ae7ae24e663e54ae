from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import require_hod
from .. import audit, models, schemas

router = APIRouter(prefix="/api/activity", tags=["activity"])


@router.get("", response_model=List[schemas.ActivityLogOut])
async def list_activity(
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[UUID] = Query(None),
    user_id: Optional[UUID] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    user: models.User = Depends(require_hod),
):
    query = db.query(models.ActivityLog)
    if entity_type:
        query = query.filter(models.ActivityLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(models.ActivityLog.entity_id == entity_id)
    if user_id:
        query = query.filter(models.ActivityLog.user_id == user_id)
    return query.order_by(models.ActivityLog.created_at.desc()).limit(limit).all()


@router.get("/report", response_model=List[schemas.ActivityReportRow])
async def activity_report(
    start: datetime,
    end: datetime,
    user_id: Optional[UUID] = None,
    db: Session = Depends(get_db),
    user: models.User = Depends(require_hod),
):
    return audit.generate_report(db, start, end, user_id)
