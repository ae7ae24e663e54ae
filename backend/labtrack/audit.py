from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import models

SEVERITY_LEVELS = ("info", "warning", "error", "critical")


def _plain(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    return value


def _snapshot(values: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if values is None:
        return None
    return {key: _plain(value) for key, value in values.items()}


def diff_values(old: Mapping[str, Any] | None, new: Mapping[str, Any] | None) -> dict[str, dict[str, Any]]:
    """Return ``{key: {"old": ..., "new": ...}}`` for every key whose value changed."""

    old = _snapshot(old) or {}
    new = _snapshot(new) or {}
    changes: dict[str, dict[str, Any]] = {}
    for key in sorted(set(old) | set(new)):
        if key == "updated_at":
            continue
        if old.get(key) != new.get(key):
            changes[key] = {"old": old.get(key), "new": new.get(key)}
    return changes


def log_action(
    db: Session,
    user_id: str | UUID | None,
    action: str,
    entity_type: str,
    entity_id: str | UUID | None = None,
    entity_name: str | None = None,
    old_values: Mapping[str, Any] | None = None,
    new_values: Mapping[str, Any] | None = None,
    severity: str = "info",
    success: bool = True,
):
    """Stage an activity log row in the caller's transaction (no commit)."""

    if severity not in SEVERITY_LEVELS:
        severity = "info"
    log = models.ActivityLog(
        user_id=UUID(str(user_id)) if user_id else None,
        action_type=action,
        entity_type=entity_type,
        entity_id=UUID(str(entity_id)) if entity_id else None,
        entity_name=entity_name,
        old_values=_snapshot(old_values),
        new_values=_snapshot(new_values),
        changes=diff_values(old_values, new_values),
        severity_level=severity,
        success=success,
        created_at=datetime.now(timezone.utc),
    )
    db.add(log)
    return log


def generate_report(
    db: Session,
    start: datetime,
    end: datetime,
    user_id: UUID | None = None,
):
    query = db.query(models.ActivityLog).filter(
        models.ActivityLog.created_at >= start,
        models.ActivityLog.created_at <= end,
    )
    if user_id:
        query = query.filter(models.ActivityLog.user_id == user_id)
    rows = (
        query.with_entities(models.ActivityLog.action_type, func.count(models.ActivityLog.id))
        .group_by(models.ActivityLog.action_type)
        .all()
    )
    return [{"action": r[0], "count": r[1]} for r in rows]
