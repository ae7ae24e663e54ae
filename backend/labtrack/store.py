"""Entity store adapter over SQLAlchemy plus the Redis change feed.

Every write goes through :class:`EntityStore` so that each committed row
produces exactly one change event carrying the full current row. Events are
buffered in an outbox until :meth:`EntityStore.commit` succeeds and are then
published by :meth:`EntityStore.publish_pending`; a rolled back transaction
publishes nothing.
"""

# purpose: transactional CRUD, conditional updates and change events for workflow tables
# status: active
# depends_on: labtrack.database, labtrack.models, labtrack.pubsub

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Iterable, Iterator, Mapping
from uuid import UUID

from redis.exceptions import RedisError
from sqlalchemy import and_, inspect, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Query, Session

from . import models, pubsub
from .exceptions import EntityNotFound, StoreUnavailable
from .realtime.filters import FilterPredicate

logger = logging.getLogger(__name__)

TABLES: dict[str, type] = {
    "labs": models.Lab,
    "users": models.User,
    "asset_types": models.AssetType,
    "equipment": models.Equipment,
    "deleted_equipment": models.DeletedEquipment,
    "transfers": models.Transfer,
    "issues": models.Issue,
    "notifications": models.Notification,
    "activity_logs": models.ActivityLog,
}

# tables whose mutations are pushed to connected sessions
WATCHED_TABLES = ("equipment", "deleted_equipment", "transfers", "issues")

NOTIFICATION_MESSAGES = {
    "insert": "New {entity_type} created: {entity_name}",
    "update": "{entity_type} updated: {entity_name}",
    "delete": "{entity_type} deleted: {entity_name}",
    "transfer": "{entity_type} transferred: {entity_name}",
    "approve": "{entity_type} approved: {entity_name}",
    "reject": "{entity_type} rejected: {entity_name}",
    "resolve": "{entity_type} resolved: {entity_name}",
    "report": "New {entity_type} reported: {entity_name}",
    "receive": "{entity_type} received: {entity_name}",
    "restore": "{entity_type} restored: {entity_name}",
    "purge": "{entity_type} permanently deleted: {entity_name}",
}
DEFAULT_NOTIFICATION_MESSAGE = "Action performed on {entity_type}: {entity_name}"


def build_message(action_type: str, entity_type: str, entity_name: str | None) -> str:
    template = NOTIFICATION_MESSAGES.get(action_type, DEFAULT_NOTIFICATION_MESSAGE)
    message = template.format(entity_type=entity_type, entity_name=entity_name or "")
    return message[:1].upper() + message[1:]


def model_for(table: str) -> type:
    try:
        return TABLES[table]
    except KeyError:
        raise ValueError(f"unknown table {table!r}") from None


def row_to_dict(row: Any) -> dict[str, Any]:
    """Return every mapped column of ``row``; joined/display data is never included."""

    mapper = inspect(row).mapper
    return {attr.key: getattr(row, attr.key) for attr in mapper.column_attrs}


@dataclass
class ChangeEvent:
    event_type: str
    table: str
    record: dict[str, Any]
    committed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "table": self.table,
            "record": self.record,
            "committed_at": self.committed_at,
        }


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        logger.error("Store unavailable during %s: %s", action, exc)
        raise StoreUnavailable(f"store unavailable during {action}") from exc


def _as_uuid(value: Any) -> UUID | None:
    if value is None or isinstance(value, UUID):
        return value
    return UUID(str(value))


def _derive_equipment(patch: Mapping[str, Any]) -> dict[str, Any]:
    """Keep ``fully_approved`` equal to the conjunction of both slots.

    The flag is computed by the database from the other slot's current value
    inside the same UPDATE, so two approvers racing on different slots cannot
    leave it stale.
    """

    Equipment = models.Equipment
    derived: dict[str, Any] = {}
    if "approved_by_incharge" in patch and "approved_by_hod" in patch:
        derived["fully_approved"] = patch["approved_by_incharge"] is not None and patch["approved_by_hod"] is not None
    elif "approved_by_incharge" in patch:
        derived["fully_approved"] = (
            Equipment.approved_by_hod.isnot(None) if patch["approved_by_incharge"] is not None else False
        )
    elif "approved_by_hod" in patch:
        derived["fully_approved"] = (
            Equipment.approved_by_incharge.isnot(None) if patch["approved_by_hod"] is not None else False
        )
    return derived


_DERIVED = {"equipment": _derive_equipment}


def apply_filter(query: Query, table: str, predicate: FilterPredicate | None) -> Query:
    """Translate a :class:`FilterPredicate` into SQL for one table."""

    if predicate is None or predicate.is_empty:
        return query
    Equipment = models.Equipment

    if table == "equipment":
        if predicate.search:
            term = f"%{predicate.search}%"
            query = query.filter(
                or_(
                    Equipment.name.ilike(term),
                    Equipment.asset_code.ilike(term),
                    Equipment.description.ilike(term),
                    Equipment.invoice_number.ilike(term),
                )
            )
        if predicate.status == "approved":
            query = query.filter(Equipment.fully_approved.is_(True))
        elif predicate.status == "pending":
            query = query.filter(Equipment.fully_approved.is_(False))
        elif predicate.status == "deleted":
            query = query.filter(Equipment.is_deleted.is_(True))
        if predicate.lab_id:
            query = query.filter(Equipment.allocated_lab == _as_uuid(predicate.lab_id))
        if predicate.type_id:
            query = query.filter(Equipment.asset_type_id == _as_uuid(predicate.type_id))
        date_column = Equipment.created_at
    elif table in ("transfers", "issues"):
        Model = model_for(table)
        query = query.join(Equipment, Model.equipment_id == Equipment.id)
        if predicate.search:
            term = f"%{predicate.search}%"
            clauses = [Equipment.name.ilike(term), Equipment.asset_code.ilike(term)]
            if table == "issues":
                clauses += [Model.description.ilike(term), Model.remark.ilike(term)]
            query = query.filter(or_(*clauses))
        if predicate.status:
            query = query.filter(Model.status == predicate.status)
        if predicate.lab_id:
            lab = _as_uuid(predicate.lab_id)
            if table == "transfers":
                query = query.filter(or_(Model.from_lab == lab, Model.to_lab == lab))
            else:
                query = query.filter(Equipment.allocated_lab == lab)
        if predicate.type_id:
            query = query.filter(Equipment.asset_type_id == _as_uuid(predicate.type_id))
        date_column = Model.initiated_at if table == "transfers" else Model.reported_at
    elif table == "deleted_equipment":
        Tombstone = models.DeletedEquipment
        if predicate.search:
            query = query.filter(Tombstone.name.ilike(f"%{predicate.search}%"))
        if predicate.status:
            query = query.filter(Tombstone.status == predicate.status)
        if predicate.lab_id:
            query = query.filter(Tombstone.allocated_lab == _as_uuid(predicate.lab_id))
        date_column = Tombstone.deleted_at
    else:
        return query

    if predicate.date_from:
        query = query.filter(date_column >= datetime.combine(predicate.date_from, time.min, tzinfo=timezone.utc))
    if predicate.date_to:
        end = datetime.combine(predicate.date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
        query = query.filter(date_column < end)
    return query


_DEFAULT_ORDER = {
    "equipment": lambda: (models.Equipment.created_at.desc(),),
    "transfers": lambda: (models.Transfer.initiated_at.desc(),),
    # open issues first, newest first within each group
    "issues": lambda: (models.Issue.status.asc(), models.Issue.reported_at.desc()),
    "deleted_equipment": lambda: (models.DeletedEquipment.deleted_at.desc(),),
    "notifications": lambda: (models.Notification.created_at.desc(),),
    "activity_logs": lambda: (models.ActivityLog.created_at.desc(),),
}


class EntityStore:
    """Unit of work wrapping one SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db
        self.outbox: list[ChangeEvent] = []

    # reads

    def query(self, table: str, predicate: FilterPredicate | None = None) -> Query:
        Model = model_for(table)
        query = apply_filter(self.db.query(Model), table, predicate)
        order = _DEFAULT_ORDER.get(table)
        if order is not None:
            query = query.order_by(*order())
        return query

    def read(self, table: str, predicate: FilterPredicate | None = None, limit: int | None = None) -> list[Any]:
        with _store_errors(f"read {table}"):
            query = self.query(table, predicate)
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def get(self, table: str, entity_id: Any, refresh: bool = False) -> Any | None:
        try:
            key = _as_uuid(entity_id)
        except ValueError:
            return None
        with _store_errors(f"get {table}"):
            return self.db.get(model_for(table), key, populate_existing=refresh)

    def require(self, table: str, entity_id: Any, refresh: bool = False) -> Any:
        row = self.get(table, entity_id, refresh=refresh)
        if row is None:
            raise EntityNotFound(table, entity_id)
        return row

    # writes

    def _record(self, event_type: str, table: str, record: dict[str, Any]) -> None:
        if table in WATCHED_TABLES:
            self.outbox.append(ChangeEvent(event_type, table, record))

    def insert(self, table: str, values: Mapping[str, Any]) -> Any:
        Model = model_for(table)
        row = Model(**dict(values))
        with _store_errors(f"insert {table}"):
            self.db.add(row)
            self.db.flush()
        self._record("insert", table, row_to_dict(row))
        return row

    def update(
        self,
        table: str,
        entity_id: Any,
        patch: Mapping[str, Any],
        expect: Mapping[str, Any] | None = None,
    ) -> Any | None:
        """Conditionally update one row.

        ``expect`` maps columns to the values they must still hold; when any
        differs the UPDATE matches no row and ``None`` is returned so the
        caller can re-read and decide again.
        """

        Model = model_for(table)
        key = _as_uuid(entity_id)
        values = dict(patch)
        derive = _DERIVED.get(table)
        if derive is not None:
            values.update(derive(patch))
        if "updated_at" in Model.__table__.c and "updated_at" not in values:
            values["updated_at"] = datetime.now(timezone.utc)

        conditions = [Model.id == key]
        for column, expected in (expect or {}).items():
            attr = getattr(Model, column)
            conditions.append(attr.is_(None) if expected is None else attr == expected)

        statement = (
            update(Model)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            with _store_errors(f"update {table}"):
                result = self.db.execute(statement)
                if result.rowcount == 0:
                    return None
                row = self.db.get(Model, key, populate_existing=True)
        except IntegrityError:
            self.rollback()
            raise
        self._record("update", table, row_to_dict(row))
        return row

    def delete(self, table: str, entity_id: Any) -> dict[str, Any] | None:
        row = self.get(table, entity_id)
        if row is None:
            return None
        record = row_to_dict(row)
        with _store_errors(f"delete {table}"):
            self.db.delete(row)
            self.db.flush()
        self._record("delete", table, record)
        return record

    def create_notification(
        self,
        action_type: str,
        entity_type: str,
        entity_id: Any,
        entity_name: str | None,
        actor_id: Any,
        target_id: Any = None,
        recipient_ids: Iterable[Any] | None = None,
        event_id: UUID | None = None,
    ) -> list[dict[str, Any]]:
        """Insert one notification row per recipient in a single statement.

        With no ``target_id`` and no ``recipient_ids`` every active user is a
        recipient. Recipients that already hold a row for ``event_id`` are
        skipped, so replaying the same event inserts nothing new.
        """

        event_id = event_id or uuid.uuid4()
        Notification = models.Notification
        with _store_errors("create notification"):
            if target_id is not None:
                recipients = [_as_uuid(target_id)]
            elif recipient_ids is not None:
                recipients = [_as_uuid(value) for value in recipient_ids]
            else:
                recipients = list(
                    self.db.scalars(select(models.User.id).where(models.User.is_active.is_(True)))
                )
            already = set(
                self.db.scalars(select(Notification.user_id).where(Notification.event_id == event_id))
            )

        message = build_message(action_type, entity_type, entity_name)
        now = datetime.now(timezone.utc)
        rows: list[dict[str, Any]] = []
        seen: set[UUID] = set()
        for recipient in recipients:
            if recipient is None or recipient in already or recipient in seen:
                continue
            seen.add(recipient)
            rows.append(
                {
                    "id": uuid.uuid4(),
                    "event_id": event_id,
                    "user_id": recipient,
                    "actor_id": _as_uuid(actor_id),
                    "action_type": action_type,
                    "entity_type": entity_type,
                    "entity_id": _as_uuid(entity_id),
                    "entity_name": entity_name,
                    "message": message,
                    "is_read": False,
                    "created_at": now,
                }
            )
        if not rows:
            return []
        with _store_errors("create notification"):
            self.db.execute(insert(Notification), rows)
        return rows

    # transaction boundary

    def commit(self) -> None:
        try:
            with _store_errors("commit"):
                self.db.commit()
        except (StoreUnavailable, IntegrityError):
            self.rollback()
            raise

    def rollback(self) -> None:
        self.outbox.clear()
        self.db.rollback()

    async def publish_pending(self) -> int:
        """Push buffered change events; failures are logged, never raised."""

        events, self.outbox = self.outbox, []
        published = 0
        for event in events:
            try:
                await pubsub.publish_change(event.table, event.to_dict())
                published += 1
            except (RedisError, OSError) as exc:
                logger.warning(
                    "Change event for %s %s not published: %s",
                    event.table,
                    event.record.get("id"),
                    exc,
                )
        return published
