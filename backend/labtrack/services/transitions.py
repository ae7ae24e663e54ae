"""Persist workflow transitions and entity creation.

``request_transition`` is the single entry point for state changes on existing
entities: it loads the row, asks :mod:`labtrack.workflow` for an outcome,
writes the patch with a conditional UPDATE, records the activity log in the
same transaction, commits, and only then reports success, publishes change
events and fans out notifications.

Creation operations (equipment, transfers, issues) and transfer deletion live
here too because they share the commit/publish/notify tail.
"""

# purpose: orchestrate guard checks, conditional writes, activity logging and fan-out
# status: active
# depends_on: labtrack.workflow, labtrack.store, labtrack.services.notifications

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import audit, models
from ..exceptions import (
    EntityNotFound,
    InvalidStateTransition,
    LabTrackError,
    NotAuthorized,
    ScopeMismatch,
    TransitionRejected,
)
from ..rbac import ActorContext, Role, has_role, same_identity, same_lab
from ..store import EntityStore, row_to_dict
from ..workflow import (
    EntityKind,
    TransitionKind,
    TransitionOutcome,
    attempt_transition,
    entity_state,
)
from .assets import asset_code_for
from .notifications import FanoutResult, notify_all

logger = logging.getLogger(__name__)

TABLE_FOR_KIND = {
    EntityKind.EQUIPMENT: "equipment",
    EntityKind.TRANSFER: "transfers",
    EntityKind.ISSUE: "issues",
    EntityKind.DELETED_EQUIPMENT: "deleted_equipment",
}

# subject type shown in notifications and the activity log
SUBJECT_TYPE = {
    EntityKind.EQUIPMENT: "equipment",
    EntityKind.TRANSFER: "transfer",
    EntityKind.ISSUE: "issue",
    EntityKind.DELETED_EQUIPMENT: "equipment",
}

MAX_ATTEMPTS = 2


@dataclass
class TransitionResult:
    ok: bool
    entity_kind: str
    transition: str
    state: str | None = None
    entity: Any = None
    changed: bool = False
    rejection: TransitionRejected | None = None
    notification: FanoutResult | None = None

    def raise_for_rejection(self) -> "TransitionResult":
        if self.rejection is not None:
            raise self.rejection
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "entity_kind": self.entity_kind,
            "transition": self.transition,
            "entity_id": str(self.entity.id) if self.entity is not None else None,
            "state": self.state,
            "changed": self.changed,
            "rejection": self.rejection.to_dict() if self.rejection is not None else None,
        }


def display_name(kind: EntityKind, entity: Any) -> str | None:
    if kind in (EntityKind.TRANSFER, EntityKind.ISSUE):
        equipment = getattr(entity, "equipment", None)
        return equipment.name if equipment is not None else None
    return getattr(entity, "name", None)


def _jsonable_row(row: Any) -> dict[str, Any]:
    data = row_to_dict(row)
    for key, value in data.items():
        if isinstance(value, UUID):
            data[key] = str(value)
        elif isinstance(value, Decimal):
            data[key] = float(value)
        elif hasattr(value, "isoformat"):
            data[key] = value.isoformat()
    return data


async def _finish(
    store: EntityStore,
    actor: ActorContext,
    verb: str,
    subject_type: str,
    subject_id: Any,
    subject_name: str | None,
) -> FanoutResult:
    """Publish committed change events, then notify everyone."""

    await store.publish_pending()
    return await notify_all(store.db, actor.id, verb, subject_type, subject_id, subject_name)


def _side_effects(
    store: EntityStore,
    kind: EntityKind,
    transition: TransitionKind,
    entity: Any,
    actor: ActorContext,
    old: Mapping[str, Any],
) -> TransitionRejected | None:
    """Writes that belong to the same transaction as the primary patch."""

    if kind is EntityKind.EQUIPMENT and transition is TransitionKind.SOFT_DELETE:
        store.insert(
            "deleted_equipment",
            {
                "equipment_id": entity.id,
                "name": entity.name,
                "allocated_lab": entity.allocated_lab,
                "snapshot": _jsonable_row(entity),
                "status": "pending",
                "deleted_by": actor.id,
            },
        )
        return None

    if kind is not EntityKind.DELETED_EQUIPMENT:
        return None

    equipment_id = old.get("equipment_id")
    if transition is TransitionKind.RESTORE:
        if equipment_id is None or store.update(
            "equipment", equipment_id, {"is_deleted": False}, expect={"is_deleted": True}
        ) is None:
            return InvalidStateTransition("the deleted equipment no longer exists", equipment_id=equipment_id)
        return None

    if transition is TransitionKind.PURGE and equipment_id is not None:
        for issue_id in list(store.db.scalars(select(models.Issue.id).where(models.Issue.equipment_id == equipment_id))):
            store.delete("issues", issue_id)
        for transfer_id in list(
            store.db.scalars(select(models.Transfer.id).where(models.Transfer.equipment_id == equipment_id))
        ):
            store.delete("transfers", transfer_id)
        store.delete("equipment", equipment_id)
    return None


def _complete_patch(
    store: EntityStore,
    kind: EntityKind,
    entity: Any,
    outcome: TransitionOutcome,
) -> dict[str, Any]:
    patch = dict(outcome.patch)
    if kind is EntityKind.EQUIPMENT and "asset_type_id" in patch:
        asset_type_id = patch["asset_type_id"]
        if asset_type_id is not None and store.get("asset_types", asset_type_id) is None:
            raise EntityNotFound("asset_types", asset_type_id)
        patch["asset_code"] = asset_code_for(store.db, entity, entity.allocated_lab, patch["asset_type_id"])
    return patch


async def request_transition(
    db: Session,
    entity_kind: EntityKind | str,
    transition_kind: TransitionKind | str,
    entity_id: Any,
    actor: ActorContext | None,
    **params: Any,
) -> TransitionResult:
    """Apply one transition and report ``ok(state)`` or a typed rejection.

    Raises ``EntityNotFound`` for a missing entity and ``StoreUnavailable``
    when the store cannot be reached; business refusals are returned.
    """

    kind = EntityKind(entity_kind)
    transition = TransitionKind(transition_kind)
    table = TABLE_FOR_KIND[kind]
    store = EntityStore(db)

    updated = None
    outcome: TransitionOutcome | None = None
    entity = None
    for attempt in range(MAX_ATTEMPTS):
        entity = store.require(table, entity_id, refresh=attempt > 0)
        outcome = attempt_transition(kind, entity, transition, actor, **params)
        if outcome.is_rejected:
            logger.info(
                "%s %s on %s %s rejected: %s",
                getattr(actor, "role", None),
                transition.value,
                table,
                entity_id,
                outcome.rejection.code,
            )
            return TransitionResult(False, kind.value, transition.value, rejection=outcome.rejection, entity=entity)
        if outcome.is_noop:
            return TransitionResult(True, kind.value, transition.value, state=outcome.state, entity=entity)

        old = row_to_dict(entity)
        name = display_name(kind, entity)
        try:
            updated = store.update(table, entity.id, _complete_patch(store, kind, entity, outcome), outcome.expect)
            if updated is None:
                # lost a race; re-read and decide again
                store.rollback()
                continue
            rejection = _side_effects(store, kind, transition, updated, actor, old)
            if rejection is not None:
                store.rollback()
                return TransitionResult(False, kind.value, transition.value, rejection=rejection, entity=entity)
            audit.log_action(
                db,
                actor.id,
                outcome.verb,
                SUBJECT_TYPE[kind],
                entity.id,
                name,
                old_values=old,
                new_values=row_to_dict(updated),
            )
            store.commit()
        except LabTrackError:
            store.rollback()
            raise
        break
    else:
        rejection = InvalidStateTransition(f"{table} {entity_id} changed concurrently")
        return TransitionResult(False, kind.value, transition.value, rejection=rejection, entity=entity)

    subject_id = updated.id
    fanout = await _finish(store, actor, outcome.verb, SUBJECT_TYPE[kind], subject_id, name)
    return TransitionResult(
        True,
        kind.value,
        transition.value,
        state=entity_state(kind, updated),
        entity=updated,
        changed=True,
        notification=fanout,
    )


async def create_equipment(db: Session, actor: ActorContext, data: Mapping[str, Any]) -> models.Equipment:
    """Register new equipment in the assistant's own lab, unapproved."""

    if not has_role(actor, Role.LAB_ASSISTANT):
        raise NotAuthorized("only lab assistants can add equipment")
    lab_id = data.get("allocated_lab") or actor.lab_id
    if not same_lab(actor.lab_id, lab_id):
        raise ScopeMismatch("equipment can only be added to your own lab", lab_id=lab_id)
    if db.get(models.Lab, lab_id) is None:
        raise EntityNotFound("labs", lab_id)
    asset_type_id = data.get("asset_type_id")
    if asset_type_id is not None and db.get(models.AssetType, asset_type_id) is None:
        raise EntityNotFound("asset_types", asset_type_id)

    store = EntityStore(db)
    values = {
        key: data[key]
        for key in (
            "name",
            "asset_type_id",
            "invoice_number",
            "description",
            "rate",
            "quantity",
            "remark",
            "is_consumable",
            "purchase_date",
        )
        if data.get(key) is not None
    }
    values.update(
        allocated_lab=lab_id,
        created_by=actor.id,
        asset_code=asset_code_for(db, None, lab_id, asset_type_id),
    )
    try:
        equipment = store.insert("equipment", values)
        audit.log_action(db, actor.id, "insert", "equipment", equipment.id, equipment.name, new_values=row_to_dict(equipment))
        store.commit()
    except LabTrackError:
        store.rollback()
        raise
    await _finish(store, actor, "insert", "equipment", equipment.id, equipment.name)
    return equipment


async def create_transfer(db: Session, actor: ActorContext, equipment_id: Any, to_lab: Any) -> models.Transfer:
    """Create a pending transfer and relocate the equipment optimistically."""

    if not has_role(actor, Role.LAB_INCHARGE):
        raise NotAuthorized("only lab incharges can transfer equipment")
    store = EntityStore(db)
    equipment = store.require("equipment", equipment_id)
    if not equipment.fully_approved or equipment.is_deleted:
        raise InvalidStateTransition("only fully approved equipment can be transferred")
    if not same_lab(actor.lab_id, equipment.allocated_lab):
        raise ScopeMismatch("equipment belongs to another lab", lab_id=equipment.allocated_lab)
    if same_lab(equipment.allocated_lab, to_lab):
        raise InvalidStateTransition("equipment is already allocated to that lab")
    destination = store.require("labs", to_lab)

    from_lab = equipment.allocated_lab
    old = row_to_dict(equipment)
    try:
        transfer = store.insert(
            "transfers",
            {
                "equipment_id": equipment.id,
                "from_lab": from_lab,
                "to_lab": destination.id,
                "initiated_by": actor.id,
                "status": "pending",
            },
        )
        relocated = store.update(
            "equipment",
            equipment.id,
            {
                "allocated_lab": destination.id,
                "asset_code": asset_code_for(db, equipment, destination.id, equipment.asset_type_id),
            },
            expect={"allocated_lab": from_lab, "fully_approved": True, "is_deleted": False},
        )
        if relocated is None:
            raise InvalidStateTransition("equipment changed while the transfer was being created")
        audit.log_action(
            db,
            actor.id,
            "transfer",
            "equipment",
            equipment.id,
            relocated.name,
            old_values=old,
            new_values=row_to_dict(relocated),
        )
        store.commit()
    except LabTrackError:
        store.rollback()
        raise
    await _finish(store, actor, "insert", "transfer", transfer.id, relocated.name)
    return transfer


async def delete_transfer(db: Session, actor: ActorContext, transfer_id: Any) -> None:
    """Delete a transfer while it is still pending; the equipment stays where it is."""

    store = EntityStore(db)
    transfer = store.require("transfers", transfer_id)
    if not (has_role(actor, Role.HOD) or has_role(actor, Role.LAB_INCHARGE)):
        raise NotAuthorized("only the initiating incharge or the HOD can delete a transfer")
    if transfer.status != "pending":
        raise InvalidStateTransition("received transfers cannot be deleted", status=transfer.status)
    if has_role(actor, Role.LAB_INCHARGE) and not same_identity(actor.id, transfer.initiated_by):
        raise NotAuthorized("only the initiating incharge or the HOD can delete a transfer")

    name = display_name(EntityKind.TRANSFER, transfer)
    try:
        record = store.delete("transfers", transfer.id)
        audit.log_action(db, actor.id, "delete", "transfer", transfer_id, name, old_values=record)
        store.commit()
    except LabTrackError:
        store.rollback()
        raise
    await _finish(store, actor, "delete", "transfer", transfer_id, name)


async def report_issue(db: Session, actor: ActorContext, equipment_id: Any, description: str) -> models.Issue:
    if actor is None or Role.coerce(actor.role) is None:
        raise NotAuthorized("an authenticated actor with a known role is required")
    store = EntityStore(db)
    equipment = store.require("equipment", equipment_id)
    if not equipment.fully_approved or equipment.is_deleted:
        raise InvalidStateTransition("issues can only be reported against approved equipment")
    try:
        issue = store.insert(
            "issues",
            {
                "equipment_id": equipment.id,
                "description": description,
                "reported_by": actor.id,
                "status": "open",
            },
        )
        audit.log_action(db, actor.id, "report", "issue", issue.id, equipment.name, new_values=row_to_dict(issue))
        store.commit()
    except LabTrackError:
        store.rollback()
        raise
    await _finish(store, actor, "report", "issue", issue.id, equipment.name)
    return issue
