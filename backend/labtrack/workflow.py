"""Approval state machines for equipment, transfers, issues and tombstones.

Everything in this module is pure: it inspects an entity snapshot and an
explicit :class:`~labtrack.rbac.ActorContext` and returns a
:class:`TransitionOutcome`. Persisting the patch, notifying users and
publishing change events is the job of :mod:`labtrack.services.transitions`.

Checks run in a fixed order so that callers always see the most fundamental
reason first: role, then entity state, then lab scope. Writing an equipment
approval slot checks scope before idempotency, so a foreign incharge is told
``ScopeMismatch`` even when the slot is already filled.
"""

# purpose: compute state transitions and their column patches without touching storage
# status: active

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from .exceptions import (
    AlreadyInTargetState,
    InvalidStateTransition,
    NotAuthorized,
    ScopeMismatch,
    TransitionRejected,
)
from .rbac import ActorContext, Role, _attr, has_role, issue_lab, same_identity, same_lab


class EntityKind(str, Enum):
    EQUIPMENT = "equipment"
    TRANSFER = "transfer"
    ISSUE = "issue"
    DELETED_EQUIPMENT = "deleted_equipment"


class TransitionKind(str, Enum):
    RECORD_INCHARGE = "record_incharge"
    RECORD_HOD = "record_hod"
    APPROVE = "approve"
    EDIT = "edit"
    SOFT_DELETE = "soft_delete"
    MARK_RECEIVED = "mark_received"
    RESOLVE = "resolve"
    PURGE = "purge"
    RESTORE = "restore"


EDITABLE_EQUIPMENT_FIELDS = (
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

ADVANCED = "advanced"
NOOP = "noop"
REJECTED = "rejected"


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of running a transition against an entity snapshot.

    ``expect`` restates the precondition the patch relies on; the store turns
    it into the WHERE clause of a conditional update so a concurrent writer
    that got there first makes the update match zero rows.
    """

    status: str
    state: str | None = None
    patch: dict[str, Any] = field(default_factory=dict)
    expect: dict[str, Any] = field(default_factory=dict)
    verb: str | None = None
    rejection: TransitionRejected | None = None

    @classmethod
    def advanced(cls, state: str, patch: dict[str, Any], expect: dict[str, Any], verb: str) -> "TransitionOutcome":
        return cls(status=ADVANCED, state=state, patch=patch, expect=expect, verb=verb)

    @classmethod
    def noop(cls, state: str) -> "TransitionOutcome":
        return cls(status=NOOP, state=state)

    @classmethod
    def rejected(cls, error: TransitionRejected) -> "TransitionOutcome":
        return cls(status=REJECTED, rejection=error)

    @property
    def is_advanced(self) -> bool:
        return self.status == ADVANCED

    @property
    def is_noop(self) -> bool:
        return self.status == NOOP

    @property
    def is_rejected(self) -> bool:
        return self.status == REJECTED


def equipment_state(equipment: Any) -> str:
    if _attr(equipment, "is_deleted", False):
        return "deleted"
    incharge = _attr(equipment, "approved_by_incharge") is not None
    hod = _attr(equipment, "approved_by_hod") is not None
    if incharge and hod:
        return "fully_approved"
    if incharge:
        return "incharge_approved"
    if hod:
        return "hod_approved"
    return "pending"


def entity_state(kind: EntityKind | str, entity: Any) -> str | None:
    if EntityKind(kind) is EntityKind.EQUIPMENT:
        return equipment_state(entity)
    return _attr(entity, "status")


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


def _role_name(actor: ActorContext | None) -> str:
    role = Role.coerce(getattr(actor, "role", None))
    return role.value if role else "unknown role"


def _record_slot(
    equipment: Any,
    actor: ActorContext,
    slot: str,
    stamped_at: str,
    role: Role,
    scoped: bool,
    now: datetime | None,
) -> TransitionOutcome:
    if not has_role(actor, role):
        return TransitionOutcome.rejected(
            NotAuthorized(f"{_role_name(actor)} cannot record a {role.value} approval")
        )
    if _attr(equipment, "is_deleted", False):
        return TransitionOutcome.rejected(InvalidStateTransition("equipment is awaiting deletion"))
    if scoped and not same_lab(actor.lab_id, _attr(equipment, "allocated_lab")):
        return TransitionOutcome.rejected(
            ScopeMismatch("equipment belongs to another lab", lab_id=_attr(equipment, "allocated_lab"))
        )
    if _attr(equipment, slot) is not None:
        return TransitionOutcome.noop(equipment_state(equipment))

    other_slot = "approved_by_hod" if slot == "approved_by_incharge" else "approved_by_incharge"
    if _attr(equipment, other_slot) is not None:
        state = "fully_approved"
    else:
        state = "hod_approved" if role is Role.HOD else "incharge_approved"
    return TransitionOutcome.advanced(
        state,
        patch={slot: actor.id, stamped_at: _now(now)},
        expect={slot: None, "is_deleted": False},
        verb="approve",
    )


def _record_incharge(equipment: Any, actor: ActorContext, params: Mapping[str, Any], now: datetime | None):
    return _record_slot(equipment, actor, "approved_by_incharge", "approved_at_incharge", Role.LAB_INCHARGE, True, now)


def _record_hod(equipment: Any, actor: ActorContext, params: Mapping[str, Any], now: datetime | None):
    return _record_slot(equipment, actor, "approved_by_hod", "approved_at_hod", Role.HOD, False, now)


def _approve(equipment: Any, actor: ActorContext, params: Mapping[str, Any], now: datetime | None):
    if has_role(actor, Role.HOD):
        return _record_hod(equipment, actor, params, now)
    if has_role(actor, Role.LAB_INCHARGE):
        return _record_incharge(equipment, actor, params, now)
    return TransitionOutcome.rejected(NotAuthorized(f"{_role_name(actor)} cannot approve equipment"))


def _edit(equipment: Any, actor: ActorContext, params: Mapping[str, Any], now: datetime | None):
    if not has_role(actor, Role.LAB_ASSISTANT):
        return TransitionOutcome.rejected(NotAuthorized(f"{_role_name(actor)} cannot edit equipment"))
    if not same_identity(actor.id, _attr(equipment, "created_by")):
        return TransitionOutcome.rejected(NotAuthorized("only the creator can edit this equipment"))
    if _attr(equipment, "fully_approved", False):
        # an approved record has no editor at all, so this is a permission refusal
        return TransitionOutcome.rejected(NotAuthorized("fully approved equipment can no longer be edited"))
    if _attr(equipment, "is_deleted", False):
        return TransitionOutcome.rejected(InvalidStateTransition("equipment is awaiting deletion"))
    if not same_lab(actor.lab_id, _attr(equipment, "allocated_lab")):
        return TransitionOutcome.rejected(ScopeMismatch("equipment belongs to another lab"))

    changes = params.get("changes") or {}
    patch = {
        key: value
        for key, value in changes.items()
        if key in EDITABLE_EQUIPMENT_FIELDS and _attr(equipment, key) != value
    }
    if not patch:
        return TransitionOutcome.noop(equipment_state(equipment))
    return TransitionOutcome.advanced(
        equipment_state(equipment),
        patch=patch,
        expect={"fully_approved": False, "is_deleted": False},
        verb="update",
    )


def _soft_delete(equipment: Any, actor: ActorContext, params: Mapping[str, Any], now: datetime | None):
    role = Role.coerce(getattr(actor, "role", None))
    if role is None:
        return TransitionOutcome.rejected(NotAuthorized("unknown role cannot delete equipment"))
    if role is Role.LAB_ASSISTANT and not same_identity(actor.id, _attr(equipment, "created_by")):
        return TransitionOutcome.rejected(NotAuthorized("only the creator can delete this equipment"))
    if _attr(equipment, "is_deleted", False):
        return TransitionOutcome.rejected(AlreadyInTargetState("equipment is already awaiting deletion"))
    if role is Role.LAB_INCHARGE and (
        _attr(equipment, "approved_by_incharge") is not None or _attr(equipment, "fully_approved", False)
    ):
        return TransitionOutcome.rejected(
            InvalidStateTransition("equipment approved by an incharge can only be deleted by the HOD")
        )
    if role is Role.LAB_ASSISTANT and equipment_state(equipment) != "pending":
        return TransitionOutcome.rejected(
            InvalidStateTransition("approved equipment can no longer be deleted by its creator")
        )
    if role is not Role.HOD and not same_lab(actor.lab_id, _attr(equipment, "allocated_lab")):
        return TransitionOutcome.rejected(ScopeMismatch("equipment belongs to another lab"))
    return TransitionOutcome.advanced(
        "deleted",
        patch={"is_deleted": True},
        expect={"is_deleted": False},
        verb="delete",
    )


def _mark_received(transfer: Any, actor: ActorContext, params: Mapping[str, Any], now: datetime | None):
    if not has_role(actor, Role.LAB_INCHARGE):
        return TransitionOutcome.rejected(NotAuthorized(f"{_role_name(actor)} cannot receive transfers"))
    if _attr(transfer, "status") != "pending":
        return TransitionOutcome.rejected(
            InvalidStateTransition("transfer is not pending", status=_attr(transfer, "status"))
        )
    if not same_lab(actor.lab_id, _attr(transfer, "to_lab")):
        return TransitionOutcome.rejected(ScopeMismatch("only the destination lab can receive this transfer"))
    return TransitionOutcome.advanced(
        "received",
        patch={"status": "received", "received_by": actor.id, "received_at": _now(now)},
        expect={"status": "pending"},
        verb="receive",
    )


def _resolve(issue: Any, actor: ActorContext, params: Mapping[str, Any], now: datetime | None):
    if not has_role(actor, Role.LAB_ASSISTANT):
        return TransitionOutcome.rejected(NotAuthorized(f"{_role_name(actor)} cannot resolve issues"))
    if _attr(issue, "status") != "open":
        return TransitionOutcome.rejected(
            InvalidStateTransition("issue is not open", status=_attr(issue, "status"))
        )
    if not same_lab(actor.lab_id, issue_lab(issue)):
        return TransitionOutcome.rejected(ScopeMismatch("issue belongs to equipment in another lab"))
    patch = {
        "status": "resolved",
        "resolved_by": actor.id,
        "resolved_at": _now(now),
        "remark": params.get("remark"),
        "cost_required": params.get("cost_required"),
    }
    return TransitionOutcome.advanced("resolved", patch=patch, expect={"status": "open"}, verb="resolve")


def _ratify(target_status: str, verb: str):
    def rule(tombstone: Any, actor: ActorContext, params: Mapping[str, Any], now: datetime | None):
        if not has_role(actor, Role.HOD):
            return TransitionOutcome.rejected(NotAuthorized(f"{_role_name(actor)} cannot {verb} deleted equipment"))
        status = _attr(tombstone, "status")
        if status != "pending":
            return TransitionOutcome.rejected(AlreadyInTargetState(f"deletion was already {status}", status=status))
        return TransitionOutcome.advanced(
            target_status,
            patch={"status": target_status, "ratified_by": actor.id, "ratified_at": _now(now)},
            expect={"status": "pending"},
            verb=verb,
        )

    return rule


_MACHINE = {
    (EntityKind.EQUIPMENT, TransitionKind.RECORD_INCHARGE): _record_incharge,
    (EntityKind.EQUIPMENT, TransitionKind.RECORD_HOD): _record_hod,
    (EntityKind.EQUIPMENT, TransitionKind.APPROVE): _approve,
    (EntityKind.EQUIPMENT, TransitionKind.EDIT): _edit,
    (EntityKind.EQUIPMENT, TransitionKind.SOFT_DELETE): _soft_delete,
    (EntityKind.TRANSFER, TransitionKind.MARK_RECEIVED): _mark_received,
    (EntityKind.ISSUE, TransitionKind.RESOLVE): _resolve,
    (EntityKind.DELETED_EQUIPMENT, TransitionKind.PURGE): _ratify("purged", "purge"),
    (EntityKind.DELETED_EQUIPMENT, TransitionKind.RESTORE): _ratify("restored", "restore"),
}


def supported_transitions(kind: EntityKind | str) -> list[TransitionKind]:
    entity_kind = EntityKind(kind)
    return [transition for (entity, transition) in _MACHINE if entity is entity_kind]


def attempt_transition(
    kind: EntityKind | str,
    entity: Any,
    transition: TransitionKind | str,
    actor: ActorContext | None,
    now: datetime | None = None,
    **params: Any,
) -> TransitionOutcome:
    """Run one transition against ``entity`` and describe the result.

    Raises ``ValueError`` only for an entity/transition pair the machine does
    not define; every business refusal is returned as a rejected outcome.
    """

    entity_kind = EntityKind(kind)
    transition_kind = TransitionKind(transition)
    rule = _MACHINE.get((entity_kind, transition_kind))
    if rule is None:
        raise ValueError(f"{transition_kind.value} is not defined for {entity_kind.value}")
    if actor is None or Role.coerce(actor.role) is None:
        return TransitionOutcome.rejected(NotAuthorized("an authenticated actor with a known role is required"))
    return rule(entity, actor, params, now)
