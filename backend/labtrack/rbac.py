from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

# purpose: centralize role and lab-scope guards consumed by the state machine and the API
# status: active

logger = logging.getLogger(__name__)


class Role(str, Enum):
    LAB_ASSISTANT = "Lab Assistant"
    LAB_INCHARGE = "Lab Incharge"
    HOD = "HOD"

    @classmethod
    def coerce(cls, value: Any) -> "Role | None":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class Guard(str, Enum):
    CREATE_EQUIPMENT = "can_create_equipment"
    EDIT_EQUIPMENT = "can_edit_equipment"
    APPROVE_EQUIPMENT = "can_approve_equipment"
    DELETE_EQUIPMENT = "can_delete_equipment"
    CREATE_TRANSFER = "can_create_transfer"
    RECEIVE_TRANSFER = "can_receive_transfer"
    DELETE_TRANSFER = "can_delete_transfer"
    REPORT_ISSUE = "can_report_issue"
    RESOLVE_ISSUE = "can_resolve_issue"
    RATIFY_DELETION = "can_ratify_deletion"


@dataclass(frozen=True)
class ActorContext:
    """Explicit identity passed into every guard and transition."""

    # purpose: replace ambient session lookups with a value the core can reason about
    id: UUID | None
    role: Role | None
    lab_id: UUID | None = None
    name: str | None = None

    @classmethod
    def from_user(cls, user: Any) -> "ActorContext":
        return cls(
            id=getattr(user, "id", None),
            role=Role.coerce(getattr(user, "role", None)),
            lab_id=getattr(user, "lab_id", None),
            name=getattr(user, "full_name", None) or getattr(user, "email", None),
        )


def _attr(entity: Any, name: str, default: Any = None) -> Any:
    """Read a field from an ORM row, schema or plain mapping without raising."""

    if entity is None:
        return default
    if isinstance(entity, Mapping):
        return entity.get(name, default)
    try:
        return getattr(entity, name, default)
    except (AttributeError, SQLAlchemyError):
        return default


def same_identity(left: Any, right: Any) -> bool:
    """Compare two identifiers; ``None`` on either side never matches."""

    if left is None or right is None:
        return False
    return str(left) == str(right)


# lab scope uses the same rule: a missing lab is "no match", never a wildcard
same_lab = same_identity


def has_role(actor: ActorContext | None, role: Role) -> bool:
    if actor is None:
        return False
    return Role.coerce(actor.role) is role


def issue_lab(issue: Any) -> Any:
    """Return the lab an issue is scoped to (the equipment's current lab)."""

    lab = _attr(issue, "lab_id")
    if lab is not None:
        return lab
    return _attr(_attr(issue, "equipment"), "allocated_lab")


def _is_fully_approved(equipment: Any) -> bool:
    return bool(_attr(equipment, "fully_approved", False))


def _is_deleted(equipment: Any) -> bool:
    return bool(_attr(equipment, "is_deleted", False))


def _assistant_creates_equipment(actor: ActorContext, lab: Any) -> bool:
    # entity is the target lab id (or anything carrying ``allocated_lab``)
    target = _attr(lab, "allocated_lab", lab) if not isinstance(lab, (str, UUID)) else lab
    return same_lab(actor.lab_id, target)


def _assistant_edits_equipment(actor: ActorContext, equipment: Any) -> bool:
    return (
        same_identity(actor.id, _attr(equipment, "created_by"))
        and same_lab(actor.lab_id, _attr(equipment, "allocated_lab"))
        and not _is_fully_approved(equipment)
        and not _is_deleted(equipment)
    )


def _hod_approves_equipment(actor: ActorContext, equipment: Any) -> bool:
    return (
        _attr(equipment, "approved_by_hod") is None
        and not _is_fully_approved(equipment)
        and not _is_deleted(equipment)
    )


def _incharge_approves_equipment(actor: ActorContext, equipment: Any) -> bool:
    return (
        _attr(equipment, "approved_by_incharge") is None
        and not _is_fully_approved(equipment)
        and not _is_deleted(equipment)
        and same_lab(actor.lab_id, _attr(equipment, "allocated_lab"))
    )


def _hod_deletes_equipment(actor: ActorContext, equipment: Any) -> bool:
    return not _is_deleted(equipment)


def _incharge_deletes_equipment(actor: ActorContext, equipment: Any) -> bool:
    return (
        _attr(equipment, "approved_by_incharge") is None
        and not _is_fully_approved(equipment)
        and not _is_deleted(equipment)
        and same_lab(actor.lab_id, _attr(equipment, "allocated_lab"))
    )


def _assistant_deletes_equipment(actor: ActorContext, equipment: Any) -> bool:
    return (
        same_identity(actor.id, _attr(equipment, "created_by"))
        and _attr(equipment, "approved_by_incharge") is None
        and _attr(equipment, "approved_by_hod") is None
        and not _is_fully_approved(equipment)
        and not _is_deleted(equipment)
        and same_lab(actor.lab_id, _attr(equipment, "allocated_lab"))
    )


def _incharge_creates_transfer(actor: ActorContext, equipment: Any) -> bool:
    return (
        _is_fully_approved(equipment)
        and not _is_deleted(equipment)
        and same_lab(actor.lab_id, _attr(equipment, "allocated_lab"))
    )


def _incharge_receives_transfer(actor: ActorContext, transfer: Any) -> bool:
    return _attr(transfer, "status") == "pending" and same_lab(actor.lab_id, _attr(transfer, "to_lab"))


def _incharge_deletes_transfer(actor: ActorContext, transfer: Any) -> bool:
    return _attr(transfer, "status") == "pending" and same_identity(actor.id, _attr(transfer, "initiated_by"))


def _hod_deletes_transfer(actor: ActorContext, transfer: Any) -> bool:
    return _attr(transfer, "status") == "pending"


def _any_role_reports_issue(actor: ActorContext, equipment: Any) -> bool:
    return _is_fully_approved(equipment) and not _is_deleted(equipment)


def _assistant_resolves_issue(actor: ActorContext, issue: Any) -> bool:
    return _attr(issue, "status") == "open" and same_lab(actor.lab_id, issue_lab(issue))


def _hod_ratifies_deletion(actor: ActorContext, tombstone: Any) -> bool:
    return _attr(tombstone, "status") == "pending"


_Rule = Callable[[ActorContext, Any], bool]

_RULES: dict[tuple[Role, Guard], _Rule] = {
    (Role.LAB_ASSISTANT, Guard.CREATE_EQUIPMENT): _assistant_creates_equipment,
    (Role.LAB_ASSISTANT, Guard.EDIT_EQUIPMENT): _assistant_edits_equipment,
    (Role.HOD, Guard.APPROVE_EQUIPMENT): _hod_approves_equipment,
    (Role.LAB_INCHARGE, Guard.APPROVE_EQUIPMENT): _incharge_approves_equipment,
    (Role.HOD, Guard.DELETE_EQUIPMENT): _hod_deletes_equipment,
    (Role.LAB_INCHARGE, Guard.DELETE_EQUIPMENT): _incharge_deletes_equipment,
    (Role.LAB_ASSISTANT, Guard.DELETE_EQUIPMENT): _assistant_deletes_equipment,
    (Role.LAB_INCHARGE, Guard.CREATE_TRANSFER): _incharge_creates_transfer,
    (Role.LAB_INCHARGE, Guard.RECEIVE_TRANSFER): _incharge_receives_transfer,
    (Role.LAB_INCHARGE, Guard.DELETE_TRANSFER): _incharge_deletes_transfer,
    (Role.HOD, Guard.DELETE_TRANSFER): _hod_deletes_transfer,
    (Role.LAB_ASSISTANT, Guard.REPORT_ISSUE): _any_role_reports_issue,
    (Role.LAB_INCHARGE, Guard.REPORT_ISSUE): _any_role_reports_issue,
    (Role.HOD, Guard.REPORT_ISSUE): _any_role_reports_issue,
    (Role.LAB_ASSISTANT, Guard.RESOLVE_ISSUE): _assistant_resolves_issue,
    (Role.HOD, Guard.RATIFY_DELETION): _hod_ratifies_deletion,
}

ENTITY_GUARDS: dict[str, tuple[Guard, ...]] = {
    "equipment": (
        Guard.EDIT_EQUIPMENT,
        Guard.APPROVE_EQUIPMENT,
        Guard.DELETE_EQUIPMENT,
        Guard.CREATE_TRANSFER,
        Guard.REPORT_ISSUE,
    ),
    "transfer": (Guard.RECEIVE_TRANSFER, Guard.DELETE_TRANSFER),
    "issue": (Guard.RESOLVE_ISSUE,),
    "deleted_equipment": (Guard.RATIFY_DELETION,),
}


def evaluate_guard(name: Guard | str, actor: ActorContext | None, entity: Any) -> bool:
    """Return whether ``actor`` may perform the named action on ``entity``.

    Total over its inputs: unknown guard names, unknown roles, missing actors
    and missing entity fields all evaluate to ``False``.
    """

    try:
        guard = Guard(name)
    except ValueError:
        logger.debug("Unknown guard %r evaluated as denied", name)
        return False
    if actor is None:
        return False
    role = Role.coerce(actor.role)
    if role is None:
        return False
    rule = _RULES.get((role, guard))
    if rule is None:
        return False
    return bool(rule(actor, entity))


def guard_flags(entity_kind: str, actor: ActorContext | None, entity: Any) -> dict[str, bool]:
    """Evaluate every guard relevant to an entity kind, for presentation."""

    return {guard.value: evaluate_guard(guard, actor, entity) for guard in ENTITY_GUARDS.get(entity_kind, ())}


def can_create_equipment(actor: ActorContext | None, lab_id: Any) -> bool:
    return evaluate_guard(Guard.CREATE_EQUIPMENT, actor, lab_id)


def can_edit_equipment(actor: ActorContext | None, equipment: Any) -> bool:
    return evaluate_guard(Guard.EDIT_EQUIPMENT, actor, equipment)


def can_approve_equipment(actor: ActorContext | None, equipment: Any) -> bool:
    return evaluate_guard(Guard.APPROVE_EQUIPMENT, actor, equipment)


def can_delete_equipment(actor: ActorContext | None, equipment: Any) -> bool:
    return evaluate_guard(Guard.DELETE_EQUIPMENT, actor, equipment)


def can_create_transfer(actor: ActorContext | None, equipment: Any) -> bool:
    return evaluate_guard(Guard.CREATE_TRANSFER, actor, equipment)


def can_receive_transfer(actor: ActorContext | None, transfer: Any) -> bool:
    return evaluate_guard(Guard.RECEIVE_TRANSFER, actor, transfer)


def can_delete_transfer(actor: ActorContext | None, transfer: Any) -> bool:
    return evaluate_guard(Guard.DELETE_TRANSFER, actor, transfer)


def can_report_issue(actor: ActorContext | None, equipment: Any) -> bool:
    return evaluate_guard(Guard.REPORT_ISSUE, actor, equipment)


def can_resolve_issue(actor: ActorContext | None, issue: Any) -> bool:
    return evaluate_guard(Guard.RESOLVE_ISSUE, actor, issue)


def can_ratify_deletion(actor: ActorContext | None, tombstone: Any) -> bool:
    return evaluate_guard(Guard.RATIFY_DELETION, actor, tombstone)
