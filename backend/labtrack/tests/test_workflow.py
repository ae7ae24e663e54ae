import itertools
import uuid
from datetime import datetime, timezone

import pytest

from labtrack.exceptions import (
    AlreadyInTargetState,
    InvalidStateTransition,
    NotAuthorized,
    ScopeMismatch,
)
from labtrack.rbac import ActorContext, Role
from labtrack.workflow import (
    EntityKind,
    TransitionKind,
    attempt_transition,
    equipment_state,
    supported_transitions,
)

LAB1 = uuid.uuid4()
LAB2 = uuid.uuid4()
NOW = datetime(2025, 1, 10, 9, 30, tzinfo=timezone.utc)

ASSISTANT = ActorContext(id=uuid.uuid4(), role=Role.LAB_ASSISTANT, lab_id=LAB1)
INCHARGE = ActorContext(id=uuid.uuid4(), role=Role.LAB_INCHARGE, lab_id=LAB1)
FOREIGN_INCHARGE = ActorContext(id=uuid.uuid4(), role=Role.LAB_INCHARGE, lab_id=LAB2)
HOD = ActorContext(id=uuid.uuid4(), role=Role.HOD)


def new_equipment(**fields):
    row = {
        "id": uuid.uuid4(),
        "name": "Centrifuge",
        "allocated_lab": LAB1,
        "created_by": ASSISTANT.id,
        "rate": 100,
        "quantity": 2,
        "approved_by_incharge": None,
        "approved_by_hod": None,
        "fully_approved": False,
        "is_deleted": False,
    }
    row.update(fields)
    return row


def apply(row, outcome):
    # what the store does with a patch: write it and derive fully_approved
    row = {**row, **outcome.patch}
    row["fully_approved"] = row["approved_by_incharge"] is not None and row["approved_by_hod"] is not None
    return row


def approve(row, actor):
    return attempt_transition(EntityKind.EQUIPMENT, row, TransitionKind.APPROVE, actor, now=NOW)


@pytest.mark.parametrize("order", list(itertools.permutations([INCHARGE, HOD])))
def test_fully_approved_in_every_order(order):
    row = new_equipment()
    for step, approver in enumerate(order):
        outcome = approve(row, approver)
        assert outcome.is_advanced
        row = apply(row, outcome)
        assert row["fully_approved"] == (
            row["approved_by_incharge"] is not None and row["approved_by_hod"] is not None
        )
        assert outcome.state == ("fully_approved" if step == 1 else equipment_state(row))
    assert row["fully_approved"] is True
    assert equipment_state(row) == "fully_approved"


def test_partial_states_are_distinguishable():
    assert equipment_state(new_equipment()) == "pending"
    assert equipment_state(new_equipment(approved_by_incharge=INCHARGE.id)) == "incharge_approved"
    assert equipment_state(new_equipment(approved_by_hod=HOD.id)) == "hod_approved"
    assert equipment_state(new_equipment(is_deleted=True, approved_by_hod=HOD.id)) == "deleted"


def test_slot_patch_is_conditional_on_empty_slot():
    outcome = attempt_transition(EntityKind.EQUIPMENT, new_equipment(), TransitionKind.RECORD_HOD, HOD, now=NOW)
    assert outcome.patch == {"approved_by_hod": HOD.id, "approved_at_hod": NOW}
    assert outcome.expect == {"approved_by_hod": None, "is_deleted": False}
    assert outcome.verb == "approve"


def test_rerecording_a_slot_is_a_noop():
    row = new_equipment(approved_by_incharge=INCHARGE.id)
    outcome = attempt_transition(EntityKind.EQUIPMENT, row, TransitionKind.RECORD_INCHARGE, INCHARGE)
    assert outcome.is_noop
    assert outcome.patch == {}
    assert outcome.state == "incharge_approved"


def test_foreign_incharge_gets_scope_mismatch_even_when_slot_is_set():
    row = new_equipment(approved_by_incharge=INCHARGE.id)
    outcome = approve(row, FOREIGN_INCHARGE)
    assert outcome.is_rejected
    assert isinstance(outcome.rejection, ScopeMismatch)


def test_hod_approval_is_not_lab_scoped():
    assert approve(new_equipment(allocated_lab=LAB2), HOD).is_advanced


@pytest.mark.parametrize("transition", [TransitionKind.RECORD_INCHARGE, TransitionKind.RECORD_HOD, TransitionKind.APPROVE])
def test_assistant_cannot_approve(transition):
    outcome = attempt_transition(EntityKind.EQUIPMENT, new_equipment(), transition, ASSISTANT)
    assert isinstance(outcome.rejection, NotAuthorized)


def test_role_is_checked_before_state():
    deleted = new_equipment(is_deleted=True)
    outcome = attempt_transition(EntityKind.EQUIPMENT, deleted, TransitionKind.RECORD_HOD, INCHARGE)
    assert isinstance(outcome.rejection, NotAuthorized)
    outcome = attempt_transition(EntityKind.EQUIPMENT, deleted, TransitionKind.RECORD_HOD, HOD)
    assert isinstance(outcome.rejection, InvalidStateTransition)


def test_missing_or_unknown_actor_is_not_authorized():
    for nobody in (None, ActorContext(id=uuid.uuid4(), role="Janitor", lab_id=LAB1)):
        outcome = approve(new_equipment(), nobody)
        assert isinstance(outcome.rejection, NotAuthorized)


def test_undefined_transition_raises():
    with pytest.raises(ValueError):
        attempt_transition(EntityKind.ISSUE, {}, TransitionKind.APPROVE, HOD)
    assert TransitionKind.RESOLVE in supported_transitions("issue")


def test_creator_edit_until_fully_approved():
    row = new_equipment(approved_by_incharge=INCHARGE.id)
    outcome = attempt_transition(
        EntityKind.EQUIPMENT, row, TransitionKind.EDIT, ASSISTANT, changes={"quantity": 3, "name": "Centrifuge"}
    )
    assert outcome.is_advanced
    assert outcome.patch == {"quantity": 3}
    assert outcome.expect == {"fully_approved": False, "is_deleted": False}

    approved = apply(row, approve(row, HOD))
    outcome = attempt_transition(EntityKind.EQUIPMENT, approved, TransitionKind.EDIT, ASSISTANT, changes={"quantity": 5})
    assert isinstance(outcome.rejection, NotAuthorized)


def test_edit_rules():
    other = ActorContext(id=uuid.uuid4(), role=Role.LAB_ASSISTANT, lab_id=LAB1)
    row = new_equipment()
    assert isinstance(
        attempt_transition(EntityKind.EQUIPMENT, row, TransitionKind.EDIT, other, changes={"quantity": 3}).rejection,
        NotAuthorized,
    )
    assert attempt_transition(EntityKind.EQUIPMENT, row, TransitionKind.EDIT, ASSISTANT, changes={"quantity": 2}).is_noop
    ignored = attempt_transition(
        EntityKind.EQUIPMENT, row, TransitionKind.EDIT, ASSISTANT, changes={"fully_approved": True}
    )
    assert ignored.is_noop


def test_soft_delete_rules():
    row = new_equipment()
    outcome = attempt_transition(EntityKind.EQUIPMENT, row, TransitionKind.SOFT_DELETE, ASSISTANT)
    assert outcome.is_advanced and outcome.patch == {"is_deleted": True}

    deleted = apply(row, outcome)
    again = attempt_transition(EntityKind.EQUIPMENT, deleted, TransitionKind.SOFT_DELETE, HOD)
    assert isinstance(again.rejection, AlreadyInTargetState)

    incharge_approved = new_equipment(approved_by_incharge=INCHARGE.id)
    assert isinstance(
        attempt_transition(EntityKind.EQUIPMENT, incharge_approved, TransitionKind.SOFT_DELETE, INCHARGE).rejection,
        InvalidStateTransition,
    )
    assert isinstance(
        attempt_transition(EntityKind.EQUIPMENT, incharge_approved, TransitionKind.SOFT_DELETE, ASSISTANT).rejection,
        InvalidStateTransition,
    )
    assert attempt_transition(EntityKind.EQUIPMENT, incharge_approved, TransitionKind.SOFT_DELETE, HOD).is_advanced
    assert isinstance(
        attempt_transition(EntityKind.EQUIPMENT, row, TransitionKind.SOFT_DELETE, FOREIGN_INCHARGE).rejection,
        ScopeMismatch,
    )


def test_transfer_received_at_most_once():
    incharge2 = ActorContext(id=uuid.uuid4(), role=Role.LAB_INCHARGE, lab_id=LAB2)
    transfer = {"id": uuid.uuid4(), "status": "pending", "from_lab": LAB1, "to_lab": LAB2}

    wrong_lab = attempt_transition(EntityKind.TRANSFER, transfer, TransitionKind.MARK_RECEIVED, INCHARGE)
    assert isinstance(wrong_lab.rejection, ScopeMismatch)

    outcome = attempt_transition(EntityKind.TRANSFER, transfer, TransitionKind.MARK_RECEIVED, incharge2, now=NOW)
    assert outcome.state == "received"
    assert outcome.patch["received_by"] == incharge2.id
    assert outcome.expect == {"status": "pending"}

    received = {**transfer, **outcome.patch}
    second = attempt_transition(EntityKind.TRANSFER, received, TransitionKind.MARK_RECEIVED, incharge2)
    assert isinstance(second.rejection, InvalidStateTransition)


def test_issue_resolved_at_most_once():
    assistant2 = ActorContext(id=uuid.uuid4(), role=Role.LAB_ASSISTANT, lab_id=LAB2)
    issue = {"id": uuid.uuid4(), "status": "open", "lab_id": LAB2}

    assert isinstance(
        attempt_transition(EntityKind.ISSUE, issue, TransitionKind.RESOLVE, ASSISTANT).rejection, ScopeMismatch
    )
    assert isinstance(
        attempt_transition(EntityKind.ISSUE, issue, TransitionKind.RESOLVE, HOD).rejection, NotAuthorized
    )
    outcome = attempt_transition(
        EntityKind.ISSUE, issue, TransitionKind.RESOLVE, assistant2, remark="fan replaced", cost_required=500
    )
    assert outcome.patch["remark"] == "fan replaced"
    assert outcome.patch["cost_required"] == 500
    resolved = {**issue, **outcome.patch}
    second = attempt_transition(EntityKind.ISSUE, resolved, TransitionKind.RESOLVE, assistant2, remark="again")
    assert isinstance(second.rejection, InvalidStateTransition)


@pytest.mark.parametrize("transition,target", [(TransitionKind.PURGE, "purged"), (TransitionKind.RESTORE, "restored")])
def test_deletion_ratification(transition, target):
    tombstone = {"id": uuid.uuid4(), "status": "pending"}
    assert isinstance(
        attempt_transition(EntityKind.DELETED_EQUIPMENT, tombstone, transition, INCHARGE).rejection, NotAuthorized
    )
    outcome = attempt_transition(EntityKind.DELETED_EQUIPMENT, tombstone, transition, HOD)
    assert outcome.state == target
    done = {**tombstone, **outcome.patch}
    assert isinstance(
        attempt_transition(EntityKind.DELETED_EQUIPMENT, done, transition, HOD).rejection, AlreadyInTargetState
    )
