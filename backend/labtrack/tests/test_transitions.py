import pytest

from labtrack import models
from labtrack.exceptions import StoreUnavailable
from labtrack.services import transitions
from labtrack.store import EntityStore
from .conftest import client, staff, db, actor_for, create_equipment, TestingSessionLocal


def seed_equipment(db, staff, **fields):
    store = EntityStore(db)
    values = {"name": "Spectrometer", "allocated_lab": staff.lab1.id, "created_by": staff.assistant1.id}
    values.update(fields)
    row = store.insert("equipment", values)
    store.commit()
    return row


def failing_commit(failed):
    def commit(self):
        failed.append(self)
        self.rollback()
        raise StoreUnavailable("store unavailable during commit")
    return commit


@pytest.mark.asyncio
async def test_failed_commit_does_not_advance_state(db, staff, monkeypatch):
    equipment = seed_equipment(db, staff)
    failed = []
    monkeypatch.setattr(EntityStore, "commit", failing_commit(failed))

    with pytest.raises(StoreUnavailable):
        await transitions.request_transition(db, "equipment", "approve", equipment.id, actor_for(staff.incharge1))

    assert len(failed) == 1
    assert failed[0].outbox == []
    db.expire_all()
    row = db.get(models.Equipment, equipment.id)
    assert row.approved_by_incharge is None
    assert row.fully_approved is False
    assert db.query(models.Notification).filter(models.Notification.entity_id == equipment.id).count() == 0
    assert (
        db.query(models.ActivityLog)
        .filter(models.ActivityLog.entity_id == equipment.id, models.ActivityLog.action_type == "approve")
        .count()
        == 0
    )


def test_failed_commit_is_a_retryable_503(client, staff, monkeypatch):
    item = create_equipment(client, staff)
    monkeypatch.setattr(EntityStore, "commit", failing_commit([]))

    resp = client.post(f"/api/equipment/{item['id']}/approve", headers=staff.headers("incharge1"))
    assert resp.status_code == 503
    assert resp.json()["detail"]["code"] == "STORE_UNAVAILABLE"
    assert resp.json()["detail"]["retryable"] is True

    detail = client.get(f"/api/equipment/{item['id']}", headers=staff.headers("hod")).json()
    assert detail["approved_by_incharge"] is None
    messages = [n["message"] for n in client.get("/api/notifications", headers=staff.headers("hod")).json()]
    assert f"Equipment approved: {item['name']}" not in messages


@pytest.mark.asyncio
async def test_lost_race_reruns_the_machine_and_ends_in_noop(db, staff, monkeypatch):
    equipment = seed_equipment(db, staff)
    original_update = EntityStore.update
    raced = []

    def racing_update(self, table, entity_id, patch, expect=None):
        if not raced:
            # another incharge session fills the slot between our read and our write
            raced.append(entity_id)
            other = TestingSessionLocal()
            try:
                rival = EntityStore(other)
                rival.update(
                    "equipment",
                    entity_id,
                    {"approved_by_incharge": staff.incharge1.id},
                    expect={"approved_by_incharge": None},
                )
                rival.commit()
            finally:
                other.close()
        return original_update(self, table, entity_id, patch, expect)

    monkeypatch.setattr(EntityStore, "update", racing_update)
    result = await transitions.request_transition(
        db, "equipment", "approve", equipment.id, actor_for(staff.incharge1)
    )

    assert raced == [equipment.id]
    assert result.ok is True
    assert result.changed is False
    assert result.notification is None
    db.expire_all()
    row = db.get(models.Equipment, equipment.id)
    assert row.approved_by_incharge == staff.incharge1.id
    assert db.query(models.Notification).filter(models.Notification.entity_id == equipment.id).count() == 0


@pytest.mark.asyncio
async def test_repeated_lost_races_are_reported_as_rejection(db, staff, monkeypatch):
    equipment = seed_equipment(db, staff)
    calls = []

    def always_missing(self, table, entity_id, patch, expect=None):
        calls.append(table)
        return None

    monkeypatch.setattr(EntityStore, "update", always_missing)
    result = await transitions.request_transition(
        db, "equipment", "approve", equipment.id, actor_for(staff.hod)
    )

    assert calls == ["equipment"] * transitions.MAX_ATTEMPTS
    assert result.ok is False
    assert result.rejection.code == "INVALID_STATE_TRANSITION"
    db.expire_all()
    assert db.get(models.Equipment, equipment.id).approved_by_hod is None
