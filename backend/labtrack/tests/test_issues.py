from decimal import Decimal

from .conftest import client, staff, create_equipment, approved_equipment


def relocated_equipment(client, staff):
    item = approved_equipment(client, staff)
    resp = client.post(
        "/api/transfers",
        json={"equipment_id": item["id"], "to_lab": str(staff.lab2.id)},
        headers=staff.headers("incharge1"),
    )
    assert resp.status_code == 201
    return item


def report(client, staff, item, who="assistant1", description="fan is noisy"):
    return client.post(
        "/api/issues",
        json={"equipment_id": item["id"], "description": description},
        headers=staff.headers(who),
    )


def test_issue_resolved_by_assistant_of_current_lab(client, staff):
    item = relocated_equipment(client, staff)
    resp = report(client, staff, item)
    assert resp.status_code == 201
    issue = resp.json()
    assert issue["status"] == "open"
    assert issue["lab_id"] == str(staff.lab2.id)

    # scope follows the equipment, which now lives in lab 2
    resp = client.post(
        f"/api/issues/{issue['id']}/resolve",
        json={"remark": "nope"},
        headers=staff.headers("assistant1"),
    )
    assert resp.status_code == 403
    assert resp.json()["detail"]["code"] == "SCOPE_MISMATCH"

    resp = client.post(
        f"/api/issues/{issue['id']}/resolve",
        json={"remark": "fan replaced", "cost_required": 500},
        headers=staff.headers("assistant2"),
    )
    assert resp.status_code == 200
    assert resp.json()["state"] == "resolved"

    listed = client.get("/api/issues", params={"status": "resolved"}, headers=staff.headers("hod")).json()
    row = next(i for i in listed if i["id"] == issue["id"])
    assert row["remark"] == "fan replaced"
    assert Decimal(str(row["cost_required"])) == Decimal("500")
    assert row["resolved_by"] == str(staff.assistant2.id)

    again = client.post(
        f"/api/issues/{issue['id']}/resolve",
        json={"remark": "twice"},
        headers=staff.headers("assistant2"),
    )
    assert again.status_code == 409


def test_issues_require_approved_equipment(client, staff):
    pending = create_equipment(client, staff)
    resp = report(client, staff, pending)
    assert resp.status_code == 409


def test_any_role_may_report(client, staff):
    item = approved_equipment(client, staff)
    for who in ("assistant2", "incharge1", "hod"):
        assert report(client, staff, item, who=who).status_code == 201


def test_open_issues_listed_before_resolved(client, staff):
    item = approved_equipment(client, staff)
    first = report(client, staff, item, description="first").json()
    second = report(client, staff, item, description="second").json()
    client.post(f"/api/issues/{second['id']}/resolve", json={}, headers=staff.headers("assistant1"))
    listed = client.get("/api/issues", params={"lab_id": str(staff.lab1.id)}, headers=staff.headers("hod")).json()
    ids = [i["id"] for i in listed if i["id"] in (first["id"], second["id"])]
    assert ids == [first["id"], second["id"]]


def test_negative_cost_is_rejected(client, staff):
    item = approved_equipment(client, staff)
    issue = report(client, staff, item).json()
    resp = client.post(
        f"/api/issues/{issue['id']}/resolve",
        json={"cost_required": -1},
        headers=staff.headers("assistant1"),
    )
    assert resp.status_code == 422
