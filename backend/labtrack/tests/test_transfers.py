from .conftest import client, staff, create_equipment, approved_equipment


def start_transfer(client, staff, item, who="incharge1"):
    return client.post(
        "/api/transfers",
        json={"equipment_id": item["id"], "to_lab": str(staff.lab2.id)},
        headers=staff.headers(who),
    )


def test_transfer_receive_scenario(client, staff):
    item = approved_equipment(client, staff)
    resp = start_transfer(client, staff, item)
    assert resp.status_code == 201, resp.text
    transfer = resp.json()
    assert transfer["status"] == "pending"
    assert transfer["from_lab"] == str(staff.lab1.id)
    assert transfer["to_lab"] == str(staff.lab2.id)

    # relocation happens when the transfer is created
    moved = client.get(f"/api/equipment/{item['id']}", headers=staff.headers("hod")).json()
    assert moved["allocated_lab"] == str(staff.lab2.id)
    assert moved["asset_code"].startswith(f"{staff.lab2.lab_identifier}/")

    resp = client.post(f"/api/transfers/{transfer['id']}/receive", headers=staff.headers("incharge1"))
    assert resp.status_code == 403
    assert resp.json()["detail"]["code"] == "SCOPE_MISMATCH"

    resp = client.post(f"/api/transfers/{transfer['id']}/receive", headers=staff.headers("incharge2"))
    assert resp.status_code == 200
    assert resp.json()["state"] == "received"
    listed = client.get("/api/transfers", params={"status": "received"}, headers=staff.headers("hod")).json()
    row = next(t for t in listed if t["id"] == transfer["id"])
    assert row["received_by"] == str(staff.incharge2.id)
    assert row["received_at"] is not None

    again = client.post(f"/api/transfers/{transfer['id']}/receive", headers=staff.headers("incharge2"))
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "INVALID_STATE_TRANSITION"


def test_only_approved_equipment_from_own_lab_can_move(client, staff):
    pending = create_equipment(client, staff)
    resp = start_transfer(client, staff, pending)
    assert resp.status_code == 409

    item = approved_equipment(client, staff)
    assert start_transfer(client, staff, item, who="assistant1").status_code == 403
    resp = start_transfer(client, staff, item, who="incharge2")
    assert resp.status_code == 403
    assert resp.json()["detail"]["code"] == "SCOPE_MISMATCH"

    resp = client.post(
        "/api/transfers",
        json={"equipment_id": item["id"], "to_lab": str(staff.lab1.id)},
        headers=staff.headers("incharge1"),
    )
    assert resp.status_code == 409


def test_pending_transfer_deletion(client, staff):
    item = approved_equipment(client, staff)
    transfer = start_transfer(client, staff, item).json()

    resp = client.delete(f"/api/transfers/{transfer['id']}", headers=staff.headers("incharge2"))
    assert resp.status_code == 403
    resp = client.delete(f"/api/transfers/{transfer['id']}", headers=staff.headers("incharge1"))
    assert resp.status_code == 204
    listed = client.get("/api/transfers", headers=staff.headers("hod")).json()
    assert transfer["id"] not in [t["id"] for t in listed]


def test_received_transfer_cannot_be_deleted(client, staff):
    item = approved_equipment(client, staff)
    transfer = start_transfer(client, staff, item).json()
    client.post(f"/api/transfers/{transfer['id']}/receive", headers=staff.headers("incharge2"))
    resp = client.delete(f"/api/transfers/{transfer['id']}", headers=staff.headers("hod"))
    assert resp.status_code == 409


def test_transfer_list_filtered_by_lab(client, staff):
    item = approved_equipment(client, staff)
    transfer = start_transfer(client, staff, item).json()
    for lab in (staff.lab1, staff.lab2):
        listed = client.get("/api/transfers", params={"lab_id": str(lab.id)}, headers=staff.headers("hod")).json()
        assert [t["id"] for t in listed] == [transfer["id"]]
