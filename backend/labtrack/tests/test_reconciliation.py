import asyncio
import uuid
from datetime import date

import pytest

from labtrack.realtime.filters import FilterPredicate, matches
from labtrack.realtime.reconciliation import ReconciliationEngine

LAB1 = str(uuid.uuid4())
LAB2 = str(uuid.uuid4())


class RecordingFetcher:
    def __init__(self):
        self.calls = []

    async def __call__(self, table, predicate):
        self.calls.append((table, predicate))
        return [{"table": table, "call": len(self.calls)}]


def test_filter_from_params_treats_all_as_unconstrained():
    predicate = FilterPredicate.from_params({"search": "  ", "status": "all", "lab_id": "", "date_from": "2025-01-02"})
    assert predicate.search is None
    assert predicate.status is None
    assert predicate.lab_id is None
    assert predicate.date_from == date(2025, 1, 2)
    assert FilterPredicate.from_params({"status": "all"}).is_empty
    assert predicate.as_params() == {"date_from": "2025-01-02"}


def test_filter_rejects_bad_dates():
    with pytest.raises(ValueError):
        FilterPredicate.from_params(date_to="yesterday")


def test_matches_equipment_rows():
    row = {
        "name": "Thermal Cycler",
        "asset_code": "L1/PC-3",
        "allocated_lab": LAB1,
        "fully_approved": False,
        "is_deleted": False,
        "created_at": "2025-01-05T10:00:00+00:00",
    }
    assert matches("equipment", FilterPredicate(search="cycler"), row)
    assert not matches("equipment", FilterPredicate(search="microscope"), row)
    assert matches("equipment", FilterPredicate(status="pending"), row)
    assert not matches("equipment", FilterPredicate(status="approved"), row)
    assert not matches("equipment", FilterPredicate(lab_id=LAB2), row)
    assert matches("equipment", FilterPredicate(date_from=date(2025, 1, 5), date_to=date(2025, 1, 5)), row)
    assert not matches("equipment", FilterPredicate(date_from=date(2025, 1, 6)), row)


def test_matches_is_conservative_for_joined_fields():
    issue = {"description": "loud fan", "status": "open", "reported_at": "2025-01-05T10:00:00"}
    # the equipment name lives in a join the raw row does not carry
    assert matches("issues", FilterPredicate(search="centrifuge"), issue)
    assert matches("issues", FilterPredicate(lab_id=LAB1), issue)
    assert not matches("issues", FilterPredicate(status="resolved"), issue)
    transfer = {"from_lab": LAB1, "to_lab": LAB2, "status": "pending"}
    assert matches("transfers", FilterPredicate(lab_id=LAB2), transfer)
    assert not matches("transfers", FilterPredicate(lab_id=str(uuid.uuid4())), transfer)


@pytest.mark.asyncio
async def test_delete_event_always_refreshes():
    fetcher = RecordingFetcher()
    engine = ReconciliationEngine(fetcher, tables=["equipment"])
    await engine.set_filter("equipment", FilterPredicate(lab_id=LAB2, search="nothing matches this"))
    fetcher.calls.clear()

    refreshed = await engine.handle_event(
        "equipment", {"event_type": "delete", "record": {"allocated_lab": LAB1, "name": "x"}}
    )
    assert refreshed is True
    assert len(fetcher.calls) == 1


@pytest.mark.asyncio
async def test_update_outside_filter_is_ignored():
    fetcher = RecordingFetcher()
    engine = ReconciliationEngine(fetcher, tables=["equipment"])
    await engine.set_filter("equipment", FilterPredicate(lab_id=LAB1))
    fetcher.calls.clear()

    outside = {"event_type": "update", "record": {"allocated_lab": LAB2, "name": "Scope"}}
    inside = {"event_type": "insert", "record": {"allocated_lab": LAB1, "name": "Scope"}}
    assert await engine.handle_event("equipment", outside) is False
    assert fetcher.calls == []
    assert await engine.handle_event("equipment", inside) is True
    assert fetcher.calls == [("equipment", FilterPredicate(lab_id=LAB1))]


@pytest.mark.asyncio
async def test_unknown_event_and_unwatched_table_are_ignored():
    fetcher = RecordingFetcher()
    engine = ReconciliationEngine(fetcher, tables=["issues"])
    assert await engine.handle_event("issues", {"event_type": "truncate"}) is False
    assert await engine.handle_event("transfers", {"event_type": "delete", "record": {}}) is False
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_callbacks_receive_rows_and_can_unsubscribe():
    fetcher = RecordingFetcher()
    engine = ReconciliationEngine(fetcher)
    seen = []

    def sync_callback(table, rows):
        seen.append(("sync", table, rows))

    async def async_callback(table, rows):
        seen.append(("async", table, rows))

    unsubscribe = engine.on_reconciliation_event("transfers", sync_callback)
    engine.on_reconciliation_event("transfers", async_callback)
    await engine.refresh("transfers")
    assert [entry[0] for entry in seen] == ["sync", "async"]
    assert engine.results("transfers") == [{"table": "transfers", "call": 1}]

    unsubscribe()
    seen.clear()
    await engine.refresh("transfers")
    assert [entry[0] for entry in seen] == ["async"]


@pytest.mark.asyncio
async def test_out_of_order_refreshes_keep_the_last_to_finish():
    release = {1: asyncio.Event(), 2: asyncio.Event()}
    calls = []

    async def fetcher(table, predicate):
        calls.append(predicate)
        number = len(calls)
        await release[number].wait()
        return [{"fetch": number}]

    engine = ReconciliationEngine(fetcher, tables=["equipment"])
    first = asyncio.create_task(engine.refresh("equipment"))
    second = asyncio.create_task(engine.refresh("equipment"))
    await asyncio.sleep(0)
    release[2].set()
    await second
    release[1].set()
    await first
    # both reflect the store no older than their own request; the later completion wins
    assert engine.results("equipment") == [{"fetch": 1}]
    assert engine.refresh_count["equipment"] == 2


@pytest.mark.asyncio
async def test_refresh_superseded_by_filter_change_is_dropped():
    gate = asyncio.Event()

    async def fetcher(table, predicate):
        if predicate.status == "pending":
            await gate.wait()
            return [{"stale": True}]
        return [{"status": predicate.status}]

    engine = ReconciliationEngine(fetcher)
    engine.watch("transfers", FilterPredicate(status="pending"))
    slow = asyncio.create_task(engine.refresh("transfers"))
    await asyncio.sleep(0)
    await engine.set_filter("transfers", FilterPredicate(status="received"))
    gate.set()
    await slow
    assert engine.results("transfers") == [{"status": "received"}]
    assert engine.current_filter("transfers") == FilterPredicate(status="received")


@pytest.mark.asyncio
async def test_reconnect_refreshes_every_watched_table_once():
    fetcher = RecordingFetcher()
    engine = ReconciliationEngine(fetcher, tables=["equipment", "issues"])
    await engine.reconnect()
    assert sorted(table for table, _ in fetcher.calls) == ["equipment", "issues"]


@pytest.mark.asyncio
async def test_run_consumes_a_stream():
    fetcher = RecordingFetcher()
    engine = ReconciliationEngine(fetcher, tables=["issues"])

    async def stream():
        yield {"event_type": "insert", "record": {"status": "open"}}
        yield {"event_type": "bogus"}
        yield {"event_type": "delete", "record": {"id": "x"}}

    await engine.run("issues", stream())
    assert len(fetcher.calls) == 2
