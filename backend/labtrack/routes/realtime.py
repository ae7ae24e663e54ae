"""Websocket sessions: one reconciliation engine or notification feed per connection."""

# purpose: bridge redis change/notification channels to per-session state over websockets
# status: active

import asyncio
import logging
from contextlib import suppress
from typing import Any
from uuid import UUID

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from ..database import SessionLocal
from ..auth import user_from_token
from ..exceptions import EntityNotFound
from ..realtime.filters import FilterPredicate
from ..realtime.notification_feed import NotificationFeed, relative_age
from ..realtime.reconciliation import ReconciliationEngine
from ..services import notifications as notification_service
from ..store import WATCHED_TABLES, EntityStore
from .. import pubsub, schemas

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

ROW_SCHEMAS = {
    "equipment": schemas.EquipmentOut,
    "transfers": schemas.TransferOut,
    "issues": schemas.IssueOut,
    "deleted_equipment": schemas.DeletedEquipmentOut,
}

FILTER_KEYS = ("search", "status", "lab_id", "type_id", "date_from", "date_to")


def _fetch_rows(table: str, predicate: FilterPredicate) -> list[dict[str, Any]]:
    db = SessionLocal()
    try:
        schema = ROW_SCHEMAS[table]
        return [
            schema.model_validate(row).model_dump(mode="json")
            for row in EntityStore(db).read(table, predicate)
        ]
    finally:
        db.close()


async def fetch_rows(table: str, predicate: FilterPredicate) -> list[dict[str, Any]]:
    return await run_in_threadpool(_fetch_rows, table, predicate)


def _authenticate(token: str | None):
    db = SessionLocal()
    try:
        user = user_from_token(db, token)
        if user is None:
            return None
        return {"id": user.id, "role": user.role, "lab_id": user.lab_id}
    finally:
        db.close()


def _notification_rows(user_id) -> list[dict[str, Any]]:
    db = SessionLocal()
    try:
        return [
            schemas.NotificationOut.model_validate(row).model_dump(mode="json")
            for row in notification_service.list_notifications(db, user_id, limit=100)
        ]
    finally:
        db.close()


def _mark_read(notification_id, user_id) -> bool:
    try:
        key = UUID(str(notification_id))
    except (ValueError, TypeError):
        return False
    db = SessionLocal()
    try:
        notification_service.mark_read(db, key, user_id)
        return True
    except EntityNotFound:
        return False
    finally:
        db.close()


def _mark_all_read(user_id) -> int:
    db = SessionLocal()
    try:
        return notification_service.mark_all_read(db, user_id)
    finally:
        db.close()


async def _run_until_first_done(*coroutines) -> None:
    tasks = [asyncio.create_task(coroutine) for coroutine in coroutines]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task.exception() is not None and not isinstance(task.exception(), WebSocketDisconnect):
                logger.warning("Realtime session task failed: %s", task.exception())
    finally:
        for task in tasks:
            task.cancel()
            with suppress(asyncio.CancelledError, WebSocketDisconnect):
                await task


@router.websocket("/ws/reconcile/{table}")
async def reconcile_session(websocket: WebSocket, table: str):
    if table not in WATCHED_TABLES:
        await websocket.close(code=4404)
        return
    user = await run_in_threadpool(_authenticate, websocket.query_params.get("token"))
    if user is None:
        await websocket.close(code=4401)
        return
    await websocket.accept()

    engine = ReconciliationEngine(fetch_rows)
    params = {key: websocket.query_params.get(key) for key in FILTER_KEYS}
    try:
        engine.watch(table, FilterPredicate.from_params(params))
    except ValueError:
        engine.watch(table)
        await websocket.send_json({"type": "error", "message": "Invalid filter, showing all rows"})

    async def push(changed_table: str, rows: list[dict[str, Any]]) -> None:
        await websocket.send_json(
            {
                "type": "refresh",
                "table": changed_table,
                "filter": engine.current_filter(changed_table).as_params(),
                "rows": rows,
            }
        )

    engine.on_reconciliation_event(table, push)
    subscription = await pubsub.open_subscription(pubsub.change_channel(table))

    async def listen() -> None:
        await engine.run(table, pubsub.iter_messages(subscription))

    async def commands() -> None:
        while True:
            message = await websocket.receive_json()
            action = message.get("action")
            if action == "set_filter":
                try:
                    predicate = FilterPredicate.from_params(message.get("filter") or {})
                except ValueError:
                    await websocket.send_json({"type": "error", "message": "Invalid filter"})
                    continue
                await engine.set_filter(table, predicate)
            elif action in ("refresh", "reconnect"):
                await engine.reconnect()

    try:
        # initial load doubles as the unconditional refresh after (re)connecting
        await engine.reconnect()
        await _run_until_first_done(listen(), commands())
    except WebSocketDisconnect:
        pass
    finally:
        await pubsub.close_subscription(subscription, pubsub.change_channel(table))


@router.websocket("/ws/notifications")
async def notification_session(websocket: WebSocket):
    user = await run_in_threadpool(_authenticate, websocket.query_params.get("token"))
    if user is None:
        await websocket.close(code=4401)
        return
    await websocket.accept()

    user_id = user["id"]
    feed = NotificationFeed(user_id)
    channel = pubsub.notification_channel(user_id)
    subscription = await pubsub.open_subscription(channel)

    async def snapshot() -> None:
        feed.load(await run_in_threadpool(_notification_rows, user_id))
        await websocket.send_json(
            {
                "type": "snapshot",
                "notifications": [
                    {**item, "age": relative_age(item.get("created_at"))} for item in feed.notifications()
                ],
                "unread": feed.unread_count(),
            }
        )

    async def unread() -> None:
        await websocket.send_json({"type": "unread", "unread": feed.unread_count()})

    async def listen() -> None:
        async for payload in pubsub.iter_messages(subscription):
            kind = payload.get("type")
            if kind == "notification":
                if feed.receive(payload):
                    await websocket.send_json(
                        {
                            "type": "notification",
                            "notification": {**payload, "age": relative_age(payload.get("created_at"))},
                            "unread": feed.unread_count(),
                        }
                    )
            elif kind == "notification_read":
                if feed.mark_read((payload.get("data") or {}).get("id")):
                    await unread()
            elif kind == "notifications_read_all":
                if feed.mark_all_read():
                    await unread()

    async def commands() -> None:
        while True:
            message = await websocket.receive_json()
            action = message.get("action")
            if action == "mark_read":
                notification_id = message.get("id")
                if await run_in_threadpool(_mark_read, notification_id, user_id):
                    feed.mark_read(notification_id)
                    await pubsub.publish_notification(
                        user_id, {"type": "notification_read", "data": {"id": str(notification_id)}}
                    )
                await unread()
            elif action == "mark_all_read":
                await run_in_threadpool(_mark_all_read, user_id)
                feed.mark_all_read()
                await pubsub.publish_notification(user_id, {"type": "notifications_read_all", "data": {}})
                await unread()
            elif action in ("reload", "reconnect"):
                await snapshot()

    try:
        await snapshot()
        await _run_until_first_done(listen(), commands())
    except WebSocketDisconnect:
        pass
    finally:
        await pubsub.close_subscription(subscription, channel)
