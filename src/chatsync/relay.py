"""Development relay: serves a ``MemoryStore`` over HTTP and a realtime WebSocket.

Row operations are ``POST /v1/rows/{table}/{op}`` with a JSON body. Change
feeds and presence travel over ``GET /v1/ws`` as ``{"v": 1, "t": ..., "id":
..., "body": ...}`` frames.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Tuple, Union

from aiohttp import WSMsgType, web

from .errors import ConflictError, NotFound, StoreError, UnknownTable
from .feed import ChangeEvent, ChangeFeedSubscription, RowFilter
from .memory import MemoryStore
from .presence import PresenceChannel


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _store_error(exc: StoreError) -> web.Response:
    if isinstance(exc, UnknownTable):
        return web.json_response({"code": "unknown_table", "message": str(exc)}, status=404)
    if isinstance(exc, NotFound):
        return web.json_response({"code": "not_found", "message": str(exc)}, status=404)
    if isinstance(exc, ConflictError):
        return web.json_response({"code": "conflict", "message": str(exc)}, status=409)
    return web.json_response({"code": "store_error", "message": str(exc)}, status=500)


def _is_mapping(value: Any) -> bool:
    return isinstance(value, dict) and all(isinstance(key, str) for key in value)


async def handle_rows(request: web.Request) -> web.Response:
    store: MemoryStore = request.app["store"]
    table = request.match_info["table"]
    op = request.match_info["op"]
    try:
        body = await request.json()
    except Exception:
        return _invalid_request("malformed json")
    if not isinstance(body, dict):
        return _invalid_request("body must be a JSON object")

    filters = body.get("filters")
    try:
        if op == "select":
            order_by = body.get("order_by")
            limit = body.get("limit")
            if filters is not None and not _is_mapping(filters):
                return _invalid_request("filters must be an object")
            if order_by is not None and not isinstance(order_by, str):
                return _invalid_request("order_by must be a column name")
            if limit is not None and not isinstance(limit, int):
                return _invalid_request("limit must be an integer")
            rows = await store.select(
                table, filters, order_by=order_by, ascending=bool(body.get("ascending", True)), limit=limit
            )
            return web.json_response({"rows": rows})
        if op == "single":
            if not _is_mapping(filters):
                return _invalid_request("filters required")
            return web.json_response({"row": await store.single(table, filters)})
        if op == "insert":
            row = body.get("row")
            if not _is_mapping(row):
                return _invalid_request("row required")
            return web.json_response({"row": await store.insert(table, row)})
        if op == "upsert":
            row = body.get("row")
            on_conflict = body.get("on_conflict")
            if not _is_mapping(row):
                return _invalid_request("row required")
            if not isinstance(on_conflict, list) or not on_conflict or any(not isinstance(c, str) for c in on_conflict):
                return _invalid_request("on_conflict must be a list of column names")
            return web.json_response({"row": await store.upsert(table, row, on_conflict)})
        if op == "update":
            changes = body.get("changes")
            if not _is_mapping(filters) or not _is_mapping(changes):
                return _invalid_request("filters and changes required")
            return web.json_response({"rows": await store.update(table, filters, changes)})
        if op == "delete":
            if not _is_mapping(filters) or not filters:
                return _invalid_request("filters required")
            return web.json_response({"rows": await store.delete(table, filters)})
    except StoreError as exc:
        return _store_error(exc)
    return web.json_response({"code": "unknown_op", "message": f"unsupported operation: {op}"}, status=404)


def create_app(
    store: MemoryStore | None = None,
    *,
    ping_interval_s: float = 30,
    max_msg_size: int = 1_048_576,
) -> web.Application:
    app = web.Application()
    app["store"] = store or MemoryStore()
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/rows/{table}/{op}", handle_rows)
    app.router.add_get("/v1/ws", websocket_handler)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _ack_frame(request_id: str | None, body: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "ack", "id": request_id, "body": body or {}}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    store: MemoryStore = request.app["store"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    # aiohttp pings at this interval and drops peers that miss the pong
    ws = web.WebSocketResponse(heartbeat=ws_config["ping_interval_s"], max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    outbound: asyncio.Queue[Union[dict, None]] = asyncio.Queue(maxsize=1000)
    subscriptions: Dict[str, ChangeFeedSubscription] = {}
    channels: Dict[Tuple[str, str], PresenceChannel] = {}
    close_task: asyncio.Task | None = None

    def enqueue(frame: dict) -> None:
        nonlocal close_task
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            if close_task is None:
                close_task = asyncio.create_task(ws.close(code=1011, message=b"backpressure"))

    def feed_forwarder(sub_id: str):
        def _forward(event: ChangeEvent) -> None:
            enqueue(
                {
                    "v": 1,
                    "t": "feed.event",
                    "body": {"sub_id": sub_id, "table": event.table, "kind": event.kind, "row": event.row},
                }
            )

        return _forward

    def attach_presence(channel: PresenceChannel) -> None:
        scope, key = channel.scope, channel.key
        channel.on_sync(
            lambda state: enqueue({"v": 1, "t": "presence.sync", "body": {"scope": scope, "key": key, "state": state}})
        )
        channel.on_join(
            lambda joined_key, records: enqueue(
                {"v": 1, "t": "presence.join", "body": {"scope": scope, "channel": key, "key": joined_key, "records": records}}
            )
        )
        channel.on_leave(
            lambda left_key, records: enqueue(
                {"v": 1, "t": "presence.leave", "body": {"scope": scope, "channel": key, "key": left_key, "records": records}}
            )
        )

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return

    async def handle_frame(frame: dict) -> None:
        request_id = frame.get("id")
        frame_type = frame.get("t")
        body = frame.get("body") or {}

        if frame_type == "ping":
            enqueue({"v": 1, "t": "pong", "id": request_id})
        elif frame_type == "feed.subscribe":
            sub_id = body.get("sub_id")
            table = body.get("table")
            if not isinstance(sub_id, str) or not isinstance(table, str):
                enqueue(_error_frame("invalid_request", "sub_id and table required", request_id=request_id))
                return
            if sub_id in subscriptions:
                enqueue(_ack_frame(request_id, {"sub_id": sub_id}))
                return
            try:
                subscription = await store.subscribe(
                    table,
                    feed_forwarder(sub_id),
                    row_filter=RowFilter.from_payload(body.get("filter")),
                    kinds=body.get("kinds"),
                )
            except (StoreError, ValueError, KeyError) as exc:
                enqueue(_error_frame("invalid_request", str(exc), request_id=request_id))
                return
            subscriptions[sub_id] = subscription
            enqueue(_ack_frame(request_id, {"sub_id": sub_id}))
        elif frame_type == "feed.unsubscribe":
            subscription = subscriptions.pop(body.get("sub_id"), None)
            if subscription is not None:
                await store.unsubscribe(subscription)
            enqueue(_ack_frame(request_id))
        elif frame_type in {"presence.join", "presence.track", "presence.untrack", "presence.leave"}:
            scope = body.get("scope")
            key = body.get("key")
            if not isinstance(scope, str) or not isinstance(key, str):
                enqueue(_error_frame("invalid_request", "scope and key required", request_id=request_id))
                return
            if frame_type == "presence.join":
                if (scope, key) not in channels:
                    channel = store.presence_channel(scope, key)
                    attach_presence(channel)
                    channels[(scope, key)] = channel
                    await channel.subscribe()
                enqueue(_ack_frame(request_id))
                return
            if frame_type == "presence.leave":
                channel = channels.pop((scope, key), None)
                if channel is not None:
                    await channel.close()
                enqueue(_ack_frame(request_id))
                return
            channel = channels.get((scope, key))
            if channel is None:
                enqueue(_error_frame("not_joined", "join the presence scope first", request_id=request_id))
                return
            if frame_type == "presence.track":
                record = body.get("record")
                if not _is_mapping(record):
                    enqueue(_error_frame("invalid_request", "record required", request_id=request_id))
                    return
                await channel.track(record)
            else:
                await channel.untrack()
            enqueue(_ack_frame(request_id))
        else:
            enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))

    writer_task = asyncio.create_task(writer())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    request_id = frame.get("id") if isinstance(frame, dict) else None
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue
                await handle_frame(frame)
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        for subscription in subscriptions.values():
            await store.unsubscribe(subscription)
        for (_, key), channel in channels.items():
            await channel.close()
            store.presence.drop(key)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        pending = [writer_task] if close_task is None else [writer_task, close_task]
        await asyncio.gather(*pending, return_exceptions=True)

    return ws
