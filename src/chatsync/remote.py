"""Store adapter that talks to a ``chatsync.relay`` over aiohttp."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import aiohttp

from .errors import ConflictError, NotFound, StoreError, UnknownTable
from .feed import Callback, ChangeEvent, ChangeFeedSubscription, RowFilter
from .models import Row
from .presence import PresenceChannel, PresenceState, new_connection_key

logger = logging.getLogger(__name__)


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def _error_for(status: int, payload: Dict[str, Any]) -> StoreError:
    code = payload.get("code")
    message = str(payload.get("message") or f"relay returned HTTP {status}")
    if code == "not_found":
        return NotFound(message)
    if code == "unknown_table":
        return UnknownTable(message)
    if code == "conflict" or status == 409:
        return ConflictError(message)
    return StoreError(message)


class RemotePresenceChannel(PresenceChannel):
    """Presence channel whose state lives on the relay."""

    def __init__(self, remote: "RemoteStore", scope: str, key: str) -> None:
        super().__init__(None, scope, key)
        self._remote = remote
        self._state: PresenceState = {}

    def presence_state(self) -> PresenceState:
        return {key: [dict(record) for record in records] for key, records in self._state.items()}

    async def subscribe(self) -> None:
        if self._subscribed:
            return
        self._subscribed = True
        self._remote._channels[(self.scope, self.key)] = self
        try:
            await self._remote._request("presence.join", {"scope": self.scope, "key": self.key})
        except StoreError:
            self._subscribed = False
            self._remote._channels.pop((self.scope, self.key), None)
            raise

    async def track(self, payload: Row) -> None:
        if not self._subscribed or self._disconnected:
            raise StoreError("presence channel is not connected")
        await self._remote._request("presence.track", {"scope": self.scope, "key": self.key, "record": dict(payload)})

    async def untrack(self) -> None:
        if self._disconnected:
            raise StoreError("presence channel is not connected")
        await self._remote._request("presence.untrack", {"scope": self.scope, "key": self.key})

    async def close(self) -> None:
        was_subscribed, self._subscribed = self._subscribed, False
        self._remote._channels.pop((self.scope, self.key), None)
        if not was_subscribed or self._disconnected or not self._remote.connected:
            return
        try:
            await self._remote._request("presence.leave", {"scope": self.scope, "key": self.key})
        except StoreError as exc:
            logger.debug("presence leave for %s failed: %s", self.scope, exc)

    def emit_sync(self, state: PresenceState) -> None:
        self._state = state
        super().emit_sync(state)


class RemoteStore:
    """The backing store contract, served by a relay at ``base_url``.

    Row operations are plain HTTP requests. Subscriptions and presence share
    one WebSocket opened by ``connect``; when it drops, every subscription
    and presence channel is marked disconnected until ``reconnect``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        request_timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = request_timeout_s
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._counter = 0
        self._subscriptions: Dict[str, ChangeFeedSubscription] = {}
        self._channels: Dict[Tuple[str, str], RemotePresenceChannel] = {}

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def __aenter__(self) -> "RemoteStore":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def connect(self) -> None:
        if self.connected:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            self._ws = await self._session.ws_connect(_build_url(self.base_url, "/v1/ws"))
        except (aiohttp.ClientError, OSError) as exc:
            raise StoreError(f"could not open realtime socket at {self.base_url}") from exc
        self._reader_task = asyncio.create_task(self._reader(self._ws))

    async def reconnect(self) -> None:
        """Open a fresh socket and re-register every live subscription.

        Presence channels are not restored; trackers rejoin on their own.
        """

        await self._close_socket()
        await self.connect()
        for subscription in list(self._subscriptions.values()):
            await self._request("feed.subscribe", self._subscribe_body(subscription))
            subscription.mark_reconnected()

    async def close(self) -> None:
        await self._close_socket()
        for subscription in self._subscriptions.values():
            subscription.cancel()
        self._subscriptions.clear()
        self._channels.clear()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def select(
        self,
        table: str,
        filters: Dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        ascending: bool = True,
        limit: int | None = None,
    ) -> List[Row]:
        payload = {"filters": filters, "order_by": order_by, "ascending": ascending, "limit": limit}
        response = await self._post_json(table, "select", payload)
        return list(response.get("rows") or [])

    async def single(self, table: str, filters: Dict[str, Any]) -> Row:
        response = await self._post_json(table, "single", {"filters": filters})
        return dict(response["row"])

    async def insert(self, table: str, row: Row) -> Row:
        response = await self._post_json(table, "insert", {"row": row})
        return dict(response["row"])

    async def upsert(self, table: str, row: Row, on_conflict: Sequence[str]) -> Row:
        response = await self._post_json(table, "upsert", {"row": row, "on_conflict": list(on_conflict)})
        return dict(response["row"])

    async def update(self, table: str, filters: Dict[str, Any], changes: Row) -> List[Row]:
        response = await self._post_json(table, "update", {"filters": filters, "changes": changes})
        return list(response.get("rows") or [])

    async def delete(self, table: str, filters: Dict[str, Any]) -> List[Row]:
        response = await self._post_json(table, "delete", {"filters": filters})
        return list(response.get("rows") or [])

    async def subscribe(
        self,
        table: str,
        callback: Callback,
        *,
        row_filter: RowFilter | None = None,
        kinds: Iterable[str] | None = None,
    ) -> ChangeFeedSubscription:
        subscription = ChangeFeedSubscription(table, callback, row_filter, kinds)
        self._subscriptions[subscription.sub_id] = subscription
        try:
            await self._request("feed.subscribe", self._subscribe_body(subscription))
        except StoreError:
            self._subscriptions.pop(subscription.sub_id, None)
            subscription.cancel()
            raise
        return subscription

    async def unsubscribe(self, subscription: ChangeFeedSubscription) -> None:
        subscription.cancel()
        if self._subscriptions.pop(subscription.sub_id, None) is None or not self.connected:
            return
        try:
            await self._request("feed.unsubscribe", {"sub_id": subscription.sub_id})
        except StoreError as exc:
            logger.debug("unsubscribe %s failed: %s", subscription.sub_id, exc)

    def presence_channel(self, scope: str, key: str | None = None) -> RemotePresenceChannel:
        return RemotePresenceChannel(self, scope, key or new_connection_key())

    async def _post_json(self, table: str, op: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        url = _build_url(self.base_url, f"/v1/rows/{table}/{op}")
        try:
            async with self._session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=self._timeout)) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StoreError(f"{op} on {table} failed: {exc}") from exc
        if not isinstance(body, dict):
            body = {}
        if status >= 400:
            raise _error_for(status, body)
        return body

    def _subscribe_body(self, subscription: ChangeFeedSubscription) -> Dict[str, Any]:
        return {
            "sub_id": subscription.sub_id,
            "table": subscription.table,
            "filter": subscription.row_filter.to_payload() if subscription.row_filter else None,
            "kinds": sorted(subscription.kinds),
        }

    async def _request(self, frame_type: str, body: Dict[str, Any]) -> Dict[str, Any]:
        ws = self._ws
        if ws is None or ws.closed:
            raise StoreError("realtime socket is not connected")
        self._counter += 1
        request_id = f"r{self._counter}"
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send_json({"v": 1, "t": frame_type, "id": request_id, "body": body})
            return await asyncio.wait_for(future, self._timeout)
        except (aiohttp.ClientError, ConnectionResetError, asyncio.TimeoutError) as exc:
            raise StoreError(f"{frame_type} request failed") from exc
        finally:
            self._pending.pop(request_id, None)

    async def _reader(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("dropping malformed frame from relay")
                        continue
                    if isinstance(frame, dict):
                        self._dispatch(frame)
                elif msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                    break
        finally:
            if ws is self._ws:
                self._handle_socket_closed()

    def _dispatch(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        request_id = frame.get("id")

        if frame_type == "ack":
            future = self._pending.get(request_id)
            if future is not None and not future.done():
                future.set_result(body)
        elif frame_type == "error":
            error = StoreError(f"{body.get('code')}: {body.get('message')}")
            future = self._pending.get(request_id)
            if future is not None and not future.done():
                future.set_exception(error)
            else:
                logger.warning("relay error: %s", error)
        elif frame_type == "feed.event":
            subscription = self._subscriptions.get(body.get("sub_id"))
            if subscription is not None:
                subscription.deliver(
                    ChangeEvent(table=body.get("table"), kind=body.get("kind"), row=dict(body.get("row") or {}))
                )
        elif frame_type == "presence.sync":
            channel = self._channels.get((body.get("scope"), body.get("key")))
            if channel is not None:
                channel.emit_sync(body.get("state") or {})
        elif frame_type in {"presence.join", "presence.leave"}:
            # "key" is the connection that changed, "channel" the one being told
            channel = self._channels.get((body.get("scope"), body.get("channel")))
            if channel is None:
                return
            if frame_type == "presence.join":
                channel.emit_join(body.get("key"), body.get("records") or [])
            else:
                channel.emit_leave(body.get("key"), body.get("records") or [])

    def _handle_socket_closed(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(StoreError("realtime socket closed"))
        for subscription in list(self._subscriptions.values()):
            subscription.mark_disconnected()
        for channel in list(self._channels.values()):
            channel.mark_disconnected()
        self._channels.clear()

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None
        if ws is not None:
            await ws.close()
        if reader is not None:
            await asyncio.gather(reader, return_exceptions=True)
        if ws is not None:
            self._handle_socket_closed()
