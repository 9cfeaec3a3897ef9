from __future__ import annotations

import asyncio
import bisect
import logging
from typing import Callable, Dict, List, Optional, Set, Tuple

from . import reply
from .config import SyncConfig
from .errors import LoadError, SendError, StoreError
from .feed import INSERT, ChangeEvent, ChangeFeedSubscription, RowFilter
from .models import (
    MESSAGE_DOCUMENT,
    MESSAGE_IMAGE,
    MESSAGE_POLL,
    MESSAGE_TEXT,
    MESSAGE_TYPES,
    Message,
    MessageDraft,
)

logger = logging.getLogger(__name__)

TABLE = "messages"

Listener = Callable[[Tuple[Message, ...]], None]


class MessageStore:
    """Ordered, de-duplicated message log for one scope.

    ``room_id=None`` is the global feed. Own messages are not added when sent;
    they arrive through the change feed like everyone else's.
    """

    def __init__(
        self,
        store,
        room_id: str | None = None,
        *,
        limit: int | None = None,
        config: SyncConfig | None = None,
    ) -> None:
        self._store = store
        self.room_id = room_id
        self._config = config or SyncConfig()
        self.limit = limit if limit is not None else self._config.message_limit(room_id)
        self._items: List[Message] = []
        self._keys: List[Tuple[int, str]] = []
        self._ids: Set[str] = set()
        self._subscription: ChangeFeedSubscription | None = None
        self._generation = 0
        self._live_buffers: List[Dict[str, Message]] = []
        self._listeners: List[Listener] = []
        self._stale = False
        self._reload_task: asyncio.Task | None = None

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._items)

    @property
    def stale(self) -> bool:
        return self._stale

    def get(self, message_id: str) -> Message | None:
        if message_id not in self._ids:
            return None
        return next((message for message in self._items if message.id == message_id), None)

    def add_listener(self, callback: Listener) -> None:
        self._listeners.append(callback)

    async def start(self) -> None:
        """Subscribe to inserts for this scope, then load the snapshot."""

        generation = self._generation
        subscription = await self._store.subscribe(
            TABLE,
            lambda event: self._handle_event(generation, event),
            row_filter=RowFilter("room_id", self.room_id),
            kinds=(INSERT,),
        )
        if generation != self._generation:
            await self._store.unsubscribe(subscription)
            return
        subscription.on_disconnect(lambda: self._handle_disconnect(generation))
        subscription.on_reconnect(lambda: self._handle_reconnect(generation))
        self._subscription = subscription
        await self.load_initial()

    async def close(self) -> None:
        self._generation += 1
        subscription, self._subscription = self._subscription, None
        if self._reload_task is not None:
            self._reload_task.cancel()
            self._reload_task = None
        if subscription is not None:
            await self._store.unsubscribe(subscription)

    async def load_initial(self, limit: int | None = None) -> Tuple[Message, ...]:
        """Replace the local log with the oldest ``limit`` messages of the scope.

        Inserts delivered by the feed while the query is in flight are merged
        into the snapshot. On failure the current log is kept.
        """

        generation = self._generation
        buffer: Dict[str, Message] = {}
        self._live_buffers.append(buffer)
        try:
            rows = await self._store.select(
                TABLE,
                {"room_id": self.room_id},
                order_by="created_at",
                ascending=True,
                limit=self.limit if limit is None else limit,
            )
        except StoreError as exc:
            raise LoadError(f"failed to load messages for scope {self.room_id or 'global'}") from exc
        finally:
            self._live_buffers.remove(buffer)

        if generation != self._generation:
            return self.messages

        merged: Dict[str, Message] = {}
        for row in rows:
            message = Message.from_row(row)
            merged.setdefault(message.id, message)
        for message_id, message in buffer.items():
            merged.setdefault(message_id, message)

        self._items = sorted(merged.values(), key=lambda message: message.sort_key)
        self._keys = [message.sort_key for message in self._items]
        self._ids = set(merged)
        self._stale = False
        self._notify()
        return self.messages

    def on_change_event(self, event: ChangeEvent) -> bool:
        """Merge one feed event; returns ``True`` when the log changed."""

        if event.table != TABLE or event.kind != INSERT:
            return False
        if event.row.get("room_id") != self.room_id:
            return False
        message = Message.from_row(event.row)
        for buffer in self._live_buffers:
            buffer.setdefault(message.id, message)
        if message.id in self._ids:
            return False
        index = bisect.bisect_right(self._keys, message.sort_key)
        self._keys.insert(index, message.sort_key)
        self._items.insert(index, message)
        self._ids.add(message.id)
        self._notify()
        return True

    async def send(self, draft: MessageDraft) -> Message:
        """Insert ``draft`` remotely and return the stored message.

        The local log is left untouched; the feed echo adds the message.
        """

        if not draft.username:
            raise ValueError("username is required to send a message")
        if draft.type not in MESSAGE_TYPES:
            raise ValueError(f"unsupported message type: {draft.type}")
        if draft.type == MESSAGE_TEXT and not draft.content.strip():
            raise ValueError("message content is empty")
        if draft.type == MESSAGE_POLL and not draft.poll_id:
            raise ValueError("poll messages need a poll_id")

        content = reply.encode(draft.reply_to, draft.content) if draft.reply_to else draft.content
        row = {
            "username": draft.username,
            "content": content,
            "room_id": self.room_id,
            "message_type": draft.type,
            "file_url": draft.file_url,
            "file_name": draft.file_name,
            "poll_id": draft.poll_id,
        }
        try:
            stored = await self._store.insert(TABLE, row)
        except StoreError as exc:
            raise SendError("failed to send message", draft) from exc
        return Message.from_row(stored)

    async def resolve_reply(self, message: Message) -> Optional[Message]:
        """Best-effort lookup of the message ``message`` replies to."""

        target_id = reply.decode(message.content).reply_to
        if target_id is None:
            return None
        local = self.get(target_id)
        if local is not None:
            return local
        try:
            row = await self._store.single(TABLE, {"id": target_id})
        except StoreError as exc:
            logger.warning("could not resolve reply target %s: %s", target_id, exc)
            return None
        return Message.from_row(row)

    def type_counts(self) -> Dict[str, int]:
        counts = {MESSAGE_POLL: 0, MESSAGE_IMAGE: 0, MESSAGE_DOCUMENT: 0}
        for message in self._items:
            if message.type in counts:
                counts[message.type] += 1
        return counts

    def attachments(self, username: str | None = None) -> Tuple[Message, ...]:
        return tuple(
            message
            for message in self._items
            if message.type in (MESSAGE_IMAGE, MESSAGE_DOCUMENT)
            and (username is None or message.username == username)
        )

    def _handle_event(self, generation: int, event: ChangeEvent) -> None:
        if generation != self._generation:
            return
        self.on_change_event(event)

    def _handle_disconnect(self, generation: int) -> None:
        if generation != self._generation:
            return
        logger.warning("message feed for scope %s disconnected", self.room_id or "global")
        self._stale = True

    def _handle_reconnect(self, generation: int) -> None:
        if generation != self._generation:
            return
        if self._reload_task is not None and not self._reload_task.done():
            return
        self._reload_task = asyncio.get_running_loop().create_task(self._reload())

    async def _reload(self) -> None:
        try:
            await self.load_initial()
        except LoadError as exc:
            logger.warning("%s: %s", exc, exc.__cause__)

    def _notify(self) -> None:
        snapshot = self.messages
        for callback in list(self._listeners):
            callback(snapshot)
