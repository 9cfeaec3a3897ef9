from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Dict, List, Tuple

from .config import SyncConfig
from .errors import InvalidRoomCode, LoadError, NotFound, RoomCodeMismatch, StoreError
from .feed import INSERT, ChangeEvent, ChangeFeedSubscription
from .models import Room
from .session import Session

logger = logging.getLogger(__name__)

TABLE = "rooms"

Listener = Callable[[Tuple[Room, ...]], None]


def _listed(row) -> Room:
    # invite codes stay out of the lobby
    return dataclasses.replace(Room.from_row(row), code="")


class RoomDirectory:
    """Room lookups by id and invite code.

    Joining only records the room on the client ``Session``; it gates the UI
    and grants no access on the store side.
    """

    def __init__(self, store, *, config: SyncConfig | None = None) -> None:
        self._store = store
        self._config = config or SyncConfig()

    async def create(self, name: str, code: str, created_by: str) -> Room:
        name = name.strip()
        code = code.strip()
        if not name:
            raise ValueError("room name is empty")
        if not code:
            raise ValueError("room code is empty")
        row = await self._store.insert(TABLE, {"name": name, "code": code, "created_by": created_by or "Anonymous"})
        return Room.from_row(row)

    async def get(self, room_id: str) -> Room:
        return Room.from_row(await self._store.single(TABLE, {"id": room_id}))

    async def list_rooms(self, limit: int | None = None) -> Tuple[Room, ...]:
        """Oldest rooms first, without their invite codes."""

        try:
            rows = await self._store.select(
                TABLE,
                order_by="created_at",
                ascending=True,
                limit=self._config.room_list_limit if limit is None else limit,
            )
        except StoreError as exc:
            raise LoadError("failed to list rooms") from exc
        return tuple(_listed(row) for row in rows)

    def lobby(self, limit: int | None = None) -> "RoomList":
        return RoomList(self._store, limit=self._config.room_list_limit if limit is None else limit)

    async def resolve_code(self, code: str) -> Room:
        clean = code.strip()
        if not clean:
            raise InvalidRoomCode("room code is empty")
        try:
            row = await self._store.single(TABLE, {"code": clean})
        except NotFound:
            raise InvalidRoomCode(f"no room uses code {clean!r}") from None
        return Room.from_row(row)

    async def join(self, session: Session, code: str, room_id: str | None = None) -> Room:
        room = await self.resolve_code(code)
        if room_id is not None and room.id != room_id:
            raise RoomCodeMismatch(code.strip(), room_id, room.id)
        session.mark_joined(room.id)
        return room

    def leave(self, session: Session, room_id: str) -> None:
        session.forget_room(room_id)


class RoomList:
    """Live lobby listing: a snapshot of existing rooms plus new ones as they are created.

    Rooms created while the snapshot is loading are kept, and a room seen
    both ways is listed once.
    """

    def __init__(self, store, *, limit: int = 50) -> None:
        self._store = store
        self.limit = limit
        self._rooms: Dict[str, Room] = {}
        self._subscription: ChangeFeedSubscription | None = None
        self._listeners: List[Listener] = []
        self._loaded = False

    @property
    def rooms(self) -> Tuple[Room, ...]:
        return tuple(sorted(self._rooms.values(), key=lambda room: (room.created_at, room.id)))

    def add_listener(self, callback: Listener) -> None:
        self._listeners.append(callback)

    async def start(self) -> None:
        self._subscription = await self._store.subscribe(TABLE, self._handle_event, kinds=(INSERT,))
        try:
            rows = await self._store.select(TABLE, order_by="created_at", ascending=True, limit=self.limit)
        except StoreError as exc:
            await self.close()
            raise LoadError("failed to list rooms") from exc
        for row in rows:
            room = _listed(row)
            self._rooms.setdefault(room.id, room)
        self._loaded = True
        self._notify()

    async def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await self._store.unsubscribe(subscription)

    def _handle_event(self, event: ChangeEvent) -> None:
        if self._subscription is None:
            return
        room = _listed(event.row)
        if room.id in self._rooms:
            return
        self._rooms[room.id] = room
        logger.debug("room %s listed", room.id)
        if self._loaded:
            self._notify()

    def _notify(self) -> None:
        snapshot = self.rooms
        for callback in list(self._listeners):
            callback(snapshot)
