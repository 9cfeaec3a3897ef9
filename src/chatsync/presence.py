from __future__ import annotations

import logging
import secrets
from typing import Callable, Dict, Iterable, List, Mapping, Tuple

from .errors import StoreError, SubscriptionLost
from .models import PresenceRecord, Row, now_ms

logger = logging.getLogger(__name__)

PresenceState = Dict[str, List[Row]]
SyncCallback = Callable[[PresenceState], None]
DiffCallback = Callable[[str, List[Row]], None]
Signal = Callable[[], None]


def new_connection_key() -> str:
    return f"conn_{secrets.token_hex(8)}"


def roster_from_state(state: Mapping[str, Iterable[Row]]) -> Tuple[str, ...]:
    """Flatten presence records and keep each username once, first seen first."""

    seen: Dict[str, None] = {}
    for records in state.values():
        for record in records:
            username = record.get("username") if isinstance(record, dict) else None
            if isinstance(username, str) and username and username not in seen:
                seen[username] = None
    return tuple(seen)


class PresenceChannel:
    """One connection's handle on a presence scope held by a ``PresenceHub``."""

    def __init__(self, hub: "PresenceHub", scope: str, key: str) -> None:
        self.scope = scope
        self.key = key
        self._hub = hub
        self._subscribed = False
        self._disconnected = False
        self._on_sync: List[SyncCallback] = []
        self._on_join: List[DiffCallback] = []
        self._on_leave: List[DiffCallback] = []
        self._on_disconnect: List[Signal] = []

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def on_sync(self, callback: SyncCallback) -> None:
        self._on_sync.append(callback)

    def on_join(self, callback: DiffCallback) -> None:
        self._on_join.append(callback)

    def on_leave(self, callback: DiffCallback) -> None:
        self._on_leave.append(callback)

    def on_disconnect(self, callback: Signal) -> None:
        self._on_disconnect.append(callback)

    def presence_state(self) -> PresenceState:
        return self._hub.state(self.scope)

    async def subscribe(self) -> None:
        if self._subscribed:
            return
        self._subscribed = True
        self._hub._attach(self)
        self.emit_sync(self._hub.state(self.scope))

    async def track(self, payload: Row) -> None:
        if not self._subscribed or self._disconnected:
            raise StoreError("presence channel is not connected")
        self._hub.track(self.scope, self.key, payload)

    async def untrack(self) -> None:
        if self._disconnected:
            raise StoreError("presence channel is not connected")
        self._hub.untrack(self.scope, self.key)

    async def close(self) -> None:
        self._subscribed = False
        self._hub._detach(self)

    def emit_sync(self, state: PresenceState) -> None:
        if not self._subscribed:
            return
        for callback in list(self._on_sync):
            callback(state)

    def emit_join(self, key: str, records: List[Row]) -> None:
        if not self._subscribed:
            return
        for callback in list(self._on_join):
            callback(key, records)

    def emit_leave(self, key: str, records: List[Row]) -> None:
        if not self._subscribed:
            return
        for callback in list(self._on_leave):
            callback(key, records)

    def mark_disconnected(self) -> None:
        if self._disconnected:
            return
        self._disconnected = True
        for callback in list(self._on_disconnect):
            callback()


class PresenceHub:
    """In-memory presence primitive: tracked records per scope and connection key.

    Every track/untrack emits ``join``/``leave`` to the scope's channels
    followed by a ``sync`` carrying the full state.
    """

    def __init__(self) -> None:
        self._state: Dict[str, Dict[str, List[Row]]] = {}
        self._channels: Dict[str, List[PresenceChannel]] = {}

    def channel(self, scope: str, key: str | None = None) -> PresenceChannel:
        return PresenceChannel(self, scope, key or new_connection_key())

    def state(self, scope: str) -> PresenceState:
        return {key: [dict(record) for record in records] for key, records in self._state.get(scope, {}).items()}

    def track(self, scope: str, key: str, payload: Row) -> None:
        records = [dict(payload)]
        self._state.setdefault(scope, {})[key] = records
        for channel in self._scope_channels(scope):
            channel.emit_join(key, [dict(record) for record in records])
        self._sync(scope)

    def untrack(self, scope: str, key: str) -> None:
        tracked = self._state.get(scope)
        if not tracked or key not in tracked:
            return
        records = tracked.pop(key)
        if not tracked:
            self._state.pop(scope, None)
        for channel in self._scope_channels(scope):
            channel.emit_leave(key, records)
        self._sync(scope)

    def drop(self, key: str) -> None:
        """Forget ``key`` everywhere, as a server-side presence timeout would."""

        for scope in [scope for scope, tracked in self._state.items() if key in tracked]:
            self.untrack(scope, key)

    def disconnect(self, scope: str | None = None) -> None:
        scopes = [scope] if scope is not None else list(self._channels)
        for name in scopes:
            for channel in self._scope_channels(name):
                channel.mark_disconnected()

    def _scope_channels(self, scope: str) -> List[PresenceChannel]:
        return list(self._channels.get(scope, []))

    def _sync(self, scope: str) -> None:
        state = self.state(scope)
        for channel in self._scope_channels(scope):
            channel.emit_sync(state)

    def _attach(self, channel: PresenceChannel) -> None:
        channels = self._channels.setdefault(channel.scope, [])
        if channel not in channels:
            channels.append(channel)

    def _detach(self, channel: PresenceChannel) -> None:
        channels = self._channels.get(channel.scope)
        if not channels:
            return
        try:
            channels.remove(channel)
        except ValueError:
            return
        if not channels:
            self._channels.pop(channel.scope, None)


class PresenceTracker:
    """Keeps the roster of usernames connected to one scope.

    Only ``sync`` events change the roster; ``join``/``leave`` are logged.
    """

    def __init__(self, store, username: str, *, now_func=now_ms) -> None:
        self._store = store
        self.username = username
        self._now = now_func
        self._scope: str | None = None
        self._channel = None
        self._generation = 0
        self._roster: Tuple[str, ...] = ()
        self._stale = False
        self._listeners: List[Callable[[Tuple[str, ...]], None]] = []

    @property
    def roster(self) -> Tuple[str, ...]:
        return self._roster

    @property
    def scope(self) -> str | None:
        return self._scope

    @property
    def joined(self) -> bool:
        return self._channel is not None

    @property
    def stale(self) -> bool:
        return self._stale

    def add_listener(self, callback: Callable[[Tuple[str, ...]], None]) -> None:
        self._listeners.append(callback)

    async def join(self, scope: str, identity: str | None = None) -> None:
        if self._channel is not None:
            if self._scope == scope and not self._stale:
                return
            await self.leave()

        self._generation += 1
        generation = self._generation
        channel = self._store.presence_channel(scope, identity or new_connection_key())
        channel.on_sync(lambda state: self._handle_sync(generation, state))
        channel.on_join(lambda key, records: self._log_diff(generation, "joined", key, records))
        channel.on_leave(lambda key, records: self._log_diff(generation, "left", key, records))
        channel.on_disconnect(lambda: self._handle_disconnect(generation))
        self._channel = channel
        self._scope = scope
        self._stale = False

        try:
            await channel.subscribe()
            record = PresenceRecord(username=self.username, online_at=self._now())
            await channel.track(record.to_payload())
        except StoreError as exc:
            await self.leave()
            raise SubscriptionLost(f"could not join presence scope {scope}") from exc

    async def leave(self) -> None:
        """Untrack, then release the channel; safe to call when not joined."""

        channel = self._channel
        if channel is None:
            return
        scope = self._scope
        self._generation += 1
        self._channel = None
        self._scope = None
        self._stale = False
        try:
            await channel.untrack()
        except StoreError as exc:
            logger.warning("presence untrack failed for scope %s: %s", scope, exc)
        finally:
            await channel.close()
            self._set_roster(())

    def _handle_sync(self, generation: int, state: PresenceState) -> None:
        if generation != self._generation:
            return
        self._set_roster(roster_from_state(state))

    def _handle_disconnect(self, generation: int) -> None:
        if generation != self._generation:
            return
        logger.warning("presence channel for scope %s disconnected; roster frozen", self._scope)
        self._stale = True

    def _log_diff(self, generation: int, verb: str, key: str, records: List[Row]) -> None:
        if generation != self._generation:
            return
        names = ", ".join(str(record.get("username")) for record in records)
        logger.debug("presence %s %s in %s: %s", key, verb, self._scope, names)

    def _set_roster(self, roster: Tuple[str, ...]) -> None:
        if roster == self._roster:
            return
        self._roster = roster
        for callback in list(self._listeners):
            callback(roster)
