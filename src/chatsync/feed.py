from __future__ import annotations

import logging
import secrets
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"
EVENT_KINDS: FrozenSet[str] = frozenset({INSERT, UPDATE, DELETE})

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RowFilter:
    """Single-column equality filter; a ``None`` value matches missing/null columns."""

    column: str
    value: Any

    def matches(self, row: Dict[str, Any]) -> bool:
        return row.get(self.column) == self.value

    def to_payload(self) -> Dict[str, Any]:
        return {"column": self.column, "value": self.value}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any] | None) -> "RowFilter | None":
        if not payload:
            return None
        return cls(column=str(payload["column"]), value=payload.get("value"))


@dataclass(frozen=True)
class ChangeEvent:
    """A committed row-level change. Deletes carry the last row snapshot."""

    table: str
    kind: str
    row: Dict[str, Any]


Callback = Callable[[ChangeEvent], None]
Signal = Callable[[], None]


class ChangeFeedSubscription:
    """A live, filtered view of one table's change stream.

    Callbacks for one subscription never overlap: an event delivered while the
    callback is running is queued and handed over once it returns. A callback
    that raises is logged and the queue keeps draining; the error never reaches
    the writer that published the change.
    """

    def __init__(
        self,
        table: str,
        callback: Callback,
        row_filter: RowFilter | None = None,
        kinds: Iterable[str] | None = None,
        *,
        sub_id: str | None = None,
    ) -> None:
        self.table = table
        self.row_filter = row_filter
        self.kinds: FrozenSet[str] = frozenset(kinds) if kinds is not None else EVENT_KINDS
        unknown = self.kinds - EVENT_KINDS
        if unknown:
            raise ValueError(f"unknown event kinds: {sorted(unknown)}")
        self.sub_id = sub_id or f"sub_{secrets.token_hex(8)}"
        self._callback = callback
        self._active = True
        self._disconnected = False
        self._delivering = False
        self._pending: Deque[ChangeEvent] = deque()
        self._on_disconnect: List[Signal] = []
        self._on_reconnect: List[Signal] = []

    @property
    def active(self) -> bool:
        return self._active

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    def wants(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.kind not in self.kinds:
            return False
        return self.row_filter is None or self.row_filter.matches(event.row)

    def deliver(self, event: ChangeEvent) -> None:
        if not self._active or not self.wants(event):
            return
        self._pending.append(event)
        if self._delivering:
            return
        self._delivering = True
        try:
            while self._pending and self._active:
                event = self._pending.popleft()
                try:
                    self._callback(event)
                except Exception:
                    logger.exception("change callback for %s failed on %s %s", self.sub_id, event.table, event.kind)
        finally:
            self._delivering = False

    def on_disconnect(self, callback: Signal) -> None:
        self._on_disconnect.append(callback)

    def on_reconnect(self, callback: Signal) -> None:
        self._on_reconnect.append(callback)

    def mark_disconnected(self) -> None:
        if not self._active or self._disconnected:
            return
        self._disconnected = True
        for callback in list(self._on_disconnect):
            callback()

    def mark_reconnected(self) -> None:
        if not self._active or not self._disconnected:
            return
        self._disconnected = False
        for callback in list(self._on_reconnect):
            callback()

    def cancel(self) -> None:
        self._active = False
        self._pending.clear()


class FeedHub:
    """Registers change-feed subscriptions per table and fans events out."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[ChangeFeedSubscription]] = {}

    def subscribe(
        self,
        table: str,
        callback: Callback,
        row_filter: RowFilter | None = None,
        kinds: Iterable[str] | None = None,
    ) -> ChangeFeedSubscription:
        subscription = ChangeFeedSubscription(table, callback, row_filter, kinds)
        self._subscriptions.setdefault(table, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: ChangeFeedSubscription) -> None:
        subscription.cancel()
        subs = self._subscriptions.get(subscription.table)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.table, None)

    def broadcast(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(event.table, [])):
            subscription.deliver(event)

    def subscriptions(self, table: Optional[str] = None) -> List[ChangeFeedSubscription]:
        if table is not None:
            return list(self._subscriptions.get(table, []))
        return [sub for subs in self._subscriptions.values() for sub in subs]

    def disconnect_all(self) -> None:
        for subscription in self.subscriptions():
            subscription.mark_disconnected()

    def reconnect_all(self) -> None:
        for subscription in self.subscriptions():
            subscription.mark_reconnected()
