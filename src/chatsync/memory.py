"""In-memory implementation of the backing store contract.

It holds the four chat tables, assigns ``id`` and ``created_at`` on insert,
enforces the unique keys the client relies on and publishes every committed
change on its ``FeedHub``. Presence is served by a ``PresenceHub``.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from .errors import ConflictError, NotFound, UnknownTable
from .feed import DELETE, INSERT, UPDATE, Callback, ChangeEvent, ChangeFeedSubscription, FeedHub, RowFilter
from .models import Row, now_ms
from .presence import PresenceChannel, PresenceHub

TABLES: Tuple[str, ...] = ("messages", "rooms", "polls", "poll_votes")
UNIQUE_KEYS: Dict[str, Tuple[Tuple[str, ...], ...]] = {
    "rooms": (("code",),),
    "poll_votes": (("poll_id", "username"),),
}


def _matches(row: Row, filters: Dict[str, Any] | None) -> bool:
    if not filters:
        return True
    return all(row.get(column) == value for column, value in filters.items())


class MemoryStore:
    def __init__(self, tables: Iterable[str] = TABLES, *, now_func=now_ms) -> None:
        self._now = now_func
        self._rows: Dict[str, Dict[str, Row]] = {name: {} for name in tables}
        self._last_created_at = 0
        self.feed = FeedHub()
        self.presence = PresenceHub()

    def _table(self, table: str) -> Dict[str, Row]:
        try:
            return self._rows[table]
        except KeyError:
            raise UnknownTable(f"unknown table: {table}") from None

    def _next_created_at(self) -> int:
        self._last_created_at = max(self._last_created_at, self._now())
        return self._last_created_at

    def _check_unique(self, table: str, candidate: Row, ignore_id: str | None = None) -> None:
        for columns in UNIQUE_KEYS.get(table, ()):
            key = tuple(candidate.get(column) for column in columns)
            for row_id, row in self._table(table).items():
                if row_id == ignore_id:
                    continue
                if tuple(row.get(column) for column in columns) == key:
                    raise ConflictError(f"duplicate key {columns} in {table}")

    def _publish(self, table: str, kind: str, row: Row) -> None:
        self.feed.broadcast(ChangeEvent(table=table, kind=kind, row=dict(row)))

    async def select(
        self,
        table: str,
        filters: Dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        ascending: bool = True,
        limit: int | None = None,
    ) -> List[Row]:
        rows = [dict(row) for row in self._table(table).values() if _matches(row, filters)]
        if order_by is not None:
            rows.sort(key=lambda row: (row.get(order_by) is None, row.get(order_by), row.get("id")), reverse=not ascending)
        if limit is not None:
            rows = rows[: max(limit, 0)]
        return rows

    async def single(self, table: str, filters: Dict[str, Any]) -> Row:
        rows = await self.select(table, filters)
        if len(rows) != 1:
            raise NotFound(f"expected exactly one row in {table} for {filters}, found {len(rows)}")
        return rows[0]

    async def insert(self, table: str, row: Row) -> Row:
        rows = self._table(table)
        record = dict(row)
        record["id"] = str(record.get("id") or uuid.uuid4())
        if record["id"] in rows:
            raise ConflictError(f"duplicate id {record['id']} in {table}")
        record["created_at"] = self._next_created_at()
        self._check_unique(table, record)
        rows[record["id"]] = record
        self._publish(table, INSERT, record)
        return dict(record)

    async def upsert(self, table: str, row: Row, on_conflict: Sequence[str]) -> Row:
        """Insert ``row`` or update the existing row sharing its ``on_conflict`` columns."""

        if not on_conflict:
            raise ValueError("on_conflict requires at least one column")
        key = {column: row.get(column) for column in on_conflict}
        existing = next((current for current in self._table(table).values() if _matches(current, key)), None)
        if existing is None:
            return await self.insert(table, row)
        changes = {column: value for column, value in row.items() if column not in ("id", "created_at")}
        candidate = {**existing, **changes}
        self._check_unique(table, candidate, ignore_id=existing["id"])
        existing.update(changes)
        self._publish(table, UPDATE, existing)
        return dict(existing)

    async def update(self, table: str, filters: Dict[str, Any], changes: Row) -> List[Row]:
        changes = {column: value for column, value in changes.items() if column not in ("id", "created_at")}
        targets = [row for row in self._table(table).values() if _matches(row, filters)]
        for row in targets:
            self._check_unique(table, {**row, **changes}, ignore_id=row["id"])
        updated = []
        for row in targets:
            row.update(changes)
            self._publish(table, UPDATE, row)
            updated.append(dict(row))
        return updated

    async def delete(self, table: str, filters: Dict[str, Any]) -> List[Row]:
        rows = self._table(table)
        removed = [rows.pop(row_id) for row_id in [rid for rid, row in rows.items() if _matches(row, filters)]]
        for row in removed:
            self._publish(table, DELETE, row)
        return removed

    async def subscribe(
        self,
        table: str,
        callback: Callback,
        *,
        row_filter: RowFilter | None = None,
        kinds: Iterable[str] | None = None,
    ) -> ChangeFeedSubscription:
        self._table(table)
        return self.feed.subscribe(table, callback, row_filter, kinds)

    async def unsubscribe(self, subscription: ChangeFeedSubscription) -> None:
        self.feed.unsubscribe(subscription)

    def presence_channel(self, scope: str, key: str | None = None) -> PresenceChannel:
        return self.presence.channel(scope, key)
