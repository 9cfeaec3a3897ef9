from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

MESSAGE_TEXT = "text"
MESSAGE_IMAGE = "image"
MESSAGE_DOCUMENT = "document"
MESSAGE_POLL = "poll"
MESSAGE_TYPES = frozenset({MESSAGE_TEXT, MESSAGE_IMAGE, MESSAGE_DOCUMENT, MESSAGE_POLL})

Row = Dict[str, Any]


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Message:
    """An immutable chat message as stored in the ``messages`` table."""

    id: str
    username: str
    content: str
    created_at: int
    room_id: Optional[str] = None
    type: str = MESSAGE_TEXT
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    poll_id: Optional[str] = None

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.created_at, self.id)

    @classmethod
    def from_row(cls, row: Row) -> "Message":
        return cls(
            id=str(row["id"]),
            username=str(row.get("username") or ""),
            content=str(row.get("content") or ""),
            created_at=int(row.get("created_at") or 0),
            room_id=row.get("room_id"),
            type=str(row.get("message_type") or MESSAGE_TEXT),
            file_url=row.get("file_url"),
            file_name=row.get("file_name"),
            poll_id=row.get("poll_id"),
        )

    def to_row(self) -> Row:
        return {
            "id": self.id,
            "username": self.username,
            "content": self.content,
            "created_at": self.created_at,
            "room_id": self.room_id,
            "message_type": self.type,
            "file_url": self.file_url,
            "file_name": self.file_name,
            "poll_id": self.poll_id,
        }


@dataclass(frozen=True)
class MessageDraft:
    """A message composed locally and not yet accepted by the store."""

    username: str
    content: str
    type: str = MESSAGE_TEXT
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    poll_id: Optional[str] = None
    reply_to: Optional[str] = None


@dataclass(frozen=True)
class PresenceRecord:
    username: str
    online_at: int

    def to_payload(self) -> Row:
        return {"username": self.username, "online_at": self.online_at}

    @classmethod
    def from_payload(cls, payload: Row) -> "PresenceRecord":
        return cls(username=str(payload.get("username") or ""), online_at=int(payload.get("online_at") or 0))


@dataclass(frozen=True)
class PollOption:
    id: str
    text: str


def _parse_options(raw: Any) -> Tuple[PollOption, ...]:
    if isinstance(raw, str):
        raw = json.loads(raw) if raw else []
    options = []
    for entry in raw or []:
        if isinstance(entry, dict) and "id" in entry:
            options.append(PollOption(id=str(entry["id"]), text=str(entry.get("text") or "")))
    return tuple(options)


@dataclass(frozen=True)
class Poll:
    id: str
    question: str
    options: Tuple[PollOption, ...]
    created_by: str
    created_at: int
    closed: bool = False
    room_id: Optional[str] = None

    def option_ids(self) -> Tuple[str, ...]:
        return tuple(option.id for option in self.options)

    @classmethod
    def from_row(cls, row: Row) -> "Poll":
        return cls(
            id=str(row["id"]),
            question=str(row.get("question") or ""),
            options=_parse_options(row.get("options")),
            created_by=str(row.get("created_by") or ""),
            created_at=int(row.get("created_at") or 0),
            closed=bool(row.get("closed", False)),
            room_id=row.get("room_id"),
        )


@dataclass(frozen=True)
class PollVote:
    id: str
    poll_id: str
    username: str
    option_id: str

    @classmethod
    def from_row(cls, row: Row) -> "PollVote":
        return cls(
            id=str(row["id"]),
            poll_id=str(row["poll_id"]),
            username=str(row["username"]),
            option_id=str(row["option_id"]),
        )


@dataclass(frozen=True)
class Room:
    id: str
    name: str
    code: str
    created_by: str
    created_at: int

    @classmethod
    def from_row(cls, row: Row) -> "Room":
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            code=str(row.get("code") or ""),
            created_by=str(row.get("created_by") or ""),
            created_at=int(row.get("created_at") or 0),
        )


@dataclass(frozen=True)
class PollTally:
    """Vote counts for one poll, keyed by option id in option order."""

    total: int
    counts: Dict[str, int] = field(default_factory=dict)
    percentages: Dict[str, int] = field(default_factory=dict)
    voters: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
