"""Process-wide client session: the chosen username and joined rooms."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Set

from .errors import UsernameRequired

DEFAULT_SESSION_PATH = Path.home() / ".chatsync" / "session.json"
MAX_USERNAME_LENGTH = 40


@dataclass
class Session:
    username: str | None = None
    joined_rooms: Set[str] = field(default_factory=set)

    def set_username(self, username: str) -> str:
        clean = username.strip()
        if not clean:
            raise ValueError("username must not be empty")
        if len(clean) > MAX_USERNAME_LENGTH:
            raise ValueError(f"username must be at most {MAX_USERNAME_LENGTH} characters")
        self.username = clean
        return clean

    def require_username(self) -> str:
        if not self.username:
            raise UsernameRequired("choose a username first")
        return self.username

    def mark_joined(self, room_id: str) -> None:
        self.joined_rooms.add(room_id)

    def has_joined(self, room_id: str) -> bool:
        return room_id in self.joined_rooms

    def forget_room(self, room_id: str) -> None:
        self.joined_rooms.discard(room_id)

    def clear(self) -> None:
        self.username = None
        self.joined_rooms.clear()

    def to_payload(self) -> Dict[str, object]:
        return {"username": self.username, "joined_rooms": sorted(self.joined_rooms)}


def _atomic_write_json(path: Path, payload: Dict[str, object]) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    content = json.dumps(payload, indent=2, sort_keys=True)

    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def load_session(path: Path | str = DEFAULT_SESSION_PATH) -> Session:
    """Load the saved session; a missing or unreadable file gives an empty one."""

    try:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    except FileNotFoundError:
        return Session()
    except (json.JSONDecodeError, ValueError):
        return Session()

    if not isinstance(data, dict):
        return Session()
    username = data.get("username")
    rooms = data.get("joined_rooms")
    return Session(
        username=username.strip() or None if isinstance(username, str) else None,
        joined_rooms={room for room in rooms if isinstance(room, str)} if isinstance(rooms, list) else set(),
    )


def save_session(session: Session, path: Path | str = DEFAULT_SESSION_PATH) -> None:
    _atomic_write_json(Path(path), session.to_payload())
