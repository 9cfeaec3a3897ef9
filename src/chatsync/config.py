from __future__ import annotations

from dataclasses import dataclass


@dataclass
class SyncConfig:
    global_message_limit: int = 100
    room_message_limit: int = 500
    mention_limit: int = 6
    mention_max_query_length: int = 20
    global_presence_scope: str = "room-presence"
    room_presence_prefix: str = "presence-room-"
    min_poll_options: int = 2
    max_poll_options: int = 10
    room_list_limit: int = 50

    def message_limit(self, room_id: str | None) -> int:
        return self.global_message_limit if room_id is None else self.room_message_limit

    def presence_scope(self, room_id: str | None) -> str:
        if room_id is None:
            return self.global_presence_scope
        return f"{self.room_presence_prefix}{room_id}"
