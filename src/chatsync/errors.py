from __future__ import annotations


class ChatSyncError(Exception):
    """Base class for every error raised by chatsync."""


class StoreError(ChatSyncError):
    """A backing store call failed (transport, constraint or lookup)."""


class NotFound(StoreError):
    pass


class ConflictError(StoreError):
    pass


class UnknownTable(StoreError):
    pass


class LoadError(ChatSyncError):
    pass


class SendError(ChatSyncError):
    def __init__(self, message: str, draft=None) -> None:
        super().__init__(message)
        self.draft = draft


class VoteError(ChatSyncError):
    pass


class VotePending(VoteError):
    """A vote mutation for the same poll and user has not resolved yet."""


class RevokeError(ChatSyncError):
    pass


class SubscriptionLost(ChatSyncError):
    pass


class InvalidRoomCode(ChatSyncError):
    pass


class RoomCodeMismatch(InvalidRoomCode):
    def __init__(self, code: str, expected_room_id: str, actual_room_id: str) -> None:
        self.code = code
        self.expected_room_id = expected_room_id
        self.actual_room_id = actual_room_id
        super().__init__(f"Code {code!r} belongs to room {actual_room_id}, not {expected_room_id}.")


class UsernameRequired(ChatSyncError):
    pass
