"""Client-side real-time chat synchronization core."""

from .config import SyncConfig
from .errors import (
    ChatSyncError,
    ConflictError,
    InvalidRoomCode,
    LoadError,
    NotFound,
    RevokeError,
    RoomCodeMismatch,
    SendError,
    StoreError,
    SubscriptionLost,
    UnknownTable,
    UsernameRequired,
    VoteError,
    VotePending,
)
from .feed import ChangeEvent, ChangeFeedSubscription, FeedHub, RowFilter
from .memory import MemoryStore
from .messages import MessageStore
from .models import Message, MessageDraft, Poll, PollTally, PollVote, Room
from .polls import PollVoteCoordinator
from .presence import PresenceTracker
from .rooms import RoomDirectory, RoomList
from .scope import ChatScope
from .session import Session, load_session, save_session

__all__ = [
    "ChangeEvent",
    "ChangeFeedSubscription",
    "ChatScope",
    "ChatSyncError",
    "ConflictError",
    "FeedHub",
    "InvalidRoomCode",
    "LoadError",
    "MemoryStore",
    "Message",
    "MessageDraft",
    "MessageStore",
    "NotFound",
    "Poll",
    "PollTally",
    "PollVote",
    "PollVoteCoordinator",
    "PresenceTracker",
    "RevokeError",
    "Room",
    "RoomCodeMismatch",
    "RoomDirectory",
    "RoomList",
    "RowFilter",
    "SendError",
    "Session",
    "StoreError",
    "SubscriptionLost",
    "SyncConfig",
    "UnknownTable",
    "UsernameRequired",
    "VoteError",
    "VotePending",
    "load_session",
    "save_session",
]
