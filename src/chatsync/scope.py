from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Set, Tuple

from . import mentions
from .config import SyncConfig
from .errors import InvalidRoomCode, LoadError
from .messages import MessageStore
from .models import MESSAGE_POLL, Message, MessageDraft, Poll, PollTally, PollVote
from .polls import PollVoteCoordinator
from .presence import PresenceTracker
from .session import Session

logger = logging.getLogger(__name__)


class ChatScope:
    """Everything one open scope (the global feed or a room) keeps live.

    ``close`` must run when the user leaves: it untracks presence before the
    channel goes away and drops every change-feed subscription of the scope.
    """

    def __init__(
        self,
        store,
        session: Session,
        room_id: str | None = None,
        *,
        config: SyncConfig | None = None,
    ) -> None:
        self._store = store
        self.session = session
        self.room_id = room_id
        self.config = config or SyncConfig()
        self.messages = MessageStore(store, room_id, config=self.config)
        self.polls = PollVoteCoordinator(store, config=self.config)
        self.presence: PresenceTracker | None = None
        self._opened = False
        self._watch_tasks: Set[asyncio.Task] = set()
        self._poll_ids: Set[str] = set()
        self.messages.add_listener(self._watch_poll_messages)

    @property
    def presence_scope(self) -> str:
        return self.config.presence_scope(self.room_id)

    @property
    def roster(self) -> Tuple[str, ...]:
        return self.presence.roster if self.presence is not None else ()

    async def open(self, identity: str | None = None) -> None:
        if self._opened:
            return
        if self.room_id is not None and not self.session.has_joined(self.room_id):
            raise InvalidRoomCode(f"enter the invite code for room {self.room_id} first")
        self._opened = True
        try:
            await self.messages.start()
            if self.session.username:
                self.presence = PresenceTracker(self._store, self.session.username)
                await self.presence.join(self.presence_scope, identity)
        except BaseException:
            # leave nothing half open so a later open() starts over
            await self.close()
            raise

    async def close(self) -> None:
        self._opened = False
        if self.presence is not None:
            await self.presence.leave()
        await self.messages.close()
        tasks = list(self._watch_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._watch_tasks.clear()
        self._poll_ids.clear()
        await self.polls.close()

    async def settle(self) -> None:
        """Wait until pending poll watches and vote refetches have finished."""

        await asyncio.gather(*list(self._watch_tasks), return_exceptions=True)
        await self.polls.settle()

    async def send(self, content: str, *, reply_to: str | None = None) -> Message:
        draft = MessageDraft(
            username=self.session.require_username(),
            content=content.strip(),
            reply_to=reply_to,
        )
        return await self.messages.send(draft)

    async def share_file(self, file_url: str, file_name: str, *, image: bool = False) -> Message:
        draft = MessageDraft(
            username=self.session.require_username(),
            content=file_name,
            type="image" if image else "document",
            file_url=file_url,
            file_name=file_name,
        )
        return await self.messages.send(draft)

    async def start_poll(self, question: str, options: Iterable[str]) -> Poll:
        username = self.session.require_username()
        poll = await self.polls.create_poll(question, options, username, self.room_id)
        await self.messages.send(MessageDraft(username=username, content=poll.question, type=MESSAGE_POLL, poll_id=poll.id))
        return poll

    async def cast_vote(self, poll_id: str, option_id: str) -> PollVote:
        return await self.polls.cast_vote(poll_id, self.session.require_username(), option_id)

    async def revoke_vote(self, poll_id: str) -> None:
        await self.polls.revoke_vote(poll_id, self.session.require_username())

    def tally(self, poll_id: str) -> PollTally:
        return self.polls.tally(poll_id)

    def suggest_mentions(self, text: str) -> List[str]:
        query = mentions.extract_query(text)
        if query is None:
            return []
        return mentions.suggest(
            query,
            self.roster,
            self.config.mention_limit,
            max_query_length=self.config.mention_max_query_length,
        )

    def _watch_poll_messages(self, messages: Tuple[Message, ...]) -> None:
        if not self._opened:
            return
        for message in messages:
            if message.type == MESSAGE_POLL and message.poll_id and message.poll_id not in self._poll_ids:
                self._poll_ids.add(message.poll_id)
                task = asyncio.get_running_loop().create_task(self._watch_poll(message.poll_id))
                self._watch_tasks.add(task)
                task.add_done_callback(self._watch_tasks.discard)

    async def _watch_poll(self, poll_id: str) -> None:
        try:
            await self.polls.watch(poll_id)
        except LoadError as exc:
            self._poll_ids.discard(poll_id)
            logger.warning("%s: %s", exc, exc.__cause__)
