from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .config import SyncConfig
from .errors import LoadError, RevokeError, StoreError, VoteError, VotePending
from .feed import UPDATE, ChangeEvent, ChangeFeedSubscription, RowFilter
from .models import Poll, PollTally, PollVote

logger = logging.getLogger(__name__)

POLLS = "polls"
VOTES = "poll_votes"
CONFLICT_KEY: Tuple[str, str] = ("poll_id", "username")

VoteKey = Tuple[str, str]
Listener = Callable[[str], None]


def percent(count: int, total: int) -> int:
    """``100 * count / total`` rounded half up, ``0`` for an empty poll."""

    if total <= 0:
        return 0
    return (200 * count + total) // (2 * total)


def tally_votes(votes: Iterable[PollVote], option_ids: Sequence[str] = ()) -> PollTally:
    """Count votes per option. Options listed in ``option_ids`` come first."""

    counts: Dict[str, int] = {option_id: 0 for option_id in option_ids}
    voters: Dict[str, List[str]] = {option_id: [] for option_id in option_ids}
    total = 0
    for vote in votes:
        total += 1
        counts[vote.option_id] = counts.get(vote.option_id, 0) + 1
        voters.setdefault(vote.option_id, []).append(vote.username)
    return PollTally(
        total=total,
        counts=counts,
        percentages={option_id: percent(count, total) for option_id, count in counts.items()},
        voters={option_id: tuple(names) for option_id, names in voters.items()},
    )


class PollVoteCoordinator:
    """Vote state for the polls shown in a scope.

    Each ``(poll_id, username)`` moves between no vote and one voted option.
    Local selections are applied before the store confirms them and rolled
    back when it refuses. Any change-feed event on a poll's votes triggers a
    full refetch of that poll's vote list.
    """

    def __init__(self, store, *, config: SyncConfig | None = None) -> None:
        self._store = store
        self._config = config or SyncConfig()
        self._polls: Dict[str, Poll] = {}
        self._votes: Dict[str, Tuple[PollVote, ...]] = {}
        self._confirmed: Dict[VoteKey, PollVote] = {}
        self._optimistic: Dict[VoteKey, Optional[str]] = {}
        self._in_flight: Set[VoteKey] = set()
        self._generations: Dict[str, int] = {}
        self._counter = 0
        self._subscriptions: Dict[str, List[ChangeFeedSubscription]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._queued: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []

    def add_listener(self, callback: Listener) -> None:
        self._listeners.append(callback)

    def watching(self, poll_id: str) -> bool:
        return poll_id in self._generations

    def poll(self, poll_id: str) -> Poll | None:
        return self._polls.get(poll_id)

    def votes(self, poll_id: str) -> Tuple[PollVote, ...]:
        return self._votes.get(poll_id, ())

    def selection(self, poll_id: str, username: str) -> Optional[str]:
        """The option ``username`` is shown as having picked, optimistic or confirmed."""

        key = (poll_id, username)
        if key in self._optimistic:
            return self._optimistic[key]
        vote = self._confirmed.get(key)
        return vote.option_id if vote is not None else None

    def has_voted(self, poll_id: str, username: str) -> bool:
        return self.selection(poll_id, username) is not None

    def tally(self, poll_id: str) -> PollTally:
        poll = self._polls.get(poll_id)
        return tally_votes(self._votes.get(poll_id, ()), poll.option_ids() if poll is not None else ())

    async def watch(self, poll_id: str) -> None:
        if poll_id in self._generations:
            return
        self._counter += 1
        generation = self._counter
        self._generations[poll_id] = generation

        subscriptions: List[ChangeFeedSubscription] = []
        self._subscriptions[poll_id] = subscriptions
        try:
            votes_sub = await self._store.subscribe(
                VOTES,
                lambda event: self._handle_vote_event(poll_id, generation, event),
                row_filter=RowFilter("poll_id", poll_id),
            )
            subscriptions.append(votes_sub)
            subscriptions.append(
                await self._store.subscribe(
                    POLLS,
                    lambda event: self._handle_poll_event(poll_id, generation, event),
                    row_filter=RowFilter("id", poll_id),
                    kinds=(UPDATE,),
                )
            )
        except StoreError as exc:
            await self._abandon(poll_id, generation)
            raise LoadError(f"failed to subscribe to poll {poll_id}") from exc
        if self._generations.get(poll_id) != generation:
            # unwatched while subscribing
            for subscription in subscriptions:
                await self._store.unsubscribe(subscription)
            return
        votes_sub.on_reconnect(lambda: self._queue_refresh(poll_id, generation))

        try:
            await self.load_poll(poll_id)
            await self.refresh(poll_id)
        except LoadError:
            await self._abandon(poll_id, generation)
            raise

    async def unwatch(self, poll_id: str) -> None:
        self._generations.pop(poll_id, None)
        self._queued.discard(poll_id)
        self._locks.pop(poll_id, None)
        self._polls.pop(poll_id, None)
        self._votes.pop(poll_id, None)
        for key in [key for key in self._confirmed if key[0] == poll_id]:
            del self._confirmed[key]
        for subscription in self._subscriptions.pop(poll_id, []):
            await self._store.unsubscribe(subscription)

    async def _abandon(self, poll_id: str, generation: int) -> None:
        if self._generations.get(poll_id) == generation:
            await self.unwatch(poll_id)

    async def close(self) -> None:
        for poll_id in list(self._generations):
            await self.unwatch(poll_id)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def settle(self) -> None:
        """Wait for queued background refetches to finish."""

        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def load_poll(self, poll_id: str) -> Poll:
        generation = self._generations.get(poll_id)
        try:
            row = await self._store.single(POLLS, {"id": poll_id})
        except StoreError as exc:
            raise LoadError(f"failed to load poll {poll_id}") from exc
        poll = Poll.from_row(row)
        if self._generations.get(poll_id) == generation:
            self._polls[poll_id] = poll
            self._notify(poll_id)
        return poll

    async def refresh(self, poll_id: str) -> Tuple[PollVote, ...]:
        """Refetch the full vote list of ``poll_id``."""

        async with self._lock(poll_id):
            await self._fetch_votes(poll_id)
        return self.votes(poll_id)

    async def cast_vote(self, poll_id: str, username: str, option_id: str) -> PollVote:
        """Vote for, or switch to, ``option_id``.

        The selection changes immediately; if the upsert fails it reverts to
        the last confirmed vote and ``VoteError`` is raised.
        """

        if not username:
            raise ValueError("username is required to vote")
        key = (poll_id, username)
        if key in self._in_flight:
            raise VotePending(f"a vote by {username} on poll {poll_id} is still pending")
        poll = self._polls.get(poll_id)
        if poll is not None:
            if poll.closed:
                raise VoteError(f"poll {poll_id} is closed")
            if option_id not in poll.option_ids():
                raise VoteError(f"unknown option {option_id} for poll {poll_id}")

        generation = self._generations.get(poll_id)
        self._in_flight.add(key)
        self._optimistic[key] = option_id
        self._notify(poll_id)
        try:
            row = await self._store.upsert(
                VOTES,
                {"poll_id": poll_id, "username": username, "option_id": option_id},
                on_conflict=CONFLICT_KEY,
            )
        except StoreError as exc:
            raise VoteError(f"failed to record vote on poll {poll_id}") from exc
        else:
            vote = PollVote.from_row(row)
            if self._generations.get(poll_id) == generation:
                self._confirmed[key] = vote
                self._votes[poll_id] = tuple(v for v in self.votes(poll_id) if v.username != username) + (vote,)
        finally:
            self._in_flight.discard(key)
            self._optimistic.pop(key, None)
            self._notify(poll_id)

        self._queue_refresh(poll_id, generation)
        return vote

    async def revoke_vote(self, poll_id: str, username: str) -> None:
        if not username:
            raise ValueError("username is required to revoke a vote")
        key = (poll_id, username)
        if key in self._in_flight:
            raise VotePending(f"a vote by {username} on poll {poll_id} is still pending")

        generation = self._generations.get(poll_id)
        self._in_flight.add(key)
        self._optimistic[key] = None
        self._notify(poll_id)
        try:
            await self._store.delete(VOTES, {"poll_id": poll_id, "username": username})
        except StoreError as exc:
            raise RevokeError(f"failed to remove vote on poll {poll_id}") from exc
        else:
            if self._generations.get(poll_id) == generation:
                self._confirmed.pop(key, None)
                self._votes[poll_id] = tuple(v for v in self.votes(poll_id) if v.username != username)
        finally:
            self._in_flight.discard(key)
            self._optimistic.pop(key, None)
            self._notify(poll_id)

        self._queue_refresh(poll_id, generation)

    async def create_poll(
        self,
        question: str,
        options: Iterable[str],
        created_by: str,
        room_id: str | None = None,
    ) -> Poll:
        question = question.strip()
        texts = [text.strip() for text in options if text and text.strip()]
        if not question:
            raise ValueError("poll question is empty")
        if not self._config.min_poll_options <= len(texts) <= self._config.max_poll_options:
            raise ValueError(
                f"polls need between {self._config.min_poll_options} and {self._config.max_poll_options} options"
            )
        row = await self._store.insert(
            POLLS,
            {
                "question": question,
                "options": [{"id": str(uuid.uuid4()), "text": text} for text in texts],
                "created_by": created_by,
                "closed": False,
                "room_id": room_id,
            },
        )
        return Poll.from_row(row)

    async def close_poll(self, poll_id: str) -> None:
        rows = await self._store.update(POLLS, {"id": poll_id}, {"closed": True})
        if rows and poll_id in self._generations:
            self._polls[poll_id] = Poll.from_row(rows[0])
            self._notify(poll_id)

    def _lock(self, poll_id: str) -> asyncio.Lock:
        lock = self._locks.get(poll_id)
        if lock is None:
            lock = self._locks[poll_id] = asyncio.Lock()
        return lock

    async def _fetch_votes(self, poll_id: str) -> None:
        generation = self._generations.get(poll_id)
        try:
            rows = await self._store.select(VOTES, {"poll_id": poll_id}, order_by="created_at")
        except StoreError as exc:
            raise LoadError(f"failed to load votes for poll {poll_id}") from exc
        if self._generations.get(poll_id) != generation:
            return
        votes = tuple(PollVote.from_row(row) for row in rows)
        self._votes[poll_id] = votes
        for key in [key for key in self._confirmed if key[0] == poll_id]:
            del self._confirmed[key]
        for vote in votes:
            self._confirmed[(poll_id, vote.username)] = vote
        self._notify(poll_id)

    def _queue_refresh(self, poll_id: str, generation: int | None) -> None:
        if generation is None or self._generations.get(poll_id) != generation:
            return
        if poll_id in self._queued:
            return
        self._queued.add(poll_id)
        task = asyncio.get_running_loop().create_task(self._background_refresh(poll_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _background_refresh(self, poll_id: str) -> None:
        async with self._lock(poll_id):
            self._queued.discard(poll_id)
            if poll_id not in self._generations:
                return
            try:
                await self._fetch_votes(poll_id)
            except LoadError as exc:
                logger.warning("%s: %s", exc, exc.__cause__)

    def _handle_vote_event(self, poll_id: str, generation: int, event: ChangeEvent) -> None:
        self._queue_refresh(poll_id, generation)

    def _handle_poll_event(self, poll_id: str, generation: int, event: ChangeEvent) -> None:
        if self._generations.get(poll_id) != generation:
            return
        self._polls[poll_id] = Poll.from_row(event.row)
        self._notify(poll_id)

    def _notify(self, poll_id: str) -> None:
        for callback in list(self._listeners):
            callback(poll_id)
