import json
import tempfile
import unittest
from pathlib import Path

from chatsync.errors import ConflictError, InvalidRoomCode, LoadError, RoomCodeMismatch, StoreError, UsernameRequired
from chatsync.memory import MemoryStore
from chatsync.rooms import RoomDirectory, RoomList
from chatsync.session import Session, load_session, save_session


class SessionTests(unittest.TestCase):
    def test_set_username_strips_and_validates(self):
        session = Session()

        self.assertEqual(session.set_username("  alice "), "alice")
        with self.assertRaises(ValueError):
            session.set_username("   ")
        with self.assertRaises(ValueError):
            session.set_username("x" * 41)
        self.assertEqual(session.username, "alice")

    def test_require_username(self):
        with self.assertRaises(UsernameRequired):
            Session().require_username()
        self.assertEqual(Session(username="bob").require_username(), "bob")

    def test_save_and_load_roundtrip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / "session.json"
            session = Session(username="alice")
            session.mark_joined("r2")
            session.mark_joined("r1")

            save_session(session, path)
            loaded = load_session(path)

            self.assertEqual(loaded.username, "alice")
            self.assertEqual(loaded.joined_rooms, {"r1", "r2"})
            self.assertEqual(json.loads(path.read_text())["joined_rooms"], ["r1", "r2"])

    def test_load_tolerates_missing_or_corrupt_files(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            missing = Path(tmpdir) / "missing.json"
            corrupt = Path(tmpdir) / "corrupt.json"
            corrupt.write_text("{not json", encoding="utf-8")
            wrong_shape = Path(tmpdir) / "list.json"
            wrong_shape.write_text("[1, 2]", encoding="utf-8")

            for path in (missing, corrupt, wrong_shape):
                with self.subTest(path=path.name):
                    session = load_session(path)
                    self.assertIsNone(session.username)
                    self.assertEqual(session.joined_rooms, set())

    def test_clear_and_forget(self):
        session = Session(username="alice", joined_rooms={"r1", "r2"})

        session.forget_room("r1")
        self.assertFalse(session.has_joined("r1"))
        self.assertTrue(session.has_joined("r2"))

        session.clear()
        self.assertIsNone(session.username)
        self.assertEqual(session.joined_rooms, set())


class RoomDirectoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = MemoryStore()
        self.rooms = RoomDirectory(self.store)
        self.room = await self.rooms.create("Book club", "READ42", "alice")

    async def test_join_by_code_marks_session(self):
        session = Session(username="bob")

        room = await self.rooms.join(session, "  READ42 ")

        self.assertEqual(room.id, self.room.id)
        self.assertTrue(session.has_joined(self.room.id))

    async def test_unknown_code(self):
        session = Session(username="bob")

        with self.assertRaises(InvalidRoomCode):
            await self.rooms.join(session, "NOPE")
        with self.assertRaises(InvalidRoomCode):
            await self.rooms.resolve_code("  ")
        self.assertEqual(session.joined_rooms, set())

    async def test_code_for_another_room_is_a_mismatch(self):
        other = await self.rooms.create("Chess", "MOVE1", "carol")
        session = Session(username="bob")

        with self.assertRaises(RoomCodeMismatch) as ctx:
            await self.rooms.join(session, "MOVE1", room_id=self.room.id)

        self.assertEqual(ctx.exception.actual_room_id, other.id)
        self.assertFalse(session.has_joined(self.room.id))
        self.assertFalse(session.has_joined(other.id))

    async def test_codes_are_unique(self):
        with self.assertRaises(ConflictError):
            await self.rooms.create("Copy", "READ42", "bob")

    async def test_leave_forgets_room(self):
        session = Session(username="bob")
        await self.rooms.join(session, "READ42", room_id=self.room.id)

        self.rooms.leave(session, self.room.id)

        self.assertFalse(session.has_joined(self.room.id))
        self.assertEqual((await self.rooms.get(self.room.id)).name, "Book club")


class FailingSelectStore(MemoryStore):
    def __init__(self):
        counter = iter(range(1, 1_000_000))
        super().__init__(now_func=lambda: next(counter))
        self.fail_select = False
        self.create_during_select = None

    async def select(self, table, filters=None, **kwargs):
        if self.fail_select:
            raise StoreError("select unavailable")
        rows = await super().select(table, filters, **kwargs)
        if self.create_during_select is not None:
            row, self.create_during_select = self.create_during_select, None
            await super().insert(table, row)
        return rows


class RoomListTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = FailingSelectStore()
        self.rooms = RoomDirectory(self.store)
        self.first = await self.rooms.create("Book club", "READ42", "alice")
        self.second = await self.rooms.create("Chess", "MOVE1", "carol")

    async def test_list_rooms_is_oldest_first_without_codes(self):
        listed = await self.rooms.list_rooms()

        self.assertEqual([room.name for room in listed], ["Book club", "Chess"])
        self.assertEqual({room.code for room in listed}, {""})
        self.assertEqual([room.name for room in await self.rooms.list_rooms(limit=1)], ["Book club"])

    async def test_list_failure_is_a_load_error(self):
        self.store.fail_select = True

        with self.assertRaises(LoadError):
            await self.rooms.list_rooms()

    async def test_lobby_adds_new_rooms_once(self):
        lobby = self.rooms.lobby()
        seen = []
        lobby.add_listener(lambda rooms: seen.append(len(rooms)))
        self.store.create_during_select = {"name": "Go", "code": "STONE", "created_by": "dave"}

        await lobby.start()
        await self.rooms.create("Poetry", "VERSE", "erin")

        self.assertEqual([room.name for room in lobby.rooms], ["Book club", "Chess", "Go", "Poetry"])
        self.assertEqual(seen, [3, 4])

        await lobby.close()
        await self.rooms.create("Late", "LATE1", "frank")
        self.assertEqual(len(lobby.rooms), 4)
        self.assertEqual(self.store.feed.subscriptions(), [])

    async def test_lobby_respects_limit_and_cleans_up_on_failure(self):
        lobby = RoomList(self.store, limit=1)
        await lobby.start()
        self.assertEqual([room.name for room in lobby.rooms], ["Book club"])
        await lobby.close()

        self.store.fail_select = True
        with self.assertRaises(LoadError):
            await RoomList(self.store).start()
        self.assertEqual(self.store.feed.subscriptions(), [])


if __name__ == "__main__":
    unittest.main()
