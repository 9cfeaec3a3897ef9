import unittest

from chatsync.errors import ConflictError, NotFound, UnknownTable
from chatsync.feed import DELETE, INSERT, UPDATE
from chatsync.memory import MemoryStore


class MemoryStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = iter(range(1000, 100000))
        self.store = MemoryStore(now_func=lambda: next(self.clock))

    async def test_insert_assigns_id_and_created_at(self):
        row = await self.store.insert("messages", {"username": "alice", "content": "hi", "room_id": None})

        self.assertTrue(row["id"])
        self.assertEqual(row["created_at"], 1000)
        self.assertEqual(await self.store.single("messages", {"id": row["id"]}), row)

    async def test_created_at_never_goes_backwards(self):
        store = MemoryStore(now_func=lambda: 5)
        first = await store.insert("messages", {"content": "a"})
        second = await store.insert("messages", {"content": "b"})

        self.assertLessEqual(first["created_at"], second["created_at"])

    async def test_select_orders_and_limits(self):
        for text in ["a", "b", "c"]:
            await self.store.insert("messages", {"content": text, "room_id": "r1"})
        await self.store.insert("messages", {"content": "other", "room_id": "r2"})

        rows = await self.store.select("messages", {"room_id": "r1"}, order_by="created_at", limit=2)
        newest = await self.store.select("messages", {"room_id": "r1"}, order_by="created_at", ascending=False)

        self.assertEqual([row["content"] for row in rows], ["a", "b"])
        self.assertEqual([row["content"] for row in newest], ["c", "b", "a"])

    async def test_single_requires_exactly_one_row(self):
        with self.assertRaises(NotFound):
            await self.store.single("rooms", {"code": "nope"})

    async def test_unique_keys(self):
        await self.store.insert("rooms", {"name": "one", "code": "ABC"})
        with self.assertRaises(ConflictError):
            await self.store.insert("rooms", {"name": "two", "code": "ABC"})

    async def test_upsert_updates_in_place(self):
        events = []
        await self.store.subscribe("poll_votes", events.append)
        first = await self.store.upsert(
            "poll_votes", {"poll_id": "p1", "username": "alice", "option_id": "o1"}, ("poll_id", "username")
        )
        second = await self.store.upsert(
            "poll_votes", {"poll_id": "p1", "username": "alice", "option_id": "o2"}, ("poll_id", "username")
        )

        rows = await self.store.select("poll_votes", {"poll_id": "p1"})
        self.assertEqual(len(rows), 1)
        self.assertEqual(second["id"], first["id"])
        self.assertEqual(rows[0]["option_id"], "o2")
        self.assertEqual([event.kind for event in events], [INSERT, UPDATE])

    async def test_update_and_delete_publish_events(self):
        events = []
        await self.store.subscribe("polls", events.append)
        poll = await self.store.insert("polls", {"question": "q", "options": [], "closed": False})

        updated = await self.store.update("polls", {"id": poll["id"]}, {"closed": True, "id": "other"})
        removed = await self.store.delete("polls", {"id": poll["id"]})

        self.assertEqual(updated[0]["id"], poll["id"])
        self.assertTrue(updated[0]["closed"])
        self.assertEqual(removed[0]["id"], poll["id"])
        self.assertEqual([event.kind for event in events], [INSERT, UPDATE, DELETE])
        self.assertTrue(events[-1].row["closed"])

    async def test_returned_rows_are_copies(self):
        row = await self.store.insert("messages", {"content": "a"})
        row["content"] = "mutated"

        stored = await self.store.single("messages", {"id": row["id"]})
        self.assertEqual(stored["content"], "a")

    async def test_unknown_table(self):
        with self.assertRaises(UnknownTable):
            await self.store.select("nope")
        with self.assertRaises(UnknownTable):
            await self.store.subscribe("nope", lambda event: None)


if __name__ == "__main__":
    unittest.main()
