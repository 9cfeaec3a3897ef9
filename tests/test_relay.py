import unittest

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from chatsync.memory import MemoryStore
from chatsync.relay import create_app


async def _receive_until(ws, frame_type):
    frames = []
    while True:
        frame = await ws.receive_json(timeout=2)
        frames.append(frame)
        if frame["t"] == frame_type:
            return frames


class RelayRowTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = MemoryStore()
        self.app = create_app(self.store, ping_interval_s=3600)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def _post(self, table, op, body):
        resp = await self.client.post(f"/v1/rows/{table}/{op}", json=body)
        return resp.status, await resp.json()

    async def test_healthz(self):
        resp = await self.client.get("/healthz")

        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_insert_then_select(self):
        status, inserted = await self._post("messages", "insert", {"row": {"username": "a", "content": "hi"}})
        self.assertEqual(status, 200)

        status, selected = await self._post(
            "messages", "select", {"filters": {"room_id": None}, "order_by": "created_at", "limit": 10}
        )

        self.assertEqual(status, 200)
        self.assertEqual(selected["rows"], [inserted["row"]])

    async def test_error_mapping(self):
        status, body = await self._post("rooms", "single", {"filters": {"code": "nope"}})
        self.assertEqual((status, body["code"]), (404, "not_found"))

        status, body = await self._post("nope", "select", {})
        self.assertEqual((status, body["code"]), (404, "unknown_table"))

        await self._post("rooms", "insert", {"row": {"name": "a", "code": "X1"}})
        status, body = await self._post("rooms", "insert", {"row": {"name": "b", "code": "X1"}})
        self.assertEqual((status, body["code"]), (409, "conflict"))

        status, body = await self._post("poll_votes", "upsert", {"row": {"poll_id": "p"}, "on_conflict": []})
        self.assertEqual((status, body["code"]), (400, "invalid_request"))

        status, body = await self._post("messages", "delete", {"filters": {}})
        self.assertEqual((status, body["code"]), (400, "invalid_request"))

        status, body = await self._post("messages", "truncate", {})
        self.assertEqual((status, body["code"]), (404, "unknown_op"))

    async def test_malformed_json(self):
        resp = await self.client.post("/v1/rows/messages/select", data="{nope")

        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["code"], "invalid_request")

    async def test_upsert_update_delete(self):
        row = {"poll_id": "p1", "username": "alice", "option_id": "o1"}
        _, first = await self._post("poll_votes", "upsert", {"row": row, "on_conflict": ["poll_id", "username"]})
        _, second = await self._post(
            "poll_votes", "upsert", {"row": {**row, "option_id": "o2"}, "on_conflict": ["poll_id", "username"]}
        )
        self.assertEqual(first["row"]["id"], second["row"]["id"])

        _, updated = await self._post("poll_votes", "update", {"filters": {"poll_id": "p1"}, "changes": {"option_id": "o3"}})
        self.assertEqual(updated["rows"][0]["option_id"], "o3")

        _, removed = await self._post("poll_votes", "delete", {"filters": {"poll_id": "p1"}})
        self.assertEqual(len(removed["rows"]), 1)
        self.assertEqual(await self.store.select("poll_votes"), [])


class RelayWebSocketTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = MemoryStore()
        self.app = create_app(self.store, ping_interval_s=3600)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def test_feed_subscription_forwards_matching_rows(self):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json(
            {
                "v": 1,
                "t": "feed.subscribe",
                "id": "s1",
                "body": {"sub_id": "sub-1", "table": "messages", "filter": {"column": "room_id", "value": "r1"}},
            }
        )
        ack = await ws.receive_json(timeout=2)
        self.assertEqual((ack["t"], ack["id"]), ("ack", "s1"))

        await self.store.insert("messages", {"content": "elsewhere", "room_id": "r2"})
        await self.store.insert("messages", {"content": "here", "room_id": "r1"})
        event = await ws.receive_json(timeout=2)

        self.assertEqual(event["t"], "feed.event")
        self.assertEqual(event["body"]["sub_id"], "sub-1")
        self.assertEqual(event["body"]["kind"], "insert")
        self.assertEqual(event["body"]["row"]["content"], "here")
        await ws.close()

    async def test_dropped_socket_releases_subscriptions_and_presence(self):
        watcher = await self.client.ws_connect("/v1/ws")
        leaver = await self.client.ws_connect("/v1/ws")
        for ws, key in ((watcher, "w"), (leaver, "l")):
            await ws.send_json({"v": 1, "t": "presence.join", "id": "j", "body": {"scope": "room-presence", "key": key}})
            await _receive_until(ws, "ack")
        await leaver.send_json({"v": 1, "t": "feed.subscribe", "id": "s", "body": {"sub_id": "x", "table": "messages"}})
        await _receive_until(leaver, "ack")
        await leaver.send_json(
            {
                "v": 1,
                "t": "presence.track",
                "id": "t",
                "body": {"scope": "room-presence", "key": "l", "record": {"username": "bob", "online_at": 1}},
            }
        )
        await _receive_until(leaver, "ack")
        frames = await _receive_until(watcher, "presence.sync")
        self.assertEqual(frames[-1]["body"]["state"], {"l": [{"username": "bob", "online_at": 1}]})

        await leaver.close()
        frames = await _receive_until(watcher, "presence.sync")

        self.assertIn("presence.leave", [frame["t"] for frame in frames])
        self.assertEqual(frames[-1]["body"]["state"], {})
        self.assertEqual(self.store.feed.subscriptions(), [])
        await watcher.close()

    async def test_track_requires_join(self):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_json(
            {"v": 1, "t": "presence.track", "id": "t", "body": {"scope": "s", "key": "k", "record": {"username": "a"}}}
        )

        frame = await ws.receive_json(timeout=2)

        self.assertEqual(frame["t"], "error")
        self.assertEqual(frame["body"]["code"], "not_joined")
        await ws.close()

    async def test_bad_frames_get_errors(self):
        ws = await self.client.ws_connect("/v1/ws")
        await ws.send_str("{nope")
        await ws.send_json({"v": 2, "t": "ping", "id": "old"})
        await ws.send_json({"v": 1, "t": "mystery", "id": "m"})
        await ws.send_json({"v": 1, "t": "ping", "id": "p"})

        frames = [await ws.receive_json(timeout=2) for _ in range(4)]

        self.assertEqual([frame["t"] for frame in frames], ["error", "error", "error", "pong"])
        self.assertEqual(frames[1]["id"], "old")
        self.assertEqual(frames[3]["id"], "p")
        await ws.close()


class RelayHeartbeatTests(unittest.IsolatedAsyncioTestCase):
    async def test_idle_socket_gets_protocol_pings(self):
        client = TestClient(TestServer(create_app(MemoryStore(), ping_interval_s=0.05)))
        await client.start_server()
        try:
            ws = await client.ws_connect("/v1/ws", autoping=False)
            msg = await ws.receive(timeout=2)

            self.assertEqual(msg.type, WSMsgType.PING)
            await ws.close()
        finally:
            await client.close()


if __name__ == "__main__":
    unittest.main()
