import unittest

from backend import RoomDirectory, normalize_room_id
from errors import AlreadyJoined, MalformedMessage, NotFound
from fakes import flush, open_connection


class TestRoomDirectory(unittest.IsolatedAsyncioTestCase):
    """Membership, notifications and room lifecycle."""

    def setUp(self):
        self.directory = RoomDirectory()

    async def asyncTearDown(self):
        for room in self.directory.list_rooms():
            for connection in list(room.members.values()):
                await connection.close()

    async def test_first_join_creates_room_and_reports_count(self):
        host = open_connection()
        room = await self.directory.join(host, "abcd", "A", True)
        await flush(host)

        self.assertEqual(room.room_id, "ABCD")
        self.assertEqual(len(self.directory), 1)
        self.assertEqual(
            host.websocket.sent,
            [
                {"type": "participant-count", "count": 1, "roomId": "ABCD"},
                {"type": "participant-count", "count": 1, "roomId": "ABCD"},
            ],
        )

    async def test_join_emits_three_ordered_notifications(self):
        host, viewer = open_connection(), open_connection()
        await self.directory.join(host, "ABCD", "A", True)
        await flush(host)
        host.websocket.sent.clear()

        await self.directory.join(viewer, "ABCD", "B", False)
        await flush(host, viewer)

        self.assertEqual(
            host.websocket.sent,
            [
                {"type": "user-joined", "from": "B", "isHost": False, "roomId": "ABCD"},
                {"type": "participant-count", "count": 2, "roomId": "ABCD"},
            ],
        )
        self.assertEqual(viewer.websocket.types(), ["participant-count", "participant-count"])
        self.assertEqual([m["count"] for m in viewer.websocket.sent], [2, 2])

    async def test_second_join_on_same_connection_is_rejected(self):
        host = open_connection()
        await self.directory.join(host, "ABCD", "A", True)

        with self.assertRaises(AlreadyJoined):
            await self.directory.join(host, "WXYZ", "A", True)

        self.assertIsNone(self.directory.get_room("WXYZ"))
        self.assertEqual(self.directory.get_room("ABCD").participant_count, 1)
        self.assertEqual(host.room_id, "ABCD")

    async def test_leave_notifies_remaining_members(self):
        host, viewer = open_connection(), open_connection()
        await self.directory.join(host, "ABCD", "A", True)
        await self.directory.join(viewer, "ABCD", "B", False)
        await flush(host, viewer)
        host.websocket.sent.clear()

        self.assertTrue(await self.directory.leave(viewer))
        await flush(host)

        self.assertEqual(
            host.websocket.sent,
            [
                {"type": "user-left", "from": "B", "isHost": False, "roomId": "ABCD"},
                {"type": "participant-count", "count": 1, "roomId": "ABCD"},
            ],
        )
        self.assertIsNone(viewer.room_id)

    async def test_repeated_leave_is_a_noop(self):
        host, viewer = open_connection(), open_connection()
        await self.directory.join(host, "ABCD", "A", True)
        await self.directory.join(viewer, "ABCD", "B", False)
        await self.directory.leave(viewer)
        await flush(host)
        host.websocket.sent.clear()

        self.assertFalse(await self.directory.leave(viewer))
        self.assertFalse(await self.directory.leave(open_connection()))
        await flush(host)

        self.assertEqual(host.websocket.sent, [])

    async def test_last_leave_deletes_room(self):
        host = open_connection()
        await self.directory.join(host, "ABCD", "A", True)
        await self.directory.leave(host)

        self.assertEqual(len(self.directory), 0)
        self.assertIsNone(self.directory.get_room("ABCD"))
        with self.assertRaises(NotFound):
            self.directory.lookup("ABCD", "A")

    async def test_rejoining_a_deleted_room_creates_a_new_one(self):
        first, second = open_connection(), open_connection()
        room = await self.directory.join(first, "ABCD", "A", True)
        await self.directory.leave(first)

        new_room = await self.directory.join(second, "abcd", "A", True)

        self.assertIsNot(room, new_room)
        self.assertTrue(room.closed)
        self.assertEqual(new_room.participant_count, 1)

    async def test_lookup_resolves_participant(self):
        host, viewer = open_connection(), open_connection()
        await self.directory.join(host, "ABCD", "A", True)
        await self.directory.join(viewer, "ABCD", "B", False)

        self.assertIs(self.directory.lookup("abcd", "B"), viewer)
        with self.assertRaises(NotFound):
            self.directory.lookup("ABCD", "C")
        with self.assertRaises(NotFound):
            self.directory.lookup("NOPE", "B")

    async def test_lookup_duplicate_participant_first_registration_wins(self):
        older, newer = open_connection(), open_connection()
        await self.directory.join(older, "ABCD", "B", False)
        await self.directory.join(newer, "ABCD", "B", False)

        self.assertIs(self.directory.lookup("ABCD", "B"), older)

        older.websocket.drop()
        self.assertIs(self.directory.lookup("ABCD", "B"), newer)

    async def test_counts_track_membership(self):
        members = [open_connection() for _ in range(4)]
        for index, connection in enumerate(members):
            await self.directory.join(connection, "ROOM", f"P{index}", index == 0)
        await self.directory.leave(members[1])
        await self.directory.leave(members[3])
        await flush(*members)

        remaining = [members[0], members[2]]
        for connection in remaining:
            counts = [m["count"] for m in connection.websocket.sent if m["type"] == "participant-count"]
            self.assertEqual(counts[-1], 2)
        self.assertEqual(self.directory.get_room("ROOM").participant_count, 2)

    async def test_sweep_drops_dead_connections_once(self):
        host, viewer, ghost = open_connection(), open_connection(), open_connection()
        await self.directory.join(host, "ABCD", "A", True)
        await self.directory.join(viewer, "ABCD", "B", False)
        await self.directory.join(ghost, "ABCD", "C", False)
        await flush(host, viewer, ghost)
        host.websocket.sent.clear()

        ghost.websocket.drop()
        self.assertEqual(await self.directory.sweep(), 1)
        await flush(host)

        self.assertEqual(
            host.websocket.sent,
            [
                {"type": "user-left", "from": "C", "isHost": False, "roomId": "ABCD"},
                {"type": "participant-count", "count": 2, "roomId": "ABCD"},
            ],
        )
        # the close event that arrives later finds nothing left to clean
        self.assertFalse(await self.directory.leave(ghost))
        self.assertEqual(await self.directory.sweep(), 0)

    async def test_sweep_deletes_rooms_left_empty(self):
        host = open_connection()
        await self.directory.join(host, "ABCD", "A", True)
        host.websocket.drop()

        await self.directory.sweep()

        self.assertEqual(len(self.directory), 0)
        self.assertEqual(self.directory.list_rooms(), [])

    async def test_rooms_are_independent(self):
        first, second = open_connection(), open_connection()
        await self.directory.join(first, "ROOM1", "A", True)
        await self.directory.join(second, "ROOM2", "A", True)
        await flush(first, second)
        first.websocket.sent.clear()

        await self.directory.leave(second)
        await flush(first)

        self.assertEqual(first.websocket.sent, [])
        self.assertEqual(len(self.directory), 1)


class TestNormalizeRoomId(unittest.TestCase):

    def test_case_and_whitespace(self):
        self.assertEqual(normalize_room_id("  abCd "), "ABCD")

    def test_empty(self):
        with self.assertRaises(MalformedMessage):
            normalize_room_id("  ")


if __name__ == "__main__":
    unittest.main()
