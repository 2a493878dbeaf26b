import asyncio
import unittest

from client.signaling import LinkState, SignalingClient, backoff_delay
from fakes import FakeConnector, FakeLink, eventually
from schemas.messages import HostSharing


class TestBackoff(unittest.TestCase):

    def test_doubles_up_to_cap(self):
        self.assertEqual([backoff_delay(attempt) for attempt in range(5)], [1.0, 2.0, 4.0, 8.0, 10.0])

    def test_custom_base_and_cap(self):
        self.assertEqual(backoff_delay(3, base=0.5, cap=3.0), 3.0)
        self.assertEqual(backoff_delay(0, base=0.5, cap=3.0), 0.5)


class TestSignalingClient(unittest.IsolatedAsyncioTestCase):

    def make_client(self, connector, **options):
        options.setdefault("base_delay", 0)
        client = SignalingClient("ws://relay.test/ws", "ABCD", "B", connect=connector, **options)
        self.states = []
        client.add_state_listener(self.states.append)
        return client

    async def test_joins_on_open_and_again_after_reconnect(self):
        first, second = FakeLink(), FakeLink()
        client = self.make_client(FakeConnector([first, second]))
        opened = []

        async def on_open():
            opened.append(client.state)

        client.add_open_listener(on_open)
        task = asyncio.ensure_future(client.run())

        await eventually(lambda: first.sent)
        first.hang_up()
        await eventually(lambda: second.sent)

        for link in (first, second):
            self.assertEqual(link.sent, [{"type": "join-room", "from": "B", "roomId": "ABCD", "isHost": False}])
        self.assertEqual(opened, [LinkState.CONNECTED, LinkState.CONNECTED])
        self.assertTrue(client.is_connected)

        await client.close()
        await task
        self.assertEqual(client.state, LinkState.CLOSED)
        self.assertEqual(
            self.states,
            [
                LinkState.CONNECTING, LinkState.CONNECTED, LinkState.RECONNECTING,
                LinkState.CONNECTED, LinkState.CLOSED,
            ],
        )

    async def test_gives_up_after_max_attempts(self):
        connector = FakeConnector()
        client = self.make_client(connector, max_attempts=3)

        await client.run()

        self.assertEqual(connector.calls, 4)
        self.assertEqual(client.state, LinkState.DISCONNECTED)
        self.assertEqual(self.states, [LinkState.CONNECTING, LinkState.RECONNECTING, LinkState.DISCONNECTED])
        self.assertIn("Connection refused", str(client.last_error))

    async def test_successful_open_resets_attempts(self):
        link = FakeLink()
        link.hang_up()
        connector = FakeConnector([OSError("down"), OSError("down"), link])
        client = self.make_client(connector, max_attempts=3)

        await client.run()

        self.assertEqual(connector.calls, 6)
        self.assertEqual(client.state, LinkState.DISCONNECTED)
        self.assertEqual(link.types(), ["join-room"])

    async def test_relay_messages_are_dispatched(self):
        link = FakeLink([
            {"type": "welcome", "message": "hello", "connectionId": "c1"},
            {"type": "participant-count", "count": 3, "roomId": "ABCD"},
            "not json",
            {"type": "error", "message": "nope"},
            {"type": "host-sharing", "from": "A", "roomId": "ABCD"},
        ])
        client = self.make_client(FakeConnector([link]))
        received = []

        async def handler(message):
            received.append(message)

        async def broken(message):
            raise RuntimeError("handler bug")

        client.add_handler(broken)
        client.add_handler(handler)
        task = asyncio.ensure_future(client.run())

        await eventually(lambda: received)

        self.assertEqual(client.participants, 3)
        self.assertEqual([message.type for message in received], ["host-sharing"])
        self.assertEqual(received[0].sender, "A")

        await client.close()
        await task

    async def test_send_requires_open_link(self):
        client = self.make_client(FakeConnector())

        self.assertFalse(await client.send(HostSharing(sender="B")))

    async def test_send_goes_over_open_link(self):
        link = FakeLink()
        client = self.make_client(FakeConnector([link]))
        task = asyncio.ensure_future(client.run())
        await eventually(lambda: client.is_connected)

        self.assertTrue(await client.send(HostSharing(sender="B", room_id="ABCD")))
        self.assertEqual(link.types(), ["join-room", "host-sharing"])

        await client.close()
        await task

    async def test_close_during_backoff_stops_reconnecting(self):
        connector = FakeConnector()
        client = self.make_client(connector, base_delay=60)
        task = asyncio.ensure_future(client.run())
        await eventually(lambda: client.state == LinkState.RECONNECTING)

        await client.close()
        await task

        self.assertEqual(connector.calls, 1)
        self.assertEqual(client.state, LinkState.CLOSED)


if __name__ == "__main__":
    unittest.main()
