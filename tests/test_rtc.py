import unittest

from client.rtc import AiortcPeer
from headless import parse_args


class TestAiortcPeer(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.peer = AiortcPeer("A", ice_servers=[])

    async def asyncTearDown(self):
        await self.peer.close()

    async def test_receive_only_offer(self):
        offer = await self.peer.create_offer()

        self.assertEqual(offer["type"], "offer")
        self.assertIn("m=video", offer["sdp"])
        self.assertIn("m=audio", offer["sdp"])
        self.assertIn("a=recvonly", offer["sdp"])

    async def test_end_of_candidates_is_ignored(self):
        await self.peer.add_candidate({"candidate": "", "sdpMid": "0", "sdpMLineIndex": 0})
        await self.peer.add_candidate(None)

    async def test_offer_is_answered(self):
        answerer = AiortcPeer("B", ice_servers=[], receive_only=False)
        try:
            offer = await self.peer.create_offer()
            answer = await answerer.accept_offer(offer)
            await self.peer.accept_answer(answer)
        finally:
            await answerer.close()

        self.assertEqual(answer["type"], "answer")
        self.assertEqual(self.peer.pc.signalingState, "stable")


class TestHeadlessArgs(unittest.TestCase):

    def test_viewer_defaults(self):
        args = parse_args(["--room", "abcd"])
        self.assertFalse(args.host)
        self.assertIsNone(args.record)

    def test_host_needs_media(self):
        with self.assertRaises(SystemExit):
            parse_args(["--room", "abcd", "--host"])

    def test_host_with_media(self):
        args = parse_args(["--room", "abcd", "--host", "--media", "clip.mp4"])
        self.assertEqual(args.media, "clip.mp4")


if __name__ == "__main__":
    unittest.main()
