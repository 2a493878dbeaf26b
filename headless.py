"""Headless watch party participant.

Join as a viewer (optionally recording what the host shares) or as a host
streaming a media file in place of a screen capture:

    python headless.py --room ABCD --host --media clip.mp4
    python headless.py --room ABCD --record out.mp4
"""

import argparse
import asyncio

from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from client.party import WatchParty
from client.rtc import AiortcPeer
from client.signaling import LinkState
from constants import LOG_FILE, LOG_LEVEL, RELAY_URL
from logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Join a watch party room without a browser")
    parser.add_argument("--url", default=RELAY_URL, help="Relay WebSocket URL")
    parser.add_argument("--room", required=True, help="Room id")
    parser.add_argument("--participant", default=None, help="Participant id (random if omitted)")
    parser.add_argument("--host", action="store_true", help="Join as host")
    parser.add_argument("--media", default=None, help="Media file the host streams")
    parser.add_argument("--record", default=None, help="File a viewer records the shared stream to")
    parser.add_argument("--log-level", default=LOG_LEVEL)
    args = parser.parse_args(argv)
    if args.host and not args.media:
        parser.error("--host needs --media")
    return args


async def run(args):
    sink = MediaRecorder(args.record) if args.record else MediaBlackhole()
    attached = set()
    link_settled = asyncio.Event()

    def on_session_change(session):
        logger.info(f"Session {session.remote_id}: {session.state.value}")
        track = party.remote_stream
        if track is not None and id(track) not in attached:
            attached.add(id(track))
            sink.addTrack(track)
            asyncio.ensure_future(sink.start())

    party = WatchParty(
        args.url,
        args.room,
        peer_factory=lambda remote_id: AiortcPeer(remote_id, receive_only=not args.host),
        participant_id=args.participant,
        is_host=args.host,
        on_session_change=on_session_change,
    )

    def on_link_state(state: LinkState):
        logger.info(f"Relay link {state.value}")
        if state in (LinkState.CONNECTED, LinkState.DISCONNECTED, LinkState.CLOSED):
            link_settled.set()

    party.client.add_state_listener(on_link_state)
    runner = asyncio.ensure_future(party.run())

    try:
        if args.host:
            await link_settled.wait()
            if party.is_connected:
                await party.start_sharing(MediaPlayer(args.media))
        await runner
    finally:
        if party.is_host:
            await party.stop_sharing()
        await party.close()
        await sink.stop()


def main(argv=None):
    args = parse_args(argv)
    setup_logging(log_level=args.log_level, log_file=LOG_FILE)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted, leaving room")


if __name__ == "__main__":
    main()
