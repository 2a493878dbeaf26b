import uuid
from typing import Callable, Dict

from client.negotiation import PeerSession, PeerTransport, SignalingStateMachine
from client.signaling import LinkState, SignalingClient
from logging_config import get_logger

logger = get_logger(__name__)


class WatchParty:
    """One participant: a relay link plus the negotiation state machine it feeds.

    Exposes what a UI renders: link state, participant count, the remote
    stream and each peer session's connection state.
    """

    def __init__(
        self,
        url: str,
        room_id: str,
        peer_factory: Callable[[str], PeerTransport],
        participant_id: str = None,
        is_host: bool = False,
        connect=None,
        link_options: dict = None,
        **machine_options,
    ):
        self.room_id = room_id.strip().upper()
        self.participant_id = participant_id or uuid.uuid4().hex[:12]
        self.is_host = is_host
        self.client = SignalingClient(
            url, self.room_id, self.participant_id, is_host, connect=connect, **(link_options or {})
        )
        self.machine = SignalingStateMachine(
            self.participant_id, self.room_id, is_host, self.client.send, peer_factory, **machine_options
        )
        self.client.add_handler(self.machine.handle)
        self.client.add_open_listener(self.machine.on_rejoined)

    @property
    def is_connected(self) -> bool:
        return self.client.is_connected

    @property
    def link_state(self) -> LinkState:
        return self.client.state

    @property
    def participants(self) -> int:
        return self.client.participants

    @property
    def remote_stream(self):
        return self.machine.remote_stream

    @property
    def sessions(self) -> Dict[str, PeerSession]:
        return dict(self.machine.sessions)

    async def run(self):
        logger.info(
            f"Participant {self.participant_id} joining room {self.room_id} as {'host' if self.is_host else 'viewer'}"
        )
        try:
            await self.client.run()
        finally:
            await self.machine.close()

    async def start_sharing(self, media) -> bool:
        return await self.machine.start_sharing(media)

    async def stop_sharing(self) -> bool:
        return await self.machine.stop_sharing()

    async def retry(self, remote_id: str = None) -> bool:
        return await self.machine.retry(remote_id)

    async def close(self):
        await self.machine.close()
        await self.client.close()
