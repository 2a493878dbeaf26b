"""``PeerTransport`` backed by aiortc."""

from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from client.negotiation import PeerTransport
from constants import STUN_SERVERS
from logging_config import get_logger

logger = get_logger(__name__)


def _description_to_dict(description: RTCSessionDescription) -> dict:
    return {"type": description.type, "sdp": description.sdp}


class AiortcPeer(PeerTransport):
    """One RTCPeerConnection.

    aiortc gathers candidates before ``setLocalDescription`` returns and puts
    them in the SDP, so ``on_candidate`` never fires; remote candidates that
    trickle in are still accepted.
    """

    def __init__(self, remote_id: str, ice_servers: Optional[List[str]] = None, receive_only: bool = True):
        super().__init__()
        self.remote_id = remote_id
        self.receive_only = receive_only
        if ice_servers is None:
            ice_servers = STUN_SERVERS
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self.pc = RTCPeerConnection(configuration=config)

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.debug(f"Connection state with {self.remote_id}: {self.pc.connectionState}")
            if self.on_state_change is not None:
                self.on_state_change(self.pc.connectionState)

        @self.pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange():
            logger.debug(f"ICE connection state with {self.remote_id}: {self.pc.iceConnectionState}")

        @self.pc.on("track")
        def on_track(track):
            logger.info(f"Received {track.kind} track from {self.remote_id}")
            if self.on_track is not None:
                self.on_track(track)

    def add_local_media(self, media):
        """``media`` is anything with ``audio``/``video`` tracks, e.g. ``MediaPlayer``."""
        for track in (getattr(media, "video", None), getattr(media, "audio", None)):
            if track is not None:
                self.pc.addTrack(track)

    async def create_offer(self) -> dict:
        if self.receive_only:
            self.pc.addTransceiver("video", direction="recvonly")
            self.pc.addTransceiver("audio", direction="recvonly")
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return _description_to_dict(self.pc.localDescription)

    async def accept_offer(self, offer: dict) -> dict:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type=offer["type"]))
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return _description_to_dict(self.pc.localDescription)

    async def accept_answer(self, answer: dict):
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer["type"]))

    async def add_candidate(self, candidate):
        if not candidate or not candidate.get("candidate"):
            # end-of-candidates marker
            return
        line = candidate["candidate"]
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        parsed = candidate_from_sdp(line)
        parsed.sdpMid = candidate.get("sdpMid")
        parsed.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(parsed)

    async def close(self):
        await self.pc.close()
