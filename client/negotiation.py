"""Per-participant negotiation state machine.

A ``SignalingStateMachine`` consumes messages relayed to one participant and
drives one ``PeerSession`` per remote participant: the host answers offers and
streams its local media, viewers offer to the host once it announces sharing.

Everything runs on one event loop. Negotiation steps run as tasks owned by
their session so that inbound messages keep flowing while an offer or answer
is being produced; closing a session cancels those tasks and any completion
that still arrives afterwards is ignored.
"""

import asyncio
import enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from constants import NEGOTIATION_TIMEOUT, OFFER_DELAY, REANNOUNCE_DELAY
from errors import NegotiationFailure, NoSuchSession
from logging_config import get_logger
from schemas.messages import (
    Answer, DeliveryFailed, HostSharing, HostStopped, IceCandidate, Offer, PeerMessage, SignalingMessage,
    UnicastMessage, UserJoined, UserLeft,
)

logger = get_logger(__name__)


class PeerConnectionState(str, enum.Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


_TRANSITIONS = {
    PeerConnectionState.NEW: {PeerConnectionState.CONNECTING, PeerConnectionState.FAILED, PeerConnectionState.CLOSED},
    PeerConnectionState.CONNECTING: {
        PeerConnectionState.CONNECTED, PeerConnectionState.FAILED, PeerConnectionState.CLOSED,
    },
    PeerConnectionState.CONNECTED: {PeerConnectionState.FAILED, PeerConnectionState.CLOSED},
    PeerConnectionState.FAILED: {PeerConnectionState.CLOSED},
    PeerConnectionState.CLOSED: set(),
}


class PeerTransport:
    """The negotiated peer primitive a session drives.

    Implementations report progress through the callback attributes:
    ``on_state_change(state: str)``, ``on_candidate(candidate)`` for each local
    network candidate and ``on_track(stream)`` when remote media arrives.
    """

    def __init__(self):
        self.on_state_change: Optional[Callable[[str], None]] = None
        self.on_candidate: Optional[Callable[[Any], None]] = None
        self.on_track: Optional[Callable[[Any], None]] = None

    def add_local_media(self, media):
        raise NotImplementedError

    async def create_offer(self) -> dict:
        raise NotImplementedError

    async def accept_offer(self, offer: dict) -> dict:
        """Apply a remote offer and return the local answer."""
        raise NotImplementedError

    async def accept_answer(self, answer: dict):
        raise NotImplementedError

    async def add_candidate(self, candidate):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


class PeerSession:
    def __init__(self, remote_id: str, transport: PeerTransport):
        self.remote_id = remote_id
        self.transport = transport
        self.state = PeerConnectionState.NEW
        self.error: Optional[NegotiationFailure] = None
        self.remote_described = False
        self.pending_candidates = []
        self.tasks: Set[asyncio.Task] = set()
        self.watchdog: Optional[asyncio.Task] = None
        self._released = False

    def __repr__(self):
        return f"<PeerSession {self.remote_id} {self.state.value}>"

    @property
    def is_closed(self) -> bool:
        return self.state == PeerConnectionState.CLOSED

    def transition(self, state: PeerConnectionState) -> bool:
        if state == self.state:
            return False
        if state not in _TRANSITIONS[self.state]:
            logger.warning(f"Ignoring transition {self.state.value} -> {state.value} for {self.remote_id}")
            return False
        logger.debug(f"Session {self.remote_id}: {self.state.value} -> {state.value}")
        self.state = state
        return True

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    def cancel_tasks(self):
        current = asyncio.current_task()
        for task in list(self.tasks) + [self.watchdog]:
            if task is not None and task is not current and not task.done():
                task.cancel()

    async def add_candidate(self, candidate):
        """Hand a remote candidate to the transport, or hold it until the remote description is set."""
        if not self.remote_described:
            self.pending_candidates.append(candidate)
            return
        await self.transport.add_candidate(candidate)

    async def remote_description_applied(self):
        self.remote_described = True
        pending, self.pending_candidates = self.pending_candidates, []
        for candidate in pending:
            if self.is_closed:
                return
            try:
                await self.transport.add_candidate(candidate)
            except Exception as e:
                logger.warning(f"Dropping queued candidate from {self.remote_id}: {e}")

    async def release(self):
        """Close the underlying transport once, keeping the session state as is."""
        if self._released:
            return
        self._released = True
        try:
            await self.transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport for {self.remote_id}: {e}")

    async def close(self):
        if self.is_closed:
            return
        self.transition(PeerConnectionState.CLOSED)
        self.cancel_tasks()
        self.pending_candidates = []
        await self.release()


class SignalingStateMachine:
    def __init__(
        self,
        participant_id: str,
        room_id: str,
        is_host: bool,
        send: Callable[[SignalingMessage], Awaitable[bool]],
        peer_factory: Callable[[str], PeerTransport],
        reannounce_delay: float = REANNOUNCE_DELAY,
        offer_delay: float = OFFER_DELAY,
        negotiation_timeout: Optional[float] = NEGOTIATION_TIMEOUT,
        on_failure: Optional[Callable[[PeerSession, NegotiationFailure], None]] = None,
        on_session_change: Optional[Callable[[PeerSession], None]] = None,
    ):
        self.participant_id = participant_id
        self.room_id = room_id
        self.is_host = is_host
        self.send = send
        self.peer_factory = peer_factory
        self.reannounce_delay = reannounce_delay
        self.offer_delay = offer_delay
        self.negotiation_timeout = negotiation_timeout
        self.on_failure = on_failure
        self.on_session_change = on_session_change

        self.sessions: Dict[str, PeerSession] = {}
        self.is_sharing = False
        self.local_media = None
        self.host_id: Optional[str] = None
        self.host_is_sharing = False
        self.remote_stream = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    # Inbound

    async def handle(self, message: SignalingMessage):
        if self._closed:
            return
        if isinstance(message, PeerMessage) and message.sender == self.participant_id:
            return
        if isinstance(message, UnicastMessage) and message.to != self.participant_id:
            return

        logger.debug(f"Processing {message.type} from {getattr(message, 'sender', 'relay')}")
        try:
            if isinstance(message, UserJoined):
                self._on_user_joined(message)
            elif isinstance(message, UserLeft):
                await self._on_user_left(message)
            elif isinstance(message, HostSharing):
                await self._on_host_sharing(message)
            elif isinstance(message, HostStopped):
                await self._on_host_stopped(message)
            elif isinstance(message, Offer):
                await self._on_offer(message)
            elif isinstance(message, Answer):
                self._on_answer(message)
            elif isinstance(message, IceCandidate):
                await self._on_ice_candidate(message)
            elif isinstance(message, DeliveryFailed):
                await self._on_delivery_failed(message)
        except Exception as e:
            logger.error(f"Error handling {message.type}: {e}", exc_info=True)

    def _on_user_joined(self, message: UserJoined):
        logger.info(f"User joined: {message.sender} ({'host' if message.is_host else 'viewer'})")
        if self.is_host and self.is_sharing:
            # let the late joiner finish its own setup before announcing
            self._spawn(self._reannounce())

    async def _reannounce(self):
        if self.reannounce_delay:
            await asyncio.sleep(self.reannounce_delay)
        if self.is_sharing and not self._closed:
            await self._send(HostSharing(sender=self.participant_id, room_id=self.room_id))

    async def _on_user_left(self, message: UserLeft):
        logger.info(f"User left: {message.sender}")
        await self._close_session(message.sender)
        if not self.is_host and message.sender == self.host_id:
            self.host_is_sharing = False
            self.remote_stream = None

    async def _on_host_sharing(self, message: HostSharing):
        if self.is_host:
            return
        self.host_id = message.sender
        self.host_is_sharing = True
        existing = self.sessions.get(message.sender)
        if existing is not None and existing.state in (
            PeerConnectionState.NEW, PeerConnectionState.CONNECTING, PeerConnectionState.CONNECTED,
        ):
            logger.debug(f"Already negotiating with host {message.sender}")
            return
        if existing is not None:
            await self._close_session(message.sender)
        logger.info(f"Host {message.sender} is sharing, initiating connection")
        self._negotiate_with_host(message.sender)

    async def _on_host_stopped(self, message: HostStopped):
        if self.is_host:
            return
        logger.info(f"Host {message.sender} stopped sharing")
        self.host_is_sharing = False
        self.remote_stream = None
        await self._close_session(message.sender)

    async def _on_offer(self, message: Offer):
        if not self.is_host:
            logger.debug(f"Viewer ignoring offer from {message.sender}")
            return
        existing = self.sessions.get(message.sender)
        if existing is not None and existing.state != PeerConnectionState.NEW:
            # a fresh offer restarts negotiation from scratch
            await self._close_session(message.sender)
            existing = None
        session = existing or self._new_session(message.sender)
        self._begin_connecting(session)
        session.spawn(self._answer_offer(session, message.data))

    def _on_answer(self, message: Answer):
        if self.is_host:
            return
        session = self.sessions.get(message.sender)
        if session is None or session.is_closed:
            logger.warning(str(NoSuchSession(message.sender)))
            return
        session.spawn(self._apply_answer(session, message.data))

    async def _on_ice_candidate(self, message: IceCandidate):
        session = self.sessions.get(message.sender)
        if session is None or session.is_closed:
            logger.debug(f"Dropping candidate from {message.sender}: no session yet")
            return
        try:
            await session.add_candidate(message.data)
        except Exception as e:
            logger.warning(f"Failed to add candidate from {message.sender}: {e}")

    async def _on_delivery_failed(self, message: DeliveryFailed):
        logger.warning(f"Relay could not deliver {message.failed_type} to {message.to}")
        if message.failed_type not in ("offer", "answer"):
            return
        session = self.sessions.get(message.to)
        if session is not None and not session.is_closed:
            await self._fail(session, f"{message.to} is no longer in the room")

    # Negotiation steps

    def _negotiate_with_host(self, host_id: str):
        session = self._new_session(host_id)
        self._begin_connecting(session)
        session.spawn(self._send_offer(session))

    async def _send_offer(self, session: PeerSession):
        try:
            if self.offer_delay:
                await asyncio.sleep(self.offer_delay)
            offer = await session.transport.create_offer()
            if session.is_closed:
                return
            await self._send(Offer(sender=self.participant_id, to=session.remote_id, room_id=self.room_id, data=offer))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._fail(session, f"could not create offer: {e}")

    async def _answer_offer(self, session: PeerSession, offer):
        try:
            if self.local_media is not None:
                session.transport.add_local_media(self.local_media)
            else:
                logger.warning(f"No local media to attach for {session.remote_id}")
            answer = await session.transport.accept_offer(offer)
            if session.is_closed:
                return
            await session.remote_description_applied()
            await self._send(Answer(sender=self.participant_id, to=session.remote_id, room_id=self.room_id, data=answer))
            logger.info(f"Answer sent to {session.remote_id}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._fail(session, f"could not answer offer: {e}")

    async def _apply_answer(self, session: PeerSession, answer):
        try:
            await session.transport.accept_answer(answer)
            if session.is_closed:
                return
            await session.remote_description_applied()
            logger.info(f"Remote description from {session.remote_id} applied")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._fail(session, f"could not apply answer: {e}")

    def _begin_connecting(self, session: PeerSession):
        if session.transition(PeerConnectionState.CONNECTING):
            self._notify(session)
        if self.negotiation_timeout is not None and session.watchdog is None:
            session.watchdog = asyncio.ensure_future(self._expire(session))

    async def _expire(self, session: PeerSession):
        await asyncio.sleep(self.negotiation_timeout)
        if session.state in (PeerConnectionState.NEW, PeerConnectionState.CONNECTING):
            await self._fail(session, f"negotiation timed out after {self.negotiation_timeout}s")

    async def _fail(self, session: PeerSession, reason: str):
        if not session.transition(PeerConnectionState.FAILED):
            return
        session.error = NegotiationFailure(session.remote_id, reason)
        logger.error(str(session.error))
        session.cancel_tasks()
        await session.release()
        self._notify(session)
        if self.on_failure is not None:
            self.on_failure(session, session.error)

    # Transport callbacks

    def _new_session(self, remote_id: str) -> PeerSession:
        logger.info(f"Creating peer session with {remote_id}")
        transport = self.peer_factory(remote_id)
        session = PeerSession(remote_id, transport)
        transport.on_state_change = lambda state: self._on_transport_state(session, state)
        transport.on_candidate = lambda candidate: self._on_local_candidate(session, candidate)
        transport.on_track = lambda stream: self._on_remote_track(session, stream)
        self.sessions[remote_id] = session
        self._notify(session)
        return session

    def _on_transport_state(self, session: PeerSession, value: str):
        if session.is_closed:
            return
        try:
            state = PeerConnectionState(value)
        except ValueError:
            logger.debug(f"Connection state with {session.remote_id}: {value}")
            return
        logger.info(f"Connection state with {session.remote_id}: {value}")
        if state == PeerConnectionState.FAILED:
            self._spawn(self._fail(session, "peer connection failed"))
        elif state == PeerConnectionState.CLOSED:
            return
        elif session.transition(state):
            if state == PeerConnectionState.CONNECTED and session.watchdog is not None:
                session.watchdog.cancel()
            self._notify(session)

    def _on_local_candidate(self, session: PeerSession, candidate):
        if session.is_closed or candidate is None:
            return
        self._spawn(self._send(IceCandidate(
            sender=self.participant_id, to=session.remote_id, room_id=self.room_id, data=candidate,
        )))

    def _on_remote_track(self, session: PeerSession, stream):
        if session.is_closed or self.is_host:
            return
        logger.info(f"Received remote stream from {session.remote_id}")
        self.remote_stream = stream
        self._notify(session)

    # Local actions

    async def start_sharing(self, media) -> bool:
        if not self.is_host:
            logger.warning("Only the host can share")
            return False
        self.local_media = media
        self.is_sharing = True
        logger.info("Notifying viewers that host started sharing")
        return await self._send(HostSharing(sender=self.participant_id, room_id=self.room_id))

    async def stop_sharing(self) -> bool:
        if not self.is_sharing:
            return False
        self.is_sharing = False
        self.local_media = None
        for remote_id in list(self.sessions):
            await self._close_session(remote_id)
        return await self._send(HostStopped(sender=self.participant_id, room_id=self.room_id))

    async def retry(self, remote_id: str = None) -> bool:
        """Start negotiation over from scratch, e.g. after a session failed."""
        if self.is_host:
            if remote_id is not None:
                await self._close_session(remote_id)
            if not self.is_sharing:
                return False
            return await self._send(HostSharing(sender=self.participant_id, room_id=self.room_id))

        remote_id = remote_id or self.host_id
        if remote_id is None or not self.host_is_sharing:
            logger.info("Nothing to retry: host is not sharing")
            return False
        await self._close_session(remote_id)
        self.remote_stream = None
        self._negotiate_with_host(remote_id)
        return True

    async def on_rejoined(self):
        """The relay forgot us and every peer saw us leave, so drop our sessions.

        A sharing host re-announces; viewers negotiate afresh on the next announcement.
        """
        for remote_id in list(self.sessions):
            await self._close_session(remote_id)
        if self.is_host:
            if self.is_sharing:
                await self._send(HostSharing(sender=self.participant_id, room_id=self.room_id))
        else:
            self.remote_stream = None

    async def close(self):
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        for remote_id in list(self.sessions):
            await self._close_session(remote_id)
        self.remote_stream = None
        self.is_sharing = False

    async def wait_pending(self):
        """Wait for in-flight negotiation steps (not timeouts) to finish."""
        current = asyncio.current_task()
        while True:
            pending = [task for task in self._tasks if not task.done() and task is not current]
            for session in list(self.sessions.values()):
                pending.extend(task for task in session.tasks if not task.done() and task is not current)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # Helpers

    async def _close_session(self, remote_id: str):
        session = self.sessions.pop(remote_id, None)
        if session is None:
            return
        logger.info(f"Closing peer session with {remote_id}")
        await session.close()
        self._notify(session)

    async def _send(self, message: SignalingMessage) -> bool:
        sent = await self.send(message)
        if not sent:
            logger.warning(f"Relay not connected, could not send {message.type}")
        return sent

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _notify(self, session: PeerSession):
        if self.on_session_change is not None:
            self.on_session_change(session)
