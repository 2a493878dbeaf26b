import asyncio
import enum
from typing import Awaitable, Callable, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from constants import RECONNECT_BASE_DELAY, RECONNECT_MAX_ATTEMPTS, RECONNECT_MAX_DELAY
from errors import MalformedMessage, TransportError
from logging_config import get_logger
from schemas.messages import Error, JoinRoom, ParticipantCount, SignalingMessage, Welcome, decode_server_message

logger = get_logger(__name__)

MessageHandler = Callable[[SignalingMessage], Awaitable[None]]


class LinkState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"  # gave up; terminal
    CLOSED = "closed"  # stopped on purpose


def backoff_delay(attempt: int, base: float = RECONNECT_BASE_DELAY, cap: float = RECONNECT_MAX_DELAY) -> float:
    return min(base * (2 ** attempt), cap)


class SignalingClient:
    """Keeps one link to the relay open and rejoins the room after every reconnect.

    The relay forgets a connection as soon as its transport closes, so each
    successful open re-sends ``join-room`` with the same room, participant and
    role. After ``max_attempts`` consecutive failures the link gives up and
    stays DISCONNECTED.
    """

    def __init__(
        self,
        url: str,
        room_id: str,
        participant_id: str,
        is_host: bool = False,
        base_delay: float = RECONNECT_BASE_DELAY,
        max_delay: float = RECONNECT_MAX_DELAY,
        max_attempts: int = RECONNECT_MAX_ATTEMPTS,
        connect=None,
    ):
        self.url = url
        self.room_id = room_id
        self.participant_id = participant_id
        self.is_host = is_host
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self._connect = connect or websockets.connect

        self.state = LinkState.IDLE
        self.participants = 0
        self.attempts = 0
        self.last_error: Optional[TransportError] = None
        self._ws = None
        self._stop = asyncio.Event()
        self._handlers: List[MessageHandler] = []
        self._open_listeners: List[Callable[[], Awaitable[None]]] = []
        self._state_listeners: List[Callable[[LinkState], None]] = []

    @property
    def is_connected(self) -> bool:
        return self.state == LinkState.CONNECTED

    def add_handler(self, handler: MessageHandler):
        self._handlers.append(handler)

    def remove_handler(self, handler: MessageHandler):
        if handler in self._handlers:
            self._handlers.remove(handler)

    def add_open_listener(self, listener: Callable[[], Awaitable[None]]):
        self._open_listeners.append(listener)

    def add_state_listener(self, listener: Callable[[LinkState], None]):
        self._state_listeners.append(listener)

    def _set_state(self, state: LinkState):
        if state == self.state:
            return
        self.state = state
        for listener in list(self._state_listeners):
            listener(state)

    async def run(self):
        self._set_state(LinkState.CONNECTING)
        while not self._stop.is_set():
            try:
                ws = await self._connect(self.url)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                self.last_error = TransportError(f"Failed to connect to {self.url}: {e}")
                logger.warning(str(self.last_error))
            else:
                await self._serve(ws)

            if self._stop.is_set():
                break
            if self.attempts >= self.max_attempts:
                logger.error("Max reconnection attempts reached")
                self._set_state(LinkState.DISCONNECTED)
                return

            self._set_state(LinkState.RECONNECTING)
            delay = backoff_delay(self.attempts, self.base_delay, self.max_delay)
            logger.info(f"Attempting to reconnect in {delay}s (attempt {self.attempts + 1}/{self.max_attempts})")
            self.attempts += 1
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        self._set_state(LinkState.CLOSED)

    async def _serve(self, ws):
        self._ws = ws
        self.attempts = 0
        self._set_state(LinkState.CONNECTED)
        logger.info(f"Connected to relay at {self.url}")
        try:
            await self.send(JoinRoom(sender=self.participant_id, room_id=self.room_id, is_host=self.is_host))
            for listener in list(self._open_listeners):
                await listener()
            async for raw in ws:
                await self._dispatch(raw)
            logger.info("Relay closed the link")
        except ConnectionClosed as e:
            self.last_error = TransportError(f"Relay link dropped: {e}")
            logger.warning(str(self.last_error))
        finally:
            self._ws = None
            if not self._stop.is_set():
                self._set_state(LinkState.RECONNECTING)
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing relay link: {e}")

    async def _dispatch(self, raw):
        try:
            message = decode_server_message(raw)
        except MalformedMessage as e:
            logger.warning(f"Ignoring frame from relay: {e}")
            return

        if isinstance(message, Welcome):
            logger.info(f"Server welcome: {message.message}")
        elif isinstance(message, ParticipantCount):
            self.participants = message.count
            logger.debug(f"{message.count} participants in room {self.room_id}")
        elif isinstance(message, Error):
            logger.error(f"Server error: {message.message}")
        else:
            for handler in list(self._handlers):
                try:
                    await handler(message)
                except Exception as e:
                    logger.error(f"Message handler failed on {message.type}: {e}", exc_info=True)

    async def send(self, message: SignalingMessage) -> bool:
        ws = self._ws
        if ws is None:
            logger.warning(f"Not connected, cannot send {message.type}")
            return False
        try:
            await ws.send(message.to_wire())
        except ConnectionClosed as e:
            logger.warning(f"Could not send {message.type}: {e}")
            return False
        logger.debug(f"Sent {message.type}")
        return True

    async def close(self):
        """Stop for good; no reconnect is attempted afterwards."""
        self._stop.set()
        ws = self._ws
        if ws is not None:
            await ws.close()
        if self.state in (LinkState.IDLE, LinkState.DISCONNECTED):
            self._set_state(LinkState.CLOSED)
