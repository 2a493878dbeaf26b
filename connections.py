import asyncio
import enum
import uuid
from typing import Dict, Optional

from starlette.websockets import WebSocketState

from constants import CLOSE_CODE_BACKPRESSURE, OUTBOUND_QUEUE_SIZE
from errors import AlreadyJoined
from logging_config import get_logger
from schemas.messages import SignalingMessage

logger = get_logger(__name__)


class ConnectionState(str, enum.Enum):
    OPEN = "open"
    JOINED = "joined"
    CLOSED = "closed"


class Connection:
    """One WebSocket link from a participant to the relay.

    Outbound frames go through a bounded queue drained by a writer task, so a
    slow peer never blocks whoever is broadcasting. When the queue is full the
    link is closed (disconnect-on-backpressure) rather than silently dropping
    signaling frames; the participant reconnects and rejoins.
    """

    def __init__(self, websocket, queue_size: int = OUTBOUND_QUEUE_SIZE):
        self.connection_id = uuid.uuid4().hex
        self.websocket = websocket
        self.room_id: Optional[str] = None
        self.participant_id: Optional[str] = None
        self.is_host = False
        self.state = ConnectionState.OPEN
        self._outbound: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._closing = False

    def __repr__(self):
        return f"<Connection {self.connection_id[:8]} room={self.room_id} participant={self.participant_id}>"

    @property
    def is_open(self) -> bool:
        if self._closing or self.state == ConnectionState.CLOSED:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def bind(self, room_id: str, participant_id: str, is_host: bool):
        if self.room_id is not None:
            raise AlreadyJoined(self.connection_id, self.room_id)
        self.room_id = room_id
        self.participant_id = participant_id
        self.is_host = is_host
        self.state = ConnectionState.JOINED

    def detach(self):
        """Forget room membership. The participant id and role stay for logging."""
        self.room_id = None

    def start(self):
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._drain())

    def send(self, message: SignalingMessage) -> bool:
        """Queue a message without waiting. Returns False if it was not queued."""
        if not self.is_open:
            return False
        try:
            self._outbound.put_nowait(message.to_wire())
        except asyncio.QueueFull:
            logger.warning(f"Outbound queue full for {self!r}, disconnecting slow connection")
            self.abort(CLOSE_CODE_BACKPRESSURE, "Outbound queue full")
            return False
        return True

    async def _drain(self):
        while True:
            frame = await self._outbound.get()
            try:
                await self.websocket.send_text(frame)
            except Exception as e:
                logger.warning(f"Send failed on {self!r}: {e}")
                self._closing = True
                self._discard_pending()
                return
            finally:
                self._outbound.task_done()

    def _discard_pending(self):
        while not self._outbound.empty():
            self._outbound.get_nowait()
            self._outbound.task_done()

    async def flush(self):
        """Wait until every queued frame has been handed to the socket."""
        await self._outbound.join()

    def abort(self, code: int = 1000, reason: str = ""):
        """Stop accepting frames and close the socket in the background."""
        if self._closing:
            return
        self._closing = True
        if self._writer_task is not None:
            self._writer_task.cancel()
        self._discard_pending()
        self._close_task = asyncio.ensure_future(self._close_socket(code, reason))

    async def _close_socket(self, code: int, reason: str):
        if (
            self.websocket.application_state != WebSocketState.CONNECTED
            or self.websocket.client_state != WebSocketState.CONNECTED
        ):
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing WebSocket for {self!r}: {e}")

    async def close(self):
        """Release the connection. Runs its cleanup once, whichever path gets here first."""
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        self._closing = True
        if self._writer_task is not None:
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
        self._discard_pending()
        if self._close_task is not None:
            await self._close_task
        else:
            await self._close_socket(1000, "")
        logger.debug(f"Closed {self!r}")


class ConnectionRegistry:
    """All live connections of this relay process, keyed by connection id."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}

    def register(self, connection: Connection) -> Connection:
        self._connections[connection.connection_id] = connection
        logger.debug(f"Registered {connection!r} (live connections: {len(self._connections)})")
        return connection

    def unregister(self, connection: Connection):
        self._connections.pop(connection.connection_id, None)

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def all(self):
        return list(self._connections.values())

    def __len__(self):
        return len(self._connections)
