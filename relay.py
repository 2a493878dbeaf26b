import asyncio
from typing import Union

from backend import RoomDirectory
from connections import Connection
from errors import AlreadyJoined, MalformedMessage, NotFound
from logging_config import get_logger
from schemas.messages import (
    DeliveryFailed, Error, HostSharing, HostStopped, JoinRoom, PeerMessage, UnicastMessage, Welcome,
    decode_client_message,
)

logger = get_logger(__name__)

WELCOME_TEXT = "Connected to Watch Party signaling relay"


class MessageRouter:
    """Routes decoded client messages to a room or to one member of it.

    Holds no state of its own; every decision depends only on the message kind
    and on the room directory.
    """

    def __init__(self, directory: RoomDirectory):
        self.directory = directory

    def welcome(self, connection: Connection):
        connection.send(Welcome.now(WELCOME_TEXT, connection_id=connection.connection_id))

    async def handle_text(self, connection: Connection, raw: Union[str, bytes]):
        try:
            message = decode_client_message(raw)
        except MalformedMessage as e:
            logger.warning(f"Rejected message from {connection!r}: {e}")
            connection.send(Error(message=str(e)))
            return

        logger.debug(f"Received {message.type} from {message.sender} on {connection!r}")

        if isinstance(message, JoinRoom):
            await self._join(connection, message)
        elif connection.room_id is None:
            logger.warning(f"{message.type} from {connection!r} before joining a room")
            connection.send(Error(message=f"Join a room before sending {message.type}"))
        elif isinstance(message, (HostSharing, HostStopped)):
            await self._broadcast(connection, message)
        elif isinstance(message, UnicastMessage):
            self._unicast(connection, message)

    async def _join(self, connection: Connection, message: JoinRoom):
        try:
            await self.directory.join(connection, message.room_id, message.sender, message.is_host)
        except AlreadyJoined as e:
            logger.warning(str(e))
            connection.send(Error(message=f"Already joined room {e.room_id}"))
        except MalformedMessage as e:
            connection.send(Error(message=str(e)))

    def _stamp(self, connection: Connection, message: PeerMessage) -> PeerMessage:
        # the registration is authoritative for who sent it and where
        return message.model_copy(update={"sender": connection.participant_id, "room_id": connection.room_id})

    async def _broadcast(self, connection: Connection, message: PeerMessage):
        if isinstance(message, HostSharing):
            logger.info(f"Host {connection.participant_id} started sharing in room {connection.room_id}")
        else:
            logger.info(f"Host {connection.participant_id} stopped sharing in room {connection.room_id}")
        await self.directory.broadcast(connection.room_id, self._stamp(connection, message), exclude=connection)

    def _unicast(self, connection: Connection, message: UnicastMessage):
        try:
            target = self.directory.lookup(connection.room_id, message.to)
        except NotFound:
            logger.warning(f"Target user {message.to} not found in room {connection.room_id}, dropping {message.type}")
            connection.send(DeliveryFailed(
                to=message.to,
                failed_type=message.type,
                room_id=connection.room_id,
                message=f"{message.to} is not in room {connection.room_id}",
            ))
            return
        logger.debug(f"Forwarding {message.type} from {connection.participant_id} to {message.to}")
        target.send(self._stamp(connection, message))

    async def disconnect(self, connection: Connection):
        """Transport closed: implicit leave, then release the connection."""
        await self.directory.leave(connection)
        await connection.close()

    async def run_sweeper(self, interval: float):
        logger.info(f"Starting liveness sweep every {interval}s")
        while True:
            await asyncio.sleep(interval)
            try:
                await self.directory.sweep()
            except Exception as e:
                logger.error(f"Liveness sweep failed: {e}", exc_info=True)
