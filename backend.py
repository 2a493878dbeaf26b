import asyncio
from datetime import datetime
from typing import Dict, List, Optional

from connections import Connection
from errors import AlreadyJoined, MalformedMessage, NotFound
from logging_config import get_logger
from schemas.messages import ParticipantCount, SignalingMessage, UserJoined, UserLeft

logger = get_logger(__name__)


def normalize_room_id(room_id: str) -> str:
    normalized = (room_id or "").strip().upper()
    if not normalized:
        raise MalformedMessage("Room id must not be empty")
    return normalized


class Room:
    def __init__(self, room_id: str):
        self.room_id = room_id
        self.created_at = datetime.now().isoformat()
        # connection_id -> Connection, in registration order
        self.members: Dict[str, Connection] = {}
        self.lock = asyncio.Lock()
        self.closed = False

    @property
    def participant_count(self) -> int:
        return len(self.members)

    def broadcast(self, message: SignalingMessage, exclude: Connection = None) -> int:
        """Queue a message for every open member except ``exclude``. Caller holds the lock."""
        sent = 0
        for connection in list(self.members.values()):
            if connection is exclude or not connection.is_open:
                continue
            if connection.send(message):
                sent += 1
        logger.debug(f"Broadcasted {message.type} to {sent} members of room {self.room_id}")
        return sent


class RoomDirectory:
    """In-memory rooms of this relay process.

    Membership changes and broadcasts for a room run under that room's lock;
    different rooms never share a lock. A room exists only while it has members.
    """

    def __init__(self):
        self._rooms: Dict[str, Room] = {}

    def __len__(self):
        return len(self._rooms)

    def get_room(self, room_id: str) -> Optional[Room]:
        try:
            return self._rooms.get(normalize_room_id(room_id))
        except MalformedMessage:
            return None

    def list_rooms(self) -> List[Room]:
        return list(self._rooms.values())

    async def join(self, connection: Connection, room_id: str, participant_id: str, is_host: bool) -> Room:
        if connection.room_id is not None:
            raise AlreadyJoined(connection.connection_id, connection.room_id)
        room_id = normalize_room_id(room_id)

        while True:
            room = self._rooms.get(room_id)
            if room is None:
                room = Room(room_id)
                self._rooms[room_id] = room
                logger.info(f"Created new room: {room_id}")

            async with room.lock:
                if room.closed:
                    # emptied and deleted while we waited for the lock
                    continue
                connection.bind(room_id, participant_id, is_host)
                room.members[connection.connection_id] = connection
                count = room.participant_count
                logger.info(
                    f"User {participant_id} joined room {room_id} as {'host' if is_host else 'viewer'} "
                    f"({count} participants)"
                )

                room.broadcast(UserJoined(sender=participant_id, room_id=room_id, is_host=is_host), exclude=connection)
                connection.send(ParticipantCount(count=count, room_id=room_id))
                room.broadcast(ParticipantCount(count=count, room_id=room_id))
                return room

    async def leave(self, connection: Connection) -> bool:
        """Remove a connection from its room. Returns False if it was not in one."""
        room_id = connection.room_id
        if room_id is None:
            return False
        room = self._rooms.get(room_id)
        if room is None:
            connection.detach()
            return False

        async with room.lock:
            if room.members.pop(connection.connection_id, None) is None:
                return False
            connection.detach()
            logger.info(f"User {connection.participant_id} left room {room_id}")
            self._after_removal(room, [connection])
        return True

    def lookup(self, room_id: str, participant_id: str) -> Connection:
        """First open member registered as ``participant_id``.

        Participant ids are expected to be unique within a room; if a stale
        duplicate is still registered, registration order decides.
        """
        room = self.get_room(room_id)
        if room is None:
            raise NotFound(room_id)
        for connection in room.members.values():
            if connection.participant_id == participant_id and connection.is_open:
                return connection
        raise NotFound(room.room_id, participant_id)

    async def broadcast(self, room_id: str, message: SignalingMessage, exclude: Connection = None) -> int:
        room = self.get_room(room_id)
        if room is None:
            return 0
        async with room.lock:
            return room.broadcast(message, exclude=exclude)

    async def sweep(self) -> int:
        """Drop members whose transport is gone and delete rooms left empty.

        Close events normally remove members; this catches the ones that were missed.
        """
        dropped = 0
        for room in list(self._rooms.values()):
            async with room.lock:
                if room.closed:
                    continue
                stale = [connection for connection in room.members.values() if not connection.is_open]
                if not stale:
                    continue
                for connection in stale:
                    del room.members[connection.connection_id]
                    connection.detach()
                logger.info(f"Cleaned {len(stale)} inactive connections from room {room.room_id}")
                self._after_removal(room, stale)
                dropped += len(stale)
        if dropped:
            logger.info(f"Cleaned up {dropped} inactive connections")
        return dropped

    def _after_removal(self, room: Room, removed: List[Connection]):
        if not room.members:
            room.closed = True
            if self._rooms.get(room.room_id) is room:
                del self._rooms[room.room_id]
            logger.info(f"Deleted empty room: {room.room_id}")
            return

        for connection in removed:
            room.broadcast(UserLeft(sender=connection.participant_id, room_id=room.room_id, is_host=connection.is_host))
        room.broadcast(ParticipantCount(count=room.participant_count, room_id=room.room_id))
