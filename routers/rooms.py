from fastapi import APIRouter, HTTPException, Request

from logging_config import get_logger
from schemas.rooms import Participant, RoomDetailsResponse, RoomListResponse, RoomSummary

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("", response_model=RoomListResponse)
async def list_rooms(request: Request):
    directory = request.app.state.directory
    rooms = [
        RoomSummary(room_id=room.room_id, participant_count=room.participant_count)
        for room in directory.list_rooms()
    ]
    logger.debug(f"Listing {len(rooms)} rooms")
    return RoomListResponse(rooms=rooms)


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get the members of a room.

    Returns:
    - roomId: Normalized room identifier
    - participantCount: Current number of members
    - createdAt: When the room was created
    - participants: userId, isHost and whether the link is still open, per member
    """
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room details request for {room_id} from {client_host}")

    room = request.app.state.directory.get_room(room_id)
    if room is None:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    participants = [
        Participant(user_id=connection.participant_id, is_host=connection.is_host, connected=connection.is_open)
        for connection in list(room.members.values())
    ]
    return RoomDetailsResponse(
        room_id=room.room_id,
        participant_count=room.participant_count,
        created_at=room.created_at,
        participants=participants,
    )
