from pydantic import BaseModel, ConfigDict, Field


class StatusResponse(BaseModel):
    message: str
    status: str
    rooms: int
    connections: int
    timestamp: str


class RoomSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    participant_count: int = Field(alias="participantCount")


class RoomListResponse(BaseModel):
    rooms: list[RoomSummary]


class Participant(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    is_host: bool = Field(alias="isHost")
    connected: bool


class RoomDetailsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    participant_count: int = Field(alias="participantCount")
    created_at: str = Field(alias="createdAt")
    participants: list[Participant]
