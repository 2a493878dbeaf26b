"""Signaling wire messages.

Every frame is a JSON object tagged by ``type``. Each tag maps to one model
carrying exactly the fields that message kind needs; the unions at the bottom
are discriminated on ``type`` so decoding picks the model without string
comparisons scattered through the code. ``data`` is opaque: only peers read it.
"""

import json
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from errors import MalformedMessage


class SignalingMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    room_id: Optional[str] = Field(default=None, alias="roomId")

    def to_wire(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True, exclude_none=True))


class PeerMessage(SignalingMessage):
    """A message sent by a participant; ``from`` names the sender."""

    sender: str = Field(alias="from", min_length=1)


class UnicastMessage(PeerMessage):
    """A peer message routed to exactly one recipient named by ``to``."""

    to: str = Field(min_length=1)
    data: Any = None

    def to_wire(self) -> str:
        # exclude_none must not reach into the opaque payload
        wire = self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"data"})
        if self.data is not None:
            wire["data"] = self.data
        return json.dumps(wire)


# Client -> relay

class JoinRoom(PeerMessage):
    type: Literal["join-room"] = "join-room"
    room_id: str = Field(alias="roomId", min_length=1)
    is_host: bool = Field(default=False, alias="isHost")

    @field_validator("room_id")
    @classmethod
    def _strip_room_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("roomId must not be blank")
        return value


class HostSharing(PeerMessage):
    type: Literal["host-sharing"] = "host-sharing"


class HostStopped(PeerMessage):
    type: Literal["host-stopped"] = "host-stopped"


class Offer(UnicastMessage):
    type: Literal["offer"] = "offer"


class Answer(UnicastMessage):
    type: Literal["answer"] = "answer"


class IceCandidate(UnicastMessage):
    type: Literal["ice-candidate"] = "ice-candidate"


# Relay -> client

class UserJoined(PeerMessage):
    type: Literal["user-joined"] = "user-joined"
    is_host: bool = Field(default=False, alias="isHost")


class UserLeft(PeerMessage):
    type: Literal["user-left"] = "user-left"
    is_host: Optional[bool] = Field(default=None, alias="isHost")


class ParticipantCount(SignalingMessage):
    type: Literal["participant-count"] = "participant-count"
    count: int = Field(ge=0)


class Welcome(SignalingMessage):
    type: Literal["welcome"] = "welcome"
    message: str
    timestamp: Optional[str] = None
    connection_id: Optional[str] = Field(default=None, alias="connectionId")

    @classmethod
    def now(cls, message: str, connection_id: str = None) -> "Welcome":
        return cls(message=message, timestamp=datetime.now().isoformat(), connection_id=connection_id)


class Error(SignalingMessage):
    type: Literal["error"] = "error"
    message: str


class DeliveryFailed(SignalingMessage):
    """Tells a sender that its unicast had no live recipient."""

    type: Literal["delivery-failed"] = "delivery-failed"
    to: str
    failed_type: str = Field(alias="failedType")
    message: Optional[str] = None


ClientMessage = Annotated[
    Union[JoinRoom, HostSharing, HostStopped, Offer, Answer, IceCandidate],
    Field(discriminator="type"),
]

ServerMessage = Annotated[
    Union[
        JoinRoom, HostSharing, HostStopped, Offer, Answer, IceCandidate,
        UserJoined, UserLeft, ParticipantCount, Welcome, Error, DeliveryFailed,
    ],
    Field(discriminator="type"),
]

_client_adapter = TypeAdapter(ClientMessage)
_server_adapter = TypeAdapter(ServerMessage)


def _describe(exc: ValidationError) -> str:
    error = exc.errors()[0]
    kind = error.get("type")
    if kind == "json_invalid":
        return "Invalid JSON"
    if kind == "union_tag_not_found":
        return "Missing message type"
    if kind == "union_tag_invalid":
        tag = error.get("ctx", {}).get("tag")
        return f"Unknown message type: {tag}"
    field = ".".join(str(part) for part in error.get("loc", ())[1:])
    if field:
        return f"Invalid field '{field}': {error.get('msg')}"
    return f"Invalid message: {error.get('msg')}"


def decode_client_message(raw: Union[str, bytes]):
    """Decode a frame sent by a participant to the relay."""
    try:
        return _client_adapter.validate_json(raw)
    except ValidationError as e:
        raise MalformedMessage(_describe(e)) from e


def decode_server_message(raw: Union[str, bytes]):
    """Decode any frame a participant may receive from the relay."""
    try:
        return _server_adapter.validate_json(raw)
    except ValidationError as e:
        raise MalformedMessage(_describe(e)) from e
