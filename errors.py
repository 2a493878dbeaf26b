class SignalingError(Exception):
    """Base class for every recoverable signaling failure."""


class TransportError(SignalingError):
    """The link to the relay dropped or could not be opened."""


class RoutingError(SignalingError):
    pass


class NotFound(RoutingError):
    def __init__(self, room_id: str, participant_id: str = None):
        self.room_id = room_id
        self.participant_id = participant_id
        if participant_id is None:
            super().__init__(f"Room {room_id} not found")
        else:
            super().__init__(f"Participant {participant_id} not found in room {room_id}")


class AlreadyJoined(SignalingError):
    def __init__(self, connection_id: str, room_id: str):
        self.connection_id = connection_id
        self.room_id = room_id
        super().__init__(f"Connection {connection_id} already joined room {room_id}")


class MalformedMessage(SignalingError):
    """Inbound frame could not be decoded into a known message."""


class NegotiationFailure(SignalingError):
    def __init__(self, remote_id: str, reason: str):
        self.remote_id = remote_id
        self.reason = reason
        super().__init__(f"Negotiation with {remote_id} failed: {reason}")


class NoSuchSession(SignalingError):
    def __init__(self, remote_id: str):
        self.remote_id = remote_id
        super().__init__(f"No peer session for {remote_id}")
