from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from typing import Annotated, Any, Dict, Literal, Optional, Union

from session_relay.records import ConnectionKind, ConnectionState


class InboundEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    room_id: str = Field(min_length=1)


class ParticipantInfo(BaseModel):
    id: str = Field(min_length=1)
    display_data: Dict[str, Any] = Field(default_factory=dict)


class ObjectInfo(BaseModel):
    id: Optional[str] = None
    type: Optional[str] = None
    owner: Optional[str] = None
    transform: Any = None
    properties: Optional[Dict[str, Any]] = None


class JoinRoom(InboundEvent):
    type: Literal["join-room"] = "join-room"
    participant: ParticipantInfo


class LeaveRoom(InboundEvent):
    type: Literal["leave-room"] = "leave-room"
    participant_id: str


class SignalEvent(InboundEvent):
    sender_id: str
    target_id: str
    payload: Any = None


class Offer(SignalEvent):
    type: Literal["offer"] = "offer"
    kind: ConnectionKind = ConnectionKind.FULL


class Answer(SignalEvent):
    type: Literal["answer"] = "answer"


class IceCandidate(SignalEvent):
    type: Literal["ice-candidate"] = "ice-candidate"


class ConnectionStateUpdate(InboundEvent):
    type: Literal["connection-state"] = "connection-state"
    sender_id: str
    target_id: str
    state: ConnectionState


class SpawnObject(InboundEvent):
    type: Literal["spawn-object"] = "spawn-object"
    object: ObjectInfo


class UpdateObject(InboundEvent):
    type: Literal["update-object"] = "update-object"
    object: ObjectInfo


class RemoveObject(InboundEvent):
    type: Literal["remove-object"] = "remove-object"
    object: ObjectInfo


class PositionUpdate(InboundEvent):
    type: Literal["position-update"] = "position-update"
    participant_id: str
    transform: Any = None


class InteractObject(InboundEvent):
    type: Literal["interact-object"] = "interact-object"
    object_id: str
    actor_id: str
    interaction: Any = None


class UpdateSettings(InboundEvent):
    type: Literal["update-settings"] = "update-settings"
    participant_id: str
    settings: Dict[str, Any]


class RoomStateRequest(InboundEvent):
    type: Literal["room-state"] = "room-state"


Event = Annotated[
    Union[
        JoinRoom,
        LeaveRoom,
        Offer,
        Answer,
        IceCandidate,
        ConnectionStateUpdate,
        SpawnObject,
        UpdateObject,
        RemoveObject,
        PositionUpdate,
        InteractObject,
        UpdateSettings,
        RoomStateRequest,
    ],
    Field(discriminator="type"),
]

event_adapter: TypeAdapter[Event] = TypeAdapter(Event)

# Field that names the acting participant, per event kind
SENDER_FIELDS = {
    "leave-room": "participant_id",
    "offer": "sender_id",
    "answer": "sender_id",
    "ice-candidate": "sender_id",
    "connection-state": "sender_id",
    "position-update": "participant_id",
    "interact-object": "actor_id",
    "update-settings": "participant_id",
}


def parse_event(data: dict, sender_id: Optional[str] = None) -> Event:
    """Validate a raw client message into its tagged event model.

    When ``sender_id`` is given it fills in the acting-participant field the
    client left out, so clients may omit their own id.
    """
    if sender_id is not None:
        field = SENDER_FIELDS.get(data.get("type"))
        if field and not data.get(field):
            data = {**data, field: sender_id}
    return event_adapter.validate_python(data)


def acting_participant(event: Event) -> Optional[str]:
    field = SENDER_FIELDS.get(event.type)
    return getattr(event, field) if field else None
