from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from typing import Annotated, Any, Optional
from datetime import datetime

from session_relay.records import (
    ConnectionKind,
    ConnectionState,
    DataChannel,
    RoomCapabilities,
    RoomSettings,
    RoomStats,
    SessionCounters,
    TransferStats,
)


def _values(value: Any) -> Any:
    return list(value.values()) if isinstance(value, dict) else value


class RoomCreate(BaseModel):
    id: Optional[str] = Field(default=None, description="Caller-chosen room id; generated when absent")
    name: str = Field(default="", description="Display name")
    description: str = ""
    is_private: bool = False
    is_persistent: bool = False
    capacity: Optional[int] = Field(default=None, description="Max participants")
    created_by: Optional[str] = Field(default=None, description="Participant id that receives admin rights")
    template: Optional[str] = None
    settings: dict[str, Any] = Field(default_factory=dict)
    environment: dict[str, Any] = Field(default_factory=dict)
    hand_tracking: bool = True
    eye_tracking: bool = False
    face_tracking: bool = False


class RoomSearchFilters(BaseModel):
    capabilities: list[str] = Field(default_factory=list)
    min_users: Optional[int] = Field(default=None, ge=0)
    template: Optional[str] = None
    include_private: bool = False


class RoomSummary(BaseModel):
    id: str
    name: str
    description: str = ""
    member_count: int
    capacity: int
    capabilities: dict[str, bool]
    last_activity: datetime
    template: Optional[str] = None
    relevance_score: float = 0.0


class TemplateRead(BaseModel):
    id: str
    name: str
    description: str
    capacity: int


class ParticipantRead(BaseModel):
    id: str
    display_data: dict[str, Any]
    joined_at: datetime
    last_activity: datetime
    permissions: list[str]
    counters: SessionCounters
    transform: Any = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("permissions", mode="before")
    @classmethod
    def _sorted_permissions(cls, value: Any) -> Any:
        return sorted(getattr(p, "value", p) for p in value)


class SharedObjectRead(BaseModel):
    id: str
    type: str
    owner_id: Optional[str]
    transform: Any = None
    properties: dict[str, Any]
    interactions: int
    is_template: bool
    created_at: datetime
    last_modified: datetime

    model_config = ConfigDict(from_attributes=True)


class RoomSnapshot(BaseModel):
    id: str
    name: str
    description: str
    capacity: int
    is_private: bool
    is_persistent: bool
    created_by: Optional[str]
    template: Optional[str]
    created_at: datetime
    last_activity: datetime
    participants: Annotated[list[ParticipantRead], BeforeValidator(_values)]
    objects: Annotated[list[SharedObjectRead], BeforeValidator(_values)]
    environment: dict[str, Any]
    settings: RoomSettings
    capabilities: RoomCapabilities
    stats: RoomStats

    model_config = ConfigDict(from_attributes=True)


class ConnectionRead(BaseModel):
    id: str
    participants: tuple[str, str]
    room_id: str
    initiator_id: str
    kind: ConnectionKind
    state: ConnectionState
    created_at: datetime
    connected_at: Optional[datetime] = None
    last_activity: datetime
    data_channels: Annotated[list[DataChannel], BeforeValidator(_values)]
    stats: TransferStats

    model_config = ConfigDict(from_attributes=True)


class ErrorRead(BaseModel):
    code: str
    message: str


def dump(model: BaseModel) -> dict:
    """JSON-ready dict for pushing over a websocket."""
    return model.model_dump(mode="json")
