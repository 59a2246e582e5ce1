from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ConnectionState(str, Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class ConnectionKind(str, Enum):
    FULL = "full"
    AUDIO_ONLY = "audio-only"
    DATA_ONLY = "data-only"


class SignalKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


class Permission(str, Enum):
    SPAWN_OBJECTS = "spawn_objects"
    DELETE_OBJECTS = "delete_objects"
    MODIFY_ROOM = "modify_room"
    INVITE_USERS = "invite_users"
    KICK_USERS = "kick_users"
    RECORD_SESSIONS = "record_sessions"
    ADMIN = "admin"


MEMBER_PERMISSIONS = frozenset({Permission.SPAWN_OBJECTS, Permission.INVITE_USERS})
CREATOR_PERMISSIONS = frozenset(Permission)


@dataclass
class RoomSettings:
    spatial_audio: bool = True
    hand_tracking: bool = True
    object_collision: bool = True
    voice_chat: bool = True
    text_chat: bool = True
    recording_sessions: bool = False
    max_bitrate: int = 2_000_000


@dataclass
class RoomCapabilities:
    ar: bool = True
    vr: bool = True
    webrtc: bool = True
    spatial_audio: bool = True
    hand_tracking: bool = True
    eye_tracking: bool = False
    face_tracking: bool = False


@dataclass
class RoomStats:
    total_joins: int = 0
    peak_concurrent: int = 0
    completed_sessions: int = 0
    average_session_duration: float = 0.0
    total_objects_created: int = 0
    total_interactions: int = 0


@dataclass
class SessionCounters:
    objects_created: int = 0
    interactions: int = 0
    messages: int = 0


@dataclass
class Participant:
    id: str
    joined_at: float
    last_activity: float
    display_data: dict[str, Any] = field(default_factory=dict)
    permissions: frozenset = MEMBER_PERMISSIONS
    counters: SessionCounters = field(default_factory=SessionCounters)
    transform: Any = None

    def can(self, permission: Permission) -> bool:
        return permission in self.permissions


@dataclass
class SharedObject:
    id: str
    type: str
    owner_id: Optional[str]
    created_at: float
    last_modified: float
    transform: Any = None
    properties: dict[str, Any] = field(default_factory=dict)
    interactions: int = 0
    is_template: bool = False


@dataclass
class Room:
    id: str
    name: str
    capacity: int
    created_at: float
    last_activity: float
    description: str = ""
    is_private: bool = False
    is_persistent: bool = False
    created_by: Optional[str] = None
    template: Optional[str] = None
    participants: dict[str, Participant] = field(default_factory=dict)
    objects: dict[str, SharedObject] = field(default_factory=dict)
    environment: dict[str, Any] = field(default_factory=dict)
    settings: RoomSettings = field(default_factory=RoomSettings)
    capabilities: RoomCapabilities = field(default_factory=RoomCapabilities)
    stats: RoomStats = field(default_factory=RoomStats)

    @property
    def member_count(self) -> int:
        return len(self.participants)

    @property
    def is_full(self) -> bool:
        return len(self.participants) >= self.capacity


@dataclass
class DataChannel:
    id: str
    name: str
    ordered: bool = True
    protocol: str = ""
    messages: int = 0
    bytes_transferred: int = 0


@dataclass
class TransferStats:
    bytes_sent: int = 0
    bytes_received: int = 0
    messages: int = 0
    setup_time: Optional[float] = None


@dataclass
class Connection:
    id: str
    participants: tuple[str, str]
    room_id: str
    initiator_id: str
    created_at: float
    last_activity: float
    kind: ConnectionKind = ConnectionKind.FULL
    state: ConnectionState = ConnectionState.NEW
    connected_at: Optional[float] = None
    offer: Any = None
    answer: Any = None
    data_channels: dict[str, DataChannel] = field(default_factory=dict)
    stats: TransferStats = field(default_factory=TransferStats)

    def involves(self, participant_id: str) -> bool:
        return participant_id in self.participants

    def peer_of(self, participant_id: str) -> str:
        first, second = self.participants
        return second if participant_id == first else first


@dataclass
class SignalingMessage:
    kind: SignalKind
    connection_id: str
    room_id: str
    sender_id: str
    recipient_id: str
    payload: Any
    timestamp: float

    def to_wire(self) -> dict:
        return {
            "type": self.kind.value,
            "connection_id": self.connection_id,
            "room_id": self.room_id,
            "sender_id": self.sender_id,
            "target_id": self.recipient_id,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }
