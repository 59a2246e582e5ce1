"""Shared fixtures: a manual clock, and the registry, tracker and relay wired to it."""

import pytest
from fastapi.testclient import TestClient

from session_relay import errors
from session_relay.config import Settings
from session_relay.main import create_app
from session_relay.schemas import RoomCreate
from session_relay.services.connection_tracker import ConnectionTracker
from session_relay.services.relay import SignalingRelay
from session_relay.services.room_registry import RoomRegistry
from session_relay.services.scheduler import ManualClock, TaskScheduler


class RecordingTransport:
    """In-memory transport: tracks who is online and everything pushed."""

    def __init__(self):
        self.online: set[tuple[str, str]] = set()
        self.sent: list[tuple[str, str, dict]] = []
        self.on_push = None

    def connect(self, room_id: str, participant_id: str):
        self.online.add((room_id, participant_id))

    def drop(self, room_id: str, participant_id: str):
        self.online.discard((room_id, participant_id))

    def is_reachable(self, room_id: str, participant_id: str) -> bool:
        return (room_id, participant_id) in self.online

    def push(self, room_id: str, participant_id: str, message: dict) -> None:
        if (room_id, participant_id) not in self.online:
            raise errors.TransientDeliveryFailure(room_id, participant_id)
        if self.on_push is not None:
            self.on_push(room_id, participant_id, message)
        self.sent.append((room_id, participant_id, message))

    def received(self, participant_id: str, message_type: str | None = None) -> list[dict]:
        return [
            message for _, pid, message in self.sent
            if pid == participant_id and (message_type is None or message["type"] == message_type)
        ]


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        LOG_LEVEL="DEBUG",
        MAX_ROOMS=5,
        MAX_ROOM_CAPACITY=50,
        DEFAULT_ROOM_CAPACITY=10,
        MAX_OBJECTS_PER_ROOM=3,
        ROOM_INACTIVITY_TIMEOUT=60,
        PERSISTENT_ROOM_TIMEOUT=3600,
        ROOM_SWEEP_INTERVAL=10,
        MAX_CONNECTIONS_PER_PARTICIPANT=2,
        MAX_DATA_CHANNELS=2,
        FAILED_CLEANUP_DELAY=5,
        DISCONNECTED_CLEANUP_DELAY=30,
        CLOSED_CLEANUP_DELAY=1,
        CONNECTING_TIMEOUT=60,
        STALE_CONNECTION_TIMEOUT=300,
        CONNECTION_SWEEP_INTERVAL=10,
        SIGNALING_QUEUE_LIMIT=3,
        SIGNALING_MESSAGE_MAX_AGE=600,
        QUEUE_PURGE_INTERVAL=60,
        AUTO_CREATE_ROOMS=False,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scheduler(clock) -> TaskScheduler:
    return TaskScheduler(clock)


@pytest.fixture
def registry(test_settings, clock) -> RoomRegistry:
    return RoomRegistry(test_settings, clock)


@pytest.fixture
def tracker(registry, scheduler, test_settings) -> ConnectionTracker:
    return ConnectionTracker(registry, scheduler, test_settings)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def relay(registry, tracker, transport, test_settings) -> SignalingRelay:
    return SignalingRelay(registry, tracker, transport, test_settings)


@pytest.fixture
def lobby(registry):
    """Public room 'Lobby' created by alice."""
    return registry.create_room(RoomCreate(id="lobby", name="Lobby", created_by="alice"))


@pytest.fixture
def client(test_settings, clock):
    """One portal for every request, so websocket sessions share an event loop."""
    app = create_app(test_settings, clock)
    with TestClient(app) as test_client:
        yield test_client
