"""Signaling relay: the entry point for every inbound room event.

The relay holds no state of its own. Each event is validated against the
room registry, applied to the registry or the connection tracker, and only
then fanned out, so anyone who asks for a snapshot after a broadcast sees
the mutation that caused it.

Outbound traffic goes through a ``Transport``. Pushing is best effort and
never blocks: signaling messages for a recipient that cannot be reached stay
in the tracker's queue until the recipient shows up again, while room-state
broadcasts to unreachable members are simply skipped (they get a fresh
snapshot when they rejoin).
"""

import logging
from dataclasses import asdict
from typing import Any, Optional, Protocol

from session_relay import errors
from session_relay.config import Settings, get_settings
from session_relay.models import (
    Answer,
    ConnectionStateUpdate,
    Event,
    IceCandidate,
    InteractObject,
    JoinRoom,
    Offer,
    PositionUpdate,
    RemoveObject,
    RoomStateRequest,
    SpawnObject,
    UpdateObject,
    UpdateSettings,
    acting_participant,
)
from session_relay.records import ConnectionState, Permission
from session_relay.schemas import ConnectionRead, ParticipantRead, RoomCreate, RoomSnapshot, SharedObjectRead, dump
from session_relay.services.connection_tracker import ConnectionTracker, canonical_pair_id
from session_relay.services.room_registry import RoomRegistry

logger = logging.getLogger(__name__)


class Transport(Protocol):
    def is_reachable(self, room_id: str, participant_id: str) -> bool:
        ...

    def push(self, room_id: str, participant_id: str, message: dict) -> None:
        """Hand a message off without waiting. Raises TransientDeliveryFailure."""
        ...


class NullTransport:
    """Nobody is reachable; every signaling message stays queued."""

    def is_reachable(self, room_id: str, participant_id: str) -> bool:
        return False

    def push(self, room_id: str, participant_id: str, message: dict) -> None:
        raise errors.TransientDeliveryFailure(room_id, participant_id)


class SignalingRelay:
    def __init__(
        self,
        registry: RoomRegistry,
        tracker: ConnectionTracker,
        transport: Optional[Transport] = None,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.tracker = tracker
        self.transport = transport or NullTransport()
        self.settings = settings or get_settings()
        self.clock = registry.clock
        self._handlers = {
            "join-room": lambda event, sender: self.join(event),
            "leave-room": lambda event, sender: self.leave(event.room_id, event.participant_id),
            "offer": lambda event, sender: self.route_signal(event),
            "answer": lambda event, sender: self.route_signal(event),
            "ice-candidate": lambda event, sender: self.route_signal(event),
            "connection-state": lambda event, sender: self.connection_state(event),
            "spawn-object": self.spawn_object,
            "update-object": self.update_object,
            "remove-object": self.remove_object,
            "position-update": lambda event, sender: self.position_update(event),
            "interact-object": lambda event, sender: self.interact_object(event),
            "update-settings": lambda event, sender: self.update_settings(event),
            "room-state": self.room_state,
        }

    def handle(self, event: Event, sender_id: Optional[str] = None) -> Any:
        """Dispatch one inbound event.

        ``sender_id`` is the authenticated identity of the caller (the
        websocket owner). Events that name a different acting participant are
        rejected before anything is touched.
        """
        if sender_id is not None:
            claimed = event.participant.id if isinstance(event, JoinRoom) else acting_participant(event)
            if claimed is not None and claimed != sender_id:
                raise errors.PermissionDenied(f"{sender_id} cannot act as {claimed}")
        else:
            sender_id = acting_participant(event)
        return self._handlers[event.type](event, sender_id)

    # Membership

    def join(self, event: JoinRoom) -> dict:
        room_id, participant_id = event.room_id, event.participant.id
        if self.settings.AUTO_CREATE_ROOMS and room_id not in self.registry:
            name = f"Room {room_id}"[: self.settings.MAX_ROOM_NAME_LENGTH]
            self.registry.create_room(RoomCreate(id=room_id, name=name, created_by=participant_id))

        participant = self.registry.add_participant(room_id, participant_id, event.participant.display_data)
        reply = {"type": "room-joined", "room": self.snapshot(room_id)}
        self._send(room_id, participant_id, reply)
        self.broadcast(
            room_id,
            {"type": "user-joined", "room_id": room_id, "participant": dump(ParticipantRead.model_validate(participant))},
            exclude=participant_id,
        )
        self.deliver_pending(room_id, participant_id)
        return reply

    def leave(self, room_id: str, participant_id: str) -> bool:
        """Explicit leave: the participant's connections are closed outright."""
        return self._depart(room_id, participant_id, ConnectionState.CLOSED, "user-left")

    def disconnect(self, room_id: str, participant_id: str) -> bool:
        """Abrupt drop: connections go to ``disconnected`` so a quick rejoin can recover."""
        return self._depart(room_id, participant_id, ConnectionState.DISCONNECTED, "user-disconnected")

    def _depart(self, room_id: str, participant_id: str, state: ConnectionState, notice: str) -> bool:
        if not self.registry.remove_participant(room_id, participant_id):
            return False
        self.tracker.close_participant(participant_id, room_id, state)
        if state == ConnectionState.CLOSED:
            self.tracker.clear_queue(room_id, participant_id)
        # Empty rooms are left for the sweep, a rejoin in the same tick must still find the room
        self.broadcast(
            room_id,
            {"type": notice, "room_id": room_id, "participant_id": participant_id, "timestamp": self.clock.now()},
            exclude=participant_id,
        )
        return True

    # Signaling

    def route_signal(self, event: Offer | Answer | IceCandidate) -> Optional[dict]:
        room_id, sender_id, target_id = event.room_id, event.sender_id, event.target_id
        sender = self.registry.require_participant(room_id, sender_id)
        self._require_signal_target(room_id, sender_id, target_id)

        if isinstance(event, Offer):
            message = self.tracker.record_offer(sender_id, target_id, room_id, event.payload, event.kind)
        elif isinstance(event, Answer):
            message = self.tracker.record_answer(sender_id, target_id, room_id, event.payload)
        else:
            message = self.tracker.record_ice_candidate(sender_id, target_id, room_id, event.payload)

        sender.counters.messages += 1
        self.registry.touch_participant(room_id, sender_id)
        if message is None:
            return None
        logger.debug(f"📡 {event.type} from {sender_id} to {target_id} in room {room_id}")
        self.deliver_pending(room_id, target_id)
        return message.to_wire()

    def _require_signal_target(self, room_id: str, sender_id: str, target_id: str) -> None:
        """Targets must be members, or peers that dropped and may still rejoin.

        A dropped peer keeps its ``disconnected`` connection for the grace
        period, and signaling addressed to it is queued for the rejoin.
        """
        if self.registry.get_participant(room_id, target_id) is not None:
            return
        connection = self.tracker.get_connection(sender_id, target_id)
        if connection is None or connection.room_id != room_id or connection.state != ConnectionState.DISCONNECTED:
            raise errors.ParticipantNotFound(f"Participant {target_id} is not in room {room_id}")
        logger.debug(f"Queuing signaling for dropped participant {target_id} in room {room_id}")

    def connection_state(self, event: ConnectionStateUpdate) -> dict:
        self.registry.require_participant(event.room_id, event.sender_id)
        pair_id = canonical_pair_id(event.sender_id, event.target_id)
        connection = self.tracker.require(pair_id)
        if connection.room_id != event.room_id:
            raise errors.ConnectionNotFound(f"Connection {pair_id} not found in room {event.room_id}")
        try:
            connection = self.tracker.transition(pair_id, event.state)
        except errors.StateError as exc:
            connection = self.tracker.fail(pair_id, exc.message)
        return dump(ConnectionRead.model_validate(connection))

    def deliver_pending(self, room_id: str, participant_id: str) -> int:
        """Flush the recipient's queue in FIFO order if they are reachable."""
        if not self.transport.is_reachable(room_id, participant_id):
            return 0
        messages = self.tracker.drain_messages(room_id, participant_id)
        for index, message in enumerate(messages):
            try:
                self.transport.push(room_id, participant_id, message.to_wire())
            except errors.TransientDeliveryFailure:
                self.tracker.restore_messages(room_id, participant_id, messages[index:])
                return index
        return len(messages)

    # Room state

    def spawn_object(self, event: SpawnObject, sender_id: Optional[str]) -> dict:
        actor_id = sender_id or event.object.owner
        self.registry.check_permission(event.room_id, actor_id, Permission.SPAWN_OBJECTS)
        owner_id = event.object.owner or actor_id
        if owner_id != actor_id:
            raise errors.PermissionDenied(f"{actor_id} cannot spawn objects owned by {owner_id}")
        obj = self.registry.add_object(
            event.room_id,
            object_type=event.object.type,
            owner_id=owner_id,
            transform=event.object.transform,
            object_id=event.object.id,
            properties=event.object.properties,
        )
        message = {"type": "object-spawned", "room_id": event.room_id, "object": dump(SharedObjectRead.model_validate(obj))}
        self.broadcast(event.room_id, message, exclude=actor_id)
        return message

    def update_object(self, event: UpdateObject, sender_id: Optional[str]) -> dict:
        actor_id = sender_id or event.object.owner
        self.registry.require_participant(event.room_id, actor_id)
        if not event.object.id:
            raise errors.ValidationError("Object id is required")
        updates = event.object.model_dump(exclude_unset=True, include={"type", "transform", "properties"})
        obj = self.registry.update_object(event.room_id, event.object.id, updates)
        self.registry.touch_participant(event.room_id, actor_id)
        message = {
            "type": "object-updated",
            "room_id": event.room_id,
            "object": dump(SharedObjectRead.model_validate(obj)),
            "updated_by": actor_id,
        }
        self.broadcast(event.room_id, message, exclude=actor_id)
        return message

    def remove_object(self, event: RemoveObject, sender_id: Optional[str]) -> Optional[dict]:
        actor_id = sender_id or event.object.owner
        actor = self.registry.require_participant(event.room_id, actor_id)
        if not event.object.id:
            raise errors.ValidationError("Object id is required")
        obj = self.registry.get_object(event.room_id, event.object.id)
        if obj is None:
            return None
        if obj.owner_id != actor_id and not actor.can(Permission.DELETE_OBJECTS):
            raise errors.PermissionDenied(f"{actor_id} cannot remove object {obj.id}")
        self.registry.remove_object(event.room_id, obj.id)
        message = {"type": "object-removed", "room_id": event.room_id, "object_id": obj.id, "removed_by": actor_id}
        self.broadcast(event.room_id, message, exclude=actor_id)
        return message

    def interact_object(self, event: InteractObject) -> dict:
        self.registry.require_participant(event.room_id, event.actor_id)
        obj = self.registry.record_interaction(event.room_id, event.object_id, event.actor_id)
        message = {
            "type": "object-interaction",
            "room_id": event.room_id,
            "object_id": obj.id,
            "actor_id": event.actor_id,
            "interaction": event.interaction,
            "interactions": obj.interactions,
            "timestamp": self.clock.now(),
        }
        self.broadcast(event.room_id, message, exclude=event.actor_id)
        return message

    def position_update(self, event: PositionUpdate) -> dict:
        self.registry.update_position(event.room_id, event.participant_id, event.transform)
        message = {
            "type": "user-position-update",
            "room_id": event.room_id,
            "participant_id": event.participant_id,
            "transform": event.transform,
            "timestamp": self.clock.now(),
        }
        self.broadcast(event.room_id, message, exclude=event.participant_id)
        return message

    def update_settings(self, event: UpdateSettings) -> dict:
        self.registry.check_permission(event.room_id, event.participant_id, Permission.MODIFY_ROOM)
        settings = self.registry.update_settings(event.room_id, event.settings)
        message = {
            "type": "room-settings-updated",
            "room_id": event.room_id,
            "settings": asdict(settings),
            "updated_by": event.participant_id,
        }
        self.broadcast(event.room_id, message, exclude=event.participant_id)
        return message

    def room_state(self, event: RoomStateRequest, sender_id: Optional[str]) -> dict:
        reply = {"type": "room-state", "room": self.snapshot(event.room_id)}
        if sender_id is not None:
            self._send(event.room_id, sender_id, reply)
        return reply

    def snapshot(self, room_id: str) -> dict:
        return dump(RoomSnapshot.model_validate(self.registry.require_room(room_id)))

    # Fan-out

    def broadcast(self, room_id: str, message: dict, exclude: Optional[str] = None) -> int:
        room = self.registry.get_room(room_id)
        if room is None:
            return 0
        delivered = 0
        for participant_id in list(room.participants):
            if participant_id != exclude and self._send(room_id, participant_id, message):
                delivered += 1
        return delivered

    def _send(self, room_id: str, participant_id: str, message: dict) -> bool:
        if not self.transport.is_reachable(room_id, participant_id):
            return False
        try:
            self.transport.push(room_id, participant_id, message)
        except errors.TransientDeliveryFailure:
            logger.debug(f"Dropped {message.get('type')} for unreachable {participant_id} in {room_id}")
            return False
        return True

    # Health

    def health(self) -> dict:
        rooms = self.registry.statistics()
        connections = self.tracker.statistics()
        return {
            "status": "healthy",
            "active_rooms": rooms["active_rooms"],
            "active_connections": connections["active_connections"],
            "queued_messages": connections["queued_messages"],
            "rooms": rooms,
            "connections": connections,
        }
