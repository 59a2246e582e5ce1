"""Room registry: room lifecycle, membership, shared objects and discovery.

The registry is the single owner of ``Room`` records and of the participants
and objects inside them. Every public mutation validates first and only then
touches state, so a rejected call leaves the registry exactly as it was.
Empty rooms are never dropped synchronously; ``sweep()`` reclaims them once
they have been idle long enough, which lets a participant rejoin a room that
just emptied without racing its removal.
"""

import logging
import uuid
from dataclasses import asdict, fields, replace
from typing import Any, Optional

from session_relay import errors
from session_relay.config import Settings, get_settings
from session_relay.records import (
    CREATOR_PERMISSIONS,
    MEMBER_PERMISSIONS,
    Participant,
    Permission,
    Room,
    RoomCapabilities,
    RoomSettings,
    SharedObject,
)
from session_relay.schemas import RoomCreate, RoomSearchFilters, RoomSummary, TemplateRead
from session_relay.services.scheduler import Clock, SystemClock, TaskScheduler
from session_relay.services.templates import DEFAULT_TEMPLATES, RoomTemplate

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60
NAME_MATCH_SCORE = 10
DESCRIPTION_MATCH_SCORE = 5
MEMBER_SCORE = 2
MAX_RECENCY_BONUS = 10

SETTINGS_FIELDS = {f.name for f in fields(RoomSettings)}
OBJECT_UPDATE_FIELDS = {"type", "transform", "properties"}


class RoomRegistry:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        templates: Optional[dict[str, RoomTemplate]] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.templates = dict(DEFAULT_TEMPLATES if templates is None else templates)
        self._rooms: dict[str, Room] = {}
        self.rooms_created = 0
        self.rooms_removed = 0
        self.peak_concurrent_rooms = 0

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    # Room lifecycle

    def create_room(self, payload: RoomCreate) -> Room:
        self._validate(payload)
        if len(self._rooms) >= self.settings.MAX_ROOMS:
            raise errors.RoomLimitExceeded(f"Server room capacity reached ({self.settings.MAX_ROOMS})")

        room_id = payload.id or self._generate_room_id()
        if room_id in self._rooms:
            raise errors.DuplicateRoom(f"Room {room_id} already exists")

        template = self.templates.get(payload.template) if payload.template else None
        if payload.template and template is None:
            raise errors.ValidationError(f"Unknown room template: {payload.template}")

        capacity = payload.capacity
        if capacity is None:
            capacity = template.capacity if template else self.settings.DEFAULT_ROOM_CAPACITY
        capacity = min(capacity, self.settings.MAX_ROOM_CAPACITY)

        now = self.clock.now()
        room = Room(
            id=room_id,
            name=payload.name.strip(),
            description=payload.description or "",
            capacity=capacity,
            created_at=now,
            last_activity=now,
            is_private=payload.is_private,
            is_persistent=payload.is_persistent,
            created_by=payload.created_by,
            template=payload.template,
            environment=dict(payload.environment),
            capabilities=RoomCapabilities(
                hand_tracking=payload.hand_tracking,
                eye_tracking=payload.eye_tracking,
                face_tracking=payload.face_tracking,
            ),
        )
        if template is not None:
            self._apply_template(room, template)
        room.settings = self._merge_settings(room.settings, payload.settings)

        self._rooms[room_id] = room
        self.rooms_created += 1
        self.peak_concurrent_rooms = max(self.peak_concurrent_rooms, len(self._rooms))
        logger.info(f"🏠 Room created: {room_id} ({room.name})")
        return room

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def require_room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise errors.RoomNotFound(f"Room {room_id} not found")
        return room

    def remove_room(self, room_id: str) -> bool:
        """Drop a room outright. Occupied rooms are never removed."""
        room = self._rooms.get(room_id)
        if room is None:
            return False
        if room.participants:
            logger.warning(f"Refusing to remove room {room_id} with {room.member_count} active participants")
            return False
        del self._rooms[room_id]
        self.rooms_removed += 1
        logger.info(f"🗑️ Room removed: {room_id}")
        return True

    def rooms(self) -> list[Room]:
        return list(self._rooms.values())

    # Membership

    def add_participant(self, room_id: str, participant_id: str, display_data: Optional[dict] = None) -> Participant:
        room = self.require_room(room_id)
        if not participant_id:
            raise errors.ValidationError("Participant id is required")
        if participant_id in room.participants:
            raise errors.DuplicateParticipant(f"Participant {participant_id} already in room {room_id}")
        if room.is_full:
            raise errors.RoomFullError(f"Room {room_id} is at maximum capacity ({room.capacity})")

        now = self.clock.now()
        participant = Participant(
            id=participant_id,
            joined_at=now,
            last_activity=now,
            display_data=dict(display_data or {}),
            permissions=CREATOR_PERMISSIONS if room.created_by == participant_id else MEMBER_PERMISSIONS,
        )
        room.participants[participant_id] = participant
        room.last_activity = now
        room.stats.total_joins += 1
        room.stats.peak_concurrent = max(room.stats.peak_concurrent, room.member_count)
        logger.info(f"👤 Participant {participant_id} added to room {room_id} ({room.member_count}/{room.capacity})")
        return participant

    def remove_participant(self, room_id: str, participant_id: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None or participant_id not in room.participants:
            return False

        now = self.clock.now()
        participant = room.participants.pop(participant_id)
        duration = now - participant.joined_at
        stats = room.stats
        stats.completed_sessions += 1
        stats.average_session_duration += (duration - stats.average_session_duration) / stats.completed_sessions
        room.last_activity = now
        logger.info(f"👤 Participant {participant_id} removed from room {room_id}")
        if not room.participants and not room.is_persistent:
            logger.debug(f"Room {room_id} is empty and will be reclaimed by the sweep")
        return True

    def get_participant(self, room_id: str, participant_id: str) -> Optional[Participant]:
        room = self._rooms.get(room_id)
        return room.participants.get(participant_id) if room else None

    def require_participant(self, room_id: str, participant_id: str) -> Participant:
        room = self.require_room(room_id)
        participant = room.participants.get(participant_id)
        if participant is None:
            raise errors.ParticipantNotFound(f"Participant {participant_id} is not in room {room_id}")
        return participant

    def touch_participant(self, room_id: str, participant_id: str) -> None:
        room = self._rooms.get(room_id)
        if room is None:
            return
        participant = room.participants.get(participant_id)
        if participant is not None:
            now = self.clock.now()
            participant.last_activity = now
            room.last_activity = now

    def update_position(self, room_id: str, participant_id: str, transform: Any) -> Participant:
        participant = self.require_participant(room_id, participant_id)
        participant.transform = transform
        self.touch_participant(room_id, participant_id)
        return participant

    def update_settings(self, room_id: str, updates: dict[str, Any]) -> RoomSettings:
        room = self.require_room(room_id)
        room.settings = self._merge_settings(room.settings, updates)
        room.last_activity = self.clock.now()
        logger.info(f"⚙️ Room settings updated for {room_id}")
        return room.settings

    # Shared objects

    def add_object(
        self,
        room_id: str,
        object_type: str,
        owner_id: Optional[str] = None,
        transform: Any = None,
        object_id: Optional[str] = None,
        properties: Optional[dict] = None,
    ) -> SharedObject:
        room = self.require_room(room_id)
        if not object_type:
            raise errors.ValidationError("Object type is required")
        if object_id and object_id in room.objects:
            raise errors.ValidationError(f"Object {object_id} already exists in room {room_id}")
        if len(room.objects) >= self.settings.MAX_OBJECTS_PER_ROOM:
            raise errors.ObjectLimitExceeded(f"Room object limit reached ({self.settings.MAX_OBJECTS_PER_ROOM})")

        now = self.clock.now()
        obj = SharedObject(
            id=object_id or uuid.uuid4().hex,
            type=object_type,
            owner_id=owner_id,
            created_at=now,
            last_modified=now,
            transform=transform,
            properties=dict(properties or {}),
        )
        room.objects[obj.id] = obj
        room.stats.total_objects_created += 1
        room.last_activity = now
        owner = room.participants.get(owner_id) if owner_id else None
        if owner is not None:
            owner.counters.objects_created += 1
        logger.info(f"📦 Object {obj.id} ({obj.type}) added to room {room_id}")
        return obj

    def get_object(self, room_id: str, object_id: str) -> Optional[SharedObject]:
        room = self._rooms.get(room_id)
        return room.objects.get(object_id) if room else None

    def require_object(self, room_id: str, object_id: str) -> SharedObject:
        room = self.require_room(room_id)
        obj = room.objects.get(object_id)
        if obj is None:
            raise errors.ObjectNotFound(f"Object {object_id} not found in room {room_id}")
        return obj

    def remove_object(self, room_id: str, object_id: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None or object_id not in room.objects:
            return False
        del room.objects[object_id]
        room.last_activity = self.clock.now()
        logger.info(f"📦 Object {object_id} removed from room {room_id}")
        return True

    def update_object(self, room_id: str, object_id: str, updates: dict[str, Any]) -> SharedObject:
        """Merge ``updates`` into the object. Only fields present are touched."""
        unknown = set(updates) - OBJECT_UPDATE_FIELDS
        if unknown:
            raise errors.ValidationError(f"Cannot update object fields: {', '.join(sorted(unknown))}")
        obj = self.require_object(room_id, object_id)
        if "type" in updates:
            if not updates["type"]:
                raise errors.ValidationError("Object type is required")
            obj.type = updates["type"]
        if "transform" in updates:
            obj.transform = updates["transform"]
        if "properties" in updates:
            obj.properties.update(updates["properties"] or {})
        now = self.clock.now()
        obj.last_modified = now
        self._rooms[room_id].last_activity = now
        return obj

    def record_interaction(self, room_id: str, object_id: str, actor_id: str) -> SharedObject:
        obj = self.require_object(room_id, object_id)
        room = self._rooms[room_id]
        obj.interactions += 1
        room.stats.total_interactions += 1
        actor = room.participants.get(actor_id)
        if actor is not None:
            actor.counters.interactions += 1
        self.touch_participant(room_id, actor_id)
        return obj

    # Permissions

    def check_permission(self, room_id: str, participant_id: str, permission: Permission) -> Participant:
        participant = self.require_participant(room_id, participant_id)
        if not participant.can(permission):
            raise errors.PermissionDenied(f"Participant {participant_id} lacks {permission.value} in room {room_id}")
        return participant

    # Discovery

    def relevance_score(self, room: Room, query: Optional[str] = None) -> float:
        score = 0.0
        if query:
            term = query.lower()
            if term in room.name.lower():
                score += NAME_MATCH_SCORE
            if term in room.description.lower():
                score += DESCRIPTION_MATCH_SCORE
        score += room.member_count * MEMBER_SCORE

        window_days = self.settings.RECENCY_WINDOW_DAYS
        if window_days > 0:
            idle_days = max(0.0, self.clock.now() - room.last_activity) / SECONDS_PER_DAY
            score += max(0.0, MAX_RECENCY_BONUS * (1 - idle_days / window_days))
        return score

    def list_public(self) -> list[RoomSummary]:
        results = [self._summary(room) for room in self._rooms.values() if not room.is_private]
        # sorted() is stable, so equal scores keep arrival order
        return sorted(results, key=lambda r: r.relevance_score, reverse=True)

    def search(self, query: Optional[str] = None, filters: Optional[RoomSearchFilters] = None) -> list[RoomSummary]:
        filters = filters or RoomSearchFilters()
        term = (query or "").strip().lower()
        results = []
        for room in self._rooms.values():
            if room.is_private and not filters.include_private:
                continue
            if term and term not in room.name.lower() and term not in room.description.lower():
                continue
            if filters.capabilities and not all(getattr(room.capabilities, cap, False) for cap in filters.capabilities):
                continue
            if filters.min_users and room.member_count < filters.min_users:
                continue
            if filters.template and room.template != filters.template:
                continue
            results.append(self._summary(room, term))
        return sorted(results, key=lambda r: r.relevance_score, reverse=True)

    def list_templates(self) -> list[TemplateRead]:
        return [
            TemplateRead(id=t.id, name=t.name, description=t.description, capacity=t.capacity)
            for t in self.templates.values()
        ]

    # Maintenance

    def sweep(self) -> list[str]:
        """Remove empty rooms that have been idle past their timeout."""
        now = self.clock.now()
        removed = []
        for room_id in list(self._rooms):
            room = self._rooms.get(room_id)
            if room is None or room.participants:
                continue
            idle = now - room.last_activity
            timeout = self.settings.PERSISTENT_ROOM_TIMEOUT if room.is_persistent else self.settings.ROOM_INACTIVITY_TIMEOUT
            if idle > timeout and self.remove_room(room_id):
                removed.append(room_id)
        if removed:
            logger.info(f"🧹 Cleaned up {len(removed)} inactive rooms")
        return removed

    def schedule_maintenance(self, scheduler: TaskScheduler) -> None:
        scheduler.call_every(self.settings.ROOM_SWEEP_INTERVAL, self.sweep, name="room-sweep")

    def statistics(self) -> dict:
        rooms = self._rooms.values()
        return {
            "rooms": len(self._rooms),
            "active_rooms": sum(1 for room in rooms if room.participants),
            "participants": sum(room.member_count for room in rooms),
            "rooms_created": self.rooms_created,
            "rooms_removed": self.rooms_removed,
            "peak_concurrent_rooms": self.peak_concurrent_rooms,
        }

    # Internals

    def _validate(self, payload: RoomCreate) -> None:
        name = (payload.name or "").strip()
        if not name:
            raise errors.ValidationError("Room name is required")
        if len(name) > self.settings.MAX_ROOM_NAME_LENGTH:
            raise errors.ValidationError(f"Room name too long (max {self.settings.MAX_ROOM_NAME_LENGTH} characters)")
        if payload.capacity is not None and not 1 <= payload.capacity <= self.settings.MAX_ROOM_CAPACITY:
            raise errors.ValidationError(f"Invalid capacity (must be 1-{self.settings.MAX_ROOM_CAPACITY})")
        unknown = set(payload.settings) - SETTINGS_FIELDS
        if unknown:
            raise errors.ValidationError(f"Unknown room settings: {', '.join(sorted(unknown))}")

    def _merge_settings(self, current: RoomSettings, updates: dict[str, Any]) -> RoomSettings:
        unknown = set(updates) - SETTINGS_FIELDS
        if unknown:
            raise errors.ValidationError(f"Unknown room settings: {', '.join(sorted(unknown))}")
        return replace(current, **updates)

    def _apply_template(self, room: Room, template: RoomTemplate) -> None:
        room.environment = {**room.environment, **template.environment}
        room.settings = replace(room.settings, **template.settings)
        now = room.created_at
        for seed in template.objects:
            obj = SharedObject(
                id=uuid.uuid4().hex,
                type=seed["type"],
                owner_id=None,
                created_at=now,
                last_modified=now,
                transform=seed.get("transform"),
                is_template=True,
            )
            room.objects[obj.id] = obj
        logger.debug(f"📝 Template {template.id} applied to room {room.id}")

    def _summary(self, room: Room, query: Optional[str] = None) -> RoomSummary:
        return RoomSummary(
            id=room.id,
            name=room.name,
            description=room.description,
            member_count=room.member_count,
            capacity=room.capacity,
            capabilities=asdict(room.capabilities),
            last_activity=room.last_activity,
            template=room.template,
            relevance_score=self.relevance_score(room, query),
        )

    def _generate_room_id(self) -> str:
        return f"room_{uuid.uuid4().hex[:8]}"
