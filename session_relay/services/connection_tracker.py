"""Per-pair peer connection tracking and signaling queues.

A ``Connection`` is keyed by the canonical pair id of its two participants,
so ``(a, b)`` and ``(b, a)`` always resolve to the same record and there is
at most one live connection per unordered pair.

State machine::

    new -> connecting -> connected -> {disconnected, failed, closed}

``failed``, ``disconnected`` and ``closed`` schedule a delayed cleanup. The
cleanup only deletes the record if it is still the same object and still in
the state that scheduled it; a connection that recovered, or was replaced by
a fresh one, is left alone.

Signaling messages are queued per recipient, where a recipient is the pair
``(room_id, participant_id)``. Queues are FIFO and bounded: beyond the limit
the oldest entries fall off.
"""

import logging
import uuid
from collections import Counter, deque
from typing import Any, Iterable, Optional
from urllib.parse import quote

from session_relay import errors
from session_relay.config import Settings, get_settings
from session_relay.records import (
    Connection,
    ConnectionKind,
    ConnectionState,
    DataChannel,
    SignalingMessage,
    SignalKind,
)
from session_relay.services.room_registry import RoomRegistry
from session_relay.services.scheduler import TaskScheduler

logger = logging.getLogger(__name__)

State = ConnectionState

TRANSITIONS: dict[ConnectionState, frozenset] = {
    State.NEW: frozenset({State.CONNECTING, State.CONNECTED, State.FAILED, State.CLOSED}),
    State.CONNECTING: frozenset({State.CONNECTED, State.DISCONNECTED, State.FAILED, State.CLOSED}),
    State.CONNECTED: frozenset({State.DISCONNECTED, State.FAILED, State.CLOSED}),
    State.DISCONNECTED: frozenset({State.CONNECTING, State.CONNECTED, State.FAILED, State.CLOSED}),
    State.FAILED: frozenset({State.CLOSED}),
    State.CLOSED: frozenset({State.CONNECTING}),
}

# Handshake still in flight, a repeated create must not reset it
IN_PROGRESS = frozenset({State.NEW, State.CONNECTING, State.CONNECTED})
ANSWERABLE = frozenset({State.CONNECTING, State.CONNECTED})

Recipient = tuple[str, str]


def canonical_pair_id(a: str, b: str) -> str:
    """Order-independent id for the connection between ``a`` and ``b``."""
    low, high = sorted((a, b))
    return f"conn:{quote(low, safe='')}:{quote(high, safe='')}"


class ConnectionTracker:
    def __init__(self, registry: RoomRegistry, scheduler: TaskScheduler, settings: Optional[Settings] = None):
        self.registry = registry
        self.scheduler = scheduler
        self.clock = scheduler.clock
        self.settings = settings or get_settings()
        self._connections: dict[str, Connection] = {}
        self._queues: dict[Recipient, deque] = {}

        self.total_connections = 0
        self.active_connections = 0
        self.average_setup_time = 0.0
        self.dropped_messages = 0
        self.successes: Counter = Counter()
        self.failures: Counter = Counter()

    def __len__(self) -> int:
        return len(self._connections)

    # Connection lifecycle

    def create_connection(
        self,
        a: str,
        b: str,
        room_id: str,
        kind: ConnectionKind = ConnectionKind.FULL,
    ) -> Connection:
        if not a or not b or a == b:
            raise errors.ValidationError("A connection needs two distinct participant ids")
        self.registry.require_room(room_id)

        pair_id = canonical_pair_id(a, b)
        existing = self._connections.get(pair_id)
        if existing is not None and existing.state in IN_PROGRESS:
            logger.debug(f"Connection already tracked: {pair_id} ({existing.state.value})")
            return existing

        for participant_id in (a, b):
            if self._count_for(participant_id, exclude=pair_id) >= self.settings.MAX_CONNECTIONS_PER_PARTICIPANT:
                raise errors.ConnectionLimitExceeded(f"Participant {participant_id} has reached maximum connections")

        if existing is not None:
            logger.info(f"🔁 Replacing {existing.state.value} connection {pair_id} with a fresh one")
            self._discard(existing)

        now = self.clock.now()
        connection = Connection(
            id=pair_id,
            participants=tuple(sorted((a, b))),
            room_id=room_id,
            initiator_id=a,
            created_at=now,
            last_activity=now,
            kind=ConnectionKind(kind),
        )
        self._connections[pair_id] = connection
        self.total_connections += 1
        logger.info(f"🔗 Connection created: {pair_id} ({a} -> {b})")
        return connection

    def get_connection(self, a: str, b: str) -> Optional[Connection]:
        return self._connections.get(canonical_pair_id(a, b))

    def get(self, pair_id: str) -> Optional[Connection]:
        return self._connections.get(pair_id)

    def require(self, pair_id: str) -> Connection:
        connection = self._connections.get(pair_id)
        if connection is None:
            raise errors.ConnectionNotFound(f"Connection {pair_id} not found")
        return connection

    def connections_for(self, participant_id: str, room_id: Optional[str] = None) -> list[Connection]:
        return [
            conn for conn in self._connections.values()
            if conn.involves(participant_id) and (room_id is None or conn.room_id == room_id)
        ]

    def room_connections(self, room_id: str) -> list[Connection]:
        return [conn for conn in self._connections.values() if conn.room_id == room_id]

    def remove_connection(self, pair_id: str) -> bool:
        connection = self._connections.get(pair_id)
        if connection is None:
            return False
        self._discard(connection)
        logger.info(f"🔗 Connection removed: {pair_id}")
        return True

    def transition(self, pair_id: str, new_state: ConnectionState) -> Connection:
        connection = self.require(pair_id)
        new_state = ConnectionState(new_state)
        old_state = connection.state
        if new_state == old_state:
            connection.last_activity = self.clock.now()
            return connection
        if new_state not in TRANSITIONS[old_state]:
            raise errors.StateError(f"Cannot move {pair_id} from {old_state.value} to {new_state.value}")

        now = self.clock.now()
        connection.state = new_state
        connection.last_activity = now

        if old_state == State.CONNECTED:
            self.active_connections = max(0, self.active_connections - 1)

        if new_state == State.CONNECTED:
            self.active_connections += 1
            if connection.connected_at is None:
                connection.connected_at = now
                setup_time = now - connection.created_at
                connection.stats.setup_time = setup_time
                self.successes[connection.kind.value] += 1
                successful = sum(self.successes.values())
                self.average_setup_time += (setup_time - self.average_setup_time) / successful
        elif new_state == State.FAILED:
            self.failures[connection.kind.value] += 1
            self._schedule_cleanup(connection, self.settings.FAILED_CLEANUP_DELAY)
        elif new_state == State.DISCONNECTED:
            self._schedule_cleanup(connection, self.settings.DISCONNECTED_CLEANUP_DELAY)
        elif new_state == State.CLOSED:
            self._schedule_cleanup(connection, self.settings.CLOSED_CLEANUP_DELAY)

        logger.info(f"🔄 Connection state changed: {pair_id} ({old_state.value} -> {new_state.value})")
        return connection

    def fail(self, pair_id: str, reason: str) -> Optional[Connection]:
        """Drive a connection to ``failed`` after a protocol violation."""
        connection = self._connections.get(pair_id)
        if connection is None:
            return None
        logger.warning(f"⚠️ Signaling violation on {pair_id}: {reason}")
        if connection.state == State.FAILED:
            return connection
        if State.FAILED not in TRANSITIONS[connection.state]:
            # closed connections are already on their way out
            return connection
        return self.transition(pair_id, State.FAILED)

    def close_participant(self, participant_id: str, room_id: str, state: ConnectionState = State.CLOSED) -> list[str]:
        """Mark every connection of a departing participant for cleanup."""
        touched = []
        for connection in self.connections_for(participant_id, room_id):
            target = state if state in TRANSITIONS[connection.state] else State.CLOSED
            if connection.state in (state, State.CLOSED) or target not in TRANSITIONS[connection.state]:
                continue
            self.transition(connection.id, target)
            touched.append(connection.id)
        return touched

    # Signaling

    def record_offer(
        self,
        sender_id: str,
        recipient_id: str,
        room_id: str,
        payload: Any,
        kind: ConnectionKind = ConnectionKind.FULL,
    ) -> SignalingMessage:
        connection = self.get_connection(sender_id, recipient_id)
        if connection is None or connection.state in (State.DISCONNECTED, State.FAILED):
            connection = self.create_connection(sender_id, recipient_id, room_id, kind)
        if connection.state in (State.NEW, State.CLOSED):
            self.transition(connection.id, State.CONNECTING)
        connection.offer = payload
        connection.last_activity = self.clock.now()
        return self._enqueue(SignalKind.OFFER, connection, room_id, sender_id, recipient_id, payload)

    def record_answer(self, sender_id: str, recipient_id: str, room_id: str, payload: Any) -> Optional[SignalingMessage]:
        connection = self.get_connection(sender_id, recipient_id)
        if connection is None:
            logger.warning(f"⚠️ Answer from {sender_id} to {recipient_id} has no matching connection, dropped")
            return None
        if connection.state not in ANSWERABLE:
            self.fail(connection.id, f"answer received while {connection.state.value}")
            return None
        connection.answer = payload
        connection.last_activity = self.clock.now()
        return self._enqueue(SignalKind.ANSWER, connection, room_id, sender_id, recipient_id, payload)

    def record_ice_candidate(self, sender_id: str, recipient_id: str, room_id: str, payload: Any) -> Optional[SignalingMessage]:
        connection = self.get_connection(sender_id, recipient_id)
        if connection is None:
            logger.warning(f"No connection found for ICE candidate from {sender_id} to {recipient_id}")
            return None
        if connection.state in (State.FAILED, State.CLOSED):
            logger.debug(f"Ignoring ICE candidate on {connection.state.value} connection {connection.id}")
            return None
        connection.last_activity = self.clock.now()
        return self._enqueue(SignalKind.ICE_CANDIDATE, connection, room_id, sender_id, recipient_id, payload)

    def drain_messages(self, room_id: str, participant_id: str) -> list[SignalingMessage]:
        queue = self._queues.pop((room_id, participant_id), None)
        return list(queue) if queue else []

    def restore_messages(self, room_id: str, participant_id: str, messages: Iterable[SignalingMessage]) -> None:
        """Put undelivered messages back at the head of the queue, order kept."""
        queue = self._queue_for((room_id, participant_id))
        pending = list(messages)
        free = queue.maxlen - len(queue)
        overflow = max(0, len(pending) - free)
        if overflow:
            self.dropped_messages += overflow
            logger.warning(f"Signaling queue full for {participant_id} in {room_id}, dropping {overflow} undelivered messages")
        # oldest entries go first, as in _enqueue
        for message in reversed(pending[overflow:]):
            queue.appendleft(message)

    def queued_messages(self, room_id: str, participant_id: str) -> list[SignalingMessage]:
        return list(self._queues.get((room_id, participant_id), ()))

    def clear_queue(self, room_id: str, participant_id: str) -> int:
        queue = self._queues.pop((room_id, participant_id), None)
        return len(queue) if queue else 0

    @property
    def queued_count(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    # Data channels

    def create_data_channel(self, pair_id: str, name: str, ordered: bool = True, protocol: str = "") -> DataChannel:
        connection = self.require(pair_id)
        if not name:
            raise errors.ValidationError("Data channel name is required")
        if len(connection.data_channels) >= self.settings.MAX_DATA_CHANNELS:
            raise errors.CapacityError(
                f"Connection {pair_id} already has {self.settings.MAX_DATA_CHANNELS} data channels",
                code="CONNECTION_LIMIT_EXCEEDED",
            )
        channel = DataChannel(id=f"{name}_{uuid.uuid4().hex[:8]}", name=name, ordered=ordered, protocol=protocol)
        connection.data_channels[channel.id] = channel
        connection.last_activity = self.clock.now()
        logger.info(f"📡 Data channel created: {channel.id} for connection {pair_id}")
        return channel

    def record_data_transfer(self, pair_id: str, channel_id: str, sender_id: str, size: int) -> DataChannel:
        connection = self.require(pair_id)
        channel = connection.data_channels.get(channel_id)
        if channel is None:
            raise errors.ConnectionNotFound(f"Data channel {channel_id} not found on {pair_id}")
        if size < 0:
            raise errors.ValidationError("Transfer size cannot be negative")
        channel.messages += 1
        channel.bytes_transferred += size
        connection.stats.messages += 1
        if sender_id == connection.initiator_id:
            connection.stats.bytes_sent += size
        else:
            connection.stats.bytes_received += size
        connection.last_activity = self.clock.now()
        return channel

    # Maintenance

    def sweep(self) -> list[str]:
        """Drop handshakes that stalled and idle non-connected records."""
        now = self.clock.now()
        removed = []
        for pair_id in list(self._connections):
            connection = self._connections.get(pair_id)
            if connection is None:
                continue
            idle = now - connection.last_activity
            if connection.state == State.CONNECTING and idle > self.settings.CONNECTING_TIMEOUT:
                self.failures[connection.kind.value] += 1
            elif connection.state == State.CONNECTED or idle <= self.settings.STALE_CONNECTION_TIMEOUT:
                continue
            self._discard(connection)
            removed.append(pair_id)
        if removed:
            logger.info(f"🧹 Cleaned up {len(removed)} stale connections")
        return removed

    def purge_queues(self) -> int:
        cutoff = self.clock.now() - self.settings.SIGNALING_MESSAGE_MAX_AGE
        purged = 0
        for recipient in list(self._queues):
            queue = self._queues[recipient]
            kept = deque((m for m in queue if m.timestamp >= cutoff), maxlen=queue.maxlen)
            purged += len(queue) - len(kept)
            if kept:
                self._queues[recipient] = kept
            else:
                del self._queues[recipient]
        if purged:
            logger.info(f"🧹 Purged {purged} expired signaling messages")
        return purged

    def schedule_maintenance(self, scheduler: Optional[TaskScheduler] = None) -> None:
        scheduler = scheduler or self.scheduler
        scheduler.call_every(self.settings.CONNECTION_SWEEP_INTERVAL, self.sweep, name="connection-sweep")
        scheduler.call_every(self.settings.QUEUE_PURGE_INTERVAL, self.purge_queues, name="signaling-purge")

    def statistics(self) -> dict:
        return {
            "tracked_connections": len(self._connections),
            "active_connections": self.active_connections,
            "total_connections": self.total_connections,
            "successful_connections": sum(self.successes.values()),
            "failed_connections": sum(self.failures.values()),
            "average_setup_time": self.average_setup_time,
            "queued_messages": self.queued_count,
            "dropped_messages": self.dropped_messages,
            "by_kind": {
                kind.value: {"success": self.successes[kind.value], "failure": self.failures[kind.value]}
                for kind in ConnectionKind
            },
        }

    # Internals

    def _count_for(self, participant_id: str, exclude: Optional[str] = None) -> int:
        return sum(1 for conn in self._connections.values() if conn.id != exclude and conn.involves(participant_id))

    def _discard(self, connection: Connection) -> None:
        if self._connections.get(connection.id) is connection:
            del self._connections[connection.id]
        if connection.state == State.CONNECTED:
            self.active_connections = max(0, self.active_connections - 1)
        connection.data_channels.clear()

    def _schedule_cleanup(self, connection: Connection, delay: float) -> None:
        self.scheduler.call_later(
            delay, self._scheduled_cleanup, connection, connection.state, name=f"cleanup:{connection.id}"
        )

    def _scheduled_cleanup(self, connection: Connection, expected: ConnectionState) -> None:
        current = self._connections.get(connection.id)
        if current is not connection or connection.state != expected:
            return
        self._discard(connection)
        logger.info(f"🧹 Scheduled cleanup completed for connection: {connection.id}")

    def _queue_for(self, recipient: Recipient) -> deque:
        queue = self._queues.get(recipient)
        if queue is None:
            queue = self._queues[recipient] = deque(maxlen=self.settings.SIGNALING_QUEUE_LIMIT)
        return queue

    def _enqueue(
        self,
        kind: SignalKind,
        connection: Connection,
        room_id: str,
        sender_id: str,
        recipient_id: str,
        payload: Any,
    ) -> SignalingMessage:
        message = SignalingMessage(
            kind=kind,
            connection_id=connection.id,
            room_id=room_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            payload=payload,
            timestamp=self.clock.now(),
        )
        queue = self._queue_for((room_id, recipient_id))
        if len(queue) == queue.maxlen:
            self.dropped_messages += 1
            logger.warning(f"Signaling queue full for {recipient_id} in {room_id}, dropping oldest")
        queue.append(message)
        logger.debug(f"📨 {kind.value} queued for {recipient_id} ({connection.id})")
        return message
