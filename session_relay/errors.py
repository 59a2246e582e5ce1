"""Caller-facing coordination errors.

Every failure that reaches a client carries a stable ``code`` plus a
human-readable message. Validation, capacity and not-found errors are raised
before any state is touched, so a caller never observes a partial update.
"""


class CoordinationError(Exception):
    code = "COORDINATION_ERROR"
    status_code = 400

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(CoordinationError):
    code = "VALIDATION_ERROR"
    status_code = 400


class CapacityError(CoordinationError):
    status_code = 409


class RoomFullError(CapacityError):
    code = "ROOM_FULL"


class RoomLimitExceeded(CapacityError):
    code = "ROOM_LIMIT_EXCEEDED"


class ConnectionLimitExceeded(CapacityError):
    code = "CONNECTION_LIMIT_EXCEEDED"


class ObjectLimitExceeded(CapacityError):
    code = "OBJECT_LIMIT_EXCEEDED"


class NotFoundError(CoordinationError):
    status_code = 404


class RoomNotFound(NotFoundError):
    code = "ROOM_NOT_FOUND"


class ParticipantNotFound(NotFoundError):
    code = "PARTICIPANT_NOT_FOUND"


class ConnectionNotFound(NotFoundError):
    code = "CONNECTION_NOT_FOUND"


class ObjectNotFound(NotFoundError):
    code = "OBJECT_NOT_FOUND"


class DuplicateError(CoordinationError):
    status_code = 409


class DuplicateRoom(DuplicateError):
    code = "DUPLICATE_ROOM"


class DuplicateParticipant(DuplicateError):
    code = "DUPLICATE_PARTICIPANT"


class PermissionDenied(CoordinationError):
    code = "PERMISSION_DENIED"
    status_code = 403


class StateError(CoordinationError):
    code = "INVALID_STATE_TRANSITION"
    status_code = 409


class TransientDeliveryFailure(Exception):
    """Recipient unreachable. Handled by queuing, never shown to the sender."""

    def __init__(self, room_id: str, participant_id: str):
        super().__init__(f"{participant_id} unreachable in room {room_id}")
        self.room_id = room_id
        self.participant_id = participant_id
