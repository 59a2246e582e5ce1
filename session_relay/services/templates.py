from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class RoomTemplate:
    id: str
    name: str
    description: str
    capacity: int
    environment: dict[str, Any] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)
    objects: tuple = ()


def _seed(kind: str, position, rotation, scale) -> dict:
    return {"type": kind, "transform": {"position": position, "rotation": rotation, "scale": scale}}


DEFAULT_TEMPLATES: dict[str, RoomTemplate] = {
    "conference": RoomTemplate(
        id="conference",
        name="Conference Room",
        description="Professional meeting space with presentation tools",
        capacity=20,
        environment={"lighting": "office", "background": "modern_office", "acoustics": "conference"},
        settings={"spatial_audio": True, "hand_tracking": True, "recording_sessions": True},
        objects=(
            _seed("presentation_screen", [0, 2, -3], [0, 0, 0], [2, 1.5, 0.1]),
            _seed("conference_table", [0, 0.75, 0], [0, 0, 0], [3, 0.1, 1.5]),
        ),
    ),
    "social": RoomTemplate(
        id="social",
        name="Social Space",
        description="Casual environment for social interaction",
        capacity=30,
        environment={"lighting": "warm", "background": "park", "acoustics": "outdoor"},
        settings={"spatial_audio": True, "hand_tracking": True, "object_collision": False},
        objects=(
            _seed("campfire", [0, 0, 0], [0, 0, 0], [1, 1, 1]),
            _seed("seating_circle", [0, 0, 0], [0, 0, 0], [4, 0.5, 4]),
        ),
    ),
    "creative": RoomTemplate(
        id="creative",
        name="Creative Studio",
        description="Interactive space for creative collaboration",
        capacity=15,
        environment={"lighting": "creative", "background": "studio", "acoustics": "studio"},
        settings={"spatial_audio": True, "hand_tracking": True, "object_collision": True},
        objects=(
            _seed("easel", [-2, 0, -1], [0, 0.5, 0], [1, 1, 1]),
            _seed("work_table", [2, 0.8, 0], [0, 0, 0], [1.5, 0.1, 1]),
        ),
    ),
}
