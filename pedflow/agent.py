"""
Pedestrian Agent
Mutable state of one simulated person
"""

import itertools
import threading
import numpy as np
from typing import List, Optional, Tuple


class Pedestrian:
    """
    Represents a pedestrian moving through the building.

    Attributes:
        id: Globally unique identifier, drawn from a monotonic counter
        position: Current [x, y] position in meters
        velocity: Current [vx, vy] velocity in m/s
        desired_speed: Free-flow walking speed (m/s)
        radius: Body radius (m)
        room_id, subroom_id: Current location
        final_destination: Goal id, -1 for any exit
        exit_uid: Unique id of the door currently targeted, -1 if none
        route_stale: Whether the router has to recompute the target
        unroutable: No destination is reachable from the current location
        path: (door uid, time) of every door passed, exits included
    """

    _counter = itertools.count(1)
    _counter_lock = threading.Lock()
    _created = 0

    def __init__(
        self,
        position,
        room_id: int,
        subroom_id: int,
        desired_speed: float = 1.34,
        radius: float = 0.2,
        final_destination: int = -1,
        group_id: int = -1,
        seed: int = 42,
        spawn_time: float = 0.0,
        spawn_key: Optional[Tuple[int, ...]] = None,
    ):
        with Pedestrian._counter_lock:
            self.id = next(Pedestrian._counter)
            Pedestrian._created += 1

        self.position = np.array(position, dtype=float)
        self.previous_position = self.position.copy()
        self.velocity = np.zeros(2, dtype=float)
        self.desired_speed = desired_speed
        self.radius = radius

        # Location
        self.room_id = room_id
        self.subroom_id = subroom_id

        # Navigation
        self.final_destination = final_destination
        self.group_id = group_id
        self.exit_uid = -1
        self.exit_line = None
        self.last_door_uid = -1
        self.route_stale = True
        self.unroutable = False
        self.path: List[Tuple[int, float]] = []

        self.spawn_time = spawn_time
        # Own generator so draws do not depend on the update order. The spawn
        # key is assigned per run; the id keeps counting across runs.
        key = spawn_key if spawn_key is not None else (self.id,)
        self.rng = np.random.default_rng(np.random.SeedSequence([seed, *key]))

    @classmethod
    def agents_created(cls) -> int:
        return cls._created

    @property
    def speed(self) -> float:
        return float(np.linalg.norm(self.velocity))

    def set_exit(self, uid: int, line):
        """Set the door to walk to next."""
        if uid != self.exit_uid:
            self.exit_uid = uid
            self.exit_line = line
        self.route_stale = False

    def clear_exit(self):
        self.exit_uid = -1
        self.exit_line = None

    def mark_unroutable(self):
        self.unroutable = True
        self.route_stale = False
        self.clear_exit()

    def target_point(self) -> Optional[np.ndarray]:
        """Closest point of the target door, kept one radius away from its ends."""
        if self.exit_line is None:
            return None
        p1, p2 = self.exit_line.p1, self.exit_line.p2
        length = self.exit_line.length
        if length <= 2 * self.radius:
            return self.exit_line.centre
        shrink = self.radius / length
        a = p1 + shrink * (p2 - p1)
        b = p2 - shrink * (p2 - p1)
        ab = b - a
        t = np.clip(np.dot(self.position - a, ab) / np.dot(ab, ab), 0.0, 1.0)
        return a + t * ab

    def update_position(self, velocity: np.ndarray, dt: float):
        """Apply the velocity computed by the operational model."""
        self.previous_position = self.position.copy()
        self.velocity = velocity
        self.position = self.position + velocity * dt

    def move_to_subroom(self, room_id: int, subroom_id: int, door_uid: int, time: float):
        """Record a door passage and invalidate the current route."""
        self.room_id = room_id
        self.subroom_id = subroom_id
        if door_uid >= 0:
            self.record_passage(door_uid, time)
        self.route_stale = True

    def record_passage(self, door_uid: int, time: float):
        self.last_door_uid = door_uid
        self.path.append((door_uid, time))

    def to_record(self) -> tuple:
        return (self.id, float(self.position[0]), float(self.position[1]),
                float(self.velocity[0]), float(self.velocity[1]), self.room_id, self.subroom_id)

    def __repr__(self) -> str:
        status = "unroutable" if self.unroutable else f"exit={self.exit_uid}"
        return f"Pedestrian({self.id}, pos={self.position}, room={self.room_id}/{self.subroom_id}, {status})"
