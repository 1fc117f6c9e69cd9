"""
Geometry Model
Walls, connectors, goals and the rooms/subrooms they bound
"""

import numpy as np
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import shapely
from shapely.errors import GEOSException
from shapely.geometry import Polygon

from .exceptions import DuplicateIdError, GeometryError

# Tolerance for matching endpoints when chaining segments
EPS = 1e-4
_ORIENT_EPS = 1e-12


def as_point(p) -> np.ndarray:
    """Convert any (x, y) pair into a float array of shape (2,)."""
    return np.array(p, dtype=float).reshape(2)


def _orientation(a: np.ndarray, b: np.ndarray, c: np.ndarray) -> float:
    return (b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0])


def segments_cross(p1: np.ndarray, p2: np.ndarray, q1: np.ndarray, q2: np.ndarray) -> bool:
    """True if segment p1-p2 properly crosses segment q1-q2.

    Touching at an endpoint or running collinear does not count as a crossing.
    """
    d1 = _orientation(q1, q2, p1)
    d2 = _orientation(q1, q2, p2)
    d3 = _orientation(p1, p2, q1)
    d4 = _orientation(p1, p2, q2)
    return (((d1 > _ORIENT_EPS and d2 < -_ORIENT_EPS) or (d1 < -_ORIENT_EPS and d2 > _ORIENT_EPS)) and
            ((d3 > _ORIENT_EPS and d4 < -_ORIENT_EPS) or (d3 < -_ORIENT_EPS and d4 > _ORIENT_EPS)))


def closest_point_on_segment(point: np.ndarray, a: np.ndarray, b: np.ndarray) -> np.ndarray:
    ab = b - a
    denom = float(np.dot(ab, ab))
    if denom < _ORIENT_EPS:
        return a.copy()
    t = np.clip(np.dot(point - a, ab) / denom, 0.0, 1.0)
    return a + t * ab


def _same_point(a: np.ndarray, b: np.ndarray) -> bool:
    return abs(a[0] - b[0]) < EPS and abs(a[1] - b[1]) < EPS


def chain_segments(segments: Sequence[Tuple[np.ndarray, np.ndarray]], what: str) -> List[np.ndarray]:
    """
    Chain line segments end to end into a closed polygon.

    Every segment must be used exactly once and the chain must return to its
    start, otherwise a GeometryError is raised.

    Returns:
        Polygon vertices without repeating the first vertex at the end
    """
    if len(segments) < 3:
        raise GeometryError(f"{what}: at least 3 segments are needed to close a polygon, got {len(segments)}")

    remaining = list(segments)
    first = remaining.pop(0)
    vertices = [first[0], first[1]]

    while remaining:
        current = vertices[-1]
        for i, (a, b) in enumerate(remaining):
            if _same_point(a, current):
                nxt = b
                break
            if _same_point(b, current):
                nxt = a
                break
        else:
            raise GeometryError(
                f"{what}: cannot close the polygon, no segment continues at "
                f"({current[0]:.4f}, {current[1]:.4f})")
        remaining.pop(i)
        vertices.append(nxt)

    if not _same_point(vertices[-1], vertices[0]):
        raise GeometryError(f"{what}: the segments do not form a closed loop")
    vertices.pop()
    return vertices


class Registry(dict):
    """Id-keyed collection that refuses duplicate ids."""

    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind

    def add(self, key, value):
        if key in self:
            raise DuplicateIdError(self.kind, key)
        self[key] = value
        return value


class Line:
    """A straight segment between two points."""

    def __init__(self, p1, p2):
        self.p1 = as_point(p1)
        self.p2 = as_point(p2)

    @property
    def centre(self) -> np.ndarray:
        return 0.5 * (self.p1 + self.p2)

    @property
    def length(self) -> float:
        return float(np.linalg.norm(self.p2 - self.p1))

    def closest_point(self, point: np.ndarray) -> np.ndarray:
        return closest_point_on_segment(point, self.p1, self.p2)

    def distance_to(self, point: np.ndarray) -> float:
        return float(np.linalg.norm(point - self.closest_point(point)))

    def crosses(self, a: np.ndarray, b: np.ndarray) -> bool:
        return segments_cross(self.p1, self.p2, a, b)

    def is_same_as(self, other: "Line") -> bool:
        return ((_same_point(self.p1, other.p1) and _same_point(self.p2, other.p2)) or
                (_same_point(self.p1, other.p2) and _same_point(self.p2, other.p1)))

    def segment(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.p1, self.p2


class Wall(Line):
    """A wall segment with a type tag."""

    def __init__(self, p1, p2, wall_type: str = "wall"):
        super().__init__(p1, p2)
        self.type = wall_type

    def __repr__(self) -> str:
        return f"Wall({self.p1.tolist()}, {self.p2.tolist()}, type={self.type})"


class Hline(Line):
    """
    Helper line used for route decisions inside one subroom.
    It never blocks motion.
    """

    kind = "hline"

    def __init__(self, hline_id: int, p1, p2, room_id: int, subroom_id: int, caption: str = ""):
        super().__init__(p1, p2)
        self.id = hline_id
        self.uid = -1
        self.caption = caption
        self.room1_id = room_id
        self.subroom1_id = subroom_id
        self.subroom1: Optional["SubRoom"] = None

    @property
    def subrooms(self) -> List["SubRoom"]:
        return [self.subroom1] if self.subroom1 is not None else []

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id}, uid={self.uid})"


class Crossing(Hline):
    """Door between two subrooms of the same room."""

    kind = "crossing"

    def __init__(self, crossing_id: int, p1, p2, room_id: int, subroom1_id: int,
                 subroom2_id: int, caption: str = ""):
        super().__init__(crossing_id, p1, p2, room_id, subroom1_id, caption)
        self.room2_id: Optional[int] = room_id
        self.subroom2_id: Optional[int] = subroom2_id
        self.subroom2: Optional["SubRoom"] = None

        self.is_open = True
        self.door_usage = 0
        self.last_passing_time = 0.0
        self.flow_history: List[Tuple[float, int]] = []
        # Frames since the congestion data of this door was last measured
        self.door_tick = 0

    @property
    def subrooms(self) -> List["SubRoom"]:
        return [s for s in (self.subroom1, self.subroom2) if s is not None]

    @property
    def width(self) -> float:
        return self.length

    def is_exit(self) -> bool:
        return False

    def connects(self, subroom: "SubRoom") -> bool:
        return subroom is self.subroom1 or subroom is self.subroom2

    def other_subroom(self, subroom: "SubRoom") -> Optional["SubRoom"]:
        if subroom is self.subroom1:
            return self.subroom2
        if subroom is self.subroom2:
            return self.subroom1
        return None

    def open(self):
        self.is_open = True

    def close(self):
        self.is_open = False

    def increase_door_usage(self, count: int, time: float):
        self.door_usage += count
        self.last_passing_time = time
        self.flow_history.append((time, self.door_usage))

    def tick(self):
        self.door_tick += 1

    def reset_door_tick(self):
        self.door_tick = 0


class Transition(Crossing):
    """
    Door between subrooms of possibly different rooms.
    A transition without a second room leads outside the building.
    """

    kind = "transition"

    def __init__(self, transition_id: int, p1, p2, room1_id: int, subroom1_id: int,
                 room2_id: Optional[int] = None, subroom2_id: Optional[int] = None,
                 caption: str = "", transition_type: str = "emergency",
                 goal_id: Optional[int] = None):
        super().__init__(transition_id, p1, p2, room1_id, subroom1_id, subroom2_id, caption)
        self.room2_id = room2_id
        if room2_id is None:
            self.subroom2_id = None
        self.type = transition_type
        self.goal_id = goal_id

    def is_exit(self) -> bool:
        return self.room2_id is None


class Goal:
    """Final destination area, with its own id space."""

    def __init__(self, goal_id: int, vertices: Iterable, caption: str = "", is_final: bool = True):
        self.id = goal_id
        self.caption = caption
        self.is_final = is_final
        self.vertices = [as_point(v) for v in vertices]
        self.shape: Optional[Polygon] = None

    def convert_to_poly(self):
        if len(self.vertices) < 3:
            raise GeometryError(f"Goal {self.id}: at least 3 vertices are required")
        shape = Polygon([tuple(v) for v in self.vertices])
        if not shape.is_valid:
            raise GeometryError(f"Goal {self.id}: polygon is not simple")
        self.shape = shape

    @property
    def centroid(self) -> np.ndarray:
        return np.mean(self.vertices, axis=0)

    def contains(self, point: np.ndarray) -> bool:
        return bool(shapely.intersects_xy(self.shape, point[0], point[1]))


class Obstacle:
    """Closed polyline of walls inside a subroom."""

    def __init__(self, obstacle_id: int, walls: Optional[List[Wall]] = None, caption: str = ""):
        self.id = obstacle_id
        self.caption = caption
        self.walls: List[Wall] = list(walls or [])
        self.polygon: Optional[List[np.ndarray]] = None

    def add_wall(self, wall: Wall):
        self.walls.append(wall)

    def convert_line_to_poly(self):
        self.polygon = chain_segments([w.segment() for w in self.walls], f"Obstacle {self.id}")
        return self.polygon


class SubRoom:
    """
    Finest spatial unit of the building. Agents are always located in
    exactly one subroom.
    """

    def __init__(self, subroom_id: int, room_id: int = -1, walls: Optional[List[Wall]] = None,
                 subroom_type: str = "floor", plane: Tuple[float, float, float] = (0.0, 0.0, 0.0),
                 caption: str = ""):
        self.id = subroom_id
        self.room_id = room_id
        self.uid = -1
        self.type = subroom_type
        self.caption = caption
        self.plane = tuple(float(c) for c in plane)

        self.walls: List[Wall] = list(walls or [])
        self.obstacles: List[Obstacle] = []
        self.crossings: List[Crossing] = []
        self.transitions: List[Transition] = []
        self.hlines: List[Hline] = []

        # Derived once during geometry initialisation
        self.polygon: Optional[List[np.ndarray]] = None
        self.shape: Optional[Polygon] = None
        self.area = 0.0
        self.min_elevation = 0.0
        self.max_elevation = 0.0
        self.neighbors: set = set()
        self.triangles: List[np.ndarray] = []

    def add_wall(self, wall: Wall):
        self.walls.append(wall)

    def add_obstacle(self, obstacle: Obstacle):
        self.obstacles.append(obstacle)

    def add_crossing(self, crossing: Crossing):
        if isinstance(crossing, Transition):
            self.transitions.append(crossing)
        else:
            self.crossings.append(crossing)

    def add_hline(self, hline: Hline):
        self.hlines.append(hline)

    def add_neighbor(self, subroom: Optional["SubRoom"]):
        if subroom is not None and subroom is not self:
            self.neighbors.add(subroom)

    @property
    def doors(self) -> List[Crossing]:
        return self.crossings + self.transitions

    # ------------------------------------------------------------------
    # Derived geometry
    # ------------------------------------------------------------------
    def convert_line_to_poly(self) -> List[np.ndarray]:
        """Chain walls and bounding doors into the closed boundary polygon."""
        name = f"SubRoom {self.room_id}/{self.id}"
        segments = [w.segment() for w in self.walls] + [d.segment() for d in self.doors]
        self.polygon = chain_segments(segments, name)

        boundary = Polygon([tuple(v) for v in self.polygon])
        if not boundary.is_valid:
            raise GeometryError(f"{name}: boundary polygon intersects itself")

        holes = []
        for obstacle in self.obstacles:
            holes.append([tuple(v) for v in obstacle.convert_line_to_poly()])
        self.shape = Polygon([tuple(v) for v in self.polygon], holes) if holes else boundary
        return self.polygon

    def calculate_area(self) -> float:
        self.area = float(self.shape.area)
        return self.area

    def elevation(self, point: np.ndarray) -> float:
        a, b, c = self.plane
        return a * point[0] + b * point[1] + c

    def calculate_elevation_extremes(self):
        heights = [self.elevation(p) for wall in self.walls for p in wall.segment()]
        self.min_elevation = min(heights) if heights else 0.0
        self.max_elevation = max(heights) if heights else 0.0

    def bounds(self) -> Tuple[float, float, float, float]:
        xs = [v[0] for v in self.polygon]
        ys = [v[1] for v in self.polygon]
        return min(xs), max(xs), min(ys), max(ys)

    def triangulate(self) -> List[np.ndarray]:
        """Constrained Delaunay triangulation of the walkable area."""
        name = f"SubRoom {self.room_id}/{self.id}"
        if self.shape is None:
            raise GeometryError(f"{name}: triangulation requested before the polygon was built")
        try:
            collection = shapely.constrained_delaunay_triangles(self.shape)
        except GEOSException as e:
            raise GeometryError(f"{name}: triangulation failed: {e}") from e

        triangles = [np.asarray(t.exterior.coords)[:3] for t in collection.geoms]
        covered = sum(t.area for t in collection.geoms)
        if not triangles or abs(covered - self.shape.area) > 1e-6 * max(1.0, self.shape.area):
            raise GeometryError(f"{name}: triangulation does not cover the subroom")
        self.triangles = triangles
        return triangles

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def contains(self, point: np.ndarray) -> bool:
        """Inside the boundary (borders included) and outside every obstacle."""
        return bool(shapely.intersects_xy(self.shape, point[0], point[1]))

    def blocking_lines(self) -> List[Line]:
        """Everything an agent may not walk through: walls, obstacles, closed doors."""
        lines: List[Line] = list(self.walls)
        for obstacle in self.obstacles:
            lines.extend(obstacle.walls)
        lines.extend(d for d in self.doors if not d.is_open)
        return lines

    def is_visible(self, p1, p2, consider_hlines: bool = False) -> bool:
        p1 = as_point(p1)
        p2 = as_point(p2)
        lines: List[Line] = list(self.walls)
        for obstacle in self.obstacles:
            lines.extend(obstacle.walls)
        if consider_hlines:
            lines.extend(self.hlines)
        return not any(line.crosses(p1, p2) for line in lines)

    def sanity_check(self) -> List[str]:
        """Return a description of every artifact found in this subroom."""
        name = f"SubRoom {self.room_id}/{self.id}"
        problems = []
        for wall in self.walls:
            if wall.length < EPS:
                problems.append(f"{name}: degenerate wall at {wall.p1.tolist()}")
        if self.polygon is None:
            problems.append(f"{name}: boundary polygon was never built")
            return problems

        boundary = Polygon([tuple(v) for v in self.polygon])
        if not boundary.is_valid:
            problems.append(f"{name}: boundary polygon is not simple")
        for obstacle in self.obstacles:
            if obstacle.polygon is None or not boundary.contains(Polygon([tuple(v) for v in obstacle.polygon])):
                problems.append(f"{name}: obstacle {obstacle.id} is not inside the subroom")
        for door in self.doors:
            for p in door.segment():
                if boundary.exterior.distance(shapely.Point(p[0], p[1])) > EPS:
                    problems.append(f"{name}: {door.kind} {door.id} is not on the subroom boundary")
                    break
        for hline in self.hlines:
            if not (self.contains(hline.p1) and self.contains(hline.p2)):
                problems.append(f"{name}: hline {hline.id} leaves the subroom")
        return problems

    def __repr__(self) -> str:
        return f"SubRoom(room={self.room_id}, id={self.id}, uid={self.uid})"


class Room:
    """A room owning an id-keyed collection of subrooms."""

    def __init__(self, room_id: int, caption: str = ""):
        self.id = room_id
        self.caption = caption
        self.subrooms: Dict[int, SubRoom] = Registry("subroom")

    def add_subroom(self, subroom: SubRoom) -> SubRoom:
        subroom.room_id = self.id
        return self.subrooms.add(subroom.id, subroom)

    def get_subroom(self, subroom_id: int) -> Optional[SubRoom]:
        return self.subrooms.get(subroom_id)

    @property
    def area(self) -> float:
        return sum(s.area for s in self.subrooms.values())

    def __repr__(self) -> str:
        return f"Room(id={self.id}, caption={self.caption!r}, subrooms={len(self.subrooms)})"
