"""
Building
Aggregate root owning the geometry, the live pedestrians and the neighbour grid
"""

import itertools
import threading
import numpy as np
from typing import Dict, Iterator, List, Optional, Tuple

from loguru import logger

from .agent import Pedestrian
from .exceptions import GeometryError
from .geometry import Crossing, Goal, Hline, Registry, Room, SubRoom, Transition, as_point
from .grid import LinkedCellGrid


class Building:
    """
    Owns rooms, connectors and goals (each in a uniqueness-enforced id-keyed
    collection), all live pedestrians, the linked-cell grid and a reference
    to the routing engine.

    The geometry is assembled once, validated by init_geometry() and only
    mutated afterwards by pedestrian insert/remove and door state changes.
    """

    def __init__(self, caption: str = "no_caption", routing_engine=None, log=None):
        self.caption = caption
        self.routing_engine = routing_engine
        self.log = log or logger.bind(component="building")

        self.rooms: Dict[int, Room] = Registry("room")
        self.crossings: Dict[int, Crossing] = Registry("crossing")
        self.transitions: Dict[int, Transition] = Registry("transition")
        self.hlines: Dict[int, Hline] = Registry("hline")
        self.goals: Dict[int, Goal] = Registry("goal")
        self._by_uid: Dict[int, Hline] = Registry("connector uid")
        self._subrooms_by_uid: Dict[int, SubRoom] = {}
        self._uids = itertools.count()

        self.pedestrians: Dict[int, Pedestrian] = {}
        self.grid: Optional[LinkedCellGrid] = None
        self._lock = threading.RLock()
        self._bounds: Optional[Tuple[float, float, float, float]] = None
        self.geometry_initialized = False

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------
    def add_room(self, room: Room) -> Room:
        return self.rooms.add(room.id, room)

    def _register_uid(self, line: Hline):
        if line.uid < 0:
            line.uid = next(self._uids)
            while line.uid in self._by_uid:
                line.uid = next(self._uids)
        self._by_uid.add(line.uid, line)

    def add_crossing(self, crossing: Crossing) -> Crossing:
        self.crossings.add(crossing.id, crossing)
        self._register_uid(crossing)
        return crossing

    def add_transition(self, transition: Transition) -> Transition:
        self.transitions.add(transition.id, transition)
        self._register_uid(transition)
        return transition

    def add_hline(self, hline: Hline) -> bool:
        original = self.hlines.get(hline.id)
        if original is not None:
            if original.is_same_as(hline):
                self.log.info("Skipping identical hlines with ID [{}]", hline.id)
                return False
            raise GeometryError(
                f"Duplicate index for hlines found [{hline.id}]. You have [{len(self.hlines)}] hlines")
        self.hlines.add(hline.id, hline)
        self._register_uid(hline)
        return True

    def add_goal(self, goal: Goal) -> Goal:
        return self.goals.add(goal.id, goal)

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------
    def _resolve(self, room_id: Optional[int], subroom_id: Optional[int], what: str) -> SubRoom:
        room = self.rooms.get(room_id)
        subroom = room.get_subroom(subroom_id) if room is not None else None
        if subroom is None:
            raise GeometryError(f"{what} references the unknown subroom {room_id}/{subroom_id}")
        return subroom

    def init_geometry(self):
        """
        Resolve connector references, build every subroom polygon, cache the
        areas and elevations and record the subroom adjacency.

        Raises:
            GeometryError: on dangling references or unclosable polygons
        """
        if self.geometry_initialized:
            return
        self.log.info("Init Geometry")
        uid = itertools.count()
        self._subrooms_by_uid.clear()
        for room in self.rooms.values():
            for subroom in room.subrooms.values():
                subroom.uid = next(uid)
                self._subrooms_by_uid[subroom.uid] = subroom

        for crossing in self.crossings.values():
            if crossing.subroom1_id == crossing.subroom2_id:
                raise GeometryError(f"Crossing {crossing.id} connects subroom {crossing.subroom1_id} with itself")
            crossing.subroom1 = self._resolve(crossing.room1_id, crossing.subroom1_id, f"Crossing {crossing.id}")
            crossing.subroom2 = self._resolve(crossing.room2_id, crossing.subroom2_id, f"Crossing {crossing.id}")
            crossing.subroom1.add_crossing(crossing)
            crossing.subroom2.add_crossing(crossing)

        for transition in self.transitions.values():
            what = f"Transition {transition.id}"
            transition.subroom1 = self._resolve(transition.room1_id, transition.subroom1_id, what)
            transition.subroom1.add_crossing(transition)
            if not transition.is_exit():
                transition.subroom2 = self._resolve(transition.room2_id, transition.subroom2_id, what)
                if transition.subroom2 is transition.subroom1:
                    raise GeometryError(f"{what} connects a subroom with itself")
                transition.subroom2.add_crossing(transition)
            if transition.goal_id is not None and transition.goal_id not in self.goals:
                raise GeometryError(f"{what} leads to the unknown goal {transition.goal_id}")

        for hline in self.hlines.values():
            hline.subroom1 = self._resolve(hline.room1_id, hline.subroom1_id, f"Hline {hline.id}")
            hline.subroom1.add_hline(hline)

        for subroom in self.all_subrooms():
            subroom.convert_line_to_poly()
            subroom.calculate_area()
            subroom.calculate_elevation_extremes()

        for goal in self.goals.values():
            goal.convert_to_poly()

        # Adjacency is derived once so routing never re-derives topology
        for door in self.doors():
            s1, s2 = door.subroom1, door.subroom2
            if s1 is not None:
                s1.add_neighbor(s2)
            if s2 is not None:
                s2.add_neighbor(s1)

        self._bounds = self._compute_bounds()
        self.geometry_initialized = True
        self.log.info("Init Geometry successful: {} rooms, {} subrooms, {} doors",
                      len(self.rooms), len(self._subrooms_by_uid), len(self.crossings) + len(self.transitions))

    def sanity_check(self) -> bool:
        """
        Check every subroom for geometric artifacts.

        Raises:
            GeometryError: listing the number of problems found
        """
        self.log.info("Checking the geometry for artifacts")
        problems = []
        for subroom in self.all_subrooms():
            problems.extend(subroom.sanity_check())
        for problem in problems:
            self.log.error(problem)
        if problems:
            raise GeometryError(f"There are {len(problems)} sanity errors in the geometry")
        self.log.info("Geometry sanity check passed")
        return True

    def triangulate(self):
        self.log.info("Triangulating the geometry")
        for subroom in self.all_subrooms():
            subroom.triangulate()

    def _compute_bounds(self) -> Tuple[float, float, float, float]:
        x_min = y_min = float("inf")
        x_max = y_max = float("-inf")
        for subroom in self.all_subrooms():
            for wall in subroom.walls:
                for p in wall.segment():
                    x_min = min(x_min, p[0])
                    x_max = max(x_max, p[0])
                    y_min = min(y_min, p[1])
                    y_max = max(y_max, p[1])
        if x_min == float("inf"):
            raise GeometryError("The building has no walls")
        return x_min, x_max, y_min, y_max

    def bounds(self) -> Tuple[float, float, float, float]:
        """(x_min, x_max, y_min, y_max) over all wall vertices."""
        if self._bounds is None:
            self._bounds = self._compute_bounds()
        return self._bounds

    def boundary_vertices(self) -> List[np.ndarray]:
        x_min, x_max, y_min, y_max = self.bounds()
        return [as_point((x_min, y_min)), as_point((x_min, y_max)),
                as_point((x_max, y_max)), as_point((x_max, y_min))]

    def init_grid(self, cell_size: float):
        x_min, x_max, y_min, y_max = self.bounds()
        margin = cell_size if cell_size > 0 else 1.0
        boundaries = (x_min - margin, x_max + margin, y_min - margin, y_max + margin)
        self.grid = LinkedCellGrid(boundaries, cell_size)
        self.grid.update(self.all_pedestrians())
        self.log.info("Done with initializing the grid ({} x {} cells)", self.grid.nx, self.grid.ny)

    # ------------------------------------------------------------------
    # Geometry queries
    # ------------------------------------------------------------------
    def all_subrooms(self) -> Iterator[SubRoom]:
        for room in self.rooms.values():
            yield from room.subrooms.values()

    def get_room(self, room_id: int) -> Optional[Room]:
        return self.rooms.get(room_id)

    def get_room_by_caption(self, caption: str) -> Optional[Room]:
        for room in self.rooms.values():
            if room.caption == caption:
                return room
        self.log.error("Room not found with caption {}", caption)
        return None

    def get_subroom(self, room_id: int, subroom_id: int) -> Optional[SubRoom]:
        room = self.rooms.get(room_id)
        return room.get_subroom(subroom_id) if room is not None else None

    def get_subroom_by_uid(self, uid: int) -> Optional[SubRoom]:
        subroom = self._subrooms_by_uid.get(uid)
        if subroom is None:
            self.log.error("No subroom exists with the unique id {}", uid)
        return subroom

    def get_connector_by_uid(self, uid: int) -> Optional[Hline]:
        return self._by_uid.get(uid)

    def get_transition_by_caption(self, caption: str) -> Optional[Transition]:
        for transition in self.transitions.values():
            if transition.caption == caption:
                return transition
        self.log.warning("No transition with caption {}", caption)
        return None

    def doors(self) -> List[Crossing]:
        """All crossings and transitions."""
        return list(self.crossings.values()) + list(self.transitions.values())

    def exits(self) -> List[Transition]:
        return [t for t in self.transitions.values() if t.is_exit()]

    def is_visible(self, p1, p2, subrooms: Optional[List[SubRoom]] = None,
                   consider_hlines: bool = False) -> bool:
        """Line of sight between p1 and p2, blocked if blocked in any subroom considered."""
        candidates = subrooms if subrooms else self.all_subrooms()
        for subroom in candidates:
            if subroom is not None and not subroom.is_visible(p1, p2, consider_hlines):
                return False
        return True

    def locate(self, point: np.ndarray, hint: Optional[SubRoom] = None) -> Optional[SubRoom]:
        """Subroom containing point, checking the hint and its neighbours first."""
        if hint is not None:
            if hint.contains(point):
                return hint
            for neighbor in sorted(hint.neighbors, key=lambda s: s.uid):
                if neighbor.contains(point):
                    return neighbor
        for subroom in self.all_subrooms():
            if subroom is not hint and subroom.contains(point):
                return subroom
        return None

    # ------------------------------------------------------------------
    # Pedestrians
    # ------------------------------------------------------------------
    def add_pedestrian(self, ped: Pedestrian) -> bool:
        with self._lock:
            if ped.id in self.pedestrians:
                self.log.warning("Pedestrian {} is already in the building", ped.id)
                return False
            if self.get_subroom(ped.room_id, ped.subroom_id) is None:
                self.log.error("Pedestrian {} placed in the unknown subroom {}/{}",
                               ped.id, ped.room_id, ped.subroom_id)
                return False
            self.pedestrians[ped.id] = ped
            if self.grid is not None:
                self.grid.add(ped)
        return True

    def remove_pedestrian(self, ped) -> bool:
        """
        Detach a pedestrian from the live list, the grid and the routing
        bookkeeping in one step. Unknown pedestrians are logged and ignored.
        """
        ped_id = ped if isinstance(ped, int) else ped.id
        with self._lock:
            removed = self.pedestrians.pop(ped_id, None)
            if removed is None:
                self.log.error("Ped not found with ID {}", ped_id)
                return False
            if self.grid is not None:
                self.grid.remove(removed)
            if self.routing_engine is not None:
                self.routing_engine.remove_pedestrian(removed)
        return True

    def get_pedestrian(self, ped_id: int) -> Optional[Pedestrian]:
        return self.pedestrians.get(ped_id)

    def all_pedestrians(self) -> List[Pedestrian]:
        with self._lock:
            return list(self.pedestrians.values())

    def get_pedestrians(self, room_id: int, subroom_id: int) -> List[Pedestrian]:
        return [p for p in self.all_pedestrians() if p.room_id == room_id and p.subroom_id == subroom_id]

    def update_grid(self):
        self.grid.update(self.all_pedestrians())

    def neighbourhood(self, position: np.ndarray) -> List[Pedestrian]:
        return self.grid.get_neighbourhood(position)

    def door_statistics(self) -> List[dict]:
        return [{
            'uid': door.uid,
            'id': door.id,
            'kind': door.kind,
            'caption': door.caption,
            'exit': door.is_exit(),
            'usage': door.door_usage,
            'last_passing_time': door.last_passing_time,
        } for door in self.doors()]

    def __repr__(self) -> str:
        return (f"Building({self.caption!r}, rooms={len(self.rooms)}, "
                f"pedestrians={len(self.pedestrians)})")
