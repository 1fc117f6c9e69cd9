"""
Routing Engine
Global shortest-path, quickest-path and heuristic route choice over the door graph
"""

import numpy as np
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Set, Tuple

import networkx as nx
from loguru import logger

from .exceptions import ConfigurationError, RoutingError

ANY_EXIT = -1
# Pedestrians per metre of door width and second
SPECIFIC_FLOW = 1.9
FREE_SPEED = 1.34


def _dest_node(destination: int) -> tuple:
    return ('dest', destination)


def _exit_node(uid: int) -> tuple:
    return ('exit', uid)


def _door_node(uid: int, subroom_uid: int) -> tuple:
    """Standing in a door, about to enter the given subroom."""
    return ('door', uid, subroom_uid)


class Router(ABC):
    """
    Computes the next door for a pedestrian.

    All routers share the same side-aware door graph: a node is a door
    together with the subroom it leads into, an exit node stands for having
    left the building through an exit, and destination nodes are the final
    goals (plus -1 for "any exit").
    """

    name = "router"

    def __init__(self, config=None, log=None):
        self.config = config
        self.log = log or logger.bind(component=f"router.{self.name}")
        self.building = None
        self.graph: Optional[nx.DiGraph] = None
        # door uid -> ids of pedestrians heading to it
        self._targets: Dict[int, Set[int]] = {}
        self._assignment: Dict[int, int] = {}

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------
    def init(self, building):
        self.building = building
        self.build_graph()

    def edge_weight(self, source, target, subroom) -> float:
        """Cost of walking from door source to door target through subroom."""
        return float(np.linalg.norm(target.centre - source.centre))

    def exit_weight(self, transition, goal) -> float:
        """Cost of walking from an exit to a goal outside the building."""
        return float(np.linalg.norm(goal.centroid - transition.centre))

    def _far_node(self, door, subroom) -> tuple:
        if door.is_exit():
            return _exit_node(door.uid)
        return _door_node(door.uid, door.other_subroom(subroom).uid)

    def build_graph(self):
        graph = nx.DiGraph()
        building = self.building
        graph.add_node(_dest_node(ANY_EXIT))
        for goal in building.goals.values():
            graph.add_node(_dest_node(goal.id))

        for subroom in building.all_subrooms():
            doors = [d for d in subroom.doors if d.is_open]
            for door in doors:
                if door.is_exit():
                    continue
                entering = _door_node(door.uid, subroom.uid)
                graph.add_node(entering)
                for other in doors:
                    if other is door:
                        continue
                    graph.add_edge(entering, self._far_node(other, subroom),
                                   weight=self.edge_weight(door, other, subroom))

        for transition in building.exits():
            if not transition.is_open:
                continue
            node = _exit_node(transition.uid)
            graph.add_edge(node, _dest_node(ANY_EXIT), weight=0.0)
            for goal in building.goals.values():
                if not goal.is_final:
                    continue
                if transition.goal_id is None or transition.goal_id == goal.id:
                    graph.add_edge(node, _dest_node(goal.id), weight=self.exit_weight(transition, goal))

        self.graph = graph
        self.on_graph_built()

    def on_graph_built(self):
        """Hook for routers precomputing tables from the graph."""

    def reachable_destinations(self) -> Set[int]:
        return {n[1] for n in self.graph.nodes if n[0] == 'dest' and self.graph.in_degree(n) > 0}

    def candidate_doors(self, ped):
        """Open doors of the pedestrian's subroom with the node they lead to."""
        subroom = self.building.get_subroom(ped.room_id, ped.subroom_id)
        if subroom is None:
            return None, []
        return subroom, [(d, self._far_node(d, subroom)) for d in subroom.doors if d.is_open]

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def assign(self, ped, uid: int):
        previous = self._assignment.get(ped.id)
        if previous == uid:
            return
        if previous is not None:
            self._targets.get(previous, set()).discard(ped.id)
        self._assignment[ped.id] = uid
        self._targets.setdefault(uid, set()).add(ped.id)

    def remove_pedestrian(self, ped):
        previous = self._assignment.pop(ped.id, None)
        if previous is not None:
            self._targets.get(previous, set()).discard(ped.id)

    def is_tracking(self, ped_id: int) -> bool:
        return ped_id in self._assignment

    def heading_to(self, uid: int) -> int:
        return len(self._targets.get(uid, ()))

    # ------------------------------------------------------------------
    # Interface
    # ------------------------------------------------------------------
    @abstractmethod
    def find_exit(self, ped) -> Optional[int]:
        """
        Choose the next door for a pedestrian.

        Returns:
            Unique id of the door, or None if no destination is reachable
        """

    def update(self, frame: int, time: float) -> bool:
        """
        Periodic refresh called once per frame.

        Returns:
            True if the routes of all pedestrians became stale
        """
        return False


class GlobalShortestRouter(Router):
    """
    Precomputes the distance of every graph node to every destination once.
    Queries then only compare the doors of the current subroom.
    """

    name = "global_shortest"

    def __init__(self, config=None, log=None):
        super().__init__(config, log)
        self.distances: Dict[tuple, Dict[int, float]] = {}

    def on_graph_built(self):
        self.distances = {}
        reverse = self.graph.reverse(copy=False)
        for node in self.graph.nodes:
            if node[0] != 'dest':
                continue
            lengths = nx.single_source_dijkstra_path_length(reverse, node, weight='weight')
            for source, length in lengths.items():
                self.distances.setdefault(source, {})[node[1]] = length
        self.log.info("Distance table built: {} nodes, {} edges",
                      self.graph.number_of_nodes(), self.graph.number_of_edges())

    def door_cost(self, ped, door) -> float:
        return float(np.linalg.norm(door.closest_point(ped.position) - ped.position))

    def find_exit(self, ped) -> Optional[int]:
        subroom, candidates = self.candidate_doors(ped)
        best_uid = None
        best_cost = float('inf')
        for door, node in candidates:
            remaining = self.distances.get(node, {}).get(ped.final_destination)
            if remaining is None:
                continue
            cost = self.door_cost(ped, door) + remaining
            if cost < best_cost:
                best_cost = cost
                best_uid = door.uid
        if best_uid is not None:
            self.assign(ped, best_uid)
        return best_uid


class QuickestRouter(GlobalShortestRouter):
    """
    Same graph, weighted by travel time plus the queueing delay in front of
    each door. A door is re-measured once its door tick reaches the refresh
    interval; the table is only rebuilt when some door was re-measured.
    """

    name = "quickest"

    def __init__(self, config=None, log=None):
        super().__init__(config, log)
        self.refresh_frames = getattr(config, 'quickest_refresh_frames', 100)
        self.delays: Dict[int, float] = {}

    def init(self, building):
        self.building = building
        self._measure(building.doors())
        self.build_graph()

    def _measure(self, doors) -> bool:
        changed = False
        for door in doors:
            capacity = max(door.width, 0.1) * SPECIFIC_FLOW
            delay = self.heading_to(door.uid) / capacity
            if abs(delay - self.delays.get(door.uid, 0.0)) > 1e-9:
                changed = True
            self.delays[door.uid] = delay
            door.reset_door_tick()
        return changed

    def edge_weight(self, source, target, subroom) -> float:
        distance = float(np.linalg.norm(target.centre - source.centre))
        return distance / FREE_SPEED + self.delays.get(target.uid, 0.0)

    def exit_weight(self, transition, goal) -> float:
        return float(np.linalg.norm(goal.centroid - transition.centre)) / FREE_SPEED

    def door_cost(self, ped, door) -> float:
        distance = float(np.linalg.norm(door.closest_point(ped.position) - ped.position))
        return distance / max(ped.desired_speed, 0.1) + self.delays.get(door.uid, 0.0)

    def update(self, frame: int, time: float) -> bool:
        due = [d for d in self.building.doors() if d.door_tick >= self.refresh_frames]
        if not due:
            return False
        if self._measure(due):
            self.build_graph()
            self.log.debug("Frame {}: travel times refreshed for {} doors", frame, len(due))
            return True
        return False


class HeuristicRouter(Router):
    """
    Local decision procedure: among the doors visible from the pedestrian,
    take the one minimising walking distance, straight-line distance to the
    destination and crowding, avoiding the door just passed when possible.
    Only reachability is precomputed.
    """

    name = "heuristic"
    crowding_weight = 0.5

    def __init__(self, config=None, log=None):
        super().__init__(config, log)
        self.reachable: Dict[int, Set[tuple]] = {}

    def on_graph_built(self):
        self.reachable = {}
        for node in self.graph.nodes:
            if node[0] == 'dest':
                self.reachable[node[1]] = nx.ancestors(self.graph, node)

    def _destination_points(self, destination: int) -> List[np.ndarray]:
        if destination == ANY_EXIT:
            return [t.centre for t in self.building.exits() if t.is_open]
        goal = self.building.goals.get(destination)
        return [goal.centroid] if goal is not None else []

    def find_exit(self, ped) -> Optional[int]:
        subroom, candidates = self.candidate_doors(ped)
        reachable = self.reachable.get(ped.final_destination, set())
        candidates = [(d, n) for d, n in candidates if n in reachable]
        if not candidates:
            return None

        visible = [(d, n) for d, n in candidates
                   if self.building.is_visible(ped.position, d.closest_point(ped.position), [subroom])]
        if visible:
            candidates = visible
        if len(candidates) > 1:
            candidates = [(d, n) for d, n in candidates if d.uid != ped.last_door_uid] or candidates

        targets = self._destination_points(ped.final_destination)
        best_uid = None
        best_cost = float('inf')
        for door, _ in candidates:
            walk = float(np.linalg.norm(door.closest_point(ped.position) - ped.position))
            if door.is_exit() and ped.final_destination == ANY_EXIT:
                ahead = 0.0
            else:
                ahead = min(float(np.linalg.norm(p - door.centre)) for p in targets) if targets else 0.0
            crowding = self.crowding_weight * self.heading_to(door.uid) / max(door.width, 0.1)
            cost = walk + ahead + crowding
            if cost < best_cost:
                best_cost = cost
                best_uid = door.uid
        self.assign(ped, best_uid)
        return best_uid


ROUTERS = {
    GlobalShortestRouter.name: GlobalShortestRouter,
    QuickestRouter.name: QuickestRouter,
    HeuristicRouter.name: HeuristicRouter,
}


class RoutingEngine:
    """
    Owns the router selected by configuration and applies its decisions to
    pedestrians. Agents that cannot reach their destination are marked
    unroutable and skipped afterwards.
    """

    def __init__(self, name: str = "global_shortest", config=None, log=None):
        if name not in ROUTERS:
            raise ConfigurationError(f"Unknown routing engine '{name}'")
        self.log = log or logger.bind(component="routing")
        self.router: Router = ROUTERS[name](config)
        self.building = None

    @classmethod
    def from_config(cls, config) -> "RoutingEngine":
        return cls(config.routing, config)

    @property
    def name(self) -> str:
        return self.router.name

    def init(self, building, destinations: Iterable[int] = ()):
        """
        Build the routing graph. Must run after the geometry was initialised.

        Raises:
            RoutingError: no exit exists, or a configured destination is unknown or unreachable
        """
        self.building = building
        building.routing_engine = self
        if not building.exits():
            raise RoutingError("The building has no exit")
        for destination in set(destinations):
            if destination != -1 and destination not in building.goals:
                raise RoutingError(f"Destination {destination} is not a known goal")

        self.router.init(building)
        reachable = self.router.reachable_destinations()
        for destination in set(destinations):
            if destination not in reachable:
                raise RoutingError(f"No exit leads to destination {destination}")
        self.log.info("Routing engine '{}' initialized", self.name)

    def find_exit(self, ped) -> Optional[int]:
        if ped.unroutable:
            return None
        uid = self.router.find_exit(ped)
        if uid is None:
            ped.mark_unroutable()
            self.router.remove_pedestrian(ped)
            self.log.warning("Pedestrian {} in subroom {}/{} cannot reach destination {}",
                             ped.id, ped.room_id, ped.subroom_id, ped.final_destination)
            return None
        ped.set_exit(uid, self.building.get_connector_by_uid(uid))
        return uid

    def update_routes(self, pedestrians: Iterable) -> int:
        """Refresh the target of every pedestrian whose route is stale."""
        refreshed = 0
        for ped in pedestrians:
            if ped.route_stale and not ped.unroutable:
                self.find_exit(ped)
                refreshed += 1
        return refreshed

    def update(self, frame: int, time: float):
        if self.router.update(frame, time):
            self._invalidate_all()

    def on_topology_change(self):
        """Doors opened or closed: rebuild the graph and re-route everybody."""
        self.router.build_graph()
        for ped in self.building.all_pedestrians():
            ped.unroutable = False
        self._invalidate_all()

    def _invalidate_all(self):
        for ped in self.building.all_pedestrians():
            if not ped.unroutable:
                ped.route_stale = True

    def remove_pedestrian(self, ped):
        self.router.remove_pedestrian(ped)

    def is_tracking(self, ped_id: int) -> bool:
        return self.router.is_tracking(ped_id)
