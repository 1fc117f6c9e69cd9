"""
Agent Sources
Injection of new pedestrians into the running simulation
"""

import numpy as np
from collections import deque
from typing import List, Optional

from loguru import logger
from scipy.spatial import QhullError, Voronoi, cKDTree

from .distributor import DEFAULT_BUFFER, SPAWN_SOURCE, PedDistributor, StartDistribution, has_clearance
from .exceptions import ConfigurationError


class AgentsSource:
    """
    Materialises agents at a given location every `frequency` frames.

    Generated agents wait in an internal pool until a free position is found;
    agents that cannot be placed go back to the front of the pool.
    """

    def __init__(self, source_id: int, max_agents: int, frequency: int,
                 start_distribution: StartDistribution, n_create: int = 1,
                 greedy: bool = False, caption: str = "", seed: int = 42):
        if max_agents < 0:
            raise ConfigurationError(f"Source {source_id}: max_agents must not be negative")
        if frequency < 1:
            raise ConfigurationError(f"Source {source_id}: frequency must be at least one frame")
        if source_id < 0:
            raise ConfigurationError(f"Source ids must not be negative, got {source_id}")
        if n_create < 1:
            raise ConfigurationError(f"Source {source_id}: n_create must be at least 1")

        self.id = source_id
        self.caption = caption or f"source {source_id}"
        self.max_agents = max_agents
        self.frequency = frequency
        self.n_create = n_create
        self.greedy = greedy
        self.start_distribution = start_distribution
        self.seed = seed
        self.rng = np.random.default_rng(np.random.SeedSequence([seed, source_id]))

        self.pool = deque()
        self.agents_generated = 0
        self.subroom = None
        self.candidates: List[np.ndarray] = []

    @property
    def group_id(self) -> int:
        return self.start_distribution.group_id

    @property
    def remaining_capacity(self) -> int:
        return self.max_agents - self.agents_generated

    @property
    def pool_size(self) -> int:
        return len(self.pool)

    def is_exhausted(self) -> bool:
        return self.agents_generated >= self.max_agents

    def generate_agents(self, count: int, time: float = 0.0) -> List:
        """Create count agents without touching the pool."""
        dist = self.start_distribution
        position = np.full(2, np.nan)
        first = self.agents_generated
        return [dist.create_pedestrian(position, self.subroom.room_id, self.subroom.id,
                                       self.rng, self.seed, time,
                                       spawn_key=(SPAWN_SOURCE, self.id, first + i))
                for i in range(count)]

    def generate_agents_and_add_to_pool(self, count: int, time: float = 0.0) -> int:
        """
        Generate up to count agents, never more than max_agents over the
        lifetime of the source.

        Returns:
            Number of agents generated
        """
        count = min(count, self.remaining_capacity)
        if count <= 0:
            return 0
        self.pool.extend(self.generate_agents(count, time))
        self.agents_generated += count
        return count

    def add_agents_to_pool(self, peds: List):
        """Put agents that could not be placed back at the front of the pool."""
        self.pool.extendleft(reversed(peds))

    def remove_agents_from_pool(self, count: int) -> List:
        count = min(count, len(self.pool))
        return [self.pool.popleft() for _ in range(count)]

    def __repr__(self) -> str:
        return (f"AgentsSource(id={self.id}, generated={self.agents_generated}/{self.max_agents}, "
                f"pool={self.pool_size}, frequency={self.frequency}, greedy={self.greedy})")


class AgentsSourcesManager:
    """
    Drives all sources: triggers generation at each source's frequency and
    places pending agents, either by searching the best candidate position
    (greedy) or by taking the first free slot.
    """

    greedy_samples = 30

    def __init__(self, sources: Optional[List[AgentsSource]] = None,
                 buffer: float = DEFAULT_BUFFER, log=None):
        self.sources: List[AgentsSource] = list(sources or [])
        self.buffer = buffer
        self.log = log or logger.bind(component="sources")

    def add_source(self, source: AgentsSource):
        if any(s.id == source.id for s in self.sources):
            raise ConfigurationError(f"Duplicate source id {source.id}")
        self.sources.append(source)

    def destinations(self) -> set:
        return {s.start_distribution.final_destination for s in self.sources}

    def init(self, building):
        """Resolve the subroom of every source and precompute its slots."""
        for source in self.sources:
            dist = source.start_distribution
            room = building.get_room(dist.room_id)
            if room is None:
                raise ConfigurationError(f"Source {source.id} references the unknown room {dist.room_id}")
            if dist.subroom_id == -1:
                if len(room.subrooms) != 1:
                    raise ConfigurationError(
                        f"Source {source.id}: room {dist.room_id} has several subrooms, give a subroom id")
                source.subroom = next(iter(room.subrooms.values()))
            else:
                source.subroom = room.get_subroom(dist.subroom_id)
                if source.subroom is None:
                    raise ConfigurationError(
                        f"Source {source.id} references the unknown subroom {dist.room_id}/{dist.subroom_id}")
            source.candidates = PedDistributor.possible_positions(
                source.subroom, dist.radius, self.buffer, dist.bounds)
            if not source.candidates:
                self.log.error("Source {} has no room to place agents", source.id)
            self.log.info("Source {} ready with {} slots", source.id, len(source.candidates))

    def is_completed(self) -> bool:
        return all(s.is_exhausted() and s.pool_size == 0 for s in self.sources)

    def process_all_sources(self, frame: int, time: float, building) -> List:
        """
        Generate at the configured frequency and admit what fits.

        Returns:
            Pedestrians inserted into the building this frame
        """
        admitted = []
        for source in self.sources:
            if frame % source.frequency == 0 and not source.is_exhausted():
                source.generate_agents_and_add_to_pool(source.n_create, time)
            if source.pool_size == 0:
                continue
            pending = source.remove_agents_from_pool(source.pool_size)
            placed, unplaced = self._place(source, pending, building, time)
            admitted.extend(placed)
            if unplaced:
                source.add_agents_to_pool(unplaced)
                self.log.debug("Source {}: {} agents wait for space", source.id, len(unplaced))
        return admitted

    # ------------------------------------------------------------------
    # Placement
    # ------------------------------------------------------------------
    def _occupied(self, source, building) -> List[np.ndarray]:
        subroom = source.subroom
        return [p.position for p in building.all_pedestrians()
                if p.room_id == subroom.room_id and p.subroom_id == subroom.id]

    def _place(self, source, pending: List, building, time: float):
        dist = source.start_distribution
        occupied = self._occupied(source, building)
        min_distance = 2 * dist.radius + self.buffer
        placed = []
        for index, ped in enumerate(pending):
            if source.greedy:
                position = self._best_candidate(source, occupied, min_distance)
            else:
                position = self._first_free_slot(source, occupied, min_distance)
            if position is None:
                return placed, pending[index:]
            ped.position = np.array(position, dtype=float)
            ped.previous_position = ped.position.copy()
            ped.spawn_time = time
            if building.add_pedestrian(ped):
                placed.append(ped)
                occupied.append(ped.position)
        return placed, []

    @staticmethod
    def _nearest_distances(points: np.ndarray, occupied: List[np.ndarray]) -> np.ndarray:
        if not occupied:
            return np.full(len(points), np.inf)
        distances, _ = cKDTree(np.asarray(occupied)).query(points)
        return np.atleast_1d(distances)

    def _first_free_slot(self, source, occupied, min_distance) -> Optional[np.ndarray]:
        if not source.candidates:
            return None
        candidates = np.asarray(source.candidates)
        free = np.flatnonzero(self._nearest_distances(candidates, occupied) >= min_distance)
        return candidates[free[0]] if len(free) else None

    def _best_candidate(self, source, occupied, min_distance) -> Optional[np.ndarray]:
        """
        Best-candidate search: Voronoi vertices of the agents already present
        plus random samples, scored by the distance to the nearest agent.
        """
        subroom = source.subroom
        dist = source.start_distribution
        clearance = dist.radius + self.buffer / 2
        x_min, x_max, y_min, y_max = subroom.bounds()
        if dist.bounds is not None:
            x_min, x_max = max(x_min, dist.bounds[0]), min(x_max, dist.bounds[1])
            y_min, y_max = max(y_min, dist.bounds[2]), min(y_max, dist.bounds[3])

        candidates = []
        if len(occupied) >= 4:
            try:
                vertices = Voronoi(np.asarray(occupied)).vertices
                candidates.extend(v for v in vertices
                                  if x_min <= v[0] <= x_max and y_min <= v[1] <= y_max)
            except QhullError:
                self.log.debug("Source {}: degenerate Voronoi input, sampling only", source.id)
        samples = source.rng.uniform((x_min, y_min), (x_max, y_max), size=(self.greedy_samples, 2))
        candidates.extend(samples)
        candidates.extend(source.candidates[:1])

        candidates = [np.asarray(c) for c in candidates if has_clearance(subroom, np.asarray(c), clearance)]
        if not candidates:
            return None
        points = np.asarray(candidates)
        scores = self._nearest_distances(points, occupied)
        best = int(np.argmax(scores))
        if scores[best] < min_distance:
            return self._first_free_slot(source, occupied, min_distance)
        return points[best]
