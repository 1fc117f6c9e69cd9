"""
Pedestrian Distributor
Initial placement of agents in their start subrooms
"""

import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Tuple

from loguru import logger

from .agent import Pedestrian
from .exceptions import ConfigurationError

# Extra free space between two bodies and between a body and a wall (m)
DEFAULT_BUFFER = 0.1

# First entry of a pedestrian's spawn key, one stream per origin
SPAWN_DISTRIBUTED = 0
SPAWN_SOURCE = 1


@dataclass
class StartDistribution:
    """Where and how many agents start, and with which parameters."""

    room_id: int
    subroom_id: int = -1
    number: int = 0
    density: Optional[float] = None
    group_id: int = -1
    final_destination: int = -1
    speed_mean: float = 1.34
    speed_std: float = 0.26
    radius: float = 0.2
    bounds: Optional[Tuple[float, float, float, float]] = None

    def __post_init__(self):
        if self.number < 0:
            raise ConfigurationError(f"Start distribution in room {self.room_id}: negative number of agents")
        if self.density is not None and self.density < 0:
            raise ConfigurationError(f"Start distribution in room {self.room_id}: negative density")
        if self.radius <= 0:
            raise ConfigurationError(f"Start distribution in room {self.room_id}: radius must be positive")
        if self.bounds is not None:
            self.bounds = tuple(float(b) for b in self.bounds)
            if len(self.bounds) != 4:
                raise ConfigurationError("bounds must be (x_min, x_max, y_min, y_max)")

    def create_pedestrian(self, position, room_id: int, subroom_id: int,
                          rng: np.random.Generator, seed: int, time: float = 0.0,
                          spawn_key: Optional[Tuple[int, ...]] = None) -> Pedestrian:
        speed = float(np.clip(rng.normal(self.speed_mean, self.speed_std),
                              0.3 * self.speed_mean, 2.0 * self.speed_mean))
        return Pedestrian(
            position=position,
            room_id=room_id,
            subroom_id=subroom_id,
            desired_speed=speed,
            radius=self.radius,
            final_destination=self.final_destination,
            group_id=self.group_id,
            seed=seed,
            spawn_time=time,
            spawn_key=spawn_key,
        )


def has_clearance(subroom, point: np.ndarray, clearance: float) -> bool:
    """Point lies in the subroom and keeps clearance to every wall and door."""
    if not subroom.contains(point):
        return False
    lines = list(subroom.walls) + list(subroom.doors)
    for obstacle in subroom.obstacles:
        lines.extend(obstacle.walls)
    return all(line.distance_to(point) >= clearance for line in lines)


class PedDistributor:
    """
    Places the pedestrians of every start distribution on a grid of free
    positions inside their subroom.
    """

    def __init__(self, distributions: List[StartDistribution], seed: int = 42,
                 buffer: float = DEFAULT_BUFFER, log=None):
        self.distributions = list(distributions)
        self.seed = seed
        self.buffer = buffer
        self.rng = np.random.default_rng(seed)
        self._spawned = 0
        self.log = log or logger.bind(component="distributor")

    @staticmethod
    def possible_positions(subroom, radius: float = 0.2, buffer: float = DEFAULT_BUFFER,
                           bounds: Optional[Tuple[float, float, float, float]] = None) -> List[np.ndarray]:
        """
        Grid of candidate positions filling the subroom.

        Args:
            subroom: Subroom to fill
            radius: Body radius of the agents
            buffer: Extra space between bodies and to walls
            bounds: Optional (x_min, x_max, y_min, y_max) restricting the area

        Returns:
            Candidate positions, row by row
        """
        spacing = 2 * radius + buffer
        clearance = radius + buffer / 2
        x_min, x_max, y_min, y_max = subroom.bounds()
        if bounds is not None:
            x_min, x_max = max(x_min, bounds[0]), min(x_max, bounds[1])
            y_min, y_max = max(y_min, bounds[2]), min(y_max, bounds[3])

        positions = []
        for y in np.arange(y_min + clearance, y_max - clearance + 1e-9, spacing):
            for x in np.arange(x_min + clearance, x_max - clearance + 1e-9, spacing):
                point = np.array([x, y])
                if has_clearance(subroom, point, clearance):
                    positions.append(point)
        return positions

    def destinations(self) -> set:
        return {d.final_destination for d in self.distributions}

    def _subrooms_of(self, building, dist: StartDistribution) -> list:
        room = building.get_room(dist.room_id)
        if room is None:
            raise ConfigurationError(f"Start distribution references the unknown room {dist.room_id}")
        if dist.subroom_id == -1:
            return list(room.subrooms.values())
        subroom = room.get_subroom(dist.subroom_id)
        if subroom is None:
            raise ConfigurationError(
                f"Start distribution references the unknown subroom {dist.room_id}/{dist.subroom_id}")
        return [subroom]

    @staticmethod
    def _split_by_area(number: int, subrooms: list) -> List[int]:
        total = sum(s.area for s in subrooms)
        if total <= 0:
            return [0] * len(subrooms)
        shares = [number * s.area / total for s in subrooms]
        counts = [int(np.floor(s)) for s in shares]
        remainder = number - sum(counts)
        order = np.argsort([c - s for c, s in zip(counts, shares)], kind='stable')
        for i in order[:remainder]:
            counts[i] += 1
        return counts

    def distribute(self, building) -> int:
        """
        Place all start distributions into the building.

        Returns:
            Number of agents placed
        """
        self._spawned = 0
        placed = 0
        for dist in self.distributions:
            subrooms = self._subrooms_of(building, dist)
            if dist.density is not None:
                number = int(round(dist.density * sum(s.area for s in subrooms)))
            else:
                number = dist.number

            for subroom, count in zip(subrooms, self._split_by_area(number, subrooms)):
                # Fresh slots every time: earlier distributions may have used
                # other bounds in the same subroom
                positions = self.possible_positions(subroom, dist.radius, self.buffer, dist.bounds)
                free = self._drop_occupied(positions, building, subroom, dist.radius)
                placed += self.distribute_in_subroom(count, free, subroom, dist, building)

        self.log.info("Distributed {} pedestrians", placed)
        return placed

    def _drop_occupied(self, positions, building, subroom, radius) -> List[np.ndarray]:
        others = building.get_pedestrians(subroom.room_id, subroom.id)
        if not others:
            return positions
        keep = []
        for p in positions:
            if all(np.linalg.norm(p - o.position) >= radius + o.radius + self.buffer for o in others):
                keep.append(p)
        return keep

    def distribute_in_subroom(self, number: int, positions: List[np.ndarray], subroom,
                              dist: StartDistribution, building) -> int:
        """Bind up to number agents to randomly chosen free positions, consuming them."""
        if number > len(positions):
            self.log.error("Cannot distribute {} agents in subroom {}/{}: only {} free positions",
                           number, subroom.room_id, subroom.id, len(positions))
            number = len(positions)
        if number <= 0:
            return 0

        chosen = sorted(self.rng.permutation(len(positions))[:number].tolist(), reverse=True)
        placed = 0
        for index in chosen:
            position = positions.pop(index)
            ped = dist.create_pedestrian(position, subroom.room_id, subroom.id, self.rng, self.seed,
                                         spawn_key=(SPAWN_DISTRIBUTED, self._spawned))
            self._spawned += 1
            if building.add_pedestrian(ped):
                placed += 1
        return placed
