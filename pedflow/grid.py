"""
Linked-Cell Grid
Uniform spatial hash for near-constant-time neighbour queries
"""

import threading
import numpy as np
from typing import Dict, List, Optional, Tuple

from loguru import logger


class LinkedCellGrid:
    """
    Buckets live pedestrians by cell. A neighbourhood query returns the
    pedestrians of the queried cell and its 8 adjacent cells.

    The grid is rebuilt eagerly once per integration step. Between rebuilds,
    single insertions and removals keep the buckets consistent.
    """

    def __init__(self, boundaries: Tuple[float, float, float, float], cell_size: float, log=None):
        self.log = log or logger.bind(component="grid")
        self.x_min, self.x_max, self.y_min, self.y_max = (float(b) for b in boundaries)
        width = self.x_max - self.x_min
        height = self.y_max - self.y_min
        if width <= 0 or height <= 0:
            raise ValueError(f"Degenerate grid boundaries {boundaries}")

        if cell_size == -1:
            # One cell covering the domain: every query is a brute-force scan
            self.log.info("Brute force will be used for neighbourhood queries")
            cell_size = max(width, height)
        else:
            self.log.info("Initializing the grid with cell size: {:.2f}", cell_size)

        self.cell_size = float(cell_size)
        self.nx = max(1, int(np.ceil(width / self.cell_size)))
        self.ny = max(1, int(np.ceil(height / self.cell_size)))

        self._cells: Dict[Tuple[int, int], List] = {}
        self._where: Dict[int, Tuple[int, int]] = {}
        self._lock = threading.Lock()

    @property
    def boundaries(self) -> Tuple[float, float, float, float]:
        return self.x_min, self.x_max, self.y_min, self.y_max

    def cell_of(self, position: np.ndarray) -> Optional[Tuple[int, int]]:
        """Grid indices of the cell holding position, None outside the domain."""
        ix = int(np.floor((position[0] - self.x_min) / self.cell_size))
        iy = int(np.floor((position[1] - self.y_min) / self.cell_size))
        if 0 <= ix < self.nx and 0 <= iy < self.ny:
            return ix, iy
        return None

    def cell_bounds(self, ix: int, iy: int) -> Tuple[float, float, float, float]:
        x0 = self.x_min + ix * self.cell_size
        y0 = self.y_min + iy * self.cell_size
        return x0, x0 + self.cell_size, y0, y0 + self.cell_size

    def update(self, pedestrians: List):
        """Re-bucket every pedestrian."""
        cells: Dict[Tuple[int, int], List] = {}
        where: Dict[int, Tuple[int, int]] = {}
        for ped in pedestrians:
            key = self.cell_of(ped.position)
            if key is None:
                self.log.warning("Pedestrian {} at ({:.2f}, {:.2f}) is outside the grid",
                                 ped.id, ped.position[0], ped.position[1])
                continue
            cells.setdefault(key, []).append(ped)
            where[ped.id] = key

        with self._lock:
            self._cells = cells
            self._where = where

    def add(self, ped) -> bool:
        key = self.cell_of(ped.position)
        if key is None:
            self.log.warning("Pedestrian {} inserted outside the grid", ped.id)
            return False
        with self._lock:
            if ped.id in self._where:
                return False
            self._cells.setdefault(key, []).append(ped)
            self._where[ped.id] = key
        return True

    def remove(self, ped) -> bool:
        with self._lock:
            key = self._where.pop(ped.id, None)
            if key is None:
                return False
            self._cells[key] = [p for p in self._cells[key] if p.id != ped.id]
        return True

    def get_neighbourhood(self, position: np.ndarray) -> List:
        """Pedestrians in the cell of position and the adjacent cells."""
        key = self.cell_of(position)
        if key is None:
            return []
        ix, iy = key
        neighbours = []
        with self._lock:
            for i in range(max(0, ix - 1), min(self.nx, ix + 2)):
                for j in range(max(0, iy - 1), min(self.ny, iy + 2)):
                    neighbours.extend(self._cells.get((i, j), ()))
        return neighbours

    def cell_members(self, ix: int, iy: int) -> List:
        with self._lock:
            return list(self._cells.get((ix, iy), ()))

    def __contains__(self, ped) -> bool:
        return ped.id in self._where

    def __len__(self) -> int:
        return len(self._where)
