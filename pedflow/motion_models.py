"""
Operational Model
Social force velocity update and the parallel integration step
"""

import numpy as np
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from loguru import logger

from .config import DEFAULT_MODEL


class SocialForceModel:
    """
    Social Force Model (Helbing et al. 1995)
    Simulates pedestrian dynamics using attractive and repulsive forces.

    compute_velocity() only reads shared state and returns the new velocity,
    so it can run for many pedestrians at once.
    """

    def __init__(self, params: Optional[dict] = None):
        config = dict(DEFAULT_MODEL)
        config.update(params or {})
        self.tau = config['relaxation_time']
        self.agent_strength = config['agent_strength']
        self.agent_range = config['agent_range']
        self.wall_strength = config['wall_strength']
        self.wall_range = config['wall_range']
        self.neighbor_cutoff = config['neighbor_cutoff']
        self.wall_cutoff = config['wall_cutoff']
        self.noise_factor = config['noise_factor']
        self.max_speed_factor = config['max_speed_factor']

    def compute_velocity(self, ped, neighbours: List, subroom, dt: float) -> np.ndarray:
        """
        Compute the velocity of a pedestrian for the next step.

        Args:
            ped: The pedestrian to update
            neighbours: Pedestrians returned by the grid neighbourhood query
            subroom: The pedestrian's current subroom
            dt: Time step

        Returns:
            New velocity vector
        """
        # 1. Driving force toward the target door
        target = ped.target_point()
        desired_velocity = np.zeros(2)
        if target is not None:
            direction = target - ped.position
            dist_to_target = np.linalg.norm(direction)
            if dist_to_target > 1e-3:
                desired_velocity = ped.desired_speed * direction / dist_to_target
            elif ped.exit_line is not None:
                # Standing on the door line: keep walking through it
                desired_velocity = ped.desired_speed * self._through_door(ped, subroom)
        driving_force = (desired_velocity - ped.velocity) / self.tau

        # 2. Repulsive forces from other pedestrians
        agent_repulsion = np.zeros(2)
        for neighbour in neighbours:
            if neighbour.id == ped.id:
                continue
            diff = ped.position - neighbour.position
            dist = np.linalg.norm(diff)
            if dist > self.neighbor_cutoff:
                continue
            if dist < 0.01:
                diff = ped.rng.standard_normal(2)
                dist = max(np.linalg.norm(diff), 0.01)
            combined_radius = ped.radius + neighbour.radius
            force_magnitude = self.agent_strength * np.exp((combined_radius - dist) / self.agent_range)
            agent_repulsion += force_magnitude * diff / dist

        # 3. Repulsive forces from walls, obstacles and closed doors
        wall_repulsion = np.zeros(2)
        lines = subroom.blocking_lines() if subroom is not None else []
        for line in lines:
            closest = line.closest_point(ped.position)
            diff = ped.position - closest
            dist = np.linalg.norm(diff)
            if dist > self.wall_cutoff or dist < 1e-6:
                continue
            force_magnitude = self.wall_strength * np.exp((ped.radius - dist) / self.wall_range)
            wall_repulsion += force_magnitude * diff / dist

        # 4. Random noise drawn from the pedestrian's own generator
        noise = ped.rng.standard_normal(2) * self.noise_factor * ped.desired_speed

        total_force = driving_force + agent_repulsion + wall_repulsion + noise
        new_velocity = ped.velocity + total_force * dt

        speed = np.linalg.norm(new_velocity)
        max_speed = ped.desired_speed * self.max_speed_factor
        if speed > max_speed:
            new_velocity = new_velocity * (max_speed / speed)

        # Never step through a wall: slide along it instead
        step_end = ped.position + new_velocity * dt
        for line in lines:
            if line.crosses(ped.position, step_end):
                tangent = (line.p2 - line.p1) / max(line.length, 1e-9)
                new_velocity = np.dot(new_velocity, tangent) * tangent
                step_end = ped.position + new_velocity * dt
                if any(other.crosses(ped.position, step_end) for other in lines):
                    return np.zeros(2)
                break
        return new_velocity

    @staticmethod
    def _through_door(ped, subroom) -> np.ndarray:
        line = ped.exit_line
        d = line.p2 - line.p1
        normal = np.array([-d[1], d[0]]) / max(np.linalg.norm(d), 1e-9)
        # Point the normal away from the current subroom
        if subroom is not None and subroom.contains(line.centre + 0.05 * normal):
            normal = -normal
        return normal


class MotionController:
    """
    Runs the operational model for every pedestrian of a frame.

    Velocities are computed from frame-N state, possibly on worker threads,
    and applied only after all of them are known.
    """

    def __init__(self, params: Optional[dict] = None, num_threads: int = 1, log=None):
        self.model = SocialForceModel(params)
        self.num_threads = max(1, num_threads)
        self.log = log or logger.bind(component="motion")
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.num_threads > 1:
            self._executor = ThreadPoolExecutor(max_workers=self.num_threads,
                                                thread_name_prefix="pedflow-motion")

    def _velocity_of(self, ped, building, dt: float) -> np.ndarray:
        subroom = building.get_subroom(ped.room_id, ped.subroom_id)
        neighbours = building.neighbourhood(ped.position)
        return self.model.compute_velocity(ped, neighbours, subroom, dt)

    def compute_velocities(self, pedestrians: List, building, dt: float) -> List[np.ndarray]:
        if self._executor is None or len(pedestrians) < 2:
            return [self._velocity_of(ped, building, dt) for ped in pedestrians]
        return list(self._executor.map(lambda ped: self._velocity_of(ped, building, dt), pedestrians))

    def integrate(self, pedestrians: List, building, dt: float):
        """Update velocity and position of all pedestrians by one step."""
        velocities = self.compute_velocities(pedestrians, building, dt)
        for ped, velocity in zip(pedestrians, velocities):
            ped.update_position(velocity, dt)

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
