"""
Simulation Engine
Main time-stepping loop and coordination
"""

import threading
import time
import numpy as np
from typing import Dict, List, Optional

from loguru import logger

from .building import Building
from .config import SimulationConfig
from .distributor import PedDistributor
from .events import EventManager
from .exceptions import PedflowError
from .motion_models import MotionController
from .routing import RoutingEngine
from .sources import AgentsSourcesManager
from .trajectories import TrajectoryWriter

# Lifecycle states, in order
CREATED = "created"
INITIALISED = "initialised"
HEADER = "header"
BODY = "body"
FOOTER = "footer"
FINISHED = "finished"

# Distance below which an agent is considered to stand on a door line (m)
DOOR_TOLERANCE = 1e-3


class Simulation:
    """
    Main simulation engine that coordinates all components.

    Owns the building, the routing engine, the operational model, the agent
    sources and the event manager, and drives the fixed-order frame loop:

        0. abort check, due events
        1. source arrivals
        2. door ticks
        3. stale routes
        4. velocity/position integration (parallel, barrier at the end)
        5. location update, door usage, removal of agents that left
        6. grid rebuild
        7. trajectory frame at the output cadence
    """

    def __init__(self, config: SimulationConfig, building: Building,
                 distributions=(), sources=(), events=(),
                 writer: Optional[TrajectoryWriter] = None, log=None):
        self.config = config
        self.building = building
        self.log = log or logger.bind(component="simulation")
        self.dt = config.time_step

        self.distributor = PedDistributor(distributions, seed=config.seed)
        self.sources = AgentsSourcesManager(list(sources))
        self.events = EventManager(list(events))
        self.routing_engine = RoutingEngine.from_config(config)
        self.motion = MotionController(config.model_parameters(), num_threads=config.threads)
        self.writer = writer

        # Simulation state
        self.state = CREATED
        self.frame = 0
        self.current_time = 0.0
        self.exited = 0
        self.leaked = 0
        # Door passages of pedestrians no longer in the building
        self._finished_paths: Dict[int, list] = {}
        self._abort = threading.Event()

    @classmethod
    def from_scenario(cls, scenario, writer: Optional[TrajectoryWriter] = None) -> "Simulation":
        return cls(scenario.config, scenario.building, scenario.distributions,
                   scenario.sources, scenario.events, writer=writer)

    def _expect(self, *states):
        if self.state not in states:
            raise PedflowError(f"Simulation is '{self.state}', expected one of {states}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def init(self):
        """
        Prepare the run. Any ConfigurationError raised here means no frame
        will ever execute.
        """
        self._expect(CREATED)
        self.log.info("Initialising simulation: {}", self.config)
        self.building.init_geometry()
        self.distributor.distribute(self.building)
        self.building.init_grid(self.config.linked_cell_size)

        destinations = self.distributor.destinations() | self.sources.destinations()
        self.routing_engine.init(self.building, destinations)
        self.sources.init(self.building)
        self.events.init(self.building, self.routing_engine)

        if self.config.sanity_check:
            self.building.sanity_check()
        self.state = INITIALISED
        self.log.info("Simulation initialised with {} pedestrians", len(self.building.pedestrians))

    def abort(self):
        """Request termination at the next frame boundary. Safe to call from any thread."""
        self._abort.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def run_header(self):
        self._expect(INITIALISED)
        self.log.info("=" * 60)
        self.log.info("Starting pedestrian simulation '{}'", self.building.caption)
        self.log.info("Time step: {}s, output every {} frames, routing: {}",
                      self.dt, self.config.output_every, self.routing_engine.name)
        self.log.info("Pedestrians: {}, sources: {}, exits: {}",
                      len(self.building.pedestrians), len(self.sources.sources), len(self.building.exits()))
        self.log.info("=" * 60)
        if self.writer is not None:
            self.writer.write_header(len(self.building.pedestrians), self.config.fps, self.building)
            self._write_frame()
        self.state = HEADER

    def run_body(self, max_time: Optional[float] = None) -> float:
        """
        Run frames until every agent has left and every source is exhausted,
        max_time is reached or the run is aborted.

        Returns:
            Simulated time in seconds
        """
        self._expect(HEADER)
        self.state = BODY
        max_time = self.config.max_sim_time if max_time is None else max_time
        progress_every = max(1, int(round(5.0 / self.dt)))
        start_time = time.time()

        while self.current_time < max_time - 1e-9:
            if self._abort.is_set():
                self.log.warning("Run aborted at t={:.2f}s", self.current_time)
                break
            if not self.building.pedestrians and self.sources.is_completed():
                break
            self._step()
            if self.frame % progress_every == 0:
                self.log.info("Time: {:.1f}s | Active: {} | Exited: {}",
                              self.current_time, len(self.building.pedestrians), self.exited)

        elapsed = time.time() - start_time
        self.log.info("Simulated time: {:.2f}s in {} frames ({:.1f}s real time)",
                      self.current_time, self.frame, elapsed)
        return self.current_time

    def run_footer(self):
        self._expect(BODY)
        self.state = FOOTER
        for stats in self.building.door_statistics():
            if stats['usage'] or stats['exit']:
                self.log.info("{} {} ({}): used {} times, last passing at {:.2f}s",
                              stats['kind'], stats['id'], stats['caption'] or '-',
                              stats['usage'], stats['last_passing_time'])
        unroutable = sum(1 for p in self.building.all_pedestrians() if p.unroutable)
        if unroutable:
            self.log.warning("{} pedestrians could not reach their destination", unroutable)
        if self.leaked:
            self.log.warning("{} pedestrians left the geometry through a wall", self.leaked)
        self.log.info("{} pedestrians exited, {} remain", self.exited, len(self.building.pedestrians))

        if self.writer is not None:
            self.writer.write_pathways(self.pathways(), self.building)
            self.writer.write_footer()
        self.motion.close()
        self.state = FINISHED

    def run_standard_simulation(self, max_time: Optional[float] = None) -> float:
        """Initialise if needed, then run header, body and footer."""
        if self.state == CREATED:
            self.init()
        self.run_header()
        try:
            return self.run_body(max_time)
        finally:
            self.run_footer()

    # ------------------------------------------------------------------
    # Frame
    # ------------------------------------------------------------------
    def _step(self):
        """Execute a single simulation frame."""
        building = self.building
        t = self.current_time

        self.events.process(t)

        admitted = self.sources.process_all_sources(self.frame, t, building)
        if admitted:
            self.log.debug("Frame {}: {} pedestrians admitted", self.frame, len(admitted))

        for door in building.doors():
            door.tick()

        self.routing_engine.update(self.frame, t)
        pedestrians = building.all_pedestrians()
        self.routing_engine.update_routes(pedestrians)

        self.motion.integrate(pedestrians, building, self.dt)

        self.frame += 1
        self.current_time = self.frame * self.dt
        for ped in pedestrians:
            self._update_location(ped)

        building.update_grid()

        if self.writer is not None and self.frame % self.config.output_every == 0:
            self._write_frame()

    def _write_frame(self):
        records = [p.to_record() for p in self.building.all_pedestrians()]
        self.writer.write_frame(self.frame, self.current_time, records)

    def _passed_door(self, ped, subroom):
        for door in subroom.doors:
            if not door.is_open:
                continue
            if door.crosses(ped.previous_position, ped.position):
                return door
            if door.distance_to(ped.previous_position) < DOOR_TOLERANCE and not subroom.contains(ped.position):
                return door
        return None

    def _reached_goal(self, ped) -> bool:
        goal = self.building.goals.get(ped.final_destination)
        return goal is not None and goal.is_final and goal.contains(ped.position)

    def _update_location(self, ped):
        """Move a pedestrian to the subroom it now stands in, or remove it if it left."""
        building = self.building
        if self._reached_goal(ped):
            self._remove(ped)
            return

        subroom = building.get_subroom(ped.room_id, ped.subroom_id)
        if subroom is not None and subroom.contains(ped.position):
            return

        door = self._passed_door(ped, subroom) if subroom is not None else None
        if door is not None:
            door.increase_door_usage(1, self.current_time)
            if door.is_exit():
                ped.record_passage(door.uid, self.current_time)
                self._remove(ped)
                return
            target = door.other_subroom(subroom)
            if target is not None and target.contains(ped.position):
                ped.move_to_subroom(target.room_id, target.id, door.uid, self.current_time)
                return

        target = building.locate(ped.position, hint=subroom)
        if target is not None:
            ped.move_to_subroom(target.room_id, target.id, door.uid if door is not None else -1,
                                self.current_time)
            return

        self.log.warning("Pedestrian {} left subroom {}/{} through a wall at ({:.2f}, {:.2f})",
                         ped.id, ped.room_id, ped.subroom_id, ped.position[0], ped.position[1])
        self.leaked += 1
        if building.remove_pedestrian(ped):
            self._finished_paths[ped.id] = ped.path

    def _remove(self, ped):
        if self.building.remove_pedestrian(ped):
            self.exited += 1
            self._finished_paths[ped.id] = ped.path
            self.log.debug("Pedestrian {} left the building at t={:.2f}s", ped.id, self.current_time)

    def pedestrians(self) -> List:
        return self.building.all_pedestrians()

    def pathways(self) -> Dict[int, list]:
        """(door uid, time) passages of every pedestrian of the run, keyed by id."""
        paths = dict(self._finished_paths)
        for ped in self.building.all_pedestrians():
            paths[ped.id] = ped.path
        return paths

    def exit_times(self) -> np.ndarray:
        """Passing times recorded at the exits, sorted."""
        times = [t for door in self.building.exits() for t, _ in door.flow_history]
        return np.sort(np.asarray(times, dtype=float))
