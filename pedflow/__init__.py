"""
Pedestrian Dynamics Simulation Core
Geometry, neighbour grid, routing, agent sources and the time-stepped simulation loop
"""

__version__ = "1.0.0"
__author__ = "Crowd Simulation Team"

from .exceptions import PedflowError, ConfigurationError, GeometryError, DuplicateIdError, RoutingError
from .config import SimulationConfig
from .geometry import Wall, Hline, Crossing, Transition, Goal, Obstacle, SubRoom, Room
from .agent import Pedestrian
from .grid import LinkedCellGrid
from .building import Building
from .routing import RoutingEngine, GlobalShortestRouter, QuickestRouter, HeuristicRouter
from .motion_models import SocialForceModel, MotionController
from .distributor import StartDistribution, PedDistributor
from .sources import AgentsSource, AgentsSourcesManager
from .events import Event, EventManager
from .trajectories import TrajectoryWriter, CsvTrajectoryWriter, MemoryTrajectoryWriter
from .scenario import Scenario, build_building, load_scenario
from .simulation_engine import Simulation

__all__ = [
    'PedflowError',
    'ConfigurationError',
    'GeometryError',
    'DuplicateIdError',
    'RoutingError',
    'SimulationConfig',
    'Wall',
    'Hline',
    'Crossing',
    'Transition',
    'Goal',
    'Obstacle',
    'SubRoom',
    'Room',
    'Pedestrian',
    'LinkedCellGrid',
    'Building',
    'RoutingEngine',
    'GlobalShortestRouter',
    'QuickestRouter',
    'HeuristicRouter',
    'SocialForceModel',
    'MotionController',
    'StartDistribution',
    'PedDistributor',
    'AgentsSource',
    'AgentsSourcesManager',
    'Event',
    'EventManager',
    'TrajectoryWriter',
    'CsvTrajectoryWriter',
    'MemoryTrajectoryWriter',
    'Scenario',
    'build_building',
    'load_scenario',
    'Simulation',
]
