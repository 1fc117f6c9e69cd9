"""
Scenario Loader
Builds the building, distributions, sources and events from a YAML description
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml
from loguru import logger

from .building import Building
from .config import SimulationConfig
from .distributor import StartDistribution
from .events import Event
from .exceptions import ConfigurationError
from .geometry import Crossing, Goal, Hline, Obstacle, Room, SubRoom, Transition, Wall
from .sources import AgentsSource

OUTSIDE = -1


def _walls_from_polylines(polylines, what: str) -> List[Wall]:
    """Each polyline [[x, y], ...] contributes one wall per consecutive pair."""
    walls = []
    for polyline in polylines or []:
        if len(polyline) < 2:
            raise ConfigurationError(f"{what}: a wall polyline needs at least two points")
        for p1, p2 in zip(polyline[:-1], polyline[1:]):
            walls.append(Wall(p1, p2))
    return walls


def _line_points(item: dict, what: str):
    points = item.get('points')
    if points is None or len(points) != 2:
        raise ConfigurationError(f"{what} needs exactly two points")
    return points


def _require(item: dict, key: str, what: str):
    if key not in item:
        raise ConfigurationError(f"{what} is missing '{key}'")
    return item[key]


def build_building(data: dict, log=None) -> Building:
    """
    Assemble a Building from a geometry description.

    The geometry is not initialised here; Simulation.init() does that so
    connector references are validated in one place.

    Args:
        data: Geometry section with rooms, crossings, transitions, hlines, goals

    Returns:
        Populated building
    """
    data = data or {}
    building = Building(caption=data.get('caption', 'no_caption'), log=log)

    for room_data in data.get('rooms', []):
        room_id = _require(room_data, 'id', 'Room')
        room = Room(room_id, caption=room_data.get('caption', ''))
        for sub_data in room_data.get('subrooms', []):
            sub_id = _require(sub_data, 'id', f"Subroom of room {room_id}")
            what = f"SubRoom {room_id}/{sub_id}"
            subroom = SubRoom(
                sub_id,
                room_id,
                walls=_walls_from_polylines(sub_data.get('walls'), what),
                subroom_type=sub_data.get('type', 'floor'),
                plane=tuple(sub_data.get('plane', (0.0, 0.0, 0.0))),
                caption=sub_data.get('caption', ''),
            )
            for obs_data in sub_data.get('obstacles', []):
                obs_id = _require(obs_data, 'id', f"Obstacle in {what}")
                subroom.add_obstacle(Obstacle(
                    obs_id,
                    _walls_from_polylines(obs_data.get('walls'), f"Obstacle {obs_id}"),
                    caption=obs_data.get('caption', ''),
                ))
            room.add_subroom(subroom)
        building.add_room(room)

    for item in data.get('crossings', []):
        crossing_id = _require(item, 'id', 'Crossing')
        p1, p2 = _line_points(item, f"Crossing {crossing_id}")
        building.add_crossing(Crossing(
            crossing_id, p1, p2,
            room_id=_require(item, 'room_id', f"Crossing {crossing_id}"),
            subroom1_id=_require(item, 'subroom1_id', f"Crossing {crossing_id}"),
            subroom2_id=_require(item, 'subroom2_id', f"Crossing {crossing_id}"),
            caption=item.get('caption', ''),
        ))

    for item in data.get('transitions', []):
        transition_id = _require(item, 'id', 'Transition')
        what = f"Transition {transition_id}"
        p1, p2 = _line_points(item, what)
        room2_id = item.get('room2_id')
        if room2_id == OUTSIDE:
            room2_id = None
        building.add_transition(Transition(
            transition_id, p1, p2,
            room1_id=_require(item, 'room1_id', what),
            subroom1_id=_require(item, 'subroom1_id', what),
            room2_id=room2_id,
            subroom2_id=item.get('subroom2_id') if room2_id is not None else None,
            caption=item.get('caption', ''),
            transition_type=item.get('type', 'emergency'),
            goal_id=item.get('goal_id'),
        ))

    for item in data.get('hlines', []):
        hline_id = _require(item, 'id', 'Hline')
        p1, p2 = _line_points(item, f"Hline {hline_id}")
        building.add_hline(Hline(
            hline_id, p1, p2,
            room_id=_require(item, 'room_id', f"Hline {hline_id}"),
            subroom_id=_require(item, 'subroom_id', f"Hline {hline_id}"),
            caption=item.get('caption', ''),
        ))

    for item in data.get('goals', []):
        goal_id = _require(item, 'id', 'Goal')
        building.add_goal(Goal(
            goal_id,
            _require(item, 'vertices', f"Goal {goal_id}"),
            caption=item.get('caption', ''),
            is_final=item.get('final', True),
        ))

    return building


def _distribution(item: dict, what: str) -> StartDistribution:
    keys = {'room_id', 'subroom_id', 'number', 'density', 'group_id', 'final_destination',
            'speed_mean', 'speed_std', 'radius', 'bounds'}
    kwargs = {k: v for k, v in item.items() if k in keys}
    if 'room_id' not in kwargs:
        raise ConfigurationError(f"{what} is missing 'room_id'")
    return StartDistribution(**kwargs)


def parse_distributions(items) -> List[StartDistribution]:
    return [_distribution(item, f"Distribution {i}") for i, item in enumerate(items or [])]


def parse_sources(items, seed: int = 42) -> List[AgentsSource]:
    sources = []
    for item in items or []:
        source_id = _require(item, 'id', 'Source')
        sources.append(AgentsSource(
            source_id,
            max_agents=_require(item, 'max_agents', f"Source {source_id}"),
            frequency=item.get('frequency', 1),
            start_distribution=_distribution(item, f"Source {source_id}"),
            n_create=item.get('n_create', 1),
            greedy=item.get('greedy', False),
            caption=item.get('caption', ''),
            seed=seed,
        ))
    return sources


def parse_events(items) -> List[Event]:
    events = []
    for item in items or []:
        events.append(Event(
            time=float(_require(item, 'time', 'Event')),
            door_id=_require(item, 'door_id', 'Event'),
            action=_require(item, 'action', 'Event'),
        ))
    return events


@dataclass
class Scenario:
    """Everything needed to construct a Simulation."""

    config: SimulationConfig
    building: Building
    distributions: List[StartDistribution] = field(default_factory=list)
    sources: List[AgentsSource] = field(default_factory=list)
    events: List[Event] = field(default_factory=list)
    output: dict = field(default_factory=dict)
    path: Optional[Path] = None


def scenario_from_dict(data: dict, path: Optional[Path] = None) -> Scenario:
    if not isinstance(data, dict):
        raise ConfigurationError("A scenario must be a mapping")
    config = SimulationConfig.from_dict(data.get('simulation'))
    if 'geometry' not in data:
        raise ConfigurationError("The scenario has no geometry section")
    scenario = Scenario(
        config=config,
        building=build_building(data['geometry']),
        distributions=parse_distributions(data.get('distributions')),
        sources=parse_sources(data.get('sources'), seed=config.seed),
        events=parse_events(data.get('events')),
        output=dict(data.get('output') or {}),
        path=path,
    )
    logger.info("Loaded scenario '{}': {} rooms, {} distributions, {} sources, {} events",
                scenario.building.caption, len(scenario.building.rooms),
                len(scenario.distributions), len(scenario.sources), len(scenario.events))
    return scenario


def load_scenario(path) -> Scenario:
    """Read a scenario YAML file."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Scenario file not found: {path}")
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {path}: {e}") from e
    return scenario_from_dict(data, path)
