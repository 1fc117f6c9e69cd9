"""Tests for the Building aggregate: initialisation, lookup and pedestrian bookkeeping."""

import numpy as np
import pytest

from pedflow.agent import Pedestrian
from pedflow.building import Building
from pedflow.config import SimulationConfig
from pedflow.exceptions import DuplicateIdError, GeometryError
from pedflow.geometry import Crossing, Hline, Room, SubRoom, Transition
from pedflow.routing import RoutingEngine

from conftest import make_corridor, make_single_room

pytestmark = pytest.mark.unit


def _ped(building, position, room_id=0, subroom_id=0):
    ped = Pedestrian(position, room_id, subroom_id)
    assert building.add_pedestrian(ped)
    return ped


# --------------------------------------------------------------------------
# Assembly and initialisation
# --------------------------------------------------------------------------

def test_duplicate_room_id_is_fatal():
    building = make_single_room()
    with pytest.raises(DuplicateIdError):
        building.add_room(Room(0))


def test_duplicate_transition_id_is_fatal():
    building = make_single_room()
    with pytest.raises(DuplicateIdError, match="transition"):
        building.add_transition(Transition(0, (0, 4), (0, 6), 0, 0))


def test_duplicate_connector_uid_is_fatal():
    building = make_single_room()
    door = Transition(7, (0, 4), (0, 6), 0, 0)
    door.uid = building.transitions[0].uid
    with pytest.raises(DuplicateIdError, match="connector uid"):
        building.add_transition(door)


def test_identical_hline_is_skipped():
    building = make_single_room()
    assert building.add_hline(Hline(0, (2, 2), (2, 8), 0, 0))
    assert not building.add_hline(Hline(0, (2, 8), (2, 2), 0, 0))
    assert len(building.hlines) == 1


def test_conflicting_hline_is_fatal():
    building = make_single_room()
    building.add_hline(Hline(0, (2, 2), (2, 8), 0, 0))
    with pytest.raises(GeometryError, match="hlines"):
        building.add_hline(Hline(0, (3, 2), (3, 8), 0, 0))


def test_dangling_connector_reference_is_fatal():
    building = make_single_room()
    building.add_crossing(Crossing(5, (3, 0), (3, 1), 0, 0, 9))
    with pytest.raises(GeometryError, match="unknown subroom"):
        building.init_geometry()


def test_crossing_to_itself_is_fatal():
    building = make_single_room()
    building.add_crossing(Crossing(5, (3, 0), (3, 1), 0, 0, 0))
    with pytest.raises(GeometryError):
        building.init_geometry()


def test_transition_to_unknown_goal_is_fatal():
    building = make_single_room()
    building.transitions[0].goal_id = 4
    with pytest.raises(GeometryError, match="goal"):
        building.init_geometry()


def test_init_geometry_is_idempotent(single_room):
    subroom = single_room.get_subroom(0, 0)
    single_room.init_geometry()
    assert subroom.transitions == [single_room.transitions[0]]


def test_bounds_single_scan(corridor):
    assert corridor.bounds() == (0.0, 10.0, 0.0, 3.0)
    assert len(corridor.boundary_vertices()) == 4


def test_sanity_check_passes(corridor):
    assert corridor.sanity_check()


def test_sanity_check_reports_hline_outside_subroom():
    building = make_single_room()
    building.add_hline(Hline(0, (5, 5), (15, 5), 0, 0))
    building.init_geometry()
    with pytest.raises(GeometryError, match="sanity"):
        building.sanity_check()


def test_lookups(corridor):
    assert corridor.get_room_by_caption("corridor") is corridor.rooms[0]
    assert corridor.get_room_by_caption("nope") is None
    transition = corridor.get_transition_by_caption("exit")
    assert transition is corridor.transitions[1]
    assert corridor.get_connector_by_uid(transition.uid) is transition
    s1 = corridor.get_subroom(0, 1)
    assert corridor.get_subroom_by_uid(s1.uid) is s1
    assert corridor.get_subroom_by_uid(99) is None
    assert len(corridor.doors()) == 2
    assert corridor.exits() == [transition]


def test_locate_uses_hint_and_neighbours(corridor):
    s0, s1 = corridor.get_subroom(0, 0), corridor.get_subroom(0, 1)
    assert corridor.locate(np.array([7.0, 1.5]), hint=s0) is s1
    assert corridor.locate(np.array([2.0, 1.5])) is s0
    assert corridor.locate(np.array([-3.0, 1.5])) is None


# --------------------------------------------------------------------------
# Pedestrians
# --------------------------------------------------------------------------

def test_add_pedestrian_rejects_duplicates_and_unknown_subrooms(single_room):
    ped = _ped(single_room, (2, 2))
    assert not single_room.add_pedestrian(ped)
    assert not single_room.add_pedestrian(Pedestrian((2, 2), 0, 5))
    assert len(single_room.pedestrians) == 1


def test_get_pedestrians_by_subroom(corridor):
    a = _ped(corridor, (2, 1.5), 0, 0)
    b = _ped(corridor, (7, 1.5), 0, 1)
    assert corridor.get_pedestrians(0, 0) == [a]
    assert corridor.get_pedestrians(0, 1) == [b]


def test_removal_is_atomic(single_room):
    engine = RoutingEngine("global_shortest", SimulationConfig())
    engine.init(single_room)
    single_room.init_grid(2.0)
    ped = _ped(single_room, (3, 3))
    engine.find_exit(ped)

    assert ped in single_room.grid
    assert engine.is_tracking(ped.id)
    assert single_room.remove_pedestrian(ped)

    assert single_room.get_pedestrian(ped.id) is None
    assert ped not in single_room.grid
    assert ped not in single_room.neighbourhood(ped.position)
    assert not engine.is_tracking(ped.id)
    assert engine.router.heading_to(single_room.transitions[0].uid) == 0


def test_remove_unknown_pedestrian_is_noop(single_room):
    single_room.init_grid(2.0)
    ped = _ped(single_room, (3, 3))
    assert not single_room.remove_pedestrian(12345)
    assert single_room.remove_pedestrian(ped.id)
    assert not single_room.remove_pedestrian(ped)
    assert single_room.pedestrians == {}


def test_grid_covers_building_with_margin(single_room):
    single_room.init_grid(2.0)
    assert single_room.grid.boundaries == (-2.0, 12.0, -2.0, 12.0)
    single_room.init_grid(-1)
    assert (single_room.grid.nx, single_room.grid.ny) == (1, 1)


def test_door_statistics(corridor):
    corridor.crossings[0].increase_door_usage(3, 1.0)
    stats = {s['id']: s for s in corridor.door_statistics() if s['kind'] == 'crossing'}
    assert stats[0]['usage'] == 3
    assert stats[0]['last_passing_time'] == 1.0
    assert not stats[0]['exit']


def test_building_repr():
    building = Building("demo")
    assert "demo" in repr(building)
    room = Room(3, "r")
    room.add_subroom(SubRoom(1))
    building.add_room(room)
    assert building.get_subroom(3, 1).room_id == 3
