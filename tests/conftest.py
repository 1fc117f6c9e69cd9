"""Shared geometry factories for the pedflow tests."""

import pytest

from pedflow.building import Building
from pedflow.geometry import Crossing, Obstacle, Room, SubRoom, Transition, Wall


def _walls(*points):
    return [Wall(p1, p2) for p1, p2 in zip(points[:-1], points[1:])]


def make_single_room(size=10.0, exit_from=4.0, exit_to=6.0, caption="single_room"):
    """size x size room, exit on the right wall between exit_from and exit_to."""
    building = Building(caption)
    room = Room(0, "hall")
    room.add_subroom(SubRoom(0, walls=_walls(
        (size, exit_from), (size, 0), (0, 0), (0, size), (size, size), (size, exit_to))))
    building.add_room(room)
    building.add_transition(Transition(0, (size, exit_from), (size, exit_to), 0, 0, caption="exit"))
    return building


def make_corridor():
    """
    Two subrooms of one room joined by a crossing at x=5; exit at the far right.

        +-----+-----+
        | s0  c  s1 E
        +-----+-----+
    """
    building = Building("corridor")
    room = Room(0, "corridor")
    room.add_subroom(SubRoom(0, walls=_walls((5, 1), (5, 0), (0, 0), (0, 3), (5, 3), (5, 2))))
    room.add_subroom(SubRoom(1, walls=_walls((5, 1), (5, 0), (10, 0), (10, 1))
                             + _walls((10, 2), (10, 3), (5, 3), (5, 2))))
    building.add_room(room)
    building.add_crossing(Crossing(0, (5, 1), (5, 2), 0, 0, 1, caption="middle"))
    building.add_transition(Transition(1, (10, 1), (10, 2), 0, 1, caption="exit"))
    return building


def make_two_exit_room():
    """10 x 4 room with an exit on the left and one on the right wall."""
    building = Building("two_exits")
    room = Room(0)
    room.add_subroom(SubRoom(0, walls=_walls((0, 1), (0, 0), (10, 0), (10, 1))
                             + _walls((10, 3), (10, 4), (0, 4), (0, 3))))
    building.add_room(room)
    building.add_transition(Transition(0, (0, 1), (0, 3), 0, 0, caption="west"))
    building.add_transition(Transition(1, (10, 1), (10, 3), 0, 0, caption="east"))
    return building


def make_with_isolated_room():
    """Single room with an exit plus a closed room without any door."""
    building = make_single_room(caption="isolated")
    closed = Room(1, "closed")
    closed.add_subroom(SubRoom(0, walls=_walls((20, 0), (24, 0), (24, 4), (20, 4), (20, 0))))
    building.add_room(closed)
    return building


def make_room_with_pillar():
    building = make_single_room(caption="pillar")
    subroom = building.get_subroom(0, 0)
    subroom.add_obstacle(Obstacle(0, _walls((4, 4), (5, 4), (5, 5), (4, 5), (4, 4)), caption="pillar"))
    return building


@pytest.fixture
def single_room():
    building = make_single_room()
    building.init_geometry()
    return building


@pytest.fixture
def corridor():
    building = make_corridor()
    building.init_geometry()
    return building


@pytest.fixture
def isolated():
    building = make_with_isolated_room()
    building.init_geometry()
    return building
