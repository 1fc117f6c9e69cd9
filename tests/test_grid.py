"""Tests for the linked-cell grid."""

import numpy as np
import pytest

from pedflow.agent import Pedestrian
from pedflow.grid import LinkedCellGrid

pytestmark = pytest.mark.unit


def _make_peds(positions):
    return [Pedestrian(p, 0, 0) for p in positions]


def test_every_agent_found_at_its_own_position():
    rng = np.random.default_rng(7)
    peds = _make_peds(rng.uniform(0, 20, size=(200, 2)))
    grid = LinkedCellGrid((-1, 21, -1, 21), 2.2)
    grid.update(peds)
    assert len(grid) == 200
    for ped in peds:
        assert ped in grid.get_neighbourhood(ped.position)


def test_agent_never_in_cell_excluding_it():
    rng = np.random.default_rng(11)
    peds = _make_peds(rng.uniform(0, 10, size=(80, 2)))
    grid = LinkedCellGrid((0, 10, 0, 10), 1.0)
    grid.update(peds)
    for ix in range(grid.nx):
        for iy in range(grid.ny):
            x0, x1, y0, y1 = grid.cell_bounds(ix, iy)
            for ped in grid.cell_members(ix, iy):
                assert x0 <= ped.position[0] < x1
                assert y0 <= ped.position[1] < y1


def test_neighbourhood_is_three_by_three():
    grid = LinkedCellGrid((0, 10, 0, 10), 1.0)
    near, diagonal, far = _make_peds([(5.5, 5.5), (6.9, 6.9), (7.5, 5.5)])
    grid.update([near, diagonal, far])
    found = grid.get_neighbourhood(np.array([5.5, 5.5]))
    assert near in found
    assert diagonal in found
    assert far not in found


def test_update_drops_stale_buckets():
    grid = LinkedCellGrid((0, 10, 0, 10), 1.0)
    (ped,) = _make_peds([(1.5, 1.5)])
    grid.update([ped])
    ped.position = np.array([8.5, 8.5])
    grid.update([ped])
    assert ped not in grid.get_neighbourhood(np.array([1.5, 1.5]))
    assert ped in grid.get_neighbourhood(ped.position)


def test_outside_agents_are_not_bucketed():
    grid = LinkedCellGrid((0, 10, 0, 10), 1.0)
    inside, outside = _make_peds([(1, 1), (15, 15)])
    grid.update([inside, outside])
    assert outside not in grid
    assert grid.get_neighbourhood(outside.position) == []
    assert len(grid) == 1


def test_single_cell_mode():
    grid = LinkedCellGrid((0, 30, 0, 10), -1)
    assert (grid.nx, grid.ny) == (1, 1)
    peds = _make_peds([(1, 1), (29, 9)])
    grid.update(peds)
    assert set(p.id for p in grid.get_neighbourhood(np.array([1.0, 1.0]))) == {p.id for p in peds}


def test_add_and_remove_between_updates():
    grid = LinkedCellGrid((0, 10, 0, 10), 2.0)
    a, b = _make_peds([(1, 1), (1.2, 1.2)])
    grid.update([a])
    assert grid.add(b)
    assert not grid.add(b)
    assert b in grid.get_neighbourhood(b.position)
    assert grid.remove(a)
    assert not grid.remove(a)
    assert a not in grid.get_neighbourhood(a.position)


def test_degenerate_boundaries_rejected():
    with pytest.raises(ValueError):
        LinkedCellGrid((0, 0, 0, 10), 1.0)
