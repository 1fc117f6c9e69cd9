"""Tests for the initial distribution and the agent sources."""

import numpy as np
import pytest

from pedflow.distributor import PedDistributor, StartDistribution, has_clearance
from pedflow.exceptions import ConfigurationError
from pedflow.sources import AgentsSource, AgentsSourcesManager

from conftest import make_corridor, make_single_room

pytestmark = pytest.mark.unit


def _min_distance(peds):
    positions = np.array([p.position for p in peds])
    diff = positions[:, None, :] - positions[None, :, :]
    dist = np.linalg.norm(diff, axis=-1)
    np.fill_diagonal(dist, np.inf)
    return dist.min()


def _source(max_agents=10, frequency=1, greedy=False, n_create=1, source_id=1, **dist):
    dist.setdefault('room_id', 0)
    return AgentsSource(source_id, max_agents=max_agents, frequency=frequency,
                        start_distribution=StartDistribution(**dist), n_create=n_create, greedy=greedy)


def _manager(building, *sources):
    manager = AgentsSourcesManager(list(sources))
    manager.init(building)
    return manager


# --------------------------------------------------------------------------
# Distributor
# --------------------------------------------------------------------------

def test_possible_positions_keep_clearance(single_room):
    subroom = single_room.get_subroom(0, 0)
    positions = PedDistributor.possible_positions(subroom, radius=0.2, buffer=0.1)
    assert len(positions) > 300
    for p in positions:
        assert has_clearance(subroom, p, 0.25)


def test_possible_positions_respect_bounds(single_room):
    subroom = single_room.get_subroom(0, 0)
    positions = PedDistributor.possible_positions(subroom, bounds=(0, 2, 0, 2))
    assert positions
    assert all(p[0] <= 2 and p[1] <= 2 for p in positions)


def test_distribute_places_requested_number(single_room):
    distributor = PedDistributor([StartDistribution(room_id=0, number=30)], seed=3)
    assert distributor.distribute(single_room) == 30
    peds = single_room.all_pedestrians()
    assert len(peds) == 30
    assert _min_distance(peds) >= 0.5 - 1e-9
    assert all(single_room.get_subroom(0, 0).contains(p.position) for p in peds)


def test_distribute_by_density(single_room):
    distributor = PedDistributor([StartDistribution(room_id=0, density=0.5)])
    assert distributor.distribute(single_room) == 50


def test_distribute_shortfall_is_not_fatal(single_room):
    distributor = PedDistributor([StartDistribution(room_id=0, number=50, bounds=(0, 1.5, 0, 1.5))])
    placed = distributor.distribute(single_room)
    assert 0 < placed < 50
    assert len(single_room.pedestrians) == placed


def test_two_distributions_share_positions(single_room):
    distributor = PedDistributor([
        StartDistribution(room_id=0, number=20, bounds=(0, 3, 0, 3)),
        StartDistribution(room_id=0, number=20, bounds=(0, 3, 0, 3)),
    ])
    distributor.distribute(single_room)
    assert _min_distance(single_room.all_pedestrians()) >= 0.5 - 1e-9


def test_bounded_distribution_does_not_shrink_later_ones(single_room):
    distributor = PedDistributor([
        StartDistribution(room_id=0, number=1),
        StartDistribution(room_id=0, number=5, bounds=(0, 2, 0, 2)),
        StartDistribution(room_id=0, number=100),
    ], seed=4)
    assert distributor.distribute(single_room) == 106
    peds = single_room.all_pedestrians()
    assert len(peds) == 106
    assert _min_distance(peds) >= 0.5 - 1e-9


def test_initial_agents_draw_the_same_numbers_in_every_run():
    def draws():
        building = make_single_room()
        building.init_geometry()
        PedDistributor([StartDistribution(room_id=0, number=5)], seed=11).distribute(building)
        return [p.rng.standard_normal(2).tolist() for p in building.all_pedestrians()]

    first, second = draws(), draws()
    assert first == second
    assert first[0] != first[1]


def test_whole_room_split_by_area(corridor):
    distributor = PedDistributor([StartDistribution(room_id=0, number=10)])
    distributor.distribute(corridor)
    assert len(corridor.get_pedestrians(0, 0)) == 5
    assert len(corridor.get_pedestrians(0, 1)) == 5


def test_distribution_is_seeded():
    def run(seed):
        building = make_single_room()
        building.init_geometry()
        PedDistributor([StartDistribution(room_id=0, number=10)], seed=seed).distribute(building)
        return sorted(tuple(p.position) for p in building.all_pedestrians())

    assert run(5) == run(5)
    assert run(5) != run(6)


def test_unknown_room_is_a_configuration_error(single_room):
    with pytest.raises(ConfigurationError):
        PedDistributor([StartDistribution(room_id=4, number=1)]).distribute(single_room)


def test_invalid_distribution_values():
    with pytest.raises(ConfigurationError):
        StartDistribution(room_id=0, number=-1)
    with pytest.raises(ConfigurationError):
        StartDistribution(room_id=0, radius=0)


def test_speed_drawn_within_limits():
    dist = StartDistribution(room_id=0, speed_mean=1.0, speed_std=5.0)
    rng = np.random.default_rng(0)
    for _ in range(50):
        ped = dist.create_pedestrian((1, 1), 0, 0, rng, seed=1)
        assert 0.3 <= ped.desired_speed <= 2.0


# --------------------------------------------------------------------------
# Sources
# --------------------------------------------------------------------------

def test_source_never_exceeds_max_agents(single_room):
    source = _source(max_agents=7, frequency=3, n_create=2)
    manager = _manager(single_room, source)
    emitted = 0
    for frame in range(200):
        emitted += len(manager.process_all_sources(frame, frame * 0.05, single_room))
    assert emitted == 7
    assert source.agents_generated == 7
    assert source.is_exhausted()
    assert manager.is_completed()


def test_source_emits_at_its_frequency(single_room):
    source = _source(max_agents=100, frequency=4)
    manager = _manager(single_room, source)
    counts = [len(manager.process_all_sources(frame, 0.0, single_room)) for frame in range(12)]
    assert counts == [1, 0, 0, 0] * 3


def test_non_greedy_takes_first_free_slot(single_room):
    source = _source(max_agents=3)
    manager = _manager(single_room, source)
    first = manager.process_all_sources(0, 0.0, single_room)[0]
    np.testing.assert_allclose(first.position, source.candidates[0])
    second = manager.process_all_sources(1, 0.05, single_room)[0]
    assert np.linalg.norm(second.position - first.position) >= 0.5 - 1e-9


def test_greedy_spreads_agents(single_room):
    source = _source(max_agents=15, n_create=15, greedy=True, bounds=(0, 5, 0, 5))
    manager = _manager(single_room, source)
    placed = manager.process_all_sources(0, 0.0, single_room)
    assert len(placed) == 15
    assert _min_distance(placed) >= 0.5 - 1e-9
    assert all(p[0] <= 5 and p[1] <= 5 for p in (q.position for q in placed))


def test_unplaced_agents_are_requeued(single_room):
    # Room for four agents only
    source = _source(max_agents=10, n_create=10, bounds=(0, 1.2, 0, 1.2))
    manager = _manager(single_room, source)
    placed = manager.process_all_sources(0, 0.0, single_room)
    assert len(source.candidates) == len(placed)
    assert source.pool_size == 10 - len(placed)
    assert not manager.is_completed()

    # Free the space: the waiting agents get in, none was lost
    for ped in placed:
        single_room.remove_pedestrian(ped)
    admitted = manager.process_all_sources(1, 0.05, single_room)
    assert len(admitted) == len(placed)
    assert source.agents_generated == 10


def test_pool_requeue_goes_to_the_front(single_room):
    source = _source(max_agents=5)
    _manager(single_room, source)
    source.generate_agents_and_add_to_pool(3)
    first, second = source.remove_agents_from_pool(2)
    source.add_agents_to_pool([first, second])
    assert source.remove_agents_from_pool(3)[:2] == [first, second]


def test_spawn_time_is_set_on_placement(single_room):
    source = _source(max_agents=1)
    manager = _manager(single_room, source)
    (ped,) = manager.process_all_sources(0, 2.5, single_room)
    assert ped.spawn_time == 2.5
    assert ped.room_id == 0 and ped.subroom_id == 0


def test_source_needs_subroom_when_room_is_split(corridor):
    with pytest.raises(ConfigurationError):
        _manager(corridor, _source())
    manager = _manager(corridor, _source(subroom_id=1))
    (ped,) = manager.process_all_sources(0, 0.0, corridor)
    assert ped.subroom_id == 1


def test_invalid_source_parameters():
    with pytest.raises(ConfigurationError):
        _source(frequency=0)
    with pytest.raises(ConfigurationError):
        _source(max_agents=-1)
    manager = AgentsSourcesManager([_source(source_id=1)])
    with pytest.raises(ConfigurationError):
        manager.add_source(_source(source_id=1))
    with pytest.raises(ConfigurationError):
        _source(source_id=-2)


def test_source_agents_draw_the_same_numbers_in_every_run(single_room):
    def draws():
        source = _source(max_agents=4)
        _manager(single_room, source)
        source.generate_agents_and_add_to_pool(2)
        source.generate_agents_and_add_to_pool(2)
        return [p.rng.standard_normal(2).tolist() for p in source.remove_agents_from_pool(4)]

    first, second = draws(), draws()
    assert first == second
    assert len({tuple(d) for d in first}) == 4
