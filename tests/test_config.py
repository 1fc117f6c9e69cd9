"""Tests for the simulation configuration."""

import pytest

from pedflow.config import DEFAULT_MODEL, SimulationConfig
from pedflow.exceptions import ConfigurationError

pytestmark = pytest.mark.unit


def test_defaults():
    cfg = SimulationConfig()
    assert cfg.routing == "global_shortest"
    assert cfg.sanity_check
    assert cfg.model_parameters() == DEFAULT_MODEL


def test_output_cadence():
    assert SimulationConfig(time_step=0.01, fps=10).output_every == 10
    assert SimulationConfig(time_step=0.05, fps=10).output_every == 2
    assert SimulationConfig(time_step=0.5, fps=10).output_every == 1


def test_threads_default_to_cores():
    assert SimulationConfig().threads >= 1
    assert SimulationConfig(num_threads=3).threads == 3


@pytest.mark.parametrize("kwargs", [
    {"time_step": 0},
    {"fps": -1},
    {"linked_cell_size": 0},
    {"routing": "ff_router"},
    {"max_sim_time": 0},
    {"num_threads": 0},
    {"quickest_refresh_frames": 0},
    {"model": {"gravity": 9.81}},
])
def test_invalid_values_rejected(kwargs):
    with pytest.raises(ConfigurationError):
        SimulationConfig(**kwargs)


def test_single_cell_size_allowed():
    assert SimulationConfig(linked_cell_size=-1).linked_cell_size == -1


def test_model_overrides():
    cfg = SimulationConfig(model={"relaxation_time": 0.8})
    params = cfg.model_parameters()
    assert params["relaxation_time"] == 0.8
    assert params["agent_strength"] == DEFAULT_MODEL["agent_strength"]


def test_from_dict_rejects_unknown_keys():
    with pytest.raises(ConfigurationError, match="Unknown simulation settings"):
        SimulationConfig.from_dict({"timestep": 0.1})


def test_yaml_round_trip(tmp_path):
    cfg = SimulationConfig(time_step=0.02, routing="quickest", seed=7, model={"noise_factor": 0.0})
    path = tmp_path / "sim.yaml"
    cfg.to_yaml(path)
    loaded = SimulationConfig.from_yaml(path)
    assert loaded == cfg
    assert loaded._yaml_path == path


def test_from_yaml_reads_simulation_section(tmp_path):
    path = tmp_path / "scenario.yaml"
    path.write_text("simulation:\n  fps: 4\n  routing: heuristic\ngeometry: {}\n")
    cfg = SimulationConfig.from_yaml(path)
    assert cfg.fps == 4.0
    assert cfg.routing == "heuristic"
