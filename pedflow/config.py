"""
Simulation Configuration
Read-only snapshot of the run parameters, loadable from YAML
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Optional

import yaml

from .exceptions import ConfigurationError

__all__ = ["SimulationConfig", "ROUTING_CHOICES", "DEFAULT_MODEL"]

ROUTING_CHOICES = ("global_shortest", "quickest", "heuristic")

# Social force parameters; accelerations in m/s^2, ranges in m
DEFAULT_MODEL = {
    "relaxation_time": 0.5,
    "agent_strength": 2.0,
    "agent_range": 0.3,
    "wall_strength": 5.0,
    "wall_range": 0.1,
    "neighbor_cutoff": 2.0,
    "wall_cutoff": 1.0,
    "noise_factor": 0.05,
    "max_speed_factor": 1.3,
}


@dataclass
class SimulationConfig:
    """Container for all run-wide parameters.

    Attributes
    ----------
    time_step
        Integration step in seconds.
    fps
        Trajectory output frame rate.
    seed
        Seed of every random draw of the run.
    linked_cell_size
        Cell size of the neighbour grid in metres. ``-1`` uses a single cell.
    routing
        One of ``global_shortest``, ``quickest`` or ``heuristic``.
    max_sim_time
        Upper bound of simulated time in seconds.
    num_threads
        Worker threads for the velocity update; ``None`` uses all cores.
    sanity_check
        Run the geometry sanity pass during initialisation.
    quickest_refresh_frames
        Door tick age after which the quickest router re-measures a door.
    model
        Overrides for the social force parameters.
    """

    time_step: float = 0.01
    fps: float = 8.0
    seed: int = 42
    linked_cell_size: float = 2.2
    routing: str = "global_shortest"
    max_sim_time: float = 900.0
    num_threads: Optional[int] = None
    sanity_check: bool = True
    quickest_refresh_frames: int = 100
    model: dict = field(default_factory=dict)
    log_level: str = "INFO"

    _yaml_path: Optional[Path] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        self.time_step = float(self.time_step)
        self.fps = float(self.fps)
        self.linked_cell_size = float(self.linked_cell_size)
        self.max_sim_time = float(self.max_sim_time)

        if self.time_step <= 0:
            raise ConfigurationError(f"time_step must be positive, got {self.time_step}")
        if self.fps <= 0:
            raise ConfigurationError(f"fps must be positive, got {self.fps}")
        if self.linked_cell_size <= 0 and self.linked_cell_size != -1:
            raise ConfigurationError(
                f"linked_cell_size must be positive or -1, got {self.linked_cell_size}")
        if self.routing not in ROUTING_CHOICES:
            raise ConfigurationError(
                f"Unknown routing '{self.routing}', expected one of {', '.join(ROUTING_CHOICES)}")
        if self.max_sim_time <= 0:
            raise ConfigurationError(f"max_sim_time must be positive, got {self.max_sim_time}")
        if self.num_threads is not None and self.num_threads < 1:
            raise ConfigurationError(f"num_threads must be at least 1, got {self.num_threads}")
        if self.quickest_refresh_frames < 1:
            raise ConfigurationError("quickest_refresh_frames must be at least 1")
        unknown = set(self.model) - set(DEFAULT_MODEL)
        if unknown:
            raise ConfigurationError(f"Unknown model parameters: {sorted(unknown)}")

    @property
    def output_every(self) -> int:
        """Number of frames between two trajectory frames."""
        return max(1, int(round(1.0 / (self.fps * self.time_step))))

    @property
    def threads(self) -> int:
        return self.num_threads or os.cpu_count() or 1

    def model_parameters(self) -> dict:
        params = dict(DEFAULT_MODEL)
        params.update(self.model)
        return params

    # ------------------------------------------------------------------
    # YAML helpers
    # ------------------------------------------------------------------
    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SimulationConfig":
        data = dict(data or {})
        known = {f.name for f in fields(cls) if not f.name.startswith("_")}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown simulation settings: {sorted(unknown)}")
        try:
            return cls(**data)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid simulation settings: {e}") from e

    @classmethod
    def from_yaml(cls, path: os.PathLike | str) -> "SimulationConfig":
        """Load a configuration from a YAML file.

        A scenario file is accepted too; its ``simulation`` section is used.
        """
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if "simulation" in data:
            data = data["simulation"]
        cfg = cls.from_dict(data)
        cfg._yaml_path = Path(path)
        return cfg

    def to_yaml(self, path: os.PathLike | str) -> None:
        data = asdict(self)
        data.pop("_yaml_path", None)
        with open(path, "w", encoding="utf-8") as fh:
            yaml.safe_dump(data, fh, indent=2)

    def __str__(self) -> str:
        return (f"SimulationConfig(dt={self.time_step}, fps={self.fps}, seed={self.seed}, "
                f"routing={self.routing}, tmax={self.max_sim_time})")
