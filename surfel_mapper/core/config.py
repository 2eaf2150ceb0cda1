"""
Surfel mapper configuration.

Defaults follow the surfel_mapper node parameters. The ROS node declares one
parameter per field and builds the config with SurfelMapperConfig.from_dict();
offline tools can read the same YAML file with load_config().
"""

from __future__ import annotations

from dataclasses import dataclass, fields, asdict
from typing import Any, Dict

import yaml

from surfel_mapper.core.types import ConfigError


@dataclass(frozen=True)
class SurfelMapperConfig:
    """Configuration for pose association, fusion and map export."""

    # Fusion
    dmax: float = 0.005  # surfel update distance threshold along the normal (m)
    min_sensor_dist: float = 0.8  # reliable minimum sensor depth (m)
    max_sensor_dist: float = 4.0  # reliable maximum sensor depth (m)
    octree_resolution: float = 0.2  # leaf voxel edge (m)
    min_normal_alignment: float = 0.2  # minimum |z| of sensor-frame normal
    use_frustum: bool = True
    use_update: bool = True
    scene_capacity: int = 1_000_000  # preallocated surfel count
    normal_neighbors: int = 10  # k for normal estimation when the cloud has none

    # Preview / export
    preview_resolution: float = 0.2
    preview_samples_per_voxel: int = 3
    confidence_threshold: int = 5
    max_markers: int = 100000

    # Driver
    queue_warn_size: int = 200
    tick_rate_hz: float = 2.0
    map_frame: str = "odom"
    save_path: str = "cloud.pcd"

    # Profiling
    enable_profiling: bool = False
    profiling_csv_path: str = "/tmp/surfel_mapper_profiling.csv"
    profiling_interval: int = 10

    def __post_init__(self):
        if self.octree_resolution <= 0.0:
            raise ConfigError(f"octree_resolution must be positive, got {self.octree_resolution}")
        if self.preview_resolution <= 0.0:
            raise ConfigError(f"preview_resolution must be positive, got {self.preview_resolution}")
        if self.min_sensor_dist < 0.0 or self.min_sensor_dist >= self.max_sensor_dist:
            raise ConfigError(
                f"Invalid sensor range [{self.min_sensor_dist}, {self.max_sensor_dist}]")
        if self.dmax < 0.0:
            raise ConfigError(f"dmax must be non-negative, got {self.dmax}")
        if self.scene_capacity <= 0:
            raise ConfigError(f"scene_capacity must be positive, got {self.scene_capacity}")
        if self.preview_samples_per_voxel <= 0:
            raise ConfigError(
                f"preview_samples_per_voxel must be positive, got {self.preview_samples_per_voxel}")
        if not 0.0 <= self.min_normal_alignment <= 1.0:
            raise ConfigError(
                f"min_normal_alignment must lie in [0, 1], got {self.min_normal_alignment}")
        if self.normal_neighbors < 3:
            raise ConfigError(f"normal_neighbors must be at least 3, got {self.normal_neighbors}")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "SurfelMapperConfig":
        """Build config from a flat dict, ignoring unknown keys"""
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, value in config.items():
            if key not in known:
                continue
            default = known[key].default
            # ROS parameters may deliver ints for float fields (e.g. 4 instead of 4.0)
            if isinstance(default, bool):
                kwargs[key] = bool(value)
            elif isinstance(default, float):
                kwargs[key] = float(value)
            elif isinstance(default, int):
                kwargs[key] = int(value)
            else:
                kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _unwrap_ros_parameters(data: Dict[str, Any]) -> Dict[str, Any]:
    """Strip the `<node>: ros__parameters:` wrapper used by ROS 2 YAML files."""
    for value in data.values():
        if isinstance(value, dict) and "ros__parameters" in value:
            return value["ros__parameters"] or {}
    return data


def load_config(path) -> SurfelMapperConfig:
    """Load a SurfelMapperConfig from a YAML file (plain or ROS 2 parameter file)"""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} does not contain a mapping")
    return SurfelMapperConfig.from_dict(_unwrap_ros_parameters(data))
