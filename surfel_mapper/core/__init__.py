from .types import (
    Stamp, Pose, CameraParams, RawCloud, Surfel, SurfelSet, BoundingBox,
    FusionStatus, FusionResult, SurfelMapperError, MapConsistencyError, ConfigError,
)
from .config import SurfelMapperConfig, load_config
from .pose_trace import PoseTrace, PoseSynchronizer, round_stamp
from .cloud_queue import CloudQueue
from .octree import SurfelOctree, OctNode
from .surfel_map import SurfelMap
from .fusion import FusionEngine
from .mapper import SurfelMapper

__all__ = [
    'Stamp',
    'Pose',
    'CameraParams',
    'RawCloud',
    'Surfel',
    'SurfelSet',
    'BoundingBox',
    'FusionStatus',
    'FusionResult',
    'SurfelMapperError',
    'MapConsistencyError',
    'ConfigError',
    'SurfelMapperConfig',
    'load_config',
    'PoseTrace',
    'PoseSynchronizer',
    'round_stamp',
    'CloudQueue',
    'SurfelOctree',
    'OctNode',
    'SurfelMap',
    'FusionEngine',
    'SurfelMapper',
]
