"""
Value types shared by the surfel mapping core.

All types are ROS-independent; conversion from/to ROS messages lives in
surfel_mapper.utils.conversions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np
from scipy.spatial.transform import Rotation as R


NSEC_PER_SEC = 1_000_000_000


class SurfelMapperError(Exception):
    """Base class for surfel mapper errors"""


class MapConsistencyError(SurfelMapperError):
    """Octree index and surfel storage disagree (indicates a prior bug)"""


class ConfigError(SurfelMapperError):
    """Invalid configuration value"""


@dataclass(frozen=True, order=True)
class Stamp:
    """Timestamp split into whole seconds and nanoseconds (ROS 2 layout)"""

    sec: int
    nanosec: int = 0

    @classmethod
    def from_nanoseconds(cls, ns: int) -> "Stamp":
        return cls(int(ns // NSEC_PER_SEC), int(ns % NSEC_PER_SEC))

    @classmethod
    def from_sec(cls, t: float) -> "Stamp":
        return cls.from_nanoseconds(int(round(t * NSEC_PER_SEC)))

    def to_nanoseconds(self) -> int:
        return self.sec * NSEC_PER_SEC + self.nanosec

    def to_sec(self) -> float:
        return self.sec + self.nanosec * 1e-9

    def __str__(self):
        return f"{self.sec}.{self.nanosec:09d}"


@dataclass(frozen=True)
class Pose:
    """
    6-DoF sensor pose at a capture time.

    Attributes:
        orientation: unit quaternion, scalar first [w, x, y, z]
        origin: [x, y, z] sensor origin in the map frame
        stamp: capture timestamp
    """

    orientation: tuple
    origin: tuple
    stamp: Stamp

    @classmethod
    def from_arrays(cls, orientation_wxyz, origin, stamp: Stamp) -> "Pose":
        q = tuple(float(v) for v in orientation_wxyz)
        o = tuple(float(v) for v in origin)
        if len(q) != 4 or len(o) != 3:
            raise ValueError(f"Expected quaternion of 4 and origin of 3 values, got {len(q)} and {len(o)}")
        return cls(q, o, stamp)

    def rotation_matrix(self) -> np.ndarray:
        w, x, y, z = self.orientation
        # scipy uses [x, y, z, w] format
        return R.from_quat([x, y, z, w]).as_matrix()

    def transform_matrix(self) -> np.ndarray:
        """4x4 sensor -> map transform"""
        T = np.eye(4)
        T[:3, :3] = self.rotation_matrix()
        T[:3, 3] = self.origin
        return T


@dataclass(frozen=True)
class CameraParams:
    """Pinhole intrinsics: focal scales (alpha, beta) and principal point (cx, cy)"""

    alpha: float
    beta: float
    cx: float
    cy: float

    @property
    def width(self) -> float:
        """Image width in pixels, principal point at the image centre"""
        return 2.0 * self.cx + 1.0

    @property
    def height(self) -> float:
        return 2.0 * self.cy + 1.0

    @property
    def focal(self) -> float:
        return 0.5 * (self.alpha + self.beta)


@dataclass(eq=False)
class RawCloud:
    """
    Colored point cloud as received from the sensor, in the sensor frame.

    points: (N, 3) float, colors: (N, 3) uint8, optional normals: (N, 3)
    sensor-frame unit normals. The pose is attached exactly once, at
    association time.
    """

    points: np.ndarray
    colors: np.ndarray
    stamp: Stamp
    frame_id: str = ""
    normals: Optional[np.ndarray] = None
    _pose: Optional[Pose] = field(default=None, repr=False)

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=np.float64).reshape(-1, 3)
        if self.colors is None:
            self.colors = np.full((len(self.points), 3), 255, dtype=np.uint8)
        self.colors = np.asarray(self.colors, dtype=np.uint8).reshape(-1, 3)
        if len(self.colors) != len(self.points):
            raise ValueError(f"points ({len(self.points)}) and colors ({len(self.colors)}) differ in length")
        if self.normals is not None:
            self.normals = np.asarray(self.normals, dtype=np.float64).reshape(-1, 3)
            if len(self.normals) != len(self.points):
                raise ValueError(f"points ({len(self.points)}) and normals ({len(self.normals)}) differ in length")

    def __len__(self):
        return len(self.points)

    @property
    def pose(self) -> Optional[Pose]:
        return self._pose

    def attach_pose(self, pose: Pose):
        if self._pose is not None:
            raise ValueError(f"Cloud [{self.stamp}] already has a pose attached")
        self._pose = pose


@dataclass(frozen=True)
class Surfel:
    """Single oriented disk read back from the map"""

    id: int
    position: np.ndarray
    normal: np.ndarray
    radius: float
    color: np.ndarray
    confidence: int
    valid: bool = True


@dataclass
class SurfelSet:
    """Column-wise view of a group of surfels (copies, never map storage)"""

    ids: np.ndarray
    positions: np.ndarray
    normals: np.ndarray
    radii: np.ndarray
    colors: np.ndarray
    confidences: np.ndarray

    @classmethod
    def empty(cls) -> "SurfelSet":
        return cls(
            ids=np.empty(0, dtype=np.int64),
            positions=np.empty((0, 3)),
            normals=np.empty((0, 3)),
            radii=np.empty(0),
            colors=np.empty((0, 3), dtype=np.uint8),
            confidences=np.empty(0, dtype=np.int64),
        )

    def __len__(self):
        return len(self.ids)

    def __iter__(self):
        for i in range(len(self.ids)):
            yield Surfel(
                id=int(self.ids[i]),
                position=self.positions[i],
                normal=self.normals[i],
                radius=float(self.radii[i]),
                color=self.colors[i],
                confidence=int(self.confidences[i]),
            )


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned query region; corners are normalised per axis"""

    min_corner: tuple
    max_corner: tuple

    @classmethod
    def from_corners(cls, a, b) -> "BoundingBox":
        a = np.asarray(a, dtype=np.float64)
        b = np.asarray(b, dtype=np.float64)
        return cls(tuple(np.minimum(a, b).tolist()), tuple(np.maximum(a, b).tolist()))

    def contains(self, points: np.ndarray) -> np.ndarray:
        """Boundary-inclusive containment mask for (N, 3) points"""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        lo = np.asarray(self.min_corner)
        hi = np.asarray(self.max_corner)
        return np.all((points >= lo) & (points <= hi), axis=1)


class FusionStatus(Enum):
    OK = "ok"
    CAPACITY_EXHAUSTED = "capacity_exhausted"


@dataclass
class FusionResult:
    """Per-cloud fusion outcome"""

    status: FusionStatus = FusionStatus.OK
    num_points: int = 0
    inserted: int = 0
    updated: int = 0
    replaced: int = 0
    ignored: int = 0
    refused: int = 0
    rejected_nonfinite: int = 0
    rejected_range: int = 0
    rejected_frustum: int = 0
    rejected_normal: int = 0
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is FusionStatus.OK

    @property
    def rejected(self) -> int:
        return (self.rejected_nonfinite + self.rejected_range
                + self.rejected_frustum + self.rejected_normal)
