import os
import sys

import numpy as np
import pytest

# Ensure local package import works for pytest collection.
_TEST_DIR = os.path.dirname(__file__)
_PKG_ROOT = os.path.abspath(os.path.join(_TEST_DIR, ".."))
if _PKG_ROOT not in sys.path:
    sys.path.insert(0, _PKG_ROOT)

from surfel_mapper.core.config import SurfelMapperConfig
from surfel_mapper.core.types import CameraParams, Pose, RawCloud, Stamp


# =============================================================================
# Config / sensor fixtures
# =============================================================================


@pytest.fixture
def config():
    """Default fusion parameters with a small scene so tests stay light."""
    return SurfelMapperConfig(scene_capacity=10000)


@pytest.fixture
def camera():
    """Kinect-like intrinsics (640x480 image)."""
    return CameraParams(alpha=525.0, beta=525.0, cx=319.5, cy=239.5)


@pytest.fixture
def identity_pose():
    return Pose.from_arrays([1.0, 0.0, 0.0, 0.0], [0.0, 0.0, 0.0], Stamp(10))


# =============================================================================
# Cloud helpers
# =============================================================================


def make_pose(t, origin=(0.0, 0.0, 0.0), orientation=(1.0, 0.0, 0.0, 0.0)):
    """Pose at float time t (seconds)."""
    return Pose.from_arrays(orientation, origin, Stamp.from_sec(t))


def make_cloud(points, normals=None, colors=None, t=10.0, pose=None, frame_id="camera_rgb_optical_frame"):
    """RawCloud from point list; facing-camera normals by default."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if normals is None:
        normals = np.tile([0.0, 0.0, -1.0], (len(points), 1))
    if colors is None:
        colors = np.full((len(points), 3), 128, dtype=np.uint8)
    cloud = RawCloud(points, colors, Stamp.from_sec(t), frame_id, normals=normals)
    if pose is not None:
        cloud.attach_pose(pose)
    return cloud


def plane_points(depth=2.0, half_extent=0.5, step=0.05):
    """Fronto-parallel grid of points at the given depth (sensor frame)."""
    xs = np.arange(-half_extent, half_extent + 1e-9, step)
    gx, gy = np.meshgrid(xs, xs)
    return np.stack([gx.ravel(), gy.ravel(), np.full(gx.size, depth)], axis=1)


@pytest.fixture
def plane_cloud_factory(identity_pose):
    """Build plane clouds (estimated normals) with the identity pose attached."""
    def factory(depth=2.0, t=10.0):
        pts = plane_points(depth)
        colors = np.full((len(pts), 3), 200, dtype=np.uint8)
        cloud = RawCloud(pts, colors, Stamp.from_sec(t), "camera_rgb_optical_frame")
        cloud.attach_pose(identity_pose)
        return cloud
    return factory
