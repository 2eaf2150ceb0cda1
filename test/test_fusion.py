"""
Fusion engine tests

Tests for:
- per-point gates (finiteness, range, frustum, normal quality)
- sensor -> map transform
- update / replace / ignore decisions and confidence counting
- capacity exhaustion reporting
- normal estimation and profiling output
"""

import csv

import numpy as np
import pytest

from surfel_mapper.core.config import SurfelMapperConfig
from surfel_mapper.core.fusion import FusionEngine
from surfel_mapper.core.surfel_map import SurfelMap
from surfel_mapper.core.types import FusionStatus

from conftest import make_cloud, make_pose


def _engine(camera, **overrides):
    params = {'scene_capacity': 10000}
    params.update(overrides)
    cfg = SurfelMapperConfig(**params)
    return FusionEngine(SurfelMap(cfg.scene_capacity, cfg.octree_resolution), camera, cfg)


def _fuse(engine, points, **kwargs):
    cloud = make_cloud(points, pose=make_pose(10.0), **kwargs)
    return engine.fuse(cloud)


# =============================================================================
# Gates
# =============================================================================


class TestGates:

    def test_range_gate(self, camera):
        engine = _engine(camera)
        result = _fuse(engine, [[0.05, 0.05, 0.5], [0.05, 0.05, 5.0], [0.05, 0.05, 2.1]])
        assert result.rejected_range == 2
        assert result.inserted == 1
        assert len(engine.map) == 1

    def test_frustum_gate(self, camera):
        engine = _engine(camera)
        result = _fuse(engine, [[3.0, 0.0, 2.0]])
        assert result.rejected_frustum == 1
        assert result.inserted == 0

        engine = _engine(camera, use_frustum=False)
        result = _fuse(engine, [[3.0, 0.0, 2.0]])
        assert result.rejected_frustum == 0
        assert result.inserted == 1

    def test_frustum_keeps_border_pixels(self, camera):
        assert camera.width == 640.0
        assert camera.height == 480.0
        engine = _engine(camera)

        def x_at(u, z=2.0):
            return (u - camera.cx) * z / camera.alpha

        # Last column (u in [638.5, 639.5)) and first column are inside
        result = _fuse(engine, [[x_at(639.3), 0.0, 2.0], [x_at(-0.4), 0.0, 2.0]])
        assert result.rejected_frustum == 0
        assert result.inserted == 2

        result = _fuse(engine, [[x_at(639.6), 0.0, 2.0], [x_at(-0.6), 0.0, 2.0]])
        assert result.rejected_frustum == 2

    def test_grazing_normal_rejected(self, camera):
        engine = _engine(camera)
        result = _fuse(engine, [[0.05, 0.05, 2.1]], normals=[[1.0, 0.0, 0.0]])
        assert result.rejected_normal == 1
        assert len(engine.map) == 0

    def test_non_finite_points_skipped(self, camera):
        engine = _engine(camera)
        result = _fuse(engine, [[np.nan, 0.0, 2.1], [0.05, 0.05, 2.1], [0.0, np.inf, 2.0]])
        assert result.rejected_nonfinite == 2
        assert result.inserted == 1
        assert result.ok

    def test_missing_pose_raises(self, camera):
        engine = _engine(camera)
        with pytest.raises(ValueError):
            engine.fuse(make_cloud([[0.05, 0.05, 2.1]]))


# =============================================================================
# Transform
# =============================================================================


class TestTransform:

    def test_points_and_normals_moved_to_map_frame(self, camera):
        engine = _engine(camera)
        c = np.cos(np.pi / 4)
        pose = make_pose(10.0, origin=(1.0, 2.0, 3.0), orientation=(c, 0.0, 0.0, c))
        cloud = make_cloud([[0.05, 0.05, 2.1]], normals=[[0.0, 0.0, -1.0]], pose=pose)
        engine.fuse(cloud)

        surfel = engine.map.get_surfel(0)
        np.testing.assert_allclose(surfel.position, [0.95, 2.05, 5.1], atol=1e-9)
        np.testing.assert_allclose(surfel.normal, [0.0, 0.0, -1.0], atol=1e-9)

    def test_radius_from_depth_and_focal(self, camera):
        engine = _engine(camera)
        _fuse(engine, [[0.05, 0.05, 2.1]])
        assert engine.map.get_surfel(0).radius == pytest.approx(np.sqrt(2.0) * 2.1 / 525.0)


# =============================================================================
# Update / replace
# =============================================================================


class TestUpdateRule:

    def test_confidence_counts_observations(self, camera):
        engine = _engine(camera)
        n = 4
        for _ in range(n):
            _fuse(engine, [[0.05, 0.05, 2.1]])
        assert len(engine.map) == 1
        assert engine.map.get_surfel(0).confidence == n

        assert len(engine.map.confidence_filtered_export(n)) == 1
        assert len(engine.map.confidence_filtered_export(n + 1)) == 0

    def test_single_observation_below_threshold(self, camera):
        engine = _engine(camera)
        _fuse(engine, [[0.05, 0.05, 2.1]])
        assert len(engine.map.confidence_filtered_export(2)) == 0

    def test_update_within_dmax(self, camera):
        engine = _engine(camera)
        _fuse(engine, [[0.05, 0.05, 2.1]])
        result = _fuse(engine, [[0.05, 0.05, 2.102]])
        assert result.updated == 1
        surfel = engine.map.get_surfel(0)
        assert surfel.confidence == 2
        assert surfel.position[2] == pytest.approx(2.101)

    def test_far_observation_replaces_surfel(self, camera):
        engine = _engine(camera)
        for _ in range(3):
            _fuse(engine, [[0.05, 0.05, 2.1]])
        result = _fuse(engine, [[0.05, 0.05, 2.15]], colors=[[10, 20, 30]])
        assert result.replaced == 1
        surfel = engine.map.get_surfel(0)
        assert surfel.confidence == 1
        np.testing.assert_allclose(surfel.position, [0.05, 0.05, 2.15])
        assert list(surfel.color) == [10, 20, 30]
        assert len(engine.map) == 1

    def test_update_disabled_is_idempotent(self, camera):
        engine = _engine(camera, use_update=False)
        points = [[0.05, 0.05, 2.1], [0.45, 0.05, 2.1], [0.05, 0.45, 2.3]]
        _fuse(engine, points)
        snapshot = (engine.map.positions.copy(), engine.map.normals.copy(),
                    engine.map.radii.copy(), engine.map.colors.copy(),
                    engine.map.confidences.copy())

        result = _fuse(engine, points, colors=[[1, 1, 1]] * 3)
        assert result.inserted == 0
        assert result.ignored == 3
        for before, after in zip(snapshot, (engine.map.positions, engine.map.normals,
                                            engine.map.radii, engine.map.colors,
                                            engine.map.confidences)):
            np.testing.assert_array_equal(before, after)


# =============================================================================
# Capacity
# =============================================================================


class TestCapacity:

    def test_exhaustion_refuses_inserts_but_keeps_updates(self, camera):
        engine = _engine(camera, scene_capacity=2)
        result = _fuse(engine, [[0.05, 0.05, 2.1], [0.35, 0.05, 2.1], [0.65, 0.05, 2.1]])
        assert result.inserted == 2
        assert result.refused == 1
        assert result.status is FusionStatus.CAPACITY_EXHAUSTED
        assert not result.ok

        result = _fuse(engine, [[0.05, 0.05, 2.1], [0.65, 0.05, 2.1]])
        assert result.updated == 1
        assert result.refused == 1
        assert result.status is FusionStatus.CAPACITY_EXHAUSTED
        assert engine.map.get_surfel(0).confidence == 2

    def test_reset_clears_exhaustion(self, camera):
        engine = _engine(camera, scene_capacity=1)
        _fuse(engine, [[0.05, 0.05, 2.1], [0.35, 0.05, 2.1]])
        assert engine.map.capacity_exhausted

        engine.map.reset()
        result = _fuse(engine, [[0.35, 0.05, 2.1]])
        assert result.ok
        assert result.inserted == 1
        np.testing.assert_allclose(engine.map.get_surfel(0).position, [0.35, 0.05, 2.1])


# =============================================================================
# Normals / profiling
# =============================================================================


class TestNormalsAndProfiling:

    def test_estimated_normals_face_sensor(self, camera, plane_cloud_factory):
        engine = _engine(camera)
        cloud = plane_cloud_factory(depth=2.1)
        result = engine.fuse(cloud)

        assert result.rejected == 0
        assert result.inserted + result.updated == len(cloud)
        assert result.replaced == 0
        normals = engine.map.normals[engine.map.all_ids()]
        np.testing.assert_allclose(normals[:, 2], -1.0, atol=1e-6)
        engine.map.check_consistency()

    def test_profiler_writes_csv(self, camera, tmp_path):
        csv_path = tmp_path / "fusion.csv"
        engine = _engine(camera, enable_profiling=True,
                         profiling_csv_path=str(csv_path), profiling_interval=1)
        _fuse(engine, [[0.05, 0.05, 2.1]])
        _fuse(engine, [[0.45, 0.05, 2.1]])
        engine.close()

        with open(csv_path, newline='') as f:
            reader = csv.DictReader(f)
            rows = list(reader)
        assert reader.fieldnames[0] == 'cloud_id'
        assert reader.fieldnames[-1] == 'map_surfels'
        assert {'inserted', 'rejected_frustum', 'elapsed_ms', 'status'} <= set(reader.fieldnames)
        assert len(rows) == 2
        assert rows[0]['cloud_id'] == '1'
        assert rows[0]['inserted'] == '1'
        assert rows[0]['status'] == 'ok'
        assert rows[1]['map_surfels'] == '2'

    def test_profiler_samples_every_interval(self, camera, tmp_path):
        csv_path = tmp_path / "fusion.csv"
        engine = _engine(camera, enable_profiling=True,
                         profiling_csv_path=str(csv_path), profiling_interval=2)
        for x in (0.05, 0.45, 0.85):
            _fuse(engine, [[x, 0.05, 2.1]])
        engine.close()

        with open(csv_path, newline='') as f:
            rows = list(csv.DictReader(f))
        assert [row['cloud_id'] for row in rows] == ['2']
