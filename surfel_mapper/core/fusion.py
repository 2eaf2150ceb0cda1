#!/usr/bin/env python3
"""
Surfel fusion of pose-resolved keyframe clouds.

Per point, in the sensor frame:
    1. finiteness check (non-finite points are skipped silently)
    2. range gate on depth (z)
    3. frustum gate: projection through the camera intrinsics must land inside
       the image (optional)
    4. normal-quality gate on |n_z|
Then the point is transformed into the map frame with the cloud pose and
merged into the leaf voxel it falls in:
    - empty leaf: insert a surfel with confidence 1 (subject to capacity)
    - occupied leaf, update enabled: if the distance along the surfel normal is
      within dmax, running-average update and confidence + 1; otherwise the
      observation replaces the surfel and confidence restarts at 1
    - occupied leaf, update disabled: observation ignored
"""

import logging
import time

import numpy as np

from surfel_mapper.core.normals import (
    estimate_normals, normal_alignment, orient_towards_sensor, surfel_radius,
)
from surfel_mapper.core.types import FusionResult, FusionStatus, RawCloud
from surfel_mapper.utils.profiler import MappingProfiler


class FusionEngine:
    """Merges clouds with attached poses into a SurfelMap"""

    def __init__(self, surfel_map, camera, config, ros_logger=None):
        """
        Args:
            surfel_map: SurfelMap to mutate
            camera: CameraParams of the depth sensor
            config: SurfelMapperConfig
            ros_logger: optional ROS logger
        """
        self.map = surfel_map
        self.camera = camera
        self.config = config

        if ros_logger is not None:
            self.logger = ros_logger
        else:
            self.logger = logging.getLogger('FusionEngine')

        self.cloud_count = 0

        self.profiler = None
        if config.enable_profiling:
            self.profiler = MappingProfiler(
                csv_path=config.profiling_csv_path,
                sample_interval=config.profiling_interval,
            )
            self.profiler.start()

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def range_mask(self, points):
        depth = points[:, 2]
        return (depth >= self.config.min_sensor_dist) & (depth <= self.config.max_sensor_dist)

    def frustum_mask(self, points):
        """
        Points whose pinhole projection lands inside the image

        Pixel i covers [i - 0.5, i + 0.5), so the image spans
        [-0.5, width - 0.5) x [-0.5, height - 0.5).
        """
        cam = self.camera
        z = points[:, 2]
        in_front = z > 0.0
        safe_z = np.where(in_front, z, 1.0)
        u = cam.alpha * points[:, 0] / safe_z + cam.cx
        v = cam.beta * points[:, 1] / safe_z + cam.cy
        return (in_front & (u >= -0.5) & (u < cam.width - 0.5)
                & (v >= -0.5) & (v < cam.height - 0.5))

    def sensor_normals(self, cloud, finite):
        """Sensor-frame normals for the finite points of a cloud"""
        points = cloud.points[finite]
        if cloud.normals is not None:
            return orient_towards_sensor(points, cloud.normals[finite])
        return estimate_normals(points, knn=self.config.normal_neighbors)

    # ------------------------------------------------------------------
    # Fusion
    # ------------------------------------------------------------------

    def fuse(self, cloud: RawCloud) -> FusionResult:
        """
        Fuse one cloud into the map

        A bad point never aborts the cloud. If storage runs out, remaining
        insertions are refused (updates continue) and the result status is
        CAPACITY_EXHAUSTED; already applied changes stay in place.

        Args:
            cloud: RawCloud with attached pose

        Returns:
            FusionResult
        """
        if cloud.pose is None:
            raise ValueError(f"Cloud [{cloud.stamp}] has no pose attached")

        t0 = time.perf_counter()
        result = FusionResult(num_points=len(cloud))
        cfg = self.config

        # 1. Finite points
        finite = np.isfinite(cloud.points).all(axis=1)
        if cloud.normals is not None:
            finite &= np.isfinite(cloud.normals).all(axis=1)
        result.rejected_nonfinite = int(np.count_nonzero(~finite))

        points = cloud.points[finite]
        colors = cloud.colors[finite]

        # Normals are estimated on every finite point so that gated neighbours
        # still support the plane fit
        normals = self.sensor_normals(cloud, finite)
        has_normal = np.isfinite(normals).all(axis=1)

        # 2. Range gate
        keep = self.range_mask(points)
        result.rejected_range = int(np.count_nonzero(~keep))

        # 3. Frustum gate
        if cfg.use_frustum:
            in_view = self.frustum_mask(points)
            result.rejected_frustum = int(np.count_nonzero(keep & ~in_view))
            keep &= in_view

        # 4. Normal-quality gate
        alignment = np.where(has_normal, normal_alignment(np.nan_to_num(normals)), 0.0)
        good_normal = has_normal & (alignment >= cfg.min_normal_alignment)
        result.rejected_normal = int(np.count_nonzero(keep & ~good_normal))
        keep &= good_normal

        points = points[keep]
        colors = colors[keep]
        normals = normals[keep]
        radii = surfel_radius(points[:, 2], alignment[keep], self.camera, cfg.min_normal_alignment)

        # 5. Sensor -> map frame
        R = cloud.pose.rotation_matrix()
        t = np.asarray(cloud.pose.origin, dtype=np.float64)
        map_points = points @ R.T + t
        map_normals = normals @ R.T

        # 6. Voxel lookup and surfel update
        for p, n, r, c in zip(map_points, map_normals, radii, colors):
            self._fuse_point(p, n, r, c, result)

        if self.map.capacity_exhausted:
            result.status = FusionStatus.CAPACITY_EXHAUSTED

        result.elapsed_ms = (time.perf_counter() - t0) * 1000.0
        self.cloud_count += 1
        self._report(cloud, result)
        return result

    def _fuse_point(self, position, normal, radius, color, result):
        surfel_id = self.map.find(position)

        if surfel_id is None:
            if self.map.capacity_exhausted:
                result.refused += 1
                return
            if self.map.insert(position, normal, radius, color) is None:
                result.refused += 1
            else:
                result.inserted += 1
            return

        if not self.config.use_update:
            result.ignored += 1
            return

        surfel_normal = self.map.normals[surfel_id]
        depth_diff = abs(float(np.dot(position - self.map.positions[surfel_id], surfel_normal)))
        if depth_diff <= self.config.dmax:
            self.map.update(surfel_id, position, normal, radius, color)
            result.updated += 1
        else:
            self.map.replace(surfel_id, position, normal, radius, color)
            result.replaced += 1

    def _report(self, cloud, result):
        self.logger.info(
            f"Fused cloud [{cloud.stamp}] ({cloud.frame_id}): {result.num_points} points, "
            f"inserted={result.inserted}, updated={result.updated}, replaced={result.replaced}, "
            f"ignored={result.ignored}, rejected={result.rejected}, "
            f"map={len(self.map)}/{self.map.capacity} surfels, {result.elapsed_ms:.1f}ms"
        )
        if not result.ok:
            self.logger.warning(
                f"Cloud [{cloud.stamp}] hit surfel capacity: {result.refused} insertions refused"
            )

        if self.profiler is not None:
            self.profiler.record(self.cloud_count, cloud.stamp, result, len(self.map))

    def close(self):
        if self.profiler is not None:
            self.profiler.close()
