#!/usr/bin/env python3
"""
Surfel mapper: context object owning the live mapping state.

ROS2-independent. Holds the pose synchronizer (live trajectory), the cloud
ingestion queue and the surfel map, and exposes one entry point per external
event. Everything runs on the caller's thread; the ROS node drives it from a
single-threaded executor so fusion and queries never interleave.

Typical driving loop:
    >>> mapper = SurfelMapper(config)
    >>> mapper.set_camera(CameraParams(525.0, 525.0, 319.5, 239.5))
    >>> mapper.on_trajectory(poses)      # replaces the trace, drains
    >>> mapper.on_cloud(cloud)           # enqueues, drains
    >>> points, colors = mapper.tick()   # periodic drain + preview
"""

import logging
from typing import Optional, Sequence, Union

import numpy as np

from surfel_mapper.core.cloud_queue import CloudQueue
from surfel_mapper.core.config import SurfelMapperConfig
from surfel_mapper.core.fusion import FusionEngine
from surfel_mapper.core.pose_trace import PoseSynchronizer, PoseTrace
from surfel_mapper.core.surfel_map import SurfelMap
from surfel_mapper.core.types import (
    BoundingBox, CameraParams, FusionResult, Pose, RawCloud, SurfelSet,
)
from surfel_mapper.utils.io import CodeTimer
from surfel_mapper.utils.pcd import save_pcd


class SurfelMapper:
    """
    Pose association, queuing and fusion driver

    The surfel map is created when camera intrinsics become available
    (set_camera); until then trajectories and clouds are accepted and clouds
    stay queued.

    Attributes:
        config (SurfelMapperConfig): mapper configuration
        synchronizer (PoseSynchronizer): live trajectory
        queue (CloudQueue): clouds waiting for a pose
        map (SurfelMap): surfel store, None before set_camera()
        engine (FusionEngine): fusion engine, None before set_camera()
    """

    def __init__(self, config: Optional[SurfelMapperConfig] = None,
                 camera: Optional[CameraParams] = None, ros_logger=None):
        self.config = config if config is not None else SurfelMapperConfig()

        self.ros_logger = ros_logger
        if ros_logger is not None:
            self.logger = ros_logger
        else:
            self.logger = logging.getLogger('SurfelMapper')

        self.synchronizer = PoseSynchronizer(ros_logger=ros_logger)
        self.queue = CloudQueue(ros_logger=ros_logger)
        self.map = None
        self.engine = None

        self.camera = None
        self.last_result: Optional[FusionResult] = None
        self.clouds_fused = 0
        self.clouds_capacity_exhausted = 0

        if camera is not None:
            self.set_camera(camera)

    @property
    def initialized(self) -> bool:
        return self.map is not None

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def set_camera(self, camera: CameraParams) -> bool:
        """
        Create the surfel map for the given intrinsics (first call only)

        Returns:
            True if the map was created by this call
        """
        if self.initialized:
            return False

        cfg = self.config
        self.camera = camera
        self.map = SurfelMap(cfg.scene_capacity, cfg.octree_resolution, ros_logger=self.ros_logger)
        self.engine = FusionEngine(self.map, camera, cfg, ros_logger=self.ros_logger)
        self.logger.info(
            f"Mapper initialized: camera=[alpha={camera.alpha}, beta={camera.beta}, "
            f"cx={camera.cx}, cy={camera.cy}], resolution={cfg.octree_resolution}m, "
            f"capacity={cfg.scene_capacity}, dmax={cfg.dmax}, use_update={cfg.use_update}, "
            f"use_frustum={cfg.use_frustum}"
        )

        # In case clouds only waited for the intrinsics
        self.drain()
        return True

    def on_trajectory(self, trajectory: Union[PoseTrace, Sequence[Pose]]) -> int:
        """Replace the pose trace wholesale and retry queued clouds"""
        trace = trajectory if isinstance(trajectory, PoseTrace) else PoseTrace(trajectory)
        self.synchronizer.set_trace(trace)
        self.logger.debug(f"Trajectory updated: {len(trace)} poses")
        return self.drain()

    def on_cloud(self, cloud: RawCloud) -> int:
        """Queue a keyframe cloud and try to fuse queued clouds"""
        self.logger.info(f"Keyframe cloud received [{cloud.stamp}] ({cloud.frame_id}), {len(cloud)} points")
        self.queue.enqueue(cloud)
        if len(self.queue) > self.config.queue_warn_size:
            self.logger.warning(
                f"{len(self.queue)} clouds waiting for a pose (warning threshold "
                f"{self.config.queue_warn_size})"
            )
        return self.drain()

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def drain(self) -> int:
        """One queue drain pass; returns the number of clouds fused"""
        if not self.initialized:
            if len(self.queue):
                self.logger.info(f"Mapper not initialized, {len(self.queue)} clouds queued")
            return 0
        return self.queue.drain(self.synchronizer.lookup, self._fuse)

    def _fuse(self, cloud: RawCloud):
        pose = cloud.pose
        self.logger.debug(
            f"Adding point cloud [{cloud.stamp}], sensor origin {pose.origin}, "
            f"orientation (wxyz) {pose.orientation}"
        )
        result = self.engine.fuse(cloud)
        self.last_result = result
        self.clouds_fused += 1
        if not result.ok:
            # The cloud is still popped: retrying cannot succeed before a reset
            self.clouds_capacity_exhausted += 1
        return result

    def tick(self):
        """
        Periodic drive step: drain the queue, then build the preview

        Returns:
            (points, colors) preview, or None before initialization
        """
        self.drain()
        if not self.initialized:
            self.logger.info("Downsampled map not built. Mapper is not initialized.")
            return None
        return self.preview()

    # ------------------------------------------------------------------
    # Queries / export
    # ------------------------------------------------------------------

    def preview(self):
        """Downsampled (points, colors) view of the map"""
        cfg = self.config
        with CodeTimer("Preview downsampling", self.logger):
            return self.map.downsample(cfg.preview_resolution, cfg.preview_samples_per_voxel)

    def range_query(self, bbox: BoundingBox):
        return self.map.range_query(bbox)

    def export_bbox(self, min_corner, max_corner) -> SurfelSet:
        """
        Surfels inside a bounding box for visualization, capped at max_markers

        Args:
            min_corner: first box corner [x, y, z]
            max_corner: second box corner [x, y, z]
        """
        bbox = BoundingBox.from_corners(min_corner, max_corner)
        ids = self.map.range_query(bbox)
        if len(ids) > self.config.max_markers:
            self.logger.info(
                f"Number of surfels [{len(ids)}] too large for marker publishing, "
                f"sending first {self.config.max_markers}"
            )
            ids = ids[:self.config.max_markers]
        surfels = self.map.surfels(ids)
        finite = (np.isfinite(surfels.positions).all(axis=1)
                  & np.isfinite(surfels.normals).all(axis=1))
        if not finite.all():
            surfels = self.map.surfels(surfels.ids[finite])
        self.logger.info(
            f"Exporting {len(surfels)} surfels for bb [{bbox.min_corner}]-[{bbox.max_corner}]")
        return surfels

    def export_map(self) -> SurfelSet:
        """Confidence-filtered surfels for persistence"""
        return self.map.confidence_filtered_export(self.config.confidence_threshold)

    def save_map(self, path=None) -> int:
        """
        Save the confidence-filtered map (XYZRGB) as binary PCD

        Nothing is written when no surfel passes the confidence filter.

        Returns:
            number of saved points

        Raises:
            OSError: the file could not be written
        """
        path = path if path is not None else self.config.save_path
        surfels = self.export_map()
        if len(surfels) == 0:
            self.logger.warning(
                f"No surfel with confidence >= {self.config.confidence_threshold}, map not saved")
            return 0
        n = save_pcd(path, surfels.positions, surfels.colors)
        self.logger.info(f"Saved map to {path}. Point count: {n}")
        return n

    def reset_map(self) -> bool:
        """Invalidate all surfels; returns False before initialization"""
        if not self.initialized:
            self.logger.info("reset_map: Mapper not initialized.")
            return False
        self.map.reset()
        self.logger.info("The map has been reset")
        return True

    def stats(self) -> dict:
        stats = {
            'initialized': self.initialized,
            'queued_clouds': len(self.queue),
            'trajectory_poses': len(self.synchronizer.trace) if self.synchronizer.trace is not None else 0,
            'clouds_fused': self.clouds_fused,
            'clouds_capacity_exhausted': self.clouds_capacity_exhausted,
        }
        if self.initialized:
            stats.update({
                'surfels': len(self.map),
                'capacity': self.map.capacity,
                'free_slots': self.map.free_slots,
                'capacity_exhausted': self.map.capacity_exhausted,
            })
        return stats

    def close(self):
        if self.engine is not None:
            self.engine.close()
