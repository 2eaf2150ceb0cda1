#!/usr/bin/env python3
"""
Surfel map: preallocated surfel storage indexed by an octree.

Storage is a set of fixed-capacity numpy arrays (structure of arrays). Surfel
ids are slots in those arrays, handed out in order; a reset invalidates every
slot and restarts allocation from zero, so a reset map behaves exactly like a
fresh one. The octree holds at most one surfel id per leaf voxel and must agree
with the validity flags at all times.
"""

import logging
from typing import List, Optional

import numpy as np

from surfel_mapper.core.octree import SurfelOctree
from surfel_mapper.core.types import (
    BoundingBox, MapConsistencyError, Surfel, SurfelSet,
)
from surfel_mapper.utils.fusion import weighted_fusion, fuse_normals


class SurfelMap:
    """
    Octree-indexed surfel store

    Attributes:
        capacity (int): number of preallocated surfel slots
        resolution (float): octree leaf edge in meters
        capacity_exhausted (bool): set once an insertion was refused; cleared
            by reset()
    """

    def __init__(self, capacity, resolution, ros_logger=None):
        """
        Args:
            capacity: preallocated surfel count
            resolution: octree leaf resolution in meters
            ros_logger: optional ROS logger
        """
        self.capacity = int(capacity)
        self.resolution = float(resolution)

        if ros_logger is not None:
            self.logger = ros_logger
        else:
            self.logger = logging.getLogger('SurfelMap')

        self.octree = SurfelOctree(resolution=self.resolution)

        self.positions = np.full((self.capacity, 3), np.nan)
        self.normals = np.full((self.capacity, 3), np.nan)
        self.radii = np.full(self.capacity, np.nan)
        self.colors = np.zeros((self.capacity, 3), dtype=np.uint8)
        self.confidences = np.zeros(self.capacity, dtype=np.int64)
        self.valid = np.zeros(self.capacity, dtype=bool)

        self._next_id = 0
        self.capacity_exhausted = False

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def __len__(self):
        """Number of valid surfels"""
        return len(self.octree)

    @property
    def allocated(self):
        """Number of slots handed out since construction or the last reset"""
        return self._next_id

    @property
    def free_slots(self):
        return self.capacity - self._next_id

    def _resolve(self, surfel_id):
        """Check that an id taken from the index points at a valid surfel"""
        if not 0 <= surfel_id < self._next_id or not self.valid[surfel_id]:
            raise MapConsistencyError(
                f"Octree index refers to surfel {surfel_id} which is not a valid surfel "
                f"(allocated={self._next_id}, capacity={self.capacity})"
            )
        return surfel_id

    def find(self, point) -> Optional[int]:
        """Id of the surfel resident in the leaf voxel containing point"""
        surfel_id = self.octree.find(point)
        if surfel_id is None:
            return None
        return self._resolve(surfel_id)

    def check_consistency(self):
        """
        Verify that index and storage agree (every indexed id is valid, every
        valid surfel is indexed in the leaf containing its position)

        Raises:
            MapConsistencyError
        """
        indexed = self.octree.leaf_ids()
        for surfel_id in indexed:
            self._resolve(surfel_id)
        if len(set(indexed)) != len(indexed):
            raise MapConsistencyError("Surfel indexed in more than one leaf")
        valid_ids = np.flatnonzero(self.valid)
        if len(valid_ids) != len(indexed):
            raise MapConsistencyError(
                f"{len(valid_ids)} valid surfels but {len(indexed)} indexed leaves")
        for surfel_id in valid_ids:
            if self.octree.find(self.positions[surfel_id]) != surfel_id:
                raise MapConsistencyError(
                    f"Surfel {surfel_id} is not indexed at its own position")

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def insert(self, position, normal, radius, color) -> Optional[int]:
        """
        Create a surfel with confidence 1 in an empty leaf

        Returns:
            the new surfel id, or None if storage is exhausted
        """
        if self._next_id >= self.capacity:
            if not self.capacity_exhausted:
                self.logger.warning(
                    f"Surfel storage exhausted ({self.capacity} surfels), "
                    f"further insertions are refused until the map is reset"
                )
            self.capacity_exhausted = True
            return None

        surfel_id = self._next_id
        try:
            self.octree.insert(position, surfel_id)
        except ValueError as e:
            raise MapConsistencyError(str(e)) from e
        self._next_id += 1

        self.positions[surfel_id] = position
        self.normals[surfel_id] = normal
        self.radii[surfel_id] = radius
        self.colors[surfel_id] = color
        self.confidences[surfel_id] = 1
        self.valid[surfel_id] = True
        return surfel_id

    def _leaf_of(self, surfel_id, position):
        """Leaf key of a valid surfel; position must lie in the same leaf"""
        self._resolve(surfel_id)
        key = self.octree.get_voxel_key(self.positions[surfel_id])
        if self.octree.get_voxel_key(position) != key:
            raise ValueError(f"Observation {list(position)} is outside the leaf {key} of surfel {surfel_id}")
        return key

    def update(self, surfel_id, position, normal, radius, color):
        """
        Fuse a compatible observation into a surfel and increment confidence

        The observation must fall in the surfel's leaf; the fused position is
        kept inside that leaf.
        """
        key = self._leaf_of(surfel_id, position)
        weight = self.confidences[surfel_id]
        fused_position = weighted_fusion(self.positions[surfel_id], position, weight)
        self.positions[surfel_id] = self.octree.snap_to_leaf(fused_position, key)
        self.normals[surfel_id] = fuse_normals(self.normals[surfel_id], normal, weight)
        self.radii[surfel_id] = weighted_fusion(self.radii[surfel_id], radius, weight)
        fused_color = weighted_fusion(self.colors[surfel_id], color, weight)
        self.colors[surfel_id] = np.clip(np.rint(fused_color), 0, 255).astype(np.uint8)
        self.confidences[surfel_id] = weight + 1

    def replace(self, surfel_id, position, normal, radius, color):
        """Overwrite a surfel with an observation from its leaf and reset confidence to 1"""
        self._leaf_of(surfel_id, position)
        self.positions[surfel_id] = position
        self.normals[surfel_id] = normal
        self.radii[surfel_id] = radius
        self.colors[surfel_id] = color
        self.confidences[surfel_id] = 1

    def reset(self):
        """Invalidate every surfel and clear the index (idempotent)"""
        n = self._next_id
        self.positions[:n] = np.nan
        self.normals[:n] = np.nan
        self.radii[:n] = np.nan
        self.colors[:n] = 0
        self.confidences[:n] = 0
        self.valid[:n] = False
        self.octree.clear()
        self._next_id = 0
        self.capacity_exhausted = False

    # ------------------------------------------------------------------
    # Queries (read-only)
    # ------------------------------------------------------------------

    def get_surfel(self, surfel_id) -> Surfel:
        if not 0 <= surfel_id < self.capacity:
            raise IndexError(f"Surfel id {surfel_id} out of range [0, {self.capacity})")
        return Surfel(
            id=int(surfel_id),
            position=self.positions[surfel_id].copy(),
            normal=self.normals[surfel_id].copy(),
            radius=float(self.radii[surfel_id]),
            color=self.colors[surfel_id].copy(),
            confidence=int(self.confidences[surfel_id]),
            valid=bool(self.valid[surfel_id]),
        )

    def surfels(self, ids) -> SurfelSet:
        """Copy the given surfels into a SurfelSet (order preserved)"""
        ids = np.asarray(ids, dtype=np.int64).reshape(-1)
        if len(ids) == 0:
            return SurfelSet.empty()
        return SurfelSet(
            ids=ids,
            positions=self.positions[ids].copy(),
            normals=self.normals[ids].copy(),
            radii=self.radii[ids].copy(),
            colors=self.colors[ids].copy(),
            confidences=self.confidences[ids].copy(),
        )

    def all_ids(self) -> np.ndarray:
        """Ids of all valid surfels in allocation order"""
        return np.flatnonzero(self.valid[:self._next_id])

    def range_query(self, bbox: BoundingBox) -> List[int]:
        """
        Ids of valid surfels whose position lies within bbox (inclusive)

        Args:
            bbox: query region

        Returns:
            surfel ids in octree traversal order
        """
        candidates = self.octree.range_query(bbox.min_corner, bbox.max_corner)
        if not candidates:
            return []
        for surfel_id in candidates:
            self._resolve(surfel_id)
        candidates = np.asarray(candidates, dtype=np.int64)
        inside = bbox.contains(self.positions[candidates])
        return candidates[inside].tolist()

    def confidence_filtered_export(self, confidence_threshold) -> SurfelSet:
        """Valid surfels with finite geometry and confidence >= threshold"""
        ids = self.all_ids()
        if len(ids) == 0:
            return SurfelSet.empty()
        finite = (np.isfinite(self.positions[ids]).all(axis=1)
                  & np.isfinite(self.normals[ids]).all(axis=1))
        reliable = self.confidences[ids] >= confidence_threshold
        return self.surfels(ids[finite & reliable])

    def downsample(self, voxel_size, samples_per_voxel):
        """
        Coarse preview of the map

        Up to samples_per_voxel valid surfels (lowest ids first) are taken from
        each preview voxel; their positions and colors are averaged into one
        preview point.

        Args:
            voxel_size: preview voxel edge in meters
            samples_per_voxel: maximum surfels averaged per preview voxel

        Returns:
            (points (M, 3) float64, colors (M, 3) uint8)
        """
        ids = self.all_ids()
        if len(ids) == 0:
            return np.empty((0, 3)), np.empty((0, 3), dtype=np.uint8)

        points = self.positions[ids]
        colors = self.colors[ids].astype(np.float64)

        voxel_indices = np.floor(points / voxel_size).astype(np.int64)
        _, inverse = np.unique(voxel_indices, axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)

        # Rank of each surfel inside its voxel (stable sort keeps id order)
        order = np.argsort(inverse, kind='stable')
        sorted_voxels = inverse[order]
        starts = np.flatnonzero(np.r_[True, sorted_voxels[1:] != sorted_voxels[:-1]])
        group_start = np.repeat(starts, np.diff(np.r_[starts, len(order)]))
        rank = np.empty(len(order), dtype=np.int64)
        rank[order] = np.arange(len(order)) - group_start

        keep = rank < samples_per_voxel
        n_voxels = int(inverse.max()) + 1
        counts = np.bincount(inverse[keep], minlength=n_voxels).astype(np.float64)

        point_sum = np.zeros((n_voxels, 3))
        color_sum = np.zeros((n_voxels, 3))
        np.add.at(point_sum, inverse[keep], points[keep])
        np.add.at(color_sum, inverse[keep], colors[keep])

        preview_points = point_sum / counts[:, None]
        preview_colors = np.clip(np.rint(color_sum / counts[:, None]), 0, 255).astype(np.uint8)
        return preview_points, preview_colors
