"""
Octree index mapping leaf voxels to surfel ids.

Leaves sit on a fixed grid of `resolution`-sized cells: a point p falls in the
cell with integer key floor(p / resolution). Nodes are addressed in key units
(origin corner + power-of-two edge length) so leaf membership is exact and
never depends on floating point node centers. Each leaf holds at most one
surfel id.
"""
import math
from typing import List, Optional, Tuple

import numpy as np


EMPTY = -1

Key = Tuple[int, int, int]


class OctNode:
    """
    Single node in the octree (internal or leaf)

    Uses lazy initialization: children only created when needed.
    Leaves (size == 1) carry the resident surfel id.
    """

    __slots__ = ('origin', 'size', 'children', 'surfel_id')

    def __init__(self, origin, size):
        """
        Args:
            origin: (ix, iy, iz) lowest key covered by this node
            size: edge length in leaf cells (power of two)
        """
        self.origin = origin
        self.size = size
        self.children = [None] * 8
        self.surfel_id = EMPTY

    def is_leaf(self):
        return self.size == 1

    def contains(self, key):
        ox, oy, oz = self.origin
        s = self.size
        return ox <= key[0] < ox + s and oy <= key[1] < oy + s and oz <= key[2] < oz + s

    def intersects(self, kmin, kmax):
        for axis in range(3):
            lo = self.origin[axis]
            hi = lo + self.size - 1
            if hi < kmin[axis] or lo > kmax[axis]:
                return False
        return True

    def get_octant_index(self, key):
        """
        Find which octant (0-7) the key belongs to

        Octant indexing:
        - Bit 0 (value 1): X in upper half
        - Bit 1 (value 2): Y in upper half
        - Bit 2 (value 4): Z in upper half
        """
        half = self.size // 2
        index = 0
        if key[0] >= self.origin[0] + half:
            index |= 1
        if key[1] >= self.origin[1] + half:
            index |= 2
        if key[2] >= self.origin[2] + half:
            index |= 4
        return index

    def get_child(self, index, create=False):
        child = self.children[index]
        if child is None and create:
            half = self.size // 2
            child_origin = (
                self.origin[0] + (half if index & 1 else 0),
                self.origin[1] + (half if index & 2 else 0),
                self.origin[2] + (half if index & 4 else 0),
            )
            child = OctNode(child_origin, half)
            self.children[index] = child
        return child


class SurfelOctree:
    """
    Octree from leaf voxel to resident surfel id

    The root starts as a cube of 2^max_depth cells centred on the world origin
    and doubles toward any key that falls outside it, so the grid alignment of
    leaves never changes.
    """

    def __init__(self, resolution=0.2, max_depth=10):
        """
        Args:
            resolution: leaf voxel edge in meters
            max_depth: initial depth of the root (2^max_depth cells per axis)
        """
        self.resolution = float(resolution)
        self.max_depth = int(max_depth)
        self._count = 0
        self.root = self._make_root()

    def _make_root(self):
        half = 2 ** (self.max_depth - 1)
        return OctNode((-half, -half, -half), 2 * half)

    def __len__(self):
        """Number of occupied leaves"""
        return self._count

    @property
    def depth(self):
        return int(math.log2(self.root.size))

    def world_to_key(self, x, y, z) -> Key:
        """Integer leaf key of a world position"""
        r = self.resolution
        return (int(math.floor(x / r)), int(math.floor(y / r)), int(math.floor(z / r)))

    def get_voxel_key(self, point) -> Key:
        return self.world_to_key(point[0], point[1], point[2])

    def key_to_center(self, key) -> np.ndarray:
        return (np.asarray(key, dtype=np.float64) + 0.5) * self.resolution

    def snap_to_leaf(self, point, key) -> np.ndarray:
        """
        Move point by the fewest ulps needed for it to map to leaf key

        Averaging positions inside one leaf can round across a leaf face;
        the result is pulled back into the leaf.

        Raises:
            ValueError: point lies further than rounding error from the leaf
        """
        point = np.array(point, dtype=np.float64)
        r = self.resolution
        for axis in range(3):
            target = key[axis]
            k = int(math.floor(point[axis] / r))
            steps = 0
            while k != target:
                point[axis] = np.nextafter(point[axis], np.inf if k < target else -np.inf)
                k = int(math.floor(point[axis] / r))
                steps += 1
                if steps > 64:
                    raise ValueError(f"Point {point.tolist()} is not next to leaf {tuple(key)}")
        return point

    def _expand_to(self, key):
        """Double the root until it covers key"""
        while not self.root.contains(key):
            old = self.root
            s = old.size
            new_origin = []
            index = 0
            for axis in range(3):
                if key[axis] < old.origin[axis]:
                    # Grow toward negative side, old root becomes the upper half
                    new_origin.append(old.origin[axis] - s)
                    index |= (1 << axis)
                else:
                    new_origin.append(old.origin[axis])
            new_root = OctNode(tuple(new_origin), 2 * s)
            new_root.children[index] = old
            self.root = new_root

    def _find_leaf(self, key, create=False) -> Optional[OctNode]:
        if not self.root.contains(key):
            if not create:
                return None
            self._expand_to(key)

        node = self.root
        while not node.is_leaf():
            node = node.get_child(node.get_octant_index(key), create=create)
            if node is None:
                return None
        return node

    def find(self, point) -> Optional[int]:
        """Surfel id resident in the leaf containing point, or None"""
        return self.find_key(self.get_voxel_key(point))

    def find_key(self, key) -> Optional[int]:
        leaf = self._find_leaf(key)
        if leaf is None or leaf.surfel_id == EMPTY:
            return None
        return leaf.surfel_id

    def insert(self, point, surfel_id: int) -> Key:
        """
        Register surfel_id in the leaf containing point

        Raises:
            ValueError: the leaf already holds a surfel
        """
        key = self.get_voxel_key(point)
        leaf = self._find_leaf(key, create=True)
        if leaf.surfel_id != EMPTY:
            raise ValueError(f"Leaf {key} already holds surfel {leaf.surfel_id}")
        leaf.surfel_id = int(surfel_id)
        self._count += 1
        return key

    def remove(self, point) -> Optional[int]:
        """Clear the leaf containing point, returning the id it held"""
        leaf = self._find_leaf(self.get_voxel_key(point))
        if leaf is None or leaf.surfel_id == EMPTY:
            return None
        surfel_id = leaf.surfel_id
        leaf.surfel_id = EMPTY
        self._count -= 1
        return surfel_id

    def range_query(self, min_point, max_point) -> List[int]:
        """
        Ids of all occupied leaves intersecting the box [min_point, max_point]

        Leaves are visited depth-first in octant order, so the result order is
        stable for an unmodified tree.
        """
        kmin = self.get_voxel_key(min_point)
        kmax = self.get_voxel_key(max_point)
        ids = []
        self._collect_range(self.root, kmin, kmax, ids)
        return ids

    def _collect_range(self, node, kmin, kmax, ids):
        if not node.intersects(kmin, kmax):
            return
        if node.is_leaf():
            if node.surfel_id != EMPTY:
                ids.append(node.surfel_id)
            return
        for child in node.children:
            if child is not None:
                self._collect_range(child, kmin, kmax, ids)

    def leaf_ids(self) -> List[int]:
        """Ids of all occupied leaves (depth-first octant order)"""
        ids = []
        self._collect_all(self.root, ids)
        return ids

    def _collect_all(self, node, ids):
        if node.is_leaf():
            if node.surfel_id != EMPTY:
                ids.append(node.surfel_id)
            return
        for child in node.children:
            if child is not None:
                self._collect_all(child, ids)

    def clear(self):
        """Clear all data (recreate root)"""
        self.root = self._make_root()
        self._count = 0
