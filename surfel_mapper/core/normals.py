"""
Sensor-frame surface normals and surfel footprint radius.

Normals are estimated from a k-nearest-neighbour plane fit (smallest
eigenvector of the local covariance) and oriented toward the sensor origin.
"""

import numpy as np
from scipy.spatial import KDTree


def estimate_normals(points, knn=10):
    """
    Estimate unit normals of a sensor-frame point cloud

    Args:
        points: (N, 3) finite points in the sensor frame
        knn: number of neighbours used for each plane fit

    Returns:
        (N, 3) unit normals facing the sensor; rows are NaN where no plane
        could be fitted (fewer than 3 points)
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    n = len(points)
    normals = np.full((n, 3), np.nan)
    if n < 3:
        return normals

    k = min(int(knn), n)
    tree = KDTree(points)
    _, indices = tree.query(points, k=k)
    indices = np.asarray(indices).reshape(n, k)

    neighbours = points[indices]  # (N, k, 3)
    centered = neighbours - neighbours.mean(axis=1, keepdims=True)
    cov = np.einsum('nki,nkj->nij', centered, centered) / k

    # Eigenvalues ascending: column 0 is the plane normal
    _, eigvecs = np.linalg.eigh(cov)
    normals = eigvecs[:, :, 0]

    return orient_towards_sensor(points, normals)


def orient_towards_sensor(points, normals):
    """Flip normals so that they point from the surface toward the sensor origin"""
    normals = np.asarray(normals, dtype=np.float64).reshape(-1, 3)
    norm = np.linalg.norm(normals, axis=1, keepdims=True)
    with np.errstate(invalid='ignore', divide='ignore'):
        normals = normals / norm
    facing = np.einsum('ij,ij->i', normals, -np.asarray(points, dtype=np.float64))
    flip = facing < 0.0
    normals[flip] *= -1.0
    return normals


def normal_alignment(normals):
    """Alignment of sensor-frame normals with the viewing axis (|n_z|)"""
    return np.abs(np.asarray(normals, dtype=np.float64).reshape(-1, 3)[:, 2])


def surfel_radius(depths, alignment, camera, min_alignment=0.2):
    """
    Disk radius covering one pixel footprint at the given depth

    r = sqrt(2) * depth / focal / alignment, where alignment is clamped from
    below by min_alignment so grazing samples do not blow up.

    Args:
        depths: (N,) sensor-frame depths
        alignment: (N,) |n_z| of the sensor-frame normals
        camera: CameraParams
        min_alignment: lower clamp for alignment

    Returns:
        (N,) radii in meters
    """
    depths = np.asarray(depths, dtype=np.float64)
    alignment = np.maximum(np.asarray(alignment, dtype=np.float64), max(min_alignment, 1e-6))
    return np.sqrt(2.0) * depths / camera.focal / alignment
