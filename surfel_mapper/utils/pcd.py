"""
Map persistence as binary PCD (x y z rgb) through Open3D.
"""
from pathlib import Path

import numpy as np
import open3d as o3d


def to_o3d_cloud(points, colors) -> o3d.geometry.PointCloud:
    """(N, 3) positions and (N, 3) uint8 colors -> Open3D point cloud"""
    cloud = o3d.geometry.PointCloud()
    cloud.points = o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64).reshape(-1, 3))
    cloud.colors = o3d.utility.Vector3dVector(np.asarray(colors, dtype=np.float64).reshape(-1, 3) / 255.0)
    return cloud


def save_pcd(path, points, colors) -> int:
    """
    Write a colored point cloud as binary PCD

    Args:
        path: output file
        points: (N, 3) positions
        colors: (N, 3) uint8 colors

    Returns:
        number of points written

    Raises:
        OSError: Open3D could not write the file
    """
    cloud = to_o3d_cloud(points, colors)
    ok = o3d.io.write_point_cloud(str(Path(path)), cloud, write_ascii=False)
    if not ok:
        raise OSError(f"Failed to write point cloud to {path}")
    return len(cloud.points)
