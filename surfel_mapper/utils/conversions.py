"""
Conversions between ROS 2 messages and surfel mapper core values.

ROS message modules are imported inside the functions that need them so the
core (and its tests) never depend on rclpy.
"""
import numpy as np
from scipy.spatial.transform import Rotation as R

from surfel_mapper.core.pose_trace import PoseTrace
from surfel_mapper.core.types import CameraParams, Pose, RawCloud, Stamp


MARKER_THICKNESS = 0.0001


def pack_rgb(colors):
    """(N, 3) uint8 -> (N,) uint32 packed as 0x00RRGGBB"""
    colors = np.asarray(colors, dtype=np.uint32).reshape(-1, 3)
    return (colors[:, 0] << 16) | (colors[:, 1] << 8) | colors[:, 2]


def unpack_rgb(rgb):
    """(N,) uint32 packed 0x00RRGGBB -> (N, 3) uint8"""
    rgb = np.asarray(rgb, dtype=np.uint32)
    return np.stack([(rgb >> 16) & 0xFF, (rgb >> 8) & 0xFF, rgb & 0xFF], axis=1).astype(np.uint8)


def stamp_from_msg(stamp) -> Stamp:
    """builtin_interfaces/Time -> Stamp"""
    return Stamp(int(stamp.sec), int(stamp.nanosec))


def stamp_to_msg(stamp: Stamp):
    from builtin_interfaces.msg import Time
    return Time(sec=int(stamp.sec), nanosec=int(stamp.nanosec))


def pose_stamped_to_pose(pose_stamped) -> Pose:
    """geometry_msgs/PoseStamped -> Pose (quaternion stored scalar first)"""
    p = pose_stamped.pose.position
    q = pose_stamped.pose.orientation
    return Pose.from_arrays(
        [q.w, q.x, q.y, q.z],
        [p.x, p.y, p.z],
        stamp_from_msg(pose_stamped.header.stamp),
    )


def path_to_trace(path_msg) -> PoseTrace:
    """nav_msgs/Path -> PoseTrace"""
    return PoseTrace([pose_stamped_to_pose(ps) for ps in path_msg.poses])


def camera_info_to_params(msg) -> CameraParams:
    """sensor_msgs/CameraInfo -> CameraParams (K = [alpha 0 cx; 0 beta cy; 0 0 1])"""
    k = msg.k
    return CameraParams(alpha=float(k[0]), beta=float(k[4]), cx=float(k[2]), cy=float(k[5]))


def _field_dtypes():
    from sensor_msgs.msg import PointField
    return {
        PointField.FLOAT32: np.dtype('<f4'),
        PointField.FLOAT64: np.dtype('<f8'),
        PointField.INT32: np.dtype('<i4'),
        PointField.UINT32: np.dtype('<u4'),
        PointField.INT16: np.dtype('<i2'),
        PointField.UINT16: np.dtype('<u2'),
        PointField.INT8: np.dtype('i1'),
        PointField.UINT8: np.dtype('u1'),
    }


def pointcloud2_to_cloud(msg) -> RawCloud:
    """
    Convert a PointCloud2 keyframe (XYZ or XYZRGB) into a RawCloud

    Non-finite points are kept; fusion skips them.
    """
    field_map = {f.name: f for f in msg.fields}
    if not all(name in field_map for name in ('x', 'y', 'z')):
        raise ValueError("PointCloud2 must have x, y, z fields")

    n_points = msg.width * msg.height
    stamp = stamp_from_msg(msg.header.stamp)
    if n_points == 0:
        return RawCloud(np.empty((0, 3)), np.empty((0, 3), dtype=np.uint8), stamp, msg.header.frame_id)

    dtypes = _field_dtypes()
    endian = '>' if msg.is_bigendian else '<'
    data = np.frombuffer(bytes(msg.data), dtype=np.uint8).reshape(n_points, msg.point_step)

    def column(name):
        field = field_map[name]
        dtype = dtypes[field.datatype].newbyteorder(endian)
        raw = np.ascontiguousarray(data[:, field.offset:field.offset + dtype.itemsize])
        return raw.view(dtype).reshape(-1)

    points = np.stack([column('x'), column('y'), column('z')], axis=1).astype(np.float64)

    if 'rgb' in field_map or 'rgba' in field_map:
        name = 'rgb' if 'rgb' in field_map else 'rgba'
        field = field_map[name]
        raw = np.ascontiguousarray(data[:, field.offset:field.offset + 4])
        colors = unpack_rgb(raw.view(np.dtype('u4').newbyteorder(endian)).reshape(-1))
    else:
        colors = np.full((n_points, 3), 255, dtype=np.uint8)

    return RawCloud(points, colors, stamp, msg.header.frame_id)


def points_to_pointcloud2(points, colors, frame_id, stamp=None):
    """
    Generate an XYZRGB PointCloud2 message (rgb packed into a float32 field)

    Args:
        points: (N, 3) positions
        colors: (N, 3) uint8
        frame_id: Coordinate frame
        stamp: ROS timestamp (optional)
    """
    from sensor_msgs.msg import PointCloud2, PointField
    from std_msgs.msg import Header

    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    n = len(points)

    msg = PointCloud2()
    msg.header = Header()
    msg.header.frame_id = frame_id
    if stamp:
        msg.header.stamp = stamp

    msg.fields = [
        PointField(name='x', offset=0, datatype=PointField.FLOAT32, count=1),
        PointField(name='y', offset=4, datatype=PointField.FLOAT32, count=1),
        PointField(name='z', offset=8, datatype=PointField.FLOAT32, count=1),
        PointField(name='rgb', offset=12, datatype=PointField.FLOAT32, count=1),
    ]
    msg.is_bigendian = False
    msg.point_step = 16
    msg.row_step = msg.point_step * n
    msg.is_dense = True
    msg.height = 1
    msg.width = n

    data = np.empty(n, dtype=[('x', '<f4'), ('y', '<f4'), ('z', '<f4'), ('rgb', '<u4')])
    data['x'] = points[:, 0]
    data['y'] = points[:, 1]
    data['z'] = points[:, 2]
    data['rgb'] = pack_rgb(colors)
    msg.data = data.tobytes()
    return msg


def quaternion_from_z_axis(normal):
    """
    Shortest-arc rotation taking +Z onto normal

    Returns:
        (x, y, z, w) unit quaternion
    """
    n = np.asarray(normal, dtype=np.float64)
    n = n / np.linalg.norm(n)
    axis = np.cross([0.0, 0.0, 1.0], n)
    sin_angle = np.linalg.norm(axis)
    angle = np.arctan2(sin_angle, n[2])
    if sin_angle < 1e-12:
        # Parallel or antiparallel: rotate about X (identity for +Z)
        axis, sin_angle = np.array([1.0, 0.0, 0.0]), 1.0
    return tuple(R.from_rotvec(axis / sin_angle * angle).as_quat().tolist())


def surfels_to_marker_array(surfels, frame_id, ns='surfelmap', stamp=None):
    """
    Build a MarkerArray of flat cylinders, one per surfel

    Cylinder axis follows the surfel normal, diameter is twice the radius.
    """
    from visualization_msgs.msg import Marker, MarkerArray

    marray = MarkerArray()
    for surfel in surfels:
        marker = Marker()
        marker.header.frame_id = frame_id
        if stamp:
            marker.header.stamp = stamp
        marker.ns = ns
        marker.id = int(surfel.id)
        marker.type = Marker.CYLINDER
        marker.action = Marker.ADD

        qx, qy, qz, qw = quaternion_from_z_axis(surfel.normal)
        marker.pose.position.x = float(surfel.position[0])
        marker.pose.position.y = float(surfel.position[1])
        marker.pose.position.z = float(surfel.position[2])
        marker.pose.orientation.x = qx
        marker.pose.orientation.y = qy
        marker.pose.orientation.z = qz
        marker.pose.orientation.w = qw

        marker.scale.x = float(surfel.radius) * 2.0
        marker.scale.y = float(surfel.radius) * 2.0
        marker.scale.z = MARKER_THICKNESS
        marker.color.r = surfel.color[0] / 255.0
        marker.color.g = surfel.color[1] / 255.0
        marker.color.b = surfel.color[2] / 255.0
        marker.color.a = 1.0
        marray.markers.append(marker)
    return marray
