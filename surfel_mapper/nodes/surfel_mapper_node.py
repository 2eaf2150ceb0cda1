#!/usr/bin/env python3
"""
Surfel mapper node.

Subscribes to the keyframe clouds, the optimized trajectory (nav_msgs/Path) and
the camera info, fuses every keyframe whose pose is available into the surfel
map and periodically publishes a downsampled preview.

Services (std_srvs/Trigger):
    reset_map    remove all surfels from the map
    publish_map  publish the surfels inside the `publish_map_bbox` parameter
                 [x1, y1, z1, x2, y2, z2] as a MarkerArray
    save_map     save the confidence-filtered map as binary PCD (`save_path`)

Usage:
    ros2 run surfel_mapper surfel_mapper_node
    ros2 launch surfel_mapper surfel_mapper.launch.py
"""

import rclpy
from rclpy.node import Node
from nav_msgs.msg import Path
from sensor_msgs.msg import CameraInfo, PointCloud2
from std_srvs.srv import Trigger
from visualization_msgs.msg import MarkerArray

from surfel_mapper.core.config import SurfelMapperConfig
from surfel_mapper.core.mapper import SurfelMapper
from surfel_mapper.core.types import MapConsistencyError, SurfelMapperError
from surfel_mapper.utils.conversions import (
    camera_info_to_params,
    path_to_trace,
    pointcloud2_to_cloud,
    points_to_pointcloud2,
    surfels_to_marker_array,
)
from surfel_mapper.utils.topics import *


class SurfelMapperNode(Node):
    """Surfel Mapper Node - keyframe/trajectory association and surfel fusion"""

    def __init__(self):
        super().__init__('surfel_mapper')

        # Declare one parameter per config field, defaults from the dataclass
        defaults = SurfelMapperConfig().to_dict()
        for name, value in defaults.items():
            self.declare_parameter(name, value)
        self.declare_parameter('publish_map_bbox', [-5.0, -5.0, -5.0, 5.0, 5.0, 5.0])

        config = {name: self.get_parameter(name).value for name in defaults}
        self.config = SurfelMapperConfig.from_dict(config)

        self.mapper = SurfelMapper(self.config, ros_logger=self.get_logger())

        # Subscribers
        self.path_sub = self.create_subscription(
            Path, PATH_TOPIC, self.path_callback, PATH_QUEUE)
        self.keyframe_sub = self.create_subscription(
            PointCloud2, KEYFRAME_TOPIC, self.keyframe_callback, KEYFRAME_QUEUE)
        self.camera_info_sub = self.create_subscription(
            CameraInfo, CAMERA_INFO_TOPIC, self.camera_info_callback, CAMERA_INFO_QUEUE)

        # Publishers
        self.preview_pub = self.create_publisher(PointCloud2, PREVIEW_TOPIC, PREVIEW_QUEUE)
        self.surfel_map_pub = self.create_publisher(MarkerArray, SURFEL_MAP_TOPIC, SURFEL_MAP_QUEUE)

        # Services
        self.reset_srv = self.create_service(Trigger, RESET_MAP_SERVICE, self.reset_map_callback)
        self.publish_srv = self.create_service(Trigger, PUBLISH_MAP_SERVICE, self.publish_map_callback)
        self.save_srv = self.create_service(Trigger, SAVE_MAP_SERVICE, self.save_map_callback)

        # Periodic drive step
        self.timer = self.create_timer(1.0 / self.config.tick_rate_hz, self.tick)

        self.get_logger().info(
            f'Surfel mapper ready: dmax={self.config.dmax}, '
            f'range=[{self.config.min_sensor_dist}, {self.config.max_sensor_dist}]m, '
            f'octree_resolution={self.config.octree_resolution}m, '
            f'scene_capacity={self.config.scene_capacity}'
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def path_callback(self, msg: Path):
        self.get_logger().debug(f'path_callback: [{msg.header.frame_id}] {len(msg.poses)} poses')
        self.mapper.on_trajectory(path_to_trace(msg))

    def keyframe_callback(self, msg: PointCloud2):
        try:
            cloud = pointcloud2_to_cloud(msg)
        except ValueError as e:
            self.get_logger().error(f'Dropping keyframe [{msg.header.frame_id}]: {e}')
            return
        self.mapper.on_cloud(cloud)

    def camera_info_callback(self, msg: CameraInfo):
        if self.mapper.initialized:
            return
        self.get_logger().info(f'camera_info_callback: camera params message arrived [{msg.header.frame_id}]')
        self.mapper.set_camera(camera_info_to_params(msg))

    # ------------------------------------------------------------------
    # Drive step
    # ------------------------------------------------------------------

    def tick(self):
        try:
            preview = self.mapper.tick()
        except MapConsistencyError as e:
            self.get_logger().error(f'Surfel map consistency violated: {e}')
            raise
        if preview is None:
            return
        points, colors = preview
        msg = points_to_pointcloud2(
            points, colors,
            frame_id=self.config.map_frame,
            stamp=self.get_clock().now().to_msg(),
        )
        self.preview_pub.publish(msg)

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def reset_map_callback(self, request, response):
        self.get_logger().info('ResetMap request arrived')
        response.success = self.mapper.reset_map()
        response.message = 'map reset' if response.success else 'mapper not initialized'
        return response

    def publish_map_callback(self, request, response):
        bbox = list(self.get_parameter('publish_map_bbox').value)
        self.get_logger().info(f'PublishMap request arrived for bb. {bbox[:3]}-{bbox[3:]}')
        if not self.mapper.initialized:
            response.success = False
            response.message = 'mapper not initialized'
            return response
        if len(bbox) != 6:
            response.success = False
            response.message = f'publish_map_bbox needs 6 values, got {len(bbox)}'
            return response

        try:
            surfels = self.mapper.export_bbox(bbox[:3], bbox[3:])
        except SurfelMapperError as e:
            self.get_logger().error(f'publish_map failed: {e}')
            response.success = False
            response.message = str(e)
            return response

        marray = surfels_to_marker_array(
            surfels, self.config.map_frame, stamp=self.get_clock().now().to_msg())
        self.surfel_map_pub.publish(marray)
        self.get_logger().info(f'Publishing: {len(marray.markers)} surfels')
        response.success = True
        response.message = f'{len(marray.markers)} surfels published'
        return response

    def save_map_callback(self, request, response):
        self.get_logger().info('SaveMap request arrived.')
        if not self.mapper.initialized:
            response.success = False
            response.message = 'mapper not initialized'
            return response
        try:
            n = self.mapper.save_map()
        except OSError as e:
            self.get_logger().error(f'save_map failed: {e}')
            response.success = False
            response.message = str(e)
            return response
        response.success = True
        response.message = f'{n} points saved to {self.config.save_path}'
        return response

    def destroy_node(self):
        self.mapper.close()
        super().destroy_node()


def main(args=None):
    rclpy.init(args=args)
    node = SurfelMapperNode()

    try:
        rclpy.spin(node)
    except KeyboardInterrupt:
        pass
    finally:
        node.destroy_node()
        rclpy.shutdown()


if __name__ == '__main__':
    main()
