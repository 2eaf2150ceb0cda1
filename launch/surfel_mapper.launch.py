#!/usr/bin/env python3
"""Launch file for the surfel mapper node."""

from launch import LaunchDescription
from launch.actions import DeclareLaunchArgument
from launch.substitutions import LaunchConfiguration
from launch_ros.actions import Node
from ament_index_python.packages import get_package_share_directory
from pathlib import Path


def generate_launch_description():
    pkg_share = Path(get_package_share_directory('surfel_mapper'))
    config_dir = pkg_share / 'config'

    keyframes_arg = DeclareLaunchArgument(
        'keyframes_topic',
        default_value='/keyframes',
        description='PointCloud2 keyframe topic'
    )
    path_arg = DeclareLaunchArgument(
        'path_topic',
        default_value='/mapper_path',
        description='nav_msgs/Path trajectory topic'
    )
    camera_info_arg = DeclareLaunchArgument(
        'camera_info_topic',
        default_value='/camera/rgb/camera_info',
        description='CameraInfo topic providing the intrinsics'
    )

    return LaunchDescription([
        keyframes_arg,
        path_arg,
        camera_info_arg,
        Node(
            package='surfel_mapper',
            executable='surfel_mapper_node',
            name='surfel_mapper',  # Must match yaml namespace (surfel_mapper.ros__parameters)
            output='screen',
            parameters=[str(config_dir / 'surfel_mapper.yaml')],
            remappings=[
                ('keyframes', LaunchConfiguration('keyframes_topic')),
                ('mapper_path', LaunchConfiguration('path_topic')),
                ('camera/rgb/camera_info', LaunchConfiguration('camera_info_topic')),
            ]
        ),
    ])
