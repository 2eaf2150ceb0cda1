"""
Topics and services for the surfel_mapper package (ROS2)
"""

# Inputs
PATH_TOPIC = "mapper_path"
KEYFRAME_TOPIC = "keyframes"
CAMERA_INFO_TOPIC = "camera/rgb/camera_info"

# Outputs
PREVIEW_TOPIC = "surfelmap_preview"
SURFEL_MAP_TOPIC = "surfelmap"

# Services
RESET_MAP_SERVICE = "reset_map"
PUBLISH_MAP_SERVICE = "publish_map"
SAVE_MAP_SERVICE = "save_map"

# Queue depths of the subscriptions / publishers
PATH_QUEUE = 3
KEYFRAME_QUEUE = 200
CAMERA_INFO_QUEUE = 3
PREVIEW_QUEUE = 5
SURFEL_MAP_QUEUE = 1
