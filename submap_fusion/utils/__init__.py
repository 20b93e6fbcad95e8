"""
Utility functions for submap_fusion.

Includes quaternion operations and SE(3) pose helpers.
"""

from .quaternion import (
    normalize_quaternion,
    quaternion_to_matrix,
    matrix_to_quaternion,
    quaternion_from_axis_angle,
    quaternion_to_axis_angle,
    quaternion_angle_distance,
)
from .transforms import (
    make_pose,
    pose_inverse,
    relative_pose,
    transform_points,
    rotate_vectors,
    hat,
    vee,
    se3_exp,
    se3_log,
    so3_log,
    interpolate_pose,
    rotation_from_axis_angle,
    translation_distance,
    rotation_angle,
    pose_to_translation_quaternion,
    is_valid_pose,
)

__all__ = [
    # Quaternion operations
    "normalize_quaternion",
    "quaternion_to_matrix",
    "matrix_to_quaternion",
    "quaternion_from_axis_angle",
    "quaternion_to_axis_angle",
    "quaternion_angle_distance",
    # Pose helpers
    "make_pose",
    "pose_inverse",
    "relative_pose",
    "transform_points",
    "rotate_vectors",
    "hat",
    "vee",
    "se3_exp",
    "se3_log",
    "so3_log",
    "interpolate_pose",
    "rotation_from_axis_angle",
    "translation_distance",
    "rotation_angle",
    "pose_to_translation_quaternion",
    "is_valid_pose",
]
