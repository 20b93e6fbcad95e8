"""
Camera tracking for submap_fusion.

Includes the point-to-plane ICP tracker, its image pyramid helpers and
the constant-velocity motion model.
"""

from .pyramid import (
    downsample_depth,
    build_depth_pyramid,
    build_intrinsics_pyramid,
    backproject_depth,
    compute_vertex_normals,
)
from .tracker import ICPTracker
from .motion import MotionModel

__all__ = [
    # Pyramid
    "downsample_depth",
    "build_depth_pyramid",
    "build_intrinsics_pyramid",
    "backproject_depth",
    "compute_vertex_normals",
    # Tracking
    "ICPTracker",
    "MotionModel",
]
