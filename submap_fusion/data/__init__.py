"""
Data sources for submap_fusion.

Includes analytic plane scenes that render exact synthetic depth frames
along known trajectories.
"""

from .synthetic import (
    SyntheticPlane,
    SyntheticScene,
    SyntheticSequence,
    box_room,
    fronto_parallel_plane,
    pan_trajectory,
    yaw_pose,
)

__all__ = [
    "SyntheticPlane",
    "SyntheticScene",
    "SyntheticSequence",
    "box_room",
    "fronto_parallel_plane",
    "pan_trajectory",
    "yaw_pose",
]
