"""
Pose graph for submap_fusion.

Includes the graph container, the Levenberg-Marquardt solver, the
scheduling optimizer and the background worker thread.
"""

from .pose_graph import PoseGraph, PoseGraphEdge, PoseGraphSnapshot
from .optimizer import PoseGraphOptimizer, optimize_pose_graph, edge_residuals
from .worker import PoseGraphWorker

__all__ = [
    "PoseGraph",
    "PoseGraphEdge",
    "PoseGraphSnapshot",
    "PoseGraphOptimizer",
    "optimize_pose_graph",
    "edge_residuals",
    "PoseGraphWorker",
]
