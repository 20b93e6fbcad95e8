"""
Pose graph of submaps.

Nodes are submap poses (submap-to-world), edges are measured relative
transforms between submaps. Nodes and edges are never removed.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import torch

from ..utils.transforms import interpolate_pose, relative_pose, is_valid_pose


@dataclass
class PoseGraphEdge:
    """A relative transform constraint: pose(to_id) ~ pose(from_id) @ relative_pose."""
    from_id: int
    to_id: int
    relative_pose: torch.Tensor         # (4, 4) float64
    information_weight: float = 1.0
    num_observations: int = 1

    def copy(self) -> 'PoseGraphEdge':
        return PoseGraphEdge(
            from_id=self.from_id,
            to_id=self.to_id,
            relative_pose=self.relative_pose.clone(),
            information_weight=self.information_weight,
            num_observations=self.num_observations
        )


@dataclass
class PoseGraphSnapshot:
    """Immutable copy of a pose graph handed to the solver."""
    nodes: Dict[int, torch.Tensor]
    edges: List[PoseGraphEdge] = field(default_factory=list)


class PoseGraph:
    """
    Graph of submap poses connected by relative transform constraints.

    Poses are stored in float64; accessors return copies.
    """

    def __init__(self):
        self.nodes: Dict[int, torch.Tensor] = {}
        self.edges: List[PoseGraphEdge] = []

    def add_node(self, node_id: int, pose: torch.Tensor):
        """
        Add a pose node to the graph.

        Args:
            node_id: Unique node identifier (submap id)
            pose: (4, 4) submap-to-world transform
        """
        if node_id in self.nodes:
            raise ValueError(f"Node {node_id} already exists")
        pose = torch.as_tensor(pose)
        if not is_valid_pose(pose):
            raise ValueError(f"Invalid pose for node {node_id}")
        self.nodes[node_id] = pose.detach().to('cpu', torch.float64).clone()

    def add_edge(
        self,
        from_id: int,
        to_id: int,
        relative: torch.Tensor,
        information_weight: float = 1.0
    ) -> PoseGraphEdge:
        """
        Add a relative transform constraint between two existing nodes.

        Args:
            from_id: Source node ID
            to_id: Target node ID
            relative: Measured pose of to_id in the frame of from_id (4, 4)
            information_weight: Confidence of the measurement
        """
        if from_id not in self.nodes or to_id not in self.nodes:
            raise KeyError(f"Node {from_id} or {to_id} not found")
        if information_weight <= 0:
            raise ValueError("information_weight must be positive")
        relative = torch.as_tensor(relative)
        if not is_valid_pose(relative):
            raise ValueError("Edge measurement must be a rigid 4x4 transform")

        edge = PoseGraphEdge(
            from_id=from_id,
            to_id=to_id,
            relative_pose=relative.detach().to('cpu', torch.float64).clone(),
            information_weight=float(information_weight)
        )
        self.edges.append(edge)
        return edge

    def add_odometry_edge(self, from_id: int, to_id: int, information_weight: float = 1.0) -> PoseGraphEdge:
        """Add an edge measured from the current node poses."""
        if from_id not in self.nodes or to_id not in self.nodes:
            raise KeyError(f"Node {from_id} or {to_id} not found")
        rel = relative_pose(self.nodes[from_id], self.nodes[to_id])
        return self.add_edge(from_id, to_id, rel, information_weight)

    def find_edge(self, from_id: int, to_id: int) -> Optional[PoseGraphEdge]:
        for edge in self.edges:
            if edge.from_id == from_id and edge.to_id == to_id:
                return edge
        return None

    def refine_edge(self, from_id: int, to_id: int, measurement: torch.Tensor) -> PoseGraphEdge:
        """
        Fold another measurement of an existing edge into a running average.

        The n-th measurement moves the estimate by 1/n along the geodesic,
        and each observation adds one unit of information weight.
        """
        edge = self.find_edge(from_id, to_id)
        if edge is None:
            raise KeyError(f"No edge {from_id} -> {to_id}")
        measurement = torch.as_tensor(measurement).detach().to('cpu', torch.float64)
        if not is_valid_pose(measurement):
            raise ValueError("Edge measurement must be a rigid 4x4 transform")

        alpha = 1.0 / (edge.num_observations + 1)
        edge.relative_pose = interpolate_pose(edge.relative_pose, measurement, alpha)
        edge.num_observations += 1
        edge.information_weight += 1.0
        return edge

    def set_poses(self, poses: Dict[int, torch.Tensor]):
        """Replace node poses (only ids already in the graph)."""
        for node_id in poses:
            if node_id not in self.nodes:
                raise KeyError(f"Node {node_id} not found")
        for node_id, pose in poses.items():
            self.nodes[node_id] = torch.as_tensor(pose).detach().to('cpu', torch.float64).clone()

    def snapshot(self) -> PoseGraphSnapshot:
        """Deep copy of nodes and edges."""
        return PoseGraphSnapshot(
            nodes={k: v.clone() for k, v in self.nodes.items()},
            edges=[e.copy() for e in self.edges]
        )

    def get_poses(self) -> Dict[int, torch.Tensor]:
        """Get all poses as dictionary."""
        return {k: v.clone() for k, v in self.nodes.items()}

    def get_trajectory(self) -> List[Tuple[int, torch.Tensor]]:
        """Node positions as (node_id, translation) sorted by id."""
        return [(nid, self.nodes[nid][:3, 3].clone()) for nid in sorted(self.nodes)]

    def num_nodes(self) -> int:
        return len(self.nodes)

    def num_edges(self) -> int:
        return len(self.edges)

    def clear(self):
        self.nodes.clear()
        self.edges.clear()
