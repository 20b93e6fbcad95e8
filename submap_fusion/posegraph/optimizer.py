"""
Pose graph optimization.

Levenberg-Marquardt over left SE(3) perturbations of all non-anchor nodes.
The residual of an edge compares the predicted relative transform with the
measured one:

    E = inv(Z) @ inv(T_i) @ T_j
    r = sqrt(w) * [E_t, vee(E_R)]

where vee(E_R) is the antisymmetric part of the rotation error (the sine of
the error angle times its axis). Jacobians come from torch autograd.
"""

import logging
from typing import Dict, List, Optional
import torch
from torch.autograd.functional import jacobian

from .pose_graph import PoseGraph, PoseGraphEdge
from ..config import PoseGraphConfig
from ..core.constants import PG_ABSOLUTE_TOLERANCE, PG_INITIAL_DAMPING, PG_MAX_DAMPING
from ..core.errors import OptimizationDidNotConverge
from ..types import OptimizationResult
from ..utils.transforms import pose_inverse, se3_exp, vee

logger = logging.getLogger(__name__)


def edge_residuals(
    poses: torch.Tensor,
    from_idx: torch.Tensor,
    to_idx: torch.Tensor,
    measurements_inv: torch.Tensor,
    sqrt_weights: torch.Tensor
) -> torch.Tensor:
    """
    Stacked edge residuals.

    Args:
        poses: Node poses (N, 4, 4)
        from_idx: Source node index per edge (E,)
        to_idx: Target node index per edge (E,)
        measurements_inv: Inverted measurements inv(Z) (E, 4, 4)
        sqrt_weights: Square root of information weights (E,)

    Returns:
        (6 * E,) residual vector
    """
    error = measurements_inv @ pose_inverse(poses[from_idx]) @ poses[to_idx]
    r = torch.cat([error[:, :3, 3], vee(error[:, :3, :3])], dim=-1)
    return (r * sqrt_weights.unsqueeze(-1)).reshape(-1)


def optimize_pose_graph(
    nodes: Dict[int, torch.Tensor],
    edges: List[PoseGraphEdge],
    anchor_id: int,
    max_iterations: int = 100,
    tolerance: float = 1e-6
) -> OptimizationResult:
    """
    Optimize node poses against relative constraints, holding one node fixed.

    Converges when the error is (numerically) zero, when the relative error
    reduction of an accepted step falls below `tolerance`, or when the step
    norm falls below `tolerance`. Inputs are not modified.

    Args:
        nodes: Node id -> (4, 4) pose
        edges: Relative constraints between node ids
        anchor_id: Node held fixed (gauge)
        max_iterations: Maximum accepted or rejected LM iterations
        tolerance: Relative convergence tolerance

    Returns:
        OptimizationResult with success=True and the optimized poses

    Raises:
        KeyError: anchor or edge endpoint not in nodes
        OptimizationDidNotConverge: iteration cap reached or numerical failure
    """
    if anchor_id not in nodes:
        raise KeyError(f"Anchor node {anchor_id} not found")
    for edge in edges:
        if edge.from_id not in nodes or edge.to_id not in nodes:
            raise KeyError(f"Edge {edge.from_id} -> {edge.to_id} references unknown node")

    node_ids = sorted(nodes)
    index = {nid: i for i, nid in enumerate(node_ids)}
    X = torch.stack([torch.as_tensor(nodes[nid]).to('cpu', torch.float64) for nid in node_ids])

    free = [index[nid] for nid in node_ids if nid != anchor_id]
    if not edges or not free:
        return OptimizationResult(
            poses={nid: X[index[nid]].clone() for nid in node_ids},
            success=True, num_iterations=0, initial_error=0.0, final_error=0.0,
            message="Nothing to optimize"
        )

    from_idx = torch.tensor([index[e.from_id] for e in edges], dtype=torch.long)
    to_idx = torch.tensor([index[e.to_id] for e in edges], dtype=torch.long)
    Z_inv = pose_inverse(torch.stack([e.relative_pose.to(torch.float64) for e in edges]))
    sqrt_w = torch.tensor([e.information_weight for e in edges], dtype=torch.float64).sqrt()
    free_idx = torch.tensor(free, dtype=torch.long)
    num_params = 6 * len(free)

    def perturb(delta: torch.Tensor, base: torch.Tensor) -> torch.Tensor:
        xi = torch.zeros(len(node_ids), 6, dtype=torch.float64)
        xi = xi.index_copy(0, free_idx, delta.view(-1, 6))
        return se3_exp(xi) @ base

    def residual_at(base: torch.Tensor):
        return lambda delta: edge_residuals(perturb(delta, base), from_idx, to_idx, Z_inv, sqrt_w)

    zero = torch.zeros(num_params, dtype=torch.float64)
    r = edge_residuals(X, from_idx, to_idx, Z_inv, sqrt_w)
    error = r.dot(r).item()
    initial_error = error
    damping = PG_INITIAL_DAMPING
    eye = torch.eye(num_params, dtype=torch.float64)

    converged = error < PG_ABSOLUTE_TOLERANCE
    iteration = 0
    message = "Initial error below tolerance" if converged else ""

    while not converged and iteration < max_iterations:
        iteration += 1

        J = jacobian(residual_at(X), zero)
        H = J.T @ J
        g = J.T @ r

        try:
            delta = -torch.linalg.solve(H + damping * eye, g)
        except RuntimeError as e:
            raise OptimizationDidNotConverge(
                f"Singular normal equations: {e}", num_iterations=iteration, final_error=error
            ) from e
        if not torch.isfinite(delta).all():
            raise OptimizationDidNotConverge(
                "Non-finite update", num_iterations=iteration, final_error=error
            )

        X_new = perturb(delta, X)
        r_new = edge_residuals(X_new, from_idx, to_idx, Z_inv, sqrt_w)
        new_error = r_new.dot(r_new).item()

        if new_error < error:
            reduction = (error - new_error) / max(error, PG_ABSOLUTE_TOLERANCE)
            X, r, error = X_new, r_new, new_error
            damping = max(damping / 10.0, 1e-12)
            logger.debug("LM iteration %d: error %.3e (damping %.1e)", iteration, error, damping)

            if error < PG_ABSOLUTE_TOLERANCE:
                converged, message = True, "Error below absolute tolerance"
            elif reduction < tolerance:
                converged, message = True, "Relative reduction below tolerance"
            elif delta.norm().item() < tolerance:
                converged, message = True, "Step below tolerance"
        else:
            damping *= 10.0
            if damping > PG_MAX_DAMPING:
                # No descent direction left: local minimum
                converged, message = True, "Damping limit reached"

    if not converged:
        raise OptimizationDidNotConverge(
            f"No convergence after {iteration} iterations (error {error:.3e})",
            num_iterations=iteration,
            final_error=error
        )

    return OptimizationResult(
        poses={nid: X[index[nid]].clone() for nid in node_ids},
        success=True,
        num_iterations=iteration,
        initial_error=initial_error,
        final_error=error,
        message=message
    )


class PoseGraphOptimizer:
    """
    Owns the submap pose graph and decides when to optimize it.

    The first node added becomes the anchor. A failed optimization leaves
    the graph untouched and is reported, never raised.
    """

    def __init__(self, config: PoseGraphConfig):
        """
        Args:
            config: Pose graph configuration
        """
        self.config = config
        self.graph = PoseGraph()
        self.anchor_id: Optional[int] = None

        self._pending_changes = 0
        self._last_optimized_frame = 0
        self.num_optimizations = 0
        self.num_failures = 0
        self.last_result: Optional[OptimizationResult] = None

    def add_node(self, node_id: int, pose: torch.Tensor):
        self.graph.add_node(node_id, pose)
        if self.anchor_id is None:
            self.anchor_id = node_id

    def add_edge(
        self,
        from_id: int,
        to_id: int,
        relative: torch.Tensor,
        information_weight: float = 1.0
    ) -> PoseGraphEdge:
        edge = self.graph.add_edge(from_id, to_id, relative, information_weight)
        self._pending_changes += 1
        return edge

    def refine_edge(self, from_id: int, to_id: int, measurement: torch.Tensor) -> PoseGraphEdge:
        edge = self.graph.refine_edge(from_id, to_id, measurement)
        self._pending_changes += 1
        return edge

    def should_optimize(self, frame_id: int) -> bool:
        """True when new constraints arrived and a cadence threshold is met."""
        if self._pending_changes == 0 or self.graph.num_edges() == 0:
            return False
        if self._pending_changes >= self.config.optimize_after_new_edges:
            return True
        return frame_id - self._last_optimized_frame >= self.config.optimize_every_n_frames

    def mark_submitted(self, frame_id: int):
        """Reset the cadence counters (the graph is being optimized)."""
        self._pending_changes = 0
        self._last_optimized_frame = frame_id

    def optimize(self, frame_id: Optional[int] = None) -> OptimizationResult:
        """
        Run the solver synchronously and commit the poses on success.

        Returns:
            OptimizationResult; success=False keeps the previous poses
        """
        if frame_id is not None:
            self.mark_submitted(frame_id)
        else:
            self._pending_changes = 0

        snapshot = self.graph.snapshot()
        if self.anchor_id is None:
            return OptimizationResult(
                poses={}, success=True, num_iterations=0,
                initial_error=0.0, final_error=0.0, message="Empty graph"
            )

        try:
            result = optimize_pose_graph(
                snapshot.nodes, snapshot.edges, self.anchor_id,
                max_iterations=self.config.max_iterations,
                tolerance=self.config.tolerance
            )
        except OptimizationDidNotConverge as e:
            logger.warning("Pose graph optimization failed: %s", e)
            result = OptimizationResult(
                poses=snapshot.nodes,
                success=False,
                num_iterations=e.num_iterations,
                initial_error=float('nan'),
                final_error=e.final_error,
                message=str(e)
            )

        return self.commit(result)

    def commit(self, result: OptimizationResult) -> OptimizationResult:
        """Apply a solver result to the graph (no-op on failure)."""
        self.num_optimizations += 1
        if result.success:
            self.graph.set_poses({k: v for k, v in result.poses.items() if k in self.graph.nodes})
            logger.info(
                "Pose graph optimized in %d iterations: %.3e -> %.3e",
                result.num_iterations, result.initial_error, result.final_error
            )
        else:
            self.num_failures += 1
        self.last_result = result
        return result

    def get_poses(self) -> Dict[int, torch.Tensor]:
        return self.graph.get_poses()

    def get_pose(self, node_id: int) -> torch.Tensor:
        return self.graph.nodes[node_id].clone()

    def reset(self):
        self.graph.clear()
        self.anchor_id = None
        self._pending_changes = 0
        self._last_optimized_frame = 0
        self.num_optimizations = 0
        self.num_failures = 0
        self.last_result = None
