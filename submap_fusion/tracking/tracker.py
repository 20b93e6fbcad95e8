"""
Camera tracking against a submap.

Coarse-to-fine point-to-plane ICP. The reference surface is the submap
raycast from the previous camera pose; correspondences are found by
projecting the current frame's points into that view.
"""

import logging
import math
from typing import List, Optional, Tuple
import torch

from .pyramid import build_depth_pyramid, build_intrinsics_pyramid, backproject_depth, compute_vertex_normals
from ..config import TrackerConfig, CameraIntrinsics
from ..core.errors import TrackingLost
from ..types import Frame, SurfaceField, TrackingResult
from ..utils.transforms import pose_inverse, transform_points, rotate_vectors, se3_exp

logger = logging.getLogger(__name__)


class ICPTracker:
    """
    Estimates the camera pose of a frame relative to a reference submap.

    Per pyramid level (coarsest first) and iteration:
    1. Transform frame points/normals with the current pose estimate
    2. Associate projectively with the reference raycast
    3. Reject pairs beyond the distance or normal-angle thresholds
    4. Solve the Huber-weighted 6x6 normal equations for a twist
    5. Apply it on the left: T <- exp(xi) @ T

    The reference submap is only read.
    """

    def __init__(
        self,
        config: TrackerConfig,
        intrinsics: CameraIntrinsics,
        device: torch.device = torch.device('cpu')
    ):
        """
        Args:
            config: Tracker configuration
            intrinsics: Camera intrinsics of the input frames
            device: Device for computation
        """
        self.config = config
        self.intrinsics = intrinsics
        self.device = device
        self.intrinsics_pyramid = build_intrinsics_pyramid(intrinsics, config.num_levels)
        self._cos_angle = math.cos(config.icp_angle_thresh)

    def _frame_geometry(self, depth: torch.Tensor) -> List[Tuple[torch.Tensor, torch.Tensor]]:
        """Valid (points, normals) (N, 3) of each level in the camera frame."""
        levels = []
        for level_depth, K in zip(build_depth_pyramid(depth, self.config.num_levels), self.intrinsics_pyramid):
            points = backproject_depth(level_depth, K)
            normals = compute_vertex_normals(points)
            valid = torch.isfinite(points).all(dim=-1) & torch.isfinite(normals).all(dim=-1)
            levels.append((points[valid], normals[valid]))
        return levels

    def _associate(
        self,
        pose: torch.Tensor,
        src_points: torch.Tensor,
        src_normals: torch.Tensor,
        reference: SurfaceField,
        ref_from_world: torch.Tensor,
        K: CameraIntrinsics
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Projective data association.

        Returns:
            (q, m, n) global frame points (M, 3), reference points (M, 3)
            and reference normals (M, 3) of accepted correspondences
        """
        q = transform_points(pose, src_points)
        qn = rotate_vectors(pose, src_normals)

        p = transform_points(ref_from_world, q)
        z = p[:, 2]
        in_front = z > 1e-6
        safe_z = torch.where(in_front, z, torch.ones_like(z))
        u = torch.round(p[:, 0] / safe_z * K.fx + K.cx).long()
        v = torch.round(p[:, 1] / safe_z * K.fy + K.cy).long()

        H, W = reference.points.shape[:2]
        inside = in_front & (u >= 0) & (u < W) & (v >= 0) & (v < H)
        u = u.clamp(0, W - 1)
        v = v.clamp(0, H - 1)

        m = reference.points[v, u].to(q.dtype)
        n = reference.normals[v, u].to(q.dtype)

        ok = inside & torch.isfinite(m).all(dim=-1) & torch.isfinite(n).all(dim=-1)
        m = torch.nan_to_num(m)
        n = torch.nan_to_num(n)
        ok = ok & ((q - m).norm(dim=-1) < self.config.icp_dist_thresh)
        ok = ok & ((qn * n).sum(dim=-1) > self._cos_angle)

        return q[ok], m[ok], n[ok]

    def _solve_step(self, q: torch.Tensor, m: torch.Tensor, n: torch.Tensor, level: int) -> torch.Tensor:
        """Huber-weighted Gauss-Newton step (6,) for point-to-plane residuals."""
        r = ((q - m) * n).sum(dim=-1)
        J = torch.cat([n, torch.cross(q, n, dim=-1)], dim=-1)

        delta = self.config.huber_delta
        abs_r = r.abs()
        w = torch.where(abs_r <= delta, torch.ones_like(r), delta / abs_r.clamp(min=1e-12))

        Jw = J * w.unsqueeze(-1)
        H = Jw.T @ J
        b = -(Jw.T @ r)

        eig = torch.linalg.eigvalsh(H)
        if not torch.isfinite(eig).all() or eig[0] <= self.config.degeneracy_threshold * eig[-1]:
            raise TrackingLost(
                f"Degenerate geometry at level {level} (eigenvalues {eig[0].item():.2e}..{eig[-1].item():.2e})",
                num_correspondences=q.shape[0],
                level=level
            )

        xi = torch.linalg.solve(H, b)
        if not torch.isfinite(xi).all():
            raise TrackingLost("Non-finite pose update", num_correspondences=q.shape[0], level=level)
        return xi

    def track(
        self,
        frame: Frame,
        reference_submap,
        initial_pose: torch.Tensor,
        previous_pose: Optional[torch.Tensor] = None
    ) -> TrackingResult:
        """
        Estimate the global camera pose of a frame.

        Args:
            frame: Current depth frame
            reference_submap: Submap to track against (not modified)
            initial_pose: Initial guess of the camera pose (4, 4)
            previous_pose: Pose used to raycast the reference (defaults to initial_pose)

        Returns:
            TrackingResult with the refined pose

        Raises:
            TrackingLost: too few correspondences, degenerate or non-finite solve
        """
        if previous_pose is None:
            previous_pose = initial_pose

        depth = frame.depth.to(device=self.device, dtype=torch.float64)
        geometry = self._frame_geometry(depth)
        num_valid = int(geometry[0][0].shape[0])
        if num_valid < self.config.min_correspondences:
            raise TrackingLost(
                f"Only {num_valid} valid depth pixels", num_correspondences=num_valid, level=0
            )

        previous_pose = torch.as_tensor(previous_pose).to(device=self.device, dtype=torch.float64)
        ref_from_world = pose_inverse(previous_pose)
        references = [
            reference_submap.raycast(previous_pose.float(), K) for K in self.intrinsics_pyramid
        ]

        pose = torch.as_tensor(initial_pose).to(device=self.device, dtype=torch.float64).clone()
        level_iterations = [0] * self.config.num_levels
        converged = False

        for level in reversed(range(self.config.num_levels)):
            src_points, src_normals = geometry[level]
            K = self.intrinsics_pyramid[level]

            for _ in range(self.config.icp_iterations[level]):
                q, m, n = self._associate(pose, src_points, src_normals, references[level], ref_from_world, K)
                if q.shape[0] < self.config.min_correspondences:
                    raise TrackingLost(
                        f"Only {q.shape[0]} correspondences at level {level}",
                        num_correspondences=q.shape[0],
                        level=level
                    )

                xi = self._solve_step(q, m, n, level)
                pose = se3_exp(xi) @ pose
                level_iterations[level] += 1

                if xi.norm().item() < self.config.convergence_tolerance:
                    converged = level == 0
                    break

        # Final statistics at the finest level
        q, m, n = self._associate(pose, geometry[0][0], geometry[0][1], references[0], ref_from_world, self.intrinsics)
        if q.shape[0] < self.config.min_correspondences:
            raise TrackingLost(
                f"Only {q.shape[0]} correspondences after alignment",
                num_correspondences=q.shape[0],
                level=0
            )
        residual = ((q - m) * n).sum(dim=-1)
        rms = residual.pow(2).mean().sqrt().item()

        result = TrackingResult(
            pose=pose.float(),
            converged=converged,
            num_iterations=sum(level_iterations),
            inlier_ratio=q.shape[0] / num_valid,
            residual=rms,
            level_iterations=level_iterations
        )
        logger.debug(
            "Tracked frame %d against submap %d: %d iterations, inliers %.2f, rms %.4f",
            frame.frame_id, reference_submap.id, result.num_iterations, result.inlier_ratio, rms
        )
        return result
