"""
Synthetic depth data from analytic plane scenes.

Depth is rendered exactly by intersecting camera rays with bounded planes,
so ground-truth poses and surfaces are known.
"""

from dataclasses import dataclass
import math
from typing import Dict, List, Optional, Sequence, Tuple
import torch
from torch.utils.data import Dataset

from ..config import CameraIntrinsics
from ..rendering.rays import pixel_grid
from ..utils.transforms import make_pose, rotation_from_axis_angle

Vec3 = Tuple[float, float, float]


@dataclass(frozen=True)
class SyntheticPlane:
    """Plane {x : normal . x = offset}, optionally clipped to a box."""
    normal: Vec3
    offset: float
    bounds: Optional[Tuple[Vec3, Vec3]] = None

    def distance(self, points: torch.Tensor) -> torch.Tensor:
        """Unsigned distance of points (..., 3) to the infinite plane."""
        n = torch.tensor(self.normal, dtype=points.dtype, device=points.device)
        return ((points * n).sum(dim=-1) - self.offset).abs() / n.norm()


class SyntheticScene:
    """
    A set of planes rendered as a depth camera would see them.

    Example:
        >>> scene = box_room()
        >>> depth = scene.render_depth(yaw_pose(0.1), intrinsics)
    """

    def __init__(self, planes: Sequence[SyntheticPlane], max_depth: float = 10.0):
        """
        Args:
            planes: Scene planes
            max_depth: Hits farther than this are reported as missing (0)
        """
        self.planes = list(planes)
        self.max_depth = max_depth

    def render_depth(
        self,
        pose: torch.Tensor,
        intrinsics: CameraIntrinsics,
        dtype: torch.dtype = torch.float32
    ) -> torch.Tensor:
        """
        Render the z-depth image seen from a camera.

        Args:
            pose: Camera-to-world transform (4, 4)
            intrinsics: Camera intrinsics

        Returns:
            (H, W) depth in meters, 0 where nothing is hit
        """
        pose = torch.as_tensor(pose).to(torch.float64)
        v, u = pixel_grid(intrinsics.height, intrinsics.width, dtype=torch.float64)

        # Unnormalized ray with unit z, so the ray parameter is the z-depth
        d_cam = torch.stack([
            (u - intrinsics.cx) / intrinsics.fx,
            (v - intrinsics.cy) / intrinsics.fy,
            torch.ones_like(u)
        ], dim=-1)
        d_world = d_cam @ pose[:3, :3].T
        origin = pose[:3, 3]

        depth = torch.full(u.shape, float('inf'), dtype=torch.float64)
        for plane in self.planes:
            n = torch.tensor(plane.normal, dtype=torch.float64)
            denom = (d_world * n).sum(dim=-1)
            safe = torch.where(denom.abs() > 1e-12, denom, torch.ones_like(denom))
            t = (plane.offset - (origin * n).sum()) / safe
            hit = (denom.abs() > 1e-12) & (t > 1e-6)

            if plane.bounds is not None:
                lo = torch.tensor(plane.bounds[0], dtype=torch.float64) - 1e-9
                hi = torch.tensor(plane.bounds[1], dtype=torch.float64) + 1e-9
                p = origin + t.unsqueeze(-1) * d_world
                hit = hit & ((p >= lo) & (p <= hi)).all(dim=-1)

            depth = torch.where(hit & (t < depth), t, depth)

        depth = torch.where(torch.isfinite(depth) & (depth <= self.max_depth), depth, torch.zeros_like(depth))
        return depth.to(dtype)

    def distance(self, points: torch.Tensor) -> torch.Tensor:
        """Distance of points (..., 3) to the nearest scene plane."""
        return torch.stack([plane.distance(points) for plane in self.planes], dim=-1).min(dim=-1).values


def yaw_pose(angle: float, translation: Vec3 = (0.0, 0.0, 0.0)) -> torch.Tensor:
    """
    Camera pose rotated by `angle` radians about the vertical (y) axis.

    Positive angles turn the camera to its right.
    """
    R = rotation_from_axis_angle((0.0, 1.0, 0.0), angle)
    return make_pose(R, torch.tensor(translation, dtype=torch.float32))


def box_room(
    x_range: Tuple[float, float] = (-1.0, 1.0),
    y_range: Tuple[float, float] = (-0.75, 0.75),
    z_range: Tuple[float, float] = (-1.0, 2.0)
) -> SyntheticScene:
    """Closed axis-aligned room; a camera inside sees its inner walls."""
    lo = (x_range[0], y_range[0], z_range[0])
    hi = (x_range[1], y_range[1], z_range[1])
    bounds = (lo, hi)
    planes = [
        SyntheticPlane((1.0, 0.0, 0.0), x_range[0], bounds),
        SyntheticPlane((1.0, 0.0, 0.0), x_range[1], bounds),
        SyntheticPlane((0.0, 1.0, 0.0), y_range[0], bounds),
        SyntheticPlane((0.0, 1.0, 0.0), y_range[1], bounds),
        SyntheticPlane((0.0, 0.0, 1.0), z_range[0], bounds),
        SyntheticPlane((0.0, 0.0, 1.0), z_range[1], bounds),
    ]
    return SyntheticScene(planes)


def fronto_parallel_plane(depth: float = 1.0) -> SyntheticScene:
    """A single unbounded plane at z = depth."""
    return SyntheticScene([SyntheticPlane((0.0, 0.0, 1.0), depth)])


def pan_trajectory(num_frames: int, degrees_per_frame: float) -> List[torch.Tensor]:
    """Camera poses turning right in place at a constant rate."""
    step = math.radians(degrees_per_frame)
    return [yaw_pose(i * step) for i in range(num_frames)]


class SyntheticSequence(Dataset):
    """
    Dataset of depth frames rendered along a trajectory.

    Each item is a dict with 'depth' (H, W), 'pose' (4, 4) and 'frame_id'.
    """

    def __init__(
        self,
        scene: SyntheticScene,
        poses: Sequence[torch.Tensor],
        intrinsics: CameraIntrinsics
    ):
        """
        Args:
            scene: Scene to render
            poses: Ground-truth camera-to-world poses
            intrinsics: Camera intrinsics (depth_factor applied to outputs)
        """
        self.scene = scene
        self.poses = [torch.as_tensor(p) for p in poses]
        self.intrinsics = intrinsics

    def __len__(self) -> int:
        return len(self.poses)

    def __getitem__(self, idx: int) -> Dict[str, torch.Tensor]:
        depth = self.scene.render_depth(self.poses[idx], self.intrinsics)
        return {
            'depth': depth * self.intrinsics.depth_factor,
            'pose': self.poses[idx].clone(),
            'frame_id': idx,
        }
