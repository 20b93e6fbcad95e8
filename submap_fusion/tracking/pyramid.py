"""
Image pyramids and per-pixel geometry for tracking.

Level 0 is the input resolution; each further level halves width and
height.
"""

from typing import List
import torch
import torch.nn.functional as F

from ..config import CameraIntrinsics
from ..core.constants import MIN_VALID_DEPTH
from ..rendering.rays import pixel_grid


def downsample_depth(depth: torch.Tensor) -> torch.Tensor:
    """
    Halve a depth image by averaging valid pixels of each 2x2 block.

    Blocks without any valid pixel stay missing (0). An odd trailing row or
    column is dropped.
    """
    H, W = depth.shape
    H2, W2 = H // 2, W // 2
    blocks = depth[:2 * H2, :2 * W2].reshape(H2, 2, W2, 2)

    valid = blocks > MIN_VALID_DEPTH
    total = torch.where(valid, blocks, torch.zeros_like(blocks)).sum(dim=(1, 3))
    count = valid.sum(dim=(1, 3))
    return torch.where(count > 0, total / count.clamp(min=1), torch.zeros_like(total))


def build_depth_pyramid(depth: torch.Tensor, num_levels: int) -> List[torch.Tensor]:
    """Depth images from finest (index 0) to coarsest."""
    pyramid = [depth]
    for _ in range(1, num_levels):
        pyramid.append(downsample_depth(pyramid[-1]))
    return pyramid


def build_intrinsics_pyramid(intrinsics: CameraIntrinsics, num_levels: int) -> List[CameraIntrinsics]:
    """Intrinsics matching build_depth_pyramid levels."""
    return [intrinsics.scaled(0.5 ** level) if level > 0 else intrinsics for level in range(num_levels)]


def backproject_depth(depth: torch.Tensor, intrinsics: CameraIntrinsics) -> torch.Tensor:
    """
    Backproject a depth image to camera-frame points.

    Args:
        depth: (H, W) depth in meters
        intrinsics: Matching intrinsics

    Returns:
        (H, W, 3) points, NaN where depth is missing
    """
    H, W = depth.shape
    v, u = pixel_grid(H, W, device=depth.device, dtype=depth.dtype)

    z = depth
    x = (u - intrinsics.cx) * z / intrinsics.fx
    y = (v - intrinsics.cy) * z / intrinsics.fy
    points = torch.stack([x, y, z], dim=-1)

    valid = torch.isfinite(depth) & (depth > MIN_VALID_DEPTH)
    return torch.where(valid.unsqueeze(-1), points, torch.full_like(points, float('nan')))


def compute_vertex_normals(points: torch.Tensor) -> torch.Tensor:
    """
    Normals of a vertex map from forward differences.

    Normals are oriented toward the camera. The last row and column, and
    pixels next to missing depth, get NaN.

    Args:
        points: (H, W, 3) camera-frame points

    Returns:
        (H, W, 3) unit normals
    """
    dx = points[:-1, 1:] - points[:-1, :-1]
    dy = points[1:, :-1] - points[:-1, :-1]
    n = F.normalize(torch.cross(dx, dy, dim=-1), dim=-1)

    # Face the camera: n . p < 0
    facing = (n * points[:-1, :-1]).sum(dim=-1, keepdim=True)
    n = torch.where(facing > 0, -n, n)

    normals = torch.full_like(points, float('nan'))
    normals[:-1, :-1] = n
    return normals
