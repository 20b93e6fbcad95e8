"""
Ray generation utilities for raycasting voxel volumes.

Provides functions for:
- Generating per-pixel camera rays from pinhole intrinsics and a pose
- Ray / axis-aligned box intersection

Pixel (v, u) is centred at integer coordinates, matching the projection
u = fx * x / z + cx used by integration.
"""

from typing import Tuple, Optional
import torch
import torch.nn.functional as F

from ..config import CameraIntrinsics


def pixel_grid(
    height: int,
    width: int,
    device: torch.device = torch.device('cpu'),
    dtype: torch.dtype = torch.float32
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Pixel coordinates of an image.

    Returns:
        (v, u) each of shape (H, W)
    """
    v, u = torch.meshgrid(
        torch.arange(height, dtype=dtype, device=device),
        torch.arange(width, dtype=dtype, device=device),
        indexing='ij'
    )
    return v, u


def generate_camera_rays(
    intrinsics: CameraIntrinsics,
    camera_pose: torch.Tensor,
    output_size: Optional[Tuple[int, int]] = None,
    device: Optional[torch.device] = None
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Generate camera rays for each pixel.

    Args:
        intrinsics: Camera intrinsics (already scaled to output_size)
        camera_pose: Camera-to-world transform (4, 4)
        output_size: (H, W), defaults to the intrinsics size
        device: Device for tensors (defaults to the pose device)

    Returns:
        (origins, directions, z_scale): origins and unit directions of
        shape (H, W, 3) in the pose frame, and the z-component of each
        camera-frame unit direction (H, W), i.e. depth per unit ray length.
    """
    height, width = output_size if output_size is not None else intrinsics.size
    device = device if device is not None else camera_pose.device
    dtype = camera_pose.dtype if camera_pose.is_floating_point() else torch.float32

    v, u = pixel_grid(height, width, device=device, dtype=dtype)

    # Camera frame: x right, y down, z forward
    x = (u - intrinsics.cx) / intrinsics.fx
    y = (v - intrinsics.cy) / intrinsics.fy
    directions_cam = F.normalize(torch.stack([x, y, torch.ones_like(x)], dim=-1), dim=-1)

    rotation = camera_pose[:3, :3].to(device=device, dtype=dtype)
    translation = camera_pose[:3, 3].to(device=device, dtype=dtype)

    directions = torch.einsum('ij,...j->...i', rotation, directions_cam)
    origins = translation.expand(height, width, 3)

    return origins, directions, directions_cam[..., 2]


def rays_aabb_intersection(
    origins: torch.Tensor,
    directions: torch.Tensor,
    box_min: torch.Tensor,
    box_max: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Compute ray-AABB intersection (slab method).

    Args:
        origins: Ray origins (..., 3)
        directions: Ray directions (..., 3)
        box_min: AABB minimum corner (3,)
        box_max: AABB maximum corner (3,)

    Returns:
        (t_near, t_far, mask) where mask indicates valid intersections
    """
    # Keep the sign of near-zero components so the slab bounds stay ordered
    eps = 1e-9
    safe = torch.where(directions >= 0, directions.clamp(min=eps), directions.clamp(max=-eps))
    inv_dir = 1.0 / safe

    t0 = (box_min - origins) * inv_dir
    t1 = (box_max - origins) * inv_dir

    t_min = torch.minimum(t0, t1)
    t_max = torch.maximum(t0, t1)

    t_near = t_min.max(dim=-1).values
    t_far = t_max.min(dim=-1).values

    mask = (t_near < t_far) & (t_far > 0)

    # Rays starting inside the box begin at the origin
    t_near = torch.clamp(t_near, min=0)

    return t_near, t_far, mask
