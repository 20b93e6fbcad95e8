"""
Abstract base class for truncated signed distance volumes.

This module defines the capability interface shared by the dense and the
spatially hashed variants. Both store a metric signed distance and an
integer weight per voxel; unobserved voxels hold (truncation_distance, 0).

Class Hierarchy:
    VoxelVolume (abstract)
    ├── TSDFVolume       (dense, preallocated grid)
    └── HashTSDFVolume   (lazily allocated voxel units)

All coordinates handed to a volume are expressed in the frame of the owning
submap. Voxel (i, j, k) is centred at origin + (i + 0.5, j + 0.5, k + 0.5) *
voxel_size.

Subclasses must implement:
    - integrate(): fuse one depth frame
    - _lookup(): read (distance, weight) at integer voxel indices
    - _observed_voxels(): iterate observed voxels in batches
    - bounds(): axis-aligned box enclosing the stored data
    - reset(), num_observed_voxels(), contains()
"""

from abc import ABC, abstractmethod
import logging
import math
from typing import Callable, Iterator, Optional, Tuple

import numpy as np
import torch

from ..config import CameraIntrinsics, VolumeParams
from ..core.constants import MIN_VALID_DEPTH, RAYCAST_SKIP_FRACTION, DEFAULT_EPS
from ..types import SurfaceField
from ..rendering.rays import generate_camera_rays, rays_aabb_intersection
from ..utils.transforms import pose_inverse, transform_points, rotate_vectors, is_valid_pose

logger = logging.getLogger(__name__)

# Offsets of the 8 trilinear neighbours
_CORNERS = torch.tensor(
    [[i, j, k] for i in (0, 1) for j in (0, 1) for k in (0, 1)], dtype=torch.long
)

PointNormalBatch = Tuple[torch.Tensor, torch.Tensor]


def projective_tsdf_update(
    points: torch.Tensor,
    distance: torch.Tensor,
    weight: torch.Tensor,
    depth: torch.Tensor,
    cam_from_volume: torch.Tensor,
    intrinsics: CameraIntrinsics,
    truncation: float,
    max_weight: int,
    depth_trunc: float = 0.0
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Running-average update of voxels from one depth frame.

    The signed distance of a voxel is measured along its viewing ray
    against the depth of the nearest pixel. Only voxels whose distance lies
    within the truncation band are touched.

    Args:
        points: Voxel centres (N, 3) in the volume frame
        distance: Current distances (N,)
        weight: Current integer weights (N,)
        depth: Depth image (H, W) in meters, 0 = missing
        cam_from_volume: Volume-to-camera transform (4, 4)
        intrinsics: Camera intrinsics matching depth
        truncation: Truncation distance in meters
        max_weight: Weight cap
        depth_trunc: Ignore depth beyond this (0 disables)

    Returns:
        (new_distance, new_weight) of shape (N,)
    """
    cam = transform_points(cam_from_volume, points)
    x, y, z = cam.unbind(dim=-1)

    in_front = z > MIN_VALID_DEPTH
    safe_z = torch.where(in_front, z, torch.ones_like(z))
    xn = x / safe_z
    yn = y / safe_z

    u = torch.round(xn * intrinsics.fx + intrinsics.cx).long()
    v = torch.round(yn * intrinsics.fy + intrinsics.cy).long()

    height, width = depth.shape
    inside = in_front & (u >= 0) & (u < width) & (v >= 0) & (v < height)
    d = depth[v.clamp(0, height - 1), u.clamp(0, width - 1)]

    valid = inside & (d > MIN_VALID_DEPTH)
    if depth_trunc > 0:
        valid = valid & (d <= depth_trunc)

    sdf = (d - z) * torch.sqrt(1.0 + xn * xn + yn * yn)
    update = valid & (sdf.abs() <= truncation)

    w = weight.to(distance.dtype)
    new_distance = torch.where(update, (distance * w + sdf) / (w + 1.0), distance)
    # Incremented in int32 so a full int16 weight does not wrap
    capped = (weight.to(torch.int32) + 1).clamp(max=max_weight).to(weight.dtype)
    new_weight = torch.where(update, capped, weight)
    return new_distance, new_weight


class SurfacePointSequence:
    """
    Finite, restartable sequence of surface (point, normal) pairs.

    Nothing is computed until iterated; every iteration starts over from the
    current volume state. Iterating yields (point (3,), normal (3,)) pairs,
    `batches()` yields (points (M, 3), normals (M, 3)) tensors.
    """

    def __init__(
        self,
        batch_factory: Callable[[], Iterator[PointNormalBatch]],
        transform: Optional[torch.Tensor] = None
    ):
        self._batch_factory = batch_factory
        self._transform = transform

    def batches(self) -> Iterator[PointNormalBatch]:
        for points, normals in self._batch_factory():
            if self._transform is not None:
                points = transform_points(self._transform, points)
                normals = rotate_vectors(self._transform, normals)
            yield points, normals

    def __iter__(self) -> Iterator[PointNormalBatch]:
        for points, normals in self.batches():
            for i in range(points.shape[0]):
                yield points[i], normals[i]

    def transformed(self, transform: torch.Tensor) -> 'SurfacePointSequence':
        """Same sequence expressed in another frame (transform applied last)."""
        if self._transform is not None:
            transform = transform.to(self._transform.dtype) @ self._transform
        return SurfacePointSequence(self._batch_factory, transform)

    def to_tensors(self) -> PointNormalBatch:
        """Materialize as (points (N, 3), normals (N, 3))."""
        points, normals = [], []
        for p, n in self.batches():
            points.append(p)
            normals.append(n)
        if not points:
            empty = torch.empty(0, 3)
            return empty, empty.clone()
        return torch.cat(points, dim=0), torch.cat(normals, dim=0)

    def to_numpy(self) -> Tuple[np.ndarray, np.ndarray]:
        points, normals = self.to_tensors()
        return points.cpu().numpy(), normals.cpu().numpy()

    def count(self) -> int:
        return sum(p.shape[0] for p, _ in self.batches())


class VoxelVolume(ABC):
    """
    Abstract truncated signed distance volume.

    Provides the storage-independent operations (raycasting, trilinear
    sampling, surface extraction) on top of the subclass voxel access.
    """

    def __init__(self, params: VolumeParams, device: torch.device = torch.device('cpu')):
        """
        Args:
            params: Volume configuration
            device: Device for voxel storage
        """
        self.params = params
        self.device = torch.device(device)

        self.voxel_size = float(params.voxel_size)
        self.truncation_distance = float(params.truncation_distance)
        self.max_weight = int(params.max_weight)
        self.origin = torch.tensor(params.origin, dtype=torch.float32, device=self.device)

    # -------------------------------------------------------------------------
    # Storage-specific interface
    # -------------------------------------------------------------------------

    @abstractmethod
    def integrate(
        self,
        depth: torch.Tensor,
        camera_pose: torch.Tensor,
        intrinsics: CameraIntrinsics
    ) -> None:
        """
        Fuse a depth frame.

        Args:
            depth: (H, W) depth in meters, 0 = missing
            camera_pose: Camera-to-volume transform (4, 4)
            intrinsics: Intrinsics matching the depth image
        """
        pass

    @abstractmethod
    def _lookup(self, indices: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """(distance, weight) at integer voxel indices (N, 3); unobserved voxels default."""
        pass

    @abstractmethod
    def _observed_voxels(self) -> Iterator[Tuple[torch.Tensor, torch.Tensor]]:
        """Yield (indices (M, 3), distances (M,)) of voxels with weight > 0."""
        pass

    @abstractmethod
    def bounds(self) -> Optional[Tuple[torch.Tensor, torch.Tensor]]:
        """(box_min, box_max) of the stored region, None when nothing is stored."""
        pass

    @abstractmethod
    def contains(self, points: torch.Tensor) -> torch.Tensor:
        """Mask of points (N, 3) lying in stored voxels."""
        pass

    @abstractmethod
    def num_observed_voxels(self) -> int:
        pass

    @abstractmethod
    def reset(self) -> None:
        """Return to the freshly constructed state."""
        pass

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    def _prepare_inputs(
        self,
        depth: torch.Tensor,
        camera_pose: torch.Tensor,
        intrinsics: CameraIntrinsics
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """Validate integration inputs; returns (depth, cam_from_volume)."""
        depth = torch.as_tensor(depth)
        if depth.dim() != 2:
            raise ValueError(f"Depth must be (H, W), got shape {tuple(depth.shape)}")
        if tuple(depth.shape) != intrinsics.size:
            raise ValueError(
                f"Depth shape {tuple(depth.shape)} does not match intrinsics {intrinsics.size}"
            )
        camera_pose = torch.as_tensor(camera_pose)
        if not is_valid_pose(camera_pose):
            raise ValueError("camera_pose must be a finite rigid 4x4 transform")

        depth = depth.to(device=self.device, dtype=torch.float32)
        depth = torch.where(torch.isfinite(depth), depth, torch.zeros_like(depth))
        cam_from_volume = pose_inverse(camera_pose.to(device=self.device, dtype=torch.float32))
        return depth, cam_from_volume

    def _update_voxels(
        self,
        points: torch.Tensor,
        distance: torch.Tensor,
        weight: torch.Tensor,
        depth: torch.Tensor,
        cam_from_volume: torch.Tensor,
        intrinsics: CameraIntrinsics
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        return projective_tsdf_update(
            points, distance, weight, depth, cam_from_volume, intrinsics,
            truncation=self.truncation_distance,
            max_weight=self.max_weight,
            depth_trunc=self.params.depth_trunc_threshold,
        )

    def voxel_centers(self, indices: torch.Tensor) -> torch.Tensor:
        """Centres (..., 3) of integer voxel indices (..., 3)."""
        return self.origin + (indices.to(torch.float32) + 0.5) * self.voxel_size

    def _trilinear(self, points: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Trilinear distance at points (N, 3).

        Returns:
            (distance (N,), observed (N,)) where observed requires all 8
            neighbouring voxels to have weight > 0.
        """
        grid = (points.to(torch.float32) - self.origin) / self.voxel_size - 0.5
        base = torch.floor(grid)
        frac = grid - base
        base = base.long()

        value = torch.zeros(points.shape[0], dtype=torch.float32, device=self.device)
        observed = torch.ones(points.shape[0], dtype=torch.bool, device=self.device)

        for corner in _CORNERS.to(self.device):
            d, w = self._lookup(base + corner)
            cw = torch.where(corner.bool(), frac, 1.0 - frac).prod(dim=-1)
            value = value + cw * d
            observed = observed & (w > 0)

        return value, observed

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def sample(self, points: torch.Tensor) -> torch.Tensor:
        """Trilinear distance at points (..., 3); NaN where not fully observed."""
        shape = points.shape[:-1]
        value, observed = self._trilinear(points.reshape(-1, 3).to(self.device))
        value = torch.where(observed, value, torch.full_like(value, float('nan')))
        return value.reshape(shape)

    def compute_normals(self, points: torch.Tensor) -> torch.Tensor:
        """
        Unit normals (..., 3) from the central difference of the distance
        field at +-voxel_size. NaN where the gradient vanishes.
        """
        shape = points.shape
        flat = points.reshape(-1, 3).to(device=self.device, dtype=torch.float32)
        h = self.voxel_size

        grads = []
        for axis in range(3):
            offset = torch.zeros(3, dtype=torch.float32, device=self.device)
            offset[axis] = h
            d_plus, _ = self._trilinear(flat + offset)
            d_minus, _ = self._trilinear(flat - offset)
            grads.append(d_plus - d_minus)
        grad = torch.stack(grads, dim=-1)

        norm = grad.norm(dim=-1, keepdim=True)
        normals = grad / norm.clamp(min=DEFAULT_EPS)
        normals = torch.where(norm > DEFAULT_EPS, normals, torch.full_like(normals, float('nan')))
        return normals.reshape(shape)

    def raycast(
        self,
        camera_pose: torch.Tensor,
        intrinsics: CameraIntrinsics,
        output_size: Optional[Tuple[int, int]] = None
    ) -> SurfaceField:
        """
        Render the zero level set seen from a camera.

        Rays advance by raycast_step_factor * voxel_size through observed
        space and by a larger stride through unobserved space. A surface is
        a positive-to-negative crossing between two fully observed samples,
        refined by linear interpolation.

        Args:
            camera_pose: Camera-to-volume transform (4, 4)
            intrinsics: Intrinsics of the rendered image
            output_size: (H, W), defaults to the intrinsics size

        Returns:
            SurfaceField in the volume frame, NaN where no surface was hit
        """
        height, width = output_size if output_size is not None else intrinsics.size
        nan = torch.full((height, width, 3), float('nan'), dtype=torch.float32, device=self.device)

        box = self.bounds()
        if box is None:
            return SurfaceField(points=nan, normals=nan.clone())

        camera_pose = torch.as_tensor(camera_pose).to(device=self.device, dtype=torch.float32)
        origins, directions, _ = generate_camera_rays(intrinsics, camera_pose, (height, width), self.device)
        origins = origins.reshape(-1, 3)
        directions = directions.reshape(-1, 3)

        t_near, t_far, hit_box = rays_aabb_intersection(origins, directions, box[0], box[1])

        step = self.params.raycast_step_factor * self.voxel_size
        skip = max(step, RAYCAST_SKIP_FRACTION * self.truncation_distance)

        num_rays = origins.shape[0]
        t = t_near.clone()
        active = hit_box.clone()
        prev_t = t.clone()
        prev_d = torch.zeros(num_rays, dtype=torch.float32, device=self.device)
        prev_obs = torch.zeros(num_rays, dtype=torch.bool, device=self.device)
        hit_t = torch.full((num_rays,), float('nan'), dtype=torch.float32, device=self.device)

        if active.any():
            span = (t_far - t_near)[active].max().item()
            max_steps = int(math.ceil(span / step)) + 2
        else:
            max_steps = 0

        for _ in range(max_steps):
            if not active.any():
                break
            idx = active.nonzero(as_tuple=True)[0]
            t_cur = t[idx]
            d, obs = self._trilinear(origins[idx] + t_cur.unsqueeze(-1) * directions[idx])

            crossing = prev_obs[idx] & obs & (prev_d[idx] > 0) & (d <= 0)
            if crossing.any():
                c = idx[crossing]
                d0 = prev_d[c]
                d1 = d[crossing]
                t0 = prev_t[c]
                t1 = t_cur[crossing]
                hit_t[c] = t0 + (t1 - t0) * d0 / (d0 - d1).clamp(min=DEFAULT_EPS)
                active[c] = False

            prev_t[idx] = t_cur
            prev_d[idx] = d
            prev_obs[idx] = obs

            t[idx] = t_cur + torch.where(obs, torch.full_like(t_cur, step), torch.full_like(t_cur, skip))
            active[idx] = active[idx] & (t[idx] <= t_far[idx])

        hit = torch.isfinite(hit_t)
        points = torch.full((num_rays, 3), float('nan'), dtype=torch.float32, device=self.device)
        normals = points.clone()
        if hit.any():
            surface = origins[hit] + hit_t[hit].unsqueeze(-1) * directions[hit]
            n = self.compute_normals(surface)
            good = torch.isfinite(n).all(dim=-1)
            sel = hit.nonzero(as_tuple=True)[0][good]
            points[sel] = surface[good]
            normals[sel] = n[good]

        return SurfaceField(
            points=points.reshape(height, width, 3),
            normals=normals.reshape(height, width, 3)
        )

    def _surface_batches(self) -> Iterator[PointNormalBatch]:
        for indices, distances in self._observed_voxels():
            near = distances.abs() < self.voxel_size
            if not near.any():
                continue
            centers = self.voxel_centers(indices[near])
            d = distances[near]
            normals = self.compute_normals(centers)
            good = torch.isfinite(normals).all(dim=-1)
            if not good.any():
                continue
            normals = normals[good]
            points = centers[good] - d[good].unsqueeze(-1) * normals
            yield points, normals

    def fetch_points_normals(self) -> SurfacePointSequence:
        """
        Lazily extract surface samples.

        Every observed voxel closer than one voxel to the surface contributes
        its centre projected onto the zero level set along the normal.
        """
        return SurfacePointSequence(self._surface_batches)

    def fetch_points(self) -> torch.Tensor:
        return self.fetch_points_normals().to_tensors()[0]

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(voxel_size={self.voxel_size:.4f}, "
            f"truncation={self.truncation_distance:.4f}, observed={self.num_observed_voxels()})"
        )
