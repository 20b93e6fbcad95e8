"""
Spatially hashed TSDF volume.

Space is partitioned into cubic units of unit_resolution^3 voxels that are
allocated on demand around observed surfaces. Unit storage is a pooled
tensor indexed through a sorted table of 64-bit unit keys, so lookups of
many voxels at once reduce to one torch.searchsorted call.
"""

import logging
import math
from typing import Iterator, Optional, Tuple
import torch
import torch.nn.functional as F

from .base import VoxelVolume
from ..config import CameraIntrinsics, VolumeParams
from ..core.constants import HASH_UNIT_BATCH, MIN_VALID_DEPTH
from ..core.errors import ResourceExhausted
from ..rendering.rays import pixel_grid
from ..utils.transforms import pose_inverse, transform_points

logger = logging.getLogger(__name__)

# Each unit coordinate is packed into 20 bits of the key
_KEY_BITS = 20
_KEY_OFFSET = 1 << (_KEY_BITS - 1)


def encode_unit_keys(coords: torch.Tensor) -> torch.Tensor:
    """Pack integer unit coordinates (N, 3) into sortable int64 keys (N,)."""
    c = coords.long() + _KEY_OFFSET
    return (c[:, 0] << (2 * _KEY_BITS)) | (c[:, 1] << _KEY_BITS) | c[:, 2]


class HashTSDFVolume(VoxelVolume):
    """
    Truncated signed distance volume with lazily allocated voxel units.

    The number of allocated units is bounded by params.max_active_units;
    an integration that would exceed it raises ResourceExhausted without
    modifying the volume.
    """

    def __init__(self, params: VolumeParams, device: torch.device = torch.device('cpu')):
        super().__init__(params, device)
        self.unit_resolution = int(params.unit_resolution)
        self.unit_size = self.unit_resolution * self.voxel_size

        r = torch.arange(self.unit_resolution, device=self.device)
        self._local_offsets = torch.stack(
            torch.meshgrid(r, r, r, indexing='ij'), dim=-1
        ).reshape(-1, 3)

        self._init_storage()

    def _init_storage(self):
        R = self.unit_resolution
        self._unit_coords = torch.empty(0, 3, dtype=torch.long, device=self.device)
        self._unit_distance = torch.empty(0, R, R, R, dtype=torch.float32, device=self.device)
        self._unit_weight = torch.empty(0, R, R, R, dtype=torch.int16, device=self.device)
        self._keys = torch.empty(0, dtype=torch.long, device=self.device)
        self._slots = torch.empty(0, dtype=torch.long, device=self.device)

    @property
    def num_units(self) -> int:
        """Number of allocated voxel units."""
        return self._unit_coords.shape[0]

    @property
    def unit_coords(self) -> torch.Tensor:
        return self._unit_coords.clone()

    # -------------------------------------------------------------------------
    # Unit table
    # -------------------------------------------------------------------------

    def _find(self, keys: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """(found (N,), slot (N,)) for unit keys; slot is 0 where not found."""
        if self._keys.numel() == 0:
            zeros = torch.zeros_like(keys)
            return zeros.bool(), zeros
        pos = torch.searchsorted(self._keys, keys).clamp(max=self._keys.numel() - 1)
        found = self._keys[pos] == keys
        slot = torch.where(found, self._slots[pos], torch.zeros_like(pos))
        return found, slot

    def _allocate(self, coords: torch.Tensor):
        if coords.shape[0] == 0:
            return
        R = self.unit_resolution
        n = coords.shape[0]
        first = self.num_units

        self._unit_coords = torch.cat([self._unit_coords, coords], dim=0)
        self._unit_distance = torch.cat([
            self._unit_distance,
            torch.full((n, R, R, R), self.truncation_distance, dtype=torch.float32, device=self.device)
        ], dim=0)
        self._unit_weight = torch.cat([
            self._unit_weight,
            torch.zeros((n, R, R, R), dtype=torch.int16, device=self.device)
        ], dim=0)

        keys = torch.cat([self._keys, encode_unit_keys(coords)])
        slots = torch.cat([self._slots, torch.arange(first, first + n, device=self.device)])
        order = torch.argsort(keys)
        self._keys = keys[order]
        self._slots = slots[order]

        logger.debug("Allocated %d units (%d total)", n, self.num_units)

    def _band_units(
        self,
        depth: torch.Tensor,
        volume_from_cam: torch.Tensor,
        intrinsics: CameraIntrinsics
    ) -> torch.Tensor:
        """Unique unit coordinates (M, 3) touched by the truncation band of valid pixels."""
        valid = depth > MIN_VALID_DEPTH
        if self.params.depth_trunc_threshold > 0:
            valid = valid & (depth <= self.params.depth_trunc_threshold)
        if not valid.any():
            return torch.empty(0, 3, dtype=torch.long, device=self.device)

        v, u = pixel_grid(depth.shape[0], depth.shape[1], device=self.device)
        z = depth[valid]
        x = (u[valid] - intrinsics.cx) / intrinsics.fx * z
        y = (v[valid] - intrinsics.cy) / intrinsics.fy * z
        surface = torch.stack([x, y, z], dim=-1)
        rays = F.normalize(surface, dim=-1)

        trunc = self.truncation_distance
        num_samples = max(3, int(math.ceil(2.0 * trunc / (0.5 * self.unit_size))) + 1)
        offsets = torch.linspace(-trunc, trunc, num_samples, device=self.device)

        samples = surface.unsqueeze(1) + rays.unsqueeze(1) * offsets.view(1, -1, 1)
        samples = transform_points(volume_from_cam, samples.reshape(-1, 3))
        coords = torch.floor((samples - self.origin) / self.unit_size).long()
        return torch.unique(coords, dim=0)

    def _unit_voxel_indices(self, coords: torch.Tensor) -> torch.Tensor:
        """Global voxel indices (B, R^3, 3) of units (B, 3)."""
        return coords.unsqueeze(1) * self.unit_resolution + self._local_offsets.unsqueeze(0)

    # -------------------------------------------------------------------------
    # VoxelVolume interface
    # -------------------------------------------------------------------------

    def integrate(
        self,
        depth: torch.Tensor,
        camera_pose: torch.Tensor,
        intrinsics: CameraIntrinsics
    ) -> None:
        depth, cam_from_volume = self._prepare_inputs(depth, camera_pose, intrinsics)
        volume_from_cam = pose_inverse(cam_from_volume)

        needed = self._band_units(depth, volume_from_cam, intrinsics)
        if needed.shape[0] == 0:
            return

        keys = encode_unit_keys(needed)
        found, _ = self._find(keys)
        new_coords = needed[~found]

        requested = self.num_units + new_coords.shape[0]
        if requested > self.params.max_active_units:
            raise ResourceExhausted(
                f"Frame needs {requested} units, budget is {self.params.max_active_units}",
                requested=requested,
                budget=self.params.max_active_units
            )

        self._allocate(new_coords)
        _, slots = self._find(keys)

        R = self.unit_resolution
        for batch in slots.split(HASH_UNIT_BATCH):
            centers = self.voxel_centers(self._unit_voxel_indices(self._unit_coords[batch]))
            d = self._unit_distance[batch].reshape(-1)
            w = self._unit_weight[batch].reshape(-1)
            new_d, new_w = self._update_voxels(
                centers.reshape(-1, 3), d, w, depth, cam_from_volume, intrinsics
            )
            self._unit_distance[batch] = new_d.reshape(-1, R, R, R)
            self._unit_weight[batch] = new_w.reshape(-1, R, R, R)

    def _lookup(self, indices: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        n = indices.shape[0]
        d = torch.full((n,), self.truncation_distance, dtype=torch.float32, device=self.device)
        w = torch.zeros(n, dtype=torch.int16, device=self.device)
        if self.num_units == 0:
            return d, w

        R = self.unit_resolution
        unit = torch.div(indices, R, rounding_mode='floor')
        local = indices - unit * R
        found, slot = self._find(encode_unit_keys(unit))

        d_stored = self._unit_distance[slot, local[:, 0], local[:, 1], local[:, 2]]
        w_stored = self._unit_weight[slot, local[:, 0], local[:, 1], local[:, 2]]
        return torch.where(found, d_stored, d), torch.where(found, w_stored, w)

    def _observed_voxels(self) -> Iterator[Tuple[torch.Tensor, torch.Tensor]]:
        for start in range(0, self.num_units, HASH_UNIT_BATCH):
            stop = min(start + HASH_UNIT_BATCH, self.num_units)
            observed = self._unit_weight[start:stop] > 0
            if not observed.any():
                continue
            nz = observed.nonzero()
            indices = self._unit_coords[start + nz[:, 0]] * self.unit_resolution + nz[:, 1:]
            distances = self._unit_distance[start:stop][observed]
            yield indices, distances

    def bounds(self) -> Optional[Tuple[torch.Tensor, torch.Tensor]]:
        if self.num_units == 0:
            return None
        lo = self._unit_coords.min(dim=0).values.to(torch.float32)
        hi = self._unit_coords.max(dim=0).values.to(torch.float32) + 1.0
        return self.origin + lo * self.unit_size, self.origin + hi * self.unit_size

    def contains(self, points: torch.Tensor) -> torch.Tensor:
        points = points.to(device=self.device, dtype=torch.float32)
        coords = torch.floor((points - self.origin) / self.unit_size).long()
        found, _ = self._find(encode_unit_keys(coords))
        return found

    def num_observed_voxels(self) -> int:
        return int((self._unit_weight > 0).sum().item())

    def reset(self) -> None:
        self._init_storage()

    def __repr__(self) -> str:
        return (
            f"HashTSDFVolume(voxel_size={self.voxel_size:.4f}, units={self.num_units}/"
            f"{self.params.max_active_units}, observed={self.num_observed_voxels()})"
        )
