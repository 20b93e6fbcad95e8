"""
Dense TSDF volume.

A preallocated grid of resolution[0] x resolution[1] x resolution[2]
voxels. Integration sweeps the grid in x-slabs so memory for the
temporary voxel centres stays bounded.
"""

import logging
from typing import Iterator, Optional, Tuple
import torch

from .base import VoxelVolume
from ..config import CameraIntrinsics, VolumeParams
from ..core.constants import DENSE_INTEGRATION_SLAB

logger = logging.getLogger(__name__)


class TSDFVolume(VoxelVolume):
    """
    Dense truncated signed distance volume.

    Example:
        >>> volume = TSDFVolume(VolumeParams.coarse_params())
        >>> volume.integrate(depth, camera_pose, intrinsics)
        >>> surface = volume.raycast(camera_pose, intrinsics)
    """

    def __init__(self, params: VolumeParams, device: torch.device = torch.device('cpu')):
        super().__init__(params, device)
        self.resolution = tuple(int(r) for r in params.resolution)
        self._resolution = torch.tensor(self.resolution, dtype=torch.long, device=self.device)

        self.distance = torch.full(
            self.resolution, self.truncation_distance, dtype=torch.float32, device=self.device
        )
        self.weight = torch.zeros(self.resolution, dtype=torch.int16, device=self.device)

        logger.debug("Allocated dense volume %s on %s", self.resolution, self.device)

    def _slab_centers(self, start: int, stop: int) -> torch.Tensor:
        ix = torch.arange(start, stop, device=self.device)
        iy = torch.arange(self.resolution[1], device=self.device)
        iz = torch.arange(self.resolution[2], device=self.device)
        grid = torch.stack(torch.meshgrid(ix, iy, iz, indexing='ij'), dim=-1)
        return self.voxel_centers(grid)

    def integrate(
        self,
        depth: torch.Tensor,
        camera_pose: torch.Tensor,
        intrinsics: CameraIntrinsics
    ) -> None:
        depth, cam_from_volume = self._prepare_inputs(depth, camera_pose, intrinsics)

        for start in range(0, self.resolution[0], DENSE_INTEGRATION_SLAB):
            stop = min(start + DENSE_INTEGRATION_SLAB, self.resolution[0])
            centers = self._slab_centers(start, stop).reshape(-1, 3)

            slab_d = self.distance[start:stop]
            slab_w = self.weight[start:stop]
            new_d, new_w = self._update_voxels(
                centers, slab_d.reshape(-1), slab_w.reshape(-1),
                depth, cam_from_volume, intrinsics
            )
            slab_d.copy_(new_d.reshape(slab_d.shape))
            slab_w.copy_(new_w.reshape(slab_w.shape))

    def _lookup(self, indices: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        upper = self._resolution - 1
        inside = ((indices >= 0) & (indices <= upper)).all(dim=-1)
        clamped = torch.minimum(indices.clamp(min=0), upper)

        d = self.distance[clamped[:, 0], clamped[:, 1], clamped[:, 2]]
        w = self.weight[clamped[:, 0], clamped[:, 1], clamped[:, 2]]

        d = torch.where(inside, d, torch.full_like(d, self.truncation_distance))
        w = torch.where(inside, w, torch.zeros_like(w))
        return d, w

    def _observed_voxels(self) -> Iterator[Tuple[torch.Tensor, torch.Tensor]]:
        for start in range(0, self.resolution[0], DENSE_INTEGRATION_SLAB):
            stop = min(start + DENSE_INTEGRATION_SLAB, self.resolution[0])
            observed = self.weight[start:stop] > 0
            if not observed.any():
                continue
            indices = observed.nonzero()
            distances = self.distance[start:stop][observed]
            indices[:, 0] += start
            yield indices, distances

    def bounds(self) -> Optional[Tuple[torch.Tensor, torch.Tensor]]:
        extent = self._resolution.to(torch.float32) * self.voxel_size
        return self.origin.clone(), self.origin + extent

    def contains(self, points: torch.Tensor) -> torch.Tensor:
        box_min, box_max = self.bounds()
        points = points.to(device=self.device, dtype=torch.float32)
        return ((points >= box_min) & (points < box_max)).all(dim=-1)

    def num_observed_voxels(self) -> int:
        return int((self.weight > 0).sum().item())

    def reset(self) -> None:
        self.distance.fill_(self.truncation_distance)
        self.weight.zero_()
