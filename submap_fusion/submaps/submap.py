"""
A submap: one voxel volume anchored at a global pose.
"""

import enum
import logging
from typing import Optional, Tuple
import torch

from ..config import CameraIntrinsics, VolumeParams
from ..types import SurfaceField
from ..volume import VoxelVolume, SurfacePointSequence, make_volume
from ..utils.transforms import pose_inverse, transform_points, rotate_vectors, is_valid_pose

logger = logging.getLogger(__name__)


class SubmapState(enum.Enum):
    """Lifecycle of a submap: CREATED -> ACTIVE -> INACTIVE."""
    CREATED = "created"
    ACTIVE = "active"
    INACTIVE = "inactive"


class Submap:
    """
    Voxel volume expressed in its own frame, placed in the world by `pose`.

    The submap exclusively owns its volume. Camera poses passed in are
    global (camera-to-world); they are converted to the submap frame before
    reaching the volume, and results are converted back.
    """

    def __init__(
        self,
        submap_id: int,
        pose: torch.Tensor,
        volume_params: VolumeParams,
        created_at_frame: int,
        device: torch.device = torch.device('cpu'),
        volume: Optional[VoxelVolume] = None
    ):
        """
        Args:
            submap_id: Unique id, assigned in creation order
            pose: Submap-to-world transform (4, 4)
            volume_params: Parameters of the owned volume
            created_at_frame: Frame id at creation
            device: Device for voxel storage
            volume: Pre-built volume (a fresh one is created otherwise)
        """
        if not is_valid_pose(torch.as_tensor(pose)):
            raise ValueError("Submap pose must be a finite rigid 4x4 transform")

        self.id = submap_id
        self.device = torch.device(device)
        self.pose = torch.as_tensor(pose).to(device=self.device, dtype=torch.float32).clone()
        self.volume = volume if volume is not None else make_volume(volume_params, self.device)
        self.created_at_frame = created_at_frame

        self.state = SubmapState.CREATED
        self.visibility_ratio = 0.0
        self.integrated_frames = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.state == SubmapState.ACTIVE

    def activate(self):
        if self.state != SubmapState.CREATED:
            raise RuntimeError(f"Submap {self.id} cannot be activated from {self.state.name}")
        self.state = SubmapState.ACTIVE

    def retire(self):
        """Stop integrating into this submap; its data stays available."""
        self.state = SubmapState.INACTIVE

    def set_pose(self, pose: torch.Tensor):
        self.pose = torch.as_tensor(pose).to(device=self.device, dtype=torch.float32).clone()

    # -------------------------------------------------------------------------
    # Frame conversions
    # -------------------------------------------------------------------------

    def to_local(self, camera_pose: torch.Tensor) -> torch.Tensor:
        """Camera-to-submap transform of a global camera pose."""
        camera_pose = torch.as_tensor(camera_pose).to(device=self.device, dtype=torch.float32)
        return pose_inverse(self.pose) @ camera_pose

    def _to_global_field(self, surface: SurfaceField) -> SurfaceField:
        return SurfaceField(
            points=transform_points(self.pose, surface.points),
            normals=rotate_vectors(self.pose, surface.normals)
        )

    # -------------------------------------------------------------------------
    # Volume operations (global frame)
    # -------------------------------------------------------------------------

    def integrate(self, depth: torch.Tensor, camera_pose: torch.Tensor, intrinsics: CameraIntrinsics):
        """Fuse a depth frame seen from a global camera pose."""
        if self.state == SubmapState.INACTIVE:
            raise RuntimeError(f"Submap {self.id} is inactive and cannot integrate")
        self.volume.integrate(depth, self.to_local(camera_pose), intrinsics)
        self.integrated_frames += 1

    def raycast(
        self,
        camera_pose: torch.Tensor,
        intrinsics: CameraIntrinsics,
        output_size: Optional[Tuple[int, int]] = None
    ) -> SurfaceField:
        """Raycast from a global camera pose; points and normals in the global frame."""
        local = self.volume.raycast(self.to_local(camera_pose), intrinsics, output_size)
        return self._to_global_field(local)

    def compute_visibility(
        self,
        camera_pose: torch.Tensor,
        intrinsics: CameraIntrinsics,
        scale: float = 1.0
    ) -> float:
        """
        Fraction of pixels whose ray hits this submap's surface.

        The result is also stored in `visibility_ratio`.
        """
        scaled = intrinsics.scaled(scale) if scale != 1.0 else intrinsics
        surface = self.volume.raycast(self.to_local(camera_pose), scaled)
        self.visibility_ratio = surface.hit_ratio()
        return self.visibility_ratio

    def fetch_points_normals(self) -> SurfacePointSequence:
        """Surface samples in the global frame, evaluated lazily."""
        return self.volume.fetch_points_normals().transformed(self.pose)

    def compute_normals(self, points: torch.Tensor) -> torch.Tensor:
        """Normals (N, 3) in the global frame at global points (N, 3)."""
        local_points = transform_points(pose_inverse(self.pose), points.to(self.device))
        return rotate_vectors(self.pose, self.volume.compute_normals(local_points))

    def contains(self, points: torch.Tensor) -> torch.Tensor:
        local_points = transform_points(pose_inverse(self.pose), points.to(self.device))
        return self.volume.contains(local_points)

    def __repr__(self) -> str:
        return (
            f"Submap(id={self.id}, state={self.state.name}, "
            f"visibility={self.visibility_ratio:.2f}, frames={self.integrated_frames})"
        )
