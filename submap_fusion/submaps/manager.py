"""
Submap lifecycle management.

Owns every submap, the identity of the tracking target and the rules that
decide which submaps receive a frame, which retire and when a new one is
spawned.
"""

import logging
from typing import Dict, Iterator, List, Optional
import torch

from .submap import Submap, SubmapState
from ..config import SubmapConfig, VolumeParams, CameraIntrinsics
from ..core.errors import ResourceExhausted
from ..types import Frame, IntegrationReport, SubmapTransition
from ..utils.transforms import is_valid_pose

logger = logging.getLogger(__name__)


class SubmapManager:
    """
    Manages submap creation, integration routing and retirement.

    Per frame, in this order:
    1. update_visibility(): measure how much of each active submap is seen
    2. integrate(): fuse the frame into the integration targets
    3. manage(): retire faded submaps, spawn a new one if the target fades

    Integration targets are visited in ascending id order, each receiving
    the frame exactly once with unit weight.
    """

    def __init__(
        self,
        config: SubmapConfig,
        volume_params: VolumeParams,
        device: torch.device = torch.device('cpu')
    ):
        """
        Args:
            config: Submap policy configuration
            volume_params: Parameters for every new submap volume
            device: Device for voxel storage
        """
        self.config = config
        self.volume_params = volume_params
        self.device = device

        self.submaps: Dict[int, Submap] = {}
        self.active_id: Optional[int] = None
        self._next_id = 0
        self._last_spawn_frame: Optional[int] = None

    def __len__(self) -> int:
        return len(self.submaps)

    def __contains__(self, submap_id: int) -> bool:
        return submap_id in self.submaps

    def __iter__(self) -> Iterator[Submap]:
        return iter(self.submaps[i] for i in sorted(self.submaps))

    def get(self, submap_id: int) -> Submap:
        return self.submaps[submap_id]

    @property
    def target(self) -> Optional[Submap]:
        """The submap the camera is tracked against."""
        if self.active_id is None:
            return None
        return self.submaps[self.active_id]

    def set_target(self, submap_id: int):
        submap = self.submaps[submap_id]
        if not submap.is_active:
            raise ValueError(f"Submap {submap_id} is not active")
        self.active_id = submap_id

    def active_submaps(self) -> List[Submap]:
        """Active submaps in ascending id order."""
        return [s for s in self if s.is_active]

    def poses(self) -> Dict[int, torch.Tensor]:
        return {s.id: s.pose.clone() for s in self}

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def _build_submap(
        self,
        pose: torch.Tensor,
        frame_id: int,
        seed: Optional[Frame] = None
    ) -> Submap:
        submap = Submap(
            submap_id=self._next_id,
            pose=pose,
            volume_params=self.volume_params,
            created_at_frame=frame_id,
            device=self.device
        )
        if seed is not None:
            # Seeding happens before registration so a failure leaves no trace
            submap.volume.integrate(seed.depth, submap.to_local(pose), seed.intrinsics)
            submap.integrated_frames += 1
            submap.visibility_ratio = 1.0

        submap.activate()
        self.submaps[submap.id] = submap
        self._next_id += 1
        return submap

    def create_submap(self, pose: torch.Tensor, frame_id: int) -> Submap:
        """
        Create an empty submap at a global pose and activate it.

        The first submap becomes the tracking target.
        """
        submap = self._build_submap(pose, frame_id)
        if self.active_id is None:
            self.active_id = submap.id
            self._last_spawn_frame = frame_id
        logger.info("Created submap %d at frame %d", submap.id, frame_id)
        return submap

    def _spawn(self, frame: Frame, camera_pose: torch.Tensor, transition: SubmapTransition) -> Submap:
        parent_id = self.active_id
        submap = self._build_submap(camera_pose, frame.frame_id, seed=frame)
        self.active_id = submap.id
        self._last_spawn_frame = frame.frame_id

        transition.spawned = submap
        transition.parent_id = parent_id
        logger.info(
            "Spawned submap %d from %s at frame %d", submap.id, parent_id, frame.frame_id
        )
        return submap

    def force_spawn(self, frame: Frame, camera_pose: torch.Tensor) -> SubmapTransition:
        """Spawn a new tracking target at the camera pose regardless of visibility."""
        transition = SubmapTransition()
        self._spawn(frame, camera_pose, transition)
        return transition

    # -------------------------------------------------------------------------
    # Per-frame policy
    # -------------------------------------------------------------------------

    def update_visibility(
        self,
        camera_pose: torch.Tensor,
        intrinsics: CameraIntrinsics
    ) -> Dict[int, float]:
        """Recompute the visibility ratio of every active submap."""
        visibility = {}
        for submap in self.active_submaps():
            visibility[submap.id] = submap.compute_visibility(
                camera_pose, intrinsics, self.config.visibility_scale
            )
        logger.debug("Visibility: %s", visibility)
        return visibility

    def integration_targets(self) -> List[Submap]:
        """
        Active submaps receiving the current frame: the tracking target plus
        every other active submap above the visibility floor, by ascending id.
        """
        return [
            s for s in self.active_submaps()
            if s.id == self.active_id or s.visibility_ratio > self.config.integrate_visibility_floor
        ]

    def integrate(self, frame: Frame, camera_pose: torch.Tensor) -> IntegrationReport:
        """
        Fuse a frame into all integration targets.

        A target whose volume is exhausted is reported and left untouched;
        the remaining targets still integrate.
        """
        report = IntegrationReport()
        for submap in self.integration_targets():
            try:
                submap.integrate(frame.depth, camera_pose, frame.intrinsics)
            except ResourceExhausted as e:
                logger.warning("Submap %d exhausted: %s", submap.id, e)
                report.exhausted.append(submap.id)
            else:
                report.integrated.append(submap.id)
        return report

    def manage(
        self,
        frame: Frame,
        camera_pose: torch.Tensor,
        tracking_healthy: bool = True
    ) -> SubmapTransition:
        """
        Apply retirement and spawning rules after integration.

        Args:
            frame: Current frame (seeds a spawned submap)
            camera_pose: Tracked global camera pose
            tracking_healthy: Spawning is suppressed when False

        Returns:
            SubmapTransition describing what changed
        """
        transition = SubmapTransition()

        for submap in self.active_submaps():
            if submap.id == self.active_id:
                continue
            if submap.visibility_ratio < self.config.retire_visibility_threshold:
                self.retire(submap.id)
                transition.retired.append(submap.id)

        target = self.target
        if target is None or not tracking_healthy:
            return transition

        if target.visibility_ratio >= self.config.spawn_visibility_threshold:
            return transition

        if (self._last_spawn_frame is not None and
                frame.frame_id - self._last_spawn_frame < self.config.min_frames_between_spawns):
            return transition

        self._spawn(frame, camera_pose, transition)
        return transition

    def retire(self, submap_id: int):
        """
        Stop integrating into a submap.

        The tracking target cannot be retired; move the target first (for
        example with `force_spawn`).
        """
        if submap_id == self.active_id:
            raise ValueError(f"Submap {submap_id} is the tracking target")
        submap = self.submaps[submap_id]
        if submap.state == SubmapState.INACTIVE:
            return
        submap.retire()
        logger.info("Retired submap %d (visibility %.2f)", submap_id, submap.visibility_ratio)

    def apply_poses(self, poses: Dict[int, torch.Tensor]):
        """
        Replace submap poses all at once.

        Every pose is validated first so a bad entry leaves all poses unchanged.
        """
        for submap_id, pose in poses.items():
            if submap_id not in self.submaps:
                raise KeyError(f"Unknown submap id {submap_id}")
            if not is_valid_pose(torch.as_tensor(pose)):
                raise ValueError(f"Invalid pose for submap {submap_id}")
        for submap_id, pose in poses.items():
            self.submaps[submap_id].set_pose(pose)

    def reset(self):
        self.submaps.clear()
        self.active_id = None
        self._next_id = 0
        self._last_spawn_frame = None
