"""
Type definitions for submap_fusion.

Defines data structures for frames, raycast results, tracking and
optimization results, and per-frame status reports.
"""

import enum
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Tuple, TYPE_CHECKING
import torch

from .config import CameraIntrinsics

if TYPE_CHECKING:
    from .submaps.submap import Submap


class Frame(NamedTuple):
    """A single depth (+ optional color) frame, depth already in meters."""
    depth: torch.Tensor                   # (H, W) in meters, 0 = missing
    intrinsics: CameraIntrinsics
    frame_id: int                         # Unique, monotonically increasing
    color: Optional[torch.Tensor] = None  # (H, W, 3)
    timestamp: float = 0.0                # Seconds

    @property
    def size(self) -> Tuple[int, int]:
        return tuple(self.depth.shape)

    def valid_mask(self) -> torch.Tensor:
        """(H, W) mask of pixels with usable depth."""
        return torch.isfinite(self.depth) & (self.depth > 0)


class SurfaceField(NamedTuple):
    """
    Per-pixel raycast result.

    Pixels whose ray did not hit an observed surface hold NaN in both
    tensors.
    """
    points: torch.Tensor    # (H, W, 3)
    normals: torch.Tensor   # (H, W, 3)

    def valid_mask(self) -> torch.Tensor:
        """(H, W) mask of pixels that hit a surface."""
        return torch.isfinite(self.points).all(dim=-1) & torch.isfinite(self.normals).all(dim=-1)

    def hit_ratio(self) -> float:
        """Fraction of pixels that hit a surface."""
        mask = self.valid_mask()
        if mask.numel() == 0:
            return 0.0
        return mask.float().mean().item()


@dataclass
class TrackingResult:
    """Result from ICP camera tracking."""
    pose: torch.Tensor                  # (4, 4) camera-to-global
    converged: bool                     # Correction fell below tolerance at the finest level
    num_iterations: int                 # Total over all pyramid levels
    inlier_ratio: float                 # Accepted correspondences / valid frame pixels (finest level)
    residual: float                     # RMS point-to-plane error (meters, finest level)

    # Iterations used per pyramid level, index 0 finest
    level_iterations: List[int] = field(default_factory=list)


@dataclass
class OptimizationResult:
    """Result from a pose graph optimization."""
    poses: Dict[int, torch.Tensor]      # Node id -> (4, 4) pose
    success: bool
    num_iterations: int
    initial_error: float
    final_error: float
    message: str = ""


@dataclass
class IntegrationReport:
    """Which submaps absorbed the current frame."""
    integrated: List[int] = field(default_factory=list)
    exhausted: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.exhausted


@dataclass
class SubmapTransition:
    """Lifecycle changes performed for one frame."""
    spawned: Optional['Submap'] = None
    parent_id: Optional[int] = None
    retired: List[int] = field(default_factory=list)


class FrameStatus(enum.Enum):
    """Outcome of a single ReconstructionEngine.update call."""
    INITIALIZED = "initialized"
    TRACKED = "tracked"
    TRACKING_LOST = "tracking_lost"
    RESOURCE_EXHAUSTED = "resource_exhausted"


@dataclass
class EngineStatistics:
    """Running counters of the reconstruction engine."""
    total_frames: int = 0
    tracked_frames: int = 0
    lost_frames: int = 0
    exhausted_frames: int = 0
    num_submaps: int = 0
    num_active_submaps: int = 0
    num_edges: int = 0
    num_optimizations: int = 0
    failed_optimizations: int = 0


# Type aliases for clarity
PointCloud = torch.Tensor  # (N, 3)
DepthMap = torch.Tensor    # (H, W)
Pose = torch.Tensor        # (4, 4)
