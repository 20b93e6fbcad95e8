"""
Configuration dataclasses for submap_fusion.

Provides structured configuration for all components: camera, voxel
volumes, tracking, submap policy and pose-graph optimization. Every
dataclass is frozen and validates itself on construction, raising
InvalidConfiguration before any frame is processed.
"""

import enum
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple
import torch

from .core.constants import (
    DEFAULT_DEPTH_FACTOR,
    DEFAULT_VOLUME_SIZE,
    DEFAULT_RESOLUTION,
    DEFAULT_UNIT_RESOLUTION,
    DEFAULT_MAX_WEIGHT,
    MAX_VOXEL_WEIGHT,
    DEFAULT_RAYCAST_STEP_FACTOR,
    DEFAULT_TRUNCATION_VOXELS,
    DEFAULT_MAX_ACTIVE_UNITS,
    DEFAULT_ICP_ITERATIONS,
    DEFAULT_ICP_DIST_THRESH,
    DEFAULT_ICP_ANGLE_THRESH,
    DEFAULT_ICP_TOLERANCE,
    DEFAULT_MIN_CORRESPONDENCES,
    DEFAULT_PG_MAX_ITERATIONS,
    DEFAULT_PG_TOLERANCE,
)
from .core.errors import InvalidConfiguration

logger = logging.getLogger(__name__)


def _require(condition: bool, message: str):
    if not condition:
        raise InvalidConfiguration(message)


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole camera intrinsics."""
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    depth_factor: float = DEFAULT_DEPTH_FACTOR  # Raw depth units per meter

    def __post_init__(self):
        _require(self.fx > 0 and self.fy > 0, f"Focal lengths must be positive, got {self.fx}, {self.fy}")
        _require(self.width > 0 and self.height > 0, f"Invalid frame size {self.width}x{self.height}")
        _require(self.depth_factor > 0, f"depth_factor must be positive, got {self.depth_factor}")

    @property
    def size(self) -> Tuple[int, int]:
        """Frame size as (height, width)."""
        return self.height, self.width

    def to_matrix(self) -> torch.Tensor:
        """Convert to 3x3 intrinsics matrix."""
        return torch.tensor([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0]
        ], dtype=torch.float32)

    def scaled(self, scale: float) -> 'CameraIntrinsics':
        """
        Intrinsics for an image resized by `scale`.

        The principal point is mapped through pixel centres, so a 2x2 block
        average lands exactly on the corresponding coarse pixel.
        """
        return CameraIntrinsics(
            fx=self.fx * scale,
            fy=self.fy * scale,
            cx=(self.cx + 0.5) * scale - 0.5,
            cy=(self.cy + 0.5) * scale - 0.5,
            width=max(1, int(self.width * scale)),
            height=max(1, int(self.height * scale)),
            depth_factor=self.depth_factor
        )


class VolumeKind(enum.Enum):
    """Storage layout of a voxel volume."""
    TSDF = "tsdf"            # Dense, fixed-size grid
    HASH_TSDF = "hash_tsdf"  # Spatially hashed voxel units


@dataclass(frozen=True)
class VolumeParams:
    """Configuration of a single TSDF volume."""
    kind: VolumeKind = VolumeKind.TSDF

    # Voxels per axis (hashed volumes require equal values)
    resolution: Tuple[int, int, int] = (DEFAULT_RESOLUTION,) * 3

    # Voxels per side of one hashed unit
    unit_resolution: int = DEFAULT_UNIT_RESOLUTION

    # Physical extent and voxel edge length in meters
    volume_size: float = DEFAULT_VOLUME_SIZE
    voxel_size: float = DEFAULT_VOLUME_SIZE / DEFAULT_RESOLUTION

    # Distances beyond this band are truncated
    truncation_distance: float = DEFAULT_TRUNCATION_VOXELS * DEFAULT_VOLUME_SIZE / DEFAULT_RESOLUTION

    # Cap on the running-average weight
    max_weight: int = DEFAULT_MAX_WEIGHT

    # Depth beyond this is ignored during integration (0 disables)
    depth_trunc_threshold: float = 0.0

    # Fraction of a voxel advanced per raycast step
    raycast_step_factor: float = DEFAULT_RAYCAST_STEP_FACTOR

    # Grid corner inside the owning submap frame (None: centred in x/y, 0.5 m ahead)
    volume_origin: Optional[Tuple[float, float, float]] = None

    # Allocation budget for hashed volumes
    max_active_units: int = DEFAULT_MAX_ACTIVE_UNITS

    def __post_init__(self):
        _require(len(self.resolution) == 3, f"resolution needs 3 values, got {self.resolution}")
        _require(all(int(r) > 0 for r in self.resolution), f"resolution must be positive, got {self.resolution}")
        _require(self.volume_size > 0, f"volume_size must be positive, got {self.volume_size}")
        _require(self.voxel_size > 0, f"voxel_size must be positive, got {self.voxel_size}")
        _require(
            self.truncation_distance > self.voxel_size,
            f"truncation_distance ({self.truncation_distance}) must exceed voxel_size ({self.voxel_size})"
        )
        _require(
            1 <= self.max_weight <= MAX_VOXEL_WEIGHT,
            f"max_weight must be in [1, {MAX_VOXEL_WEIGHT}], got {self.max_weight}"
        )
        _require(self.depth_trunc_threshold >= 0, "depth_trunc_threshold must be non-negative")
        _require(
            0 < self.raycast_step_factor <= 1,
            f"raycast_step_factor must be in (0, 1], got {self.raycast_step_factor}"
        )
        if self.volume_origin is not None:
            _require(len(self.volume_origin) == 3, "volume_origin needs 3 values")

        if self.kind == VolumeKind.HASH_TSDF:
            _require(
                len(set(self.resolution)) == 1,
                f"Hashed volumes require equal resolution on all axes, got {self.resolution}"
            )
            _require(self.unit_resolution > 0, "unit_resolution must be positive")
            _require(self.max_active_units >= 1, "max_active_units must be >= 1")

        # Soft check: a mismatch is tolerated but usually a mistake
        for r in self.resolution:
            if not math.isclose(self.voxel_size * r, self.volume_size, rel_tol=1e-3):
                logger.warning(
                    "voxel_size * resolution (%.4f) differs from volume_size (%.4f)",
                    self.voxel_size * r, self.volume_size
                )
                break

    @property
    def origin(self) -> Tuple[float, float, float]:
        """Grid corner in the submap frame."""
        if self.volume_origin is not None:
            return tuple(float(v) for v in self.volume_origin)
        half = self.volume_size / 2.0
        return (-half, -half, 0.5)

    @property
    def unit_size(self) -> float:
        """Edge length in meters of one hashed unit."""
        return self.unit_resolution * self.voxel_size

    @classmethod
    def default_params(cls, kind: VolumeKind = VolumeKind.TSDF) -> 'VolumeParams':
        """High quality settings (slow)."""
        voxel = DEFAULT_VOLUME_SIZE / DEFAULT_RESOLUTION
        params = cls(
            kind=kind,
            resolution=(DEFAULT_RESOLUTION,) * 3,
            volume_size=DEFAULT_VOLUME_SIZE,
            voxel_size=voxel,
            truncation_distance=DEFAULT_TRUNCATION_VOXELS * voxel,
            max_weight=DEFAULT_MAX_WEIGHT,
            raycast_step_factor=DEFAULT_RAYCAST_STEP_FACTOR,
        )
        if kind == VolumeKind.HASH_TSDF:
            params = replace(params, depth_trunc_threshold=4.0)
        return params

    @classmethod
    def coarse_params(cls, kind: VolumeKind = VolumeKind.TSDF) -> 'VolumeParams':
        """Faster, lower resolution settings."""
        resolution = 128
        voxel = DEFAULT_VOLUME_SIZE / resolution
        params = cls(
            kind=kind,
            resolution=(resolution,) * 3,
            unit_resolution=8,
            volume_size=DEFAULT_VOLUME_SIZE,
            voxel_size=voxel,
            truncation_distance=2.0 * voxel,
            max_weight=DEFAULT_MAX_WEIGHT,
            raycast_step_factor=0.75,
        )
        if kind == VolumeKind.HASH_TSDF:
            params = replace(params, depth_trunc_threshold=4.0)
        return params


@dataclass(frozen=True)
class TrackerConfig:
    """Configuration for ICP camera tracking."""
    # Iterations per pyramid level, index 0 is the finest level
    icp_iterations: Tuple[int, ...] = DEFAULT_ICP_ITERATIONS

    # Correspondence rejection
    icp_dist_thresh: float = DEFAULT_ICP_DIST_THRESH      # Meters
    icp_angle_thresh: float = DEFAULT_ICP_ANGLE_THRESH    # Radians

    # Convergence
    convergence_tolerance: float = DEFAULT_ICP_TOLERANCE  # Norm of the twist update
    min_correspondences: int = DEFAULT_MIN_CORRESPONDENCES

    # Robustness
    huber_delta: float = 0.02             # Meters, IRLS weighting
    degeneracy_threshold: float = 1e-7    # Min/max eigenvalue ratio of J^T J

    def __post_init__(self):
        _require(len(self.icp_iterations) >= 1, "At least one pyramid level is required")
        _require(all(int(n) >= 1 for n in self.icp_iterations), "icp_iterations must be >= 1 per level")
        _require(self.icp_dist_thresh > 0, "icp_dist_thresh must be positive")
        _require(0 < self.icp_angle_thresh <= math.pi, "icp_angle_thresh must be in (0, pi]")
        _require(self.convergence_tolerance > 0, "convergence_tolerance must be positive")
        _require(self.min_correspondences >= 6, "min_correspondences must be >= 6")
        _require(self.huber_delta > 0, "huber_delta must be positive")
        _require(0 <= self.degeneracy_threshold < 1, "degeneracy_threshold must be in [0, 1)")

    @property
    def num_levels(self) -> int:
        return len(self.icp_iterations)


@dataclass(frozen=True)
class SubmapConfig:
    """Configuration for the submap lifecycle policy."""
    # Spawn a new submap when the tracking target's visibility drops below this
    spawn_visibility_threshold: float = 0.5

    # Non-target active submaps below this become inactive
    retire_visibility_threshold: float = 0.2

    # Active submaps integrate only above this visibility
    integrate_visibility_floor: float = 0.3

    # Minimum frames between two spawns
    min_frames_between_spawns: int = 5

    # Image scale at which visibility is measured
    visibility_scale: float = 0.5

    # Re-estimate the spawn edge while the parent submap is still active
    refine_handoff_edges: bool = True

    def __post_init__(self):
        for name in ('spawn_visibility_threshold', 'retire_visibility_threshold', 'integrate_visibility_floor'):
            value = getattr(self, name)
            _require(0.0 <= value <= 1.0, f"{name} must be in [0, 1], got {value}")
        _require(
            self.retire_visibility_threshold <= self.spawn_visibility_threshold,
            "retire_visibility_threshold must not exceed spawn_visibility_threshold"
        )
        _require(self.min_frames_between_spawns >= 0, "min_frames_between_spawns must be >= 0")
        _require(0 < self.visibility_scale <= 1, "visibility_scale must be in (0, 1]")


@dataclass(frozen=True)
class PoseGraphConfig:
    """Configuration for periodic pose graph optimization."""
    # Scheduling: whichever comes first
    optimize_every_n_frames: int = 10
    optimize_after_new_edges: int = 3

    # Solver
    max_iterations: int = DEFAULT_PG_MAX_ITERATIONS
    tolerance: float = DEFAULT_PG_TOLERANCE  # Relative error reduction

    # Run the solver on a worker thread; results are applied between frames
    background: bool = False

    def __post_init__(self):
        _require(self.optimize_every_n_frames >= 1, "optimize_every_n_frames must be >= 1")
        _require(self.optimize_after_new_edges >= 1, "optimize_after_new_edges must be >= 1")
        _require(self.max_iterations >= 1, "max_iterations must be >= 1")
        _require(self.tolerance > 0, "tolerance must be positive")


@dataclass(frozen=True)
class FusionParams:
    """Complete reconstruction configuration."""
    # Sub-configs
    camera: CameraIntrinsics = field(default_factory=lambda: CameraIntrinsics(
        fx=525.0, fy=525.0, cx=319.5, cy=239.5, width=640, height=480, depth_factor=5000.0
    ))
    volume: VolumeParams = field(default_factory=VolumeParams)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    submap: SubmapConfig = field(default_factory=SubmapConfig)
    pose_graph: PoseGraphConfig = field(default_factory=PoseGraphConfig)

    # Integrate only if the camera moved more than this (meters)
    min_camera_movement: float = 0.0

    # Input depth beyond this is zeroed (meters, 0 disables)
    truncate_threshold: float = 0.0

    # Light position for rendering (meters, global frame)
    light_pose: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    # General
    device: str = 'cpu'

    def __post_init__(self):
        _require(self.min_camera_movement >= 0, "min_camera_movement must be non-negative")
        _require(self.truncate_threshold >= 0, "truncate_threshold must be non-negative")
        _require(len(self.light_pose) == 3, "light_pose needs 3 values")
        coarsest = 2 ** (self.tracker.num_levels - 1)
        _require(
            self.camera.width // coarsest >= 4 and self.camera.height // coarsest >= 4,
            f"Frame {self.camera.width}x{self.camera.height} too small for "
            f"{self.tracker.num_levels} pyramid levels"
        )

    @classmethod
    def default_params(cls) -> 'FusionParams':
        """Quality settings with a dense volume per submap."""
        return cls(volume=VolumeParams.default_params(VolumeKind.TSDF))

    @classmethod
    def coarse_params(cls) -> 'FusionParams':
        """Faster settings; may lose track under rapid motion."""
        return cls(
            volume=VolumeParams.coarse_params(VolumeKind.TSDF),
            tracker=TrackerConfig(icp_iterations=(5, 3, 2)),
        )

    @classmethod
    def hash_tsdf_params(cls, is_coarse: bool = False) -> 'FusionParams':
        """Settings for spatially hashed submap volumes."""
        base = cls.coarse_params() if is_coarse else cls.default_params()
        volume = (
            VolumeParams.coarse_params(VolumeKind.HASH_TSDF) if is_coarse
            else VolumeParams.default_params(VolumeKind.HASH_TSDF)
        )
        return replace(base, volume=volume, truncate_threshold=volume.depth_trunc_threshold)

    @classmethod
    def for_testing(cls, kind: VolumeKind = VolumeKind.TSDF) -> 'FusionParams':
        """Small frames and volumes for quick tests."""
        return cls(
            camera=CameraIntrinsics(
                fx=50.0, fy=50.0, cx=31.5, cy=23.5,
                width=64, height=48, depth_factor=1.0
            ),
            volume=VolumeParams(
                kind=kind,
                resolution=(48, 48, 48),
                unit_resolution=8,
                volume_size=2.4,
                voxel_size=0.05,
                truncation_distance=0.15,
                max_weight=64,
                raycast_step_factor=0.5,
                volume_origin=(-1.2, -1.2, 0.2),
                max_active_units=4096,
            ),
            tracker=TrackerConfig(
                icp_iterations=(6, 4, 3),
                min_correspondences=20,
            ),
            submap=SubmapConfig(visibility_scale=0.5),
        )

    def get_device(self) -> torch.device:
        """Get torch device."""
        return torch.device(self.device)
