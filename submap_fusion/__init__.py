"""
Submap Fusion: large-scale TSDF reconstruction from depth streams

A PyTorch library that fuses depth frames into a set of locally rigid
submaps, tracks the camera with point-to-plane ICP and keeps the submaps
globally consistent with a pose graph.

Key Features:
- Dense and spatially hashed TSDF voxel volumes
- Raycasting with trilinear interpolation and surface normals
- Coarse-to-fine projective ICP with degeneracy detection
- Visibility-driven submap spawning and retirement
- Levenberg-Marquardt pose graph optimization (optionally in a background thread)

API Design:
- Poses are (4, 4) camera-to-world (or submap-to-world) tensors
- Depth reaching the engine is raw; camera.depth_factor converts it to meters
- Failures are reported through the exceptions in submap_fusion.core

Example:
    >>> import submap_fusion
    >>> engine = submap_fusion.ReconstructionEngine(submap_fusion.FusionParams.coarse_params())
    >>> for depth in depth_frames:
    ...     engine.update(depth)
    >>> image = engine.render()
"""

__version__ = "0.1.0"
__author__ = "Submap Fusion Contributors"

from . import core
from . import utils
from . import rendering
from . import volume
from . import submaps
from . import tracking
from . import posegraph
from . import data

from .config import (
    CameraIntrinsics,
    VolumeKind,
    VolumeParams,
    TrackerConfig,
    SubmapConfig,
    PoseGraphConfig,
    FusionParams,
)
from .types import (
    Frame,
    SurfaceField,
    TrackingResult,
    OptimizationResult,
    IntegrationReport,
    SubmapTransition,
    FrameStatus,
    EngineStatistics,
)
from .core.errors import (
    FusionError,
    TrackingLost,
    ResourceExhausted,
    OptimizationDidNotConverge,
    InvalidConfiguration,
)
from .engine import ReconstructionEngine

__all__ = [
    # Subpackages
    "core",
    "utils",
    "rendering",
    "volume",
    "submaps",
    "tracking",
    "posegraph",
    "data",
    # Configuration
    "CameraIntrinsics",
    "VolumeKind",
    "VolumeParams",
    "TrackerConfig",
    "SubmapConfig",
    "PoseGraphConfig",
    "FusionParams",
    # Types
    "Frame",
    "SurfaceField",
    "TrackingResult",
    "OptimizationResult",
    "IntegrationReport",
    "SubmapTransition",
    "FrameStatus",
    "EngineStatistics",
    # Errors
    "FusionError",
    "TrackingLost",
    "ResourceExhausted",
    "OptimizationDidNotConverge",
    "InvalidConfiguration",
    # Engine
    "ReconstructionEngine",
]
