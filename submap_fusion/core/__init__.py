"""
Core module for submap_fusion.

Contains:
- Constants: Centralized default values and numeric constants
- Errors: Exception taxonomy shared by all components
"""

from .constants import (
    DEFAULT_EPS,
    DEFAULT_EPS_NORM,
    MIN_VALID_DEPTH,
    DEFAULT_DEPTH_FACTOR,
    DEFAULT_VOLUME_SIZE,
    DEFAULT_RESOLUTION,
    DEFAULT_UNIT_RESOLUTION,
    DEFAULT_MAX_WEIGHT,
    DEFAULT_RAYCAST_STEP_FACTOR,
    DEFAULT_TRUNCATION_VOXELS,
    DEFAULT_MAX_ACTIVE_UNITS,
)

from .errors import (
    FusionError,
    TrackingLost,
    ResourceExhausted,
    OptimizationDidNotConverge,
    InvalidConfiguration,
)

__all__ = [
    # Constants
    "DEFAULT_EPS",
    "DEFAULT_EPS_NORM",
    "MIN_VALID_DEPTH",
    "DEFAULT_DEPTH_FACTOR",
    "DEFAULT_VOLUME_SIZE",
    "DEFAULT_RESOLUTION",
    "DEFAULT_UNIT_RESOLUTION",
    "DEFAULT_MAX_WEIGHT",
    "DEFAULT_RAYCAST_STEP_FACTOR",
    "DEFAULT_TRUNCATION_VOXELS",
    "DEFAULT_MAX_ACTIVE_UNITS",
    # Errors
    "FusionError",
    "TrackingLost",
    "ResourceExhausted",
    "OptimizationDidNotConverge",
    "InvalidConfiguration",
]
