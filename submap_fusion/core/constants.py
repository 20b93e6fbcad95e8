"""
Centralized constants for submap_fusion.

Numeric tolerances and defaults shared across volumes, tracking and the
pose graph live here so that they can be adjusted in one place.

Usage:
    from submap_fusion.core.constants import DEFAULT_EPS, MIN_VALID_DEPTH
"""

# =============================================================================
# Numeric Constants
# =============================================================================

# Small epsilon for division stability (general use)
DEFAULT_EPS: float = 1e-8

# Epsilon for normalization operations
DEFAULT_EPS_NORM: float = 1e-12


# =============================================================================
# Depth Defaults
# =============================================================================

# Depth values at or below this are treated as missing (meters)
MIN_VALID_DEPTH: float = 1e-3

# Depth images from the original sensors are scaled by this per meter
DEFAULT_DEPTH_FACTOR: float = 1000.0


# =============================================================================
# Volume Defaults
# =============================================================================

DEFAULT_VOLUME_SIZE: float = 3.0
DEFAULT_RESOLUTION: int = 512
DEFAULT_UNIT_RESOLUTION: int = 16
DEFAULT_MAX_WEIGHT: int = 64

# Integration weights are stored as int16, so max_weight cannot exceed 32767
MAX_VOXEL_WEIGHT: int = 32767

DEFAULT_RAYCAST_STEP_FACTOR: float = 0.25

# Truncation distance in voxels
DEFAULT_TRUNCATION_VOXELS: float = 7.0

# Hashed volume allocation budget (number of voxel units)
DEFAULT_MAX_ACTIVE_UNITS: int = 100_000

# Voxel slabs integrated at once in dense volumes
DENSE_INTEGRATION_SLAB: int = 16

# Hashed units processed at once during integration and export
HASH_UNIT_BATCH: int = 256

# Fraction of the truncation distance skipped through saturated space
RAYCAST_SKIP_FRACTION: float = 0.5


# =============================================================================
# Tracking Defaults
# =============================================================================

DEFAULT_ICP_ITERATIONS = (10, 5, 4)
DEFAULT_ICP_DIST_THRESH: float = 0.1
DEFAULT_ICP_ANGLE_THRESH: float = 0.5236  # 30 degrees
DEFAULT_ICP_TOLERANCE: float = 1e-5
DEFAULT_MIN_CORRESPONDENCES: int = 50


# =============================================================================
# Pose Graph Defaults
# =============================================================================

DEFAULT_PG_MAX_ITERATIONS: int = 100
DEFAULT_PG_TOLERANCE: float = 1e-6

# Absolute error below which the graph is considered solved
PG_ABSOLUTE_TOLERANCE: float = 1e-14

# Levenberg-Marquardt damping bounds
PG_INITIAL_DAMPING: float = 1e-4
PG_MAX_DAMPING: float = 1e10
