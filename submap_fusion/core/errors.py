"""
Exception taxonomy for submap_fusion.

Per-frame failures (TrackingLost, ResourceExhausted) are recoverable and are
turned into a status result by the engine. OptimizationDidNotConverge is
reported but never fatal. InvalidConfiguration is raised at construction only.
"""


class FusionError(Exception):
    """Base class for all submap_fusion errors."""


class TrackingLost(FusionError):
    """Camera tracking failed (too few or degenerate correspondences)."""

    def __init__(self, message: str, num_correspondences: int = 0, level: int = -1):
        super().__init__(message)
        self.num_correspondences = num_correspondences
        self.level = level


class ResourceExhausted(FusionError):
    """Hashed volume would exceed its active-unit budget."""

    def __init__(self, message: str, requested: int = 0, budget: int = 0):
        super().__init__(message)
        self.requested = requested
        self.budget = budget


class OptimizationDidNotConverge(FusionError):
    """Pose graph optimization failed; poses keep their previous values."""

    def __init__(self, message: str, num_iterations: int = 0, final_error: float = float('nan')):
        super().__init__(message)
        self.num_iterations = num_iterations
        self.final_error = final_error


class InvalidConfiguration(FusionError, ValueError):
    """Configuration rejected at construction time."""
