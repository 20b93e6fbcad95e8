"""
Constant-velocity motion model for the tracker's initial guess.
"""

from typing import Optional
import torch

from ..utils.transforms import pose_inverse


class MotionModel:
    """
    Simple motion model for pose prediction.

    Uses constant velocity assumption (translation and rotation) to predict
    the next camera pose from the previous two.
    """

    def __init__(self):
        self._prev_pose: Optional[torch.Tensor] = None
        # World-frame increment: T_k = V @ T_{k-1}
        self._velocity: Optional[torch.Tensor] = None

    def update(self, pose: torch.Tensor):
        """Update motion model with new pose."""
        pose = pose.detach().clone()
        if self._prev_pose is not None:
            self._velocity = pose @ pose_inverse(self._prev_pose.to(pose.dtype))
        self._prev_pose = pose

    def predict(self) -> torch.Tensor:
        """
        Predict next pose using constant velocity model.

        Returns:
            (4, 4) predicted camera-to-world pose
        """
        if self._prev_pose is None:
            return torch.eye(4)
        if self._velocity is None:
            return self._prev_pose.clone()
        return self._velocity @ self._prev_pose

    def apply_correction(self, correction: torch.Tensor):
        """Re-express the model after the world frame moved by `correction` (new = C @ old)."""
        if self._prev_pose is None:
            return
        C = correction.to(self._prev_pose.dtype)
        self._prev_pose = C @ self._prev_pose
        if self._velocity is not None:
            self._velocity = C @ self._velocity @ pose_inverse(C)

    def reset(self):
        """Reset motion model."""
        self._prev_pose = None
        self._velocity = None
