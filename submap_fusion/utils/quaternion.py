"""
Quaternion helpers used for pose conversion and rotation distances.

Quaternions are stored as (w, x, y, z) with the scalar part first.
Every function accepts batched inputs with shape (..., 4) and keeps the
input dtype, so float64 pose-graph math goes through unchanged.
"""

from typing import Tuple
import torch
import torch.nn.functional as F


def normalize_quaternion(q: torch.Tensor, eps: float = 1e-12) -> torch.Tensor:
    """Scale quaternions of shape (..., 4) to unit length."""
    return F.normalize(q, p=2, dim=-1, eps=eps)


def quaternion_to_matrix(q: torch.Tensor) -> torch.Tensor:
    """
    Convert quaternions (..., 4) to rotation matrices (..., 3, 3).

    The input is normalized first, so non-unit quaternions are accepted.
    """
    w, x, y, z = normalize_quaternion(q).unbind(dim=-1)

    xx, yy, zz = x * x, y * y, z * z
    xy, xz, yz = x * y, x * z, y * z
    wx, wy, wz = w * x, w * y, w * z

    rows = [
        torch.stack([1 - 2 * (yy + zz), 2 * (xy - wz), 2 * (xz + wy)], dim=-1),
        torch.stack([2 * (xy + wz), 1 - 2 * (xx + zz), 2 * (yz - wx)], dim=-1),
        torch.stack([2 * (xz - wy), 2 * (yz + wx), 1 - 2 * (xx + yy)], dim=-1),
    ]
    return torch.stack(rows, dim=-2)


def matrix_to_quaternion(R: torch.Tensor) -> torch.Tensor:
    """
    Convert rotation matrices (..., 3, 3) to unit quaternions (..., 4).

    Builds the four Shepperd candidates and keeps, per matrix, the one with
    the largest denominator. The result has a non-negative scalar part.
    """
    m00, m11, m22 = R[..., 0, 0], R[..., 1, 1], R[..., 2, 2]

    # 4 * (w^2, x^2, y^2, z^2)
    squares = torch.stack([
        1.0 + m00 + m11 + m22,
        1.0 + m00 - m11 - m22,
        1.0 - m00 + m11 - m22,
        1.0 - m00 - m11 + m22,
    ], dim=-1).clamp(min=0.0)
    roots = torch.sqrt(squares)

    d21 = R[..., 2, 1] - R[..., 1, 2]
    d02 = R[..., 0, 2] - R[..., 2, 0]
    d10 = R[..., 1, 0] - R[..., 0, 1]
    s01 = R[..., 0, 1] + R[..., 1, 0]
    s02 = R[..., 0, 2] + R[..., 2, 0]
    s12 = R[..., 1, 2] + R[..., 2, 1]

    candidates = torch.stack([
        torch.stack([squares[..., 0], d21, d02, d10], dim=-1),
        torch.stack([d21, squares[..., 1], s01, s02], dim=-1),
        torch.stack([d02, s01, squares[..., 2], s12], dim=-1),
        torch.stack([d10, s02, s12, squares[..., 3]], dim=-1),
    ], dim=-2)
    candidates = candidates / (2.0 * roots.clamp(min=0.1)).unsqueeze(-1)

    best = roots.argmax(dim=-1)
    index = best[..., None, None].expand(*best.shape, 1, 4)
    q = torch.gather(candidates, -2, index).squeeze(-2)

    q = torch.where(q[..., :1] < 0, -q, q)
    return normalize_quaternion(q)


def quaternion_from_axis_angle(axis: torch.Tensor, angle: torch.Tensor) -> torch.Tensor:
    """
    Build quaternions from a rotation axis (..., 3) and angle (...) in radians.
    """
    axis = F.normalize(axis, p=2, dim=-1)
    half = 0.5 * torch.as_tensor(angle, dtype=axis.dtype, device=axis.device)
    return torch.cat([
        torch.cos(half).unsqueeze(-1).expand(*axis.shape[:-1], 1),
        axis * torch.sin(half).unsqueeze(-1),
    ], dim=-1)


def quaternion_to_axis_angle(q: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Split quaternions (..., 4) into a unit axis (..., 3) and an angle (...).

    The angle lies in [0, pi]; for the identity the axis is zero.
    """
    q = normalize_quaternion(q)
    q = torch.where(q[..., :1] < 0, -q, q)
    sin_half = q[..., 1:].norm(dim=-1)
    angle = 2.0 * torch.atan2(sin_half, q[..., 0])
    axis = F.normalize(q[..., 1:], p=2, dim=-1, eps=1e-12)
    return axis, angle


def quaternion_angle_distance(q1: torch.Tensor, q2: torch.Tensor) -> torch.Tensor:
    """Geodesic angle in radians between two rotations given as quaternions."""
    dot = (normalize_quaternion(q1) * normalize_quaternion(q2)).sum(dim=-1).abs()
    return 2.0 * torch.acos(dot.clamp(max=1.0))
