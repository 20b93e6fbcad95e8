"""
Rigid-body (SE(3)) utilities on 4x4 homogeneous matrices.

Twists are 6-vectors ordered as [tx, ty, tz, rx, ry, rz]: translational
part first, rotation vector last. Perturbations are applied on the left,
T' = exp(xi) @ T, both by the tracker and by the pose graph.
"""

from typing import Optional, Tuple
import torch

from .quaternion import (
    matrix_to_quaternion,
    quaternion_to_matrix,
    quaternion_from_axis_angle,
    quaternion_to_axis_angle,
    quaternion_angle_distance,
)


def make_pose(
    rotation: Optional[torch.Tensor] = None,
    translation: Optional[torch.Tensor] = None,
    dtype: torch.dtype = torch.float32,
    device: Optional[torch.device] = None
) -> torch.Tensor:
    """
    Assemble a 4x4 pose from an optional (3, 3) rotation and (3,) translation.
    """
    if rotation is not None:
        dtype, device = rotation.dtype, rotation.device
    elif translation is not None:
        dtype, device = translation.dtype, translation.device

    T = torch.eye(4, dtype=dtype, device=device)
    if rotation is not None:
        T[:3, :3] = rotation
    if translation is not None:
        T[:3, 3] = torch.as_tensor(translation, dtype=dtype, device=device)
    return T


def pose_inverse(T: torch.Tensor) -> torch.Tensor:
    """Invert rigid transforms (..., 4, 4) without a general matrix inverse."""
    R = T[..., :3, :3]
    t = T[..., :3, 3:]
    R_inv = R.transpose(-1, -2)
    top = torch.cat([R_inv, -R_inv @ t], dim=-1)
    bottom = torch.zeros_like(T[..., 3:, :])
    bottom[..., 3] = 1.0
    return torch.cat([top, bottom], dim=-2)


def relative_pose(T_a: torch.Tensor, T_b: torch.Tensor) -> torch.Tensor:
    """Pose of b expressed in the frame of a: inv(T_a) @ T_b."""
    return pose_inverse(T_a) @ T_b


def transform_points(T: torch.Tensor, points: torch.Tensor) -> torch.Tensor:
    """Apply a (4, 4) transform to points of shape (..., 3)."""
    R = T[:3, :3].to(points.dtype)
    t = T[:3, 3].to(points.dtype)
    return points @ R.T + t


def rotate_vectors(T: torch.Tensor, vectors: torch.Tensor) -> torch.Tensor:
    """Apply only the rotation of a (4, 4) or (3, 3) transform to (..., 3)."""
    R = T[:3, :3].to(vectors.dtype)
    return vectors @ R.T


def hat(v: torch.Tensor) -> torch.Tensor:
    """Skew-symmetric matrices (..., 3, 3) from vectors (..., 3)."""
    zero = torch.zeros_like(v[..., 0])
    x, y, z = v.unbind(dim=-1)
    return torch.stack([
        torch.stack([zero, -z, y], dim=-1),
        torch.stack([z, zero, -x], dim=-1),
        torch.stack([-y, x, zero], dim=-1),
    ], dim=-2)


def vee(W: torch.Tensor) -> torch.Tensor:
    """Inverse of hat for (..., 3, 3) matrices (antisymmetric part only)."""
    return 0.5 * torch.stack([
        W[..., 2, 1] - W[..., 1, 2],
        W[..., 0, 2] - W[..., 2, 0],
        W[..., 1, 0] - W[..., 0, 1],
    ], dim=-1)


def se3_hat(xi: torch.Tensor) -> torch.Tensor:
    """Twist (..., 6) to its 4x4 Lie algebra matrix."""
    top = torch.cat([hat(xi[..., 3:]), xi[..., :3].unsqueeze(-1)], dim=-1)
    bottom = torch.zeros_like(top[..., :1, :])
    return torch.cat([top, bottom], dim=-2)


def se3_exp(xi: torch.Tensor) -> torch.Tensor:
    """
    Exponential map from twists (..., 6) to poses (..., 4, 4).

    Uses the matrix exponential, which stays differentiable at xi = 0.
    """
    return torch.linalg.matrix_exp(se3_hat(xi))


def so3_log(R: torch.Tensor) -> torch.Tensor:
    """Rotation vectors (..., 3) of rotation matrices (..., 3, 3)."""
    axis, angle = quaternion_to_axis_angle(matrix_to_quaternion(R))
    return axis * angle.unsqueeze(-1)


def se3_log(T: torch.Tensor) -> torch.Tensor:
    """
    Logarithm map from poses (..., 4, 4) to twists (..., 6).

    Not meant for autograd; the small-angle branch is selected numerically.
    """
    omega = so3_log(T[..., :3, :3])
    theta = omega.norm(dim=-1, keepdim=True).unsqueeze(-1)
    W = hat(omega)
    eye = torch.eye(3, dtype=T.dtype, device=T.device).expand_as(W)

    small = theta < 1e-6
    safe_theta = torch.where(small, torch.ones_like(theta), theta)
    coeff = (1.0 - safe_theta * torch.sin(safe_theta) / (2.0 * (1.0 - torch.cos(safe_theta)))) / safe_theta ** 2
    coeff = torch.where(small, torch.full_like(theta, 1.0 / 12.0), coeff)

    V_inv = eye - 0.5 * W + coeff * (W @ W)
    rho = (V_inv @ T[..., :3, 3:]).squeeze(-1)
    return torch.cat([rho, omega], dim=-1)


def interpolate_pose(T_a: torch.Tensor, T_b: torch.Tensor, alpha: float) -> torch.Tensor:
    """Geodesic interpolation: alpha = 0 gives T_a, alpha = 1 gives T_b."""
    delta = se3_log(relative_pose(T_a, T_b))
    return T_a @ se3_exp(alpha * delta)


def rotation_from_axis_angle(axis, angle: float, dtype: torch.dtype = torch.float32) -> torch.Tensor:
    """(3, 3) rotation about `axis` by `angle` radians."""
    axis = torch.as_tensor(axis, dtype=dtype)
    q = quaternion_from_axis_angle(axis, torch.tensor(angle, dtype=dtype))
    return quaternion_to_matrix(q)


def translation_distance(T_a: torch.Tensor, T_b: torch.Tensor) -> float:
    """Euclidean distance between the translations of two poses."""
    return (T_a[:3, 3] - T_b[:3, 3].to(T_a.dtype)).norm().item()


def rotation_angle(T_a: torch.Tensor, T_b: torch.Tensor) -> float:
    """Angle in radians of the rotation taking T_a to T_b."""
    q_a = matrix_to_quaternion(T_a[:3, :3].double())
    q_b = matrix_to_quaternion(T_b[:3, :3].double())
    return quaternion_angle_distance(q_a, q_b).item()


def pose_to_translation_quaternion(T: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """Split a pose into (translation (3,), quaternion (4,) as [w, x, y, z])."""
    return T[:3, 3].clone(), matrix_to_quaternion(T[:3, :3])


def is_valid_pose(T: torch.Tensor, atol: float = 1e-3) -> bool:
    """Shape, finiteness and orthonormality check for a 4x4 pose."""
    if T.shape != (4, 4) or not torch.isfinite(T).all():
        return False
    R = T[:3, :3].double()
    eye = torch.eye(3, dtype=R.dtype, device=R.device)
    return bool(torch.allclose(R @ R.T, eye, atol=atol))
