"""
Tests for quaternion and SE(3) pose helpers.

These tests define the conventions used everywhere else:

1. Quaternion representation: (w, x, y, z), scalar first
2. Poses: 4x4 homogeneous transforms
3. Twists: (translation, rotation), applied on the left: T' = exp(xi) @ T
"""

import math

import pytest
import torch

from submap_fusion.utils.quaternion import (
    normalize_quaternion,
    quaternion_to_matrix,
    matrix_to_quaternion,
    quaternion_from_axis_angle,
    quaternion_to_axis_angle,
    quaternion_angle_distance,
)
from submap_fusion.utils.transforms import (
    make_pose,
    pose_inverse,
    relative_pose,
    transform_points,
    rotate_vectors,
    hat,
    vee,
    se3_exp,
    se3_log,
    so3_log,
    interpolate_pose,
    rotation_from_axis_angle,
    translation_distance,
    rotation_angle,
    pose_to_translation_quaternion,
    is_valid_pose,
)


def random_pose(dtype=torch.float64) -> torch.Tensor:
    xi = torch.randn(6, dtype=dtype) * 0.5
    return se3_exp(xi)


# =============================================================================
# Quaternion Tests
# =============================================================================

class TestQuaternion:
    """Tests for quaternion conversions."""

    def test_normalization_produces_unit_norm(self):
        """Normalization produces unit norm."""
        q = torch.randn(10, 4)
        assert torch.allclose(normalize_quaternion(q).norm(dim=-1), torch.ones(10), atol=1e-6)

    def test_identity_to_identity_matrix(self):
        """Identity quaternion maps to the identity matrix."""
        R = quaternion_to_matrix(torch.tensor([1.0, 0.0, 0.0, 0.0]))
        assert torch.allclose(R, torch.eye(3))

    def test_90_deg_rotation_z(self):
        """90 degrees about z maps x to y."""
        q = quaternion_from_axis_angle(torch.tensor([0.0, 0.0, 1.0]), torch.tensor(math.pi / 2))
        v = quaternion_to_matrix(q) @ torch.tensor([1.0, 0.0, 0.0])
        assert torch.allclose(v, torch.tensor([0.0, 1.0, 0.0]), atol=1e-6)

    def test_matrix_roundtrip(self):
        """Quaternion -> matrix -> quaternion recovers the rotation."""
        q = normalize_quaternion(torch.randn(32, 4, dtype=torch.float64))
        q = torch.where(q[..., :1] < 0, -q, q)
        q2 = matrix_to_quaternion(quaternion_to_matrix(q))
        assert torch.allclose(q, q2, atol=1e-9)

    def test_matrix_to_quaternion_near_pi(self):
        """Rotations close to 180 degrees convert without NaN."""
        R = rotation_from_axis_angle((1.0, 1.0, 0.0), math.pi - 1e-7, dtype=torch.float64)
        q = matrix_to_quaternion(R)
        assert torch.isfinite(q).all()
        assert torch.allclose(quaternion_to_matrix(q), R, atol=1e-6)

    def test_axis_angle_roundtrip(self):
        """Axis-angle -> quaternion -> axis-angle."""
        axis = torch.tensor([0.0, 0.6, 0.8])
        axis2, angle2 = quaternion_to_axis_angle(quaternion_from_axis_angle(axis, torch.tensor(1.2)))
        assert torch.allclose(axis2, axis, atol=1e-6)
        assert torch.isclose(angle2, torch.tensor(1.2), atol=1e-6)

    def test_angle_distance(self):
        """Opposite quaternions describe the same rotation."""
        q = normalize_quaternion(torch.randn(4))
        assert quaternion_angle_distance(q, -q).item() < 1e-3
        q90 = quaternion_from_axis_angle(torch.tensor([1.0, 0.0, 0.0]), torch.tensor(math.pi / 2))
        identity = torch.tensor([1.0, 0.0, 0.0, 0.0])
        assert abs(quaternion_angle_distance(identity, q90).item() - math.pi / 2) < 1e-5


# =============================================================================
# Pose Tests
# =============================================================================

class TestPoses:
    """Tests for rigid transform helpers."""

    def test_make_pose(self):
        """make_pose fills rotation and translation blocks."""
        R = rotation_from_axis_angle((0.0, 0.0, 1.0), 0.3)
        T = make_pose(R, torch.tensor([1.0, 2.0, 3.0]))
        assert torch.allclose(T[:3, :3], R)
        assert torch.allclose(T[:3, 3], torch.tensor([1.0, 2.0, 3.0]))
        assert torch.allclose(T[3], torch.tensor([0.0, 0.0, 0.0, 1.0]))

    def test_inverse(self):
        """T @ inv(T) is the identity."""
        T = random_pose()
        assert torch.allclose(T @ pose_inverse(T), torch.eye(4, dtype=torch.float64), atol=1e-10)

    def test_relative_pose(self):
        """T_a @ relative_pose(T_a, T_b) == T_b."""
        T_a, T_b = random_pose(), random_pose()
        assert torch.allclose(T_a @ relative_pose(T_a, T_b), T_b, atol=1e-10)

    def test_transform_points_and_vectors(self):
        """Points get the translation, vectors do not."""
        T = make_pose(translation=torch.tensor([1.0, 0.0, 0.0]))
        p = transform_points(T, torch.zeros(5, 3))
        v = rotate_vectors(T, torch.ones(5, 3))
        assert torch.allclose(p, torch.tensor([1.0, 0.0, 0.0]).expand(5, 3))
        assert torch.allclose(v, torch.ones(5, 3))

    def test_transform_points_image_shape(self):
        """Arbitrary leading dimensions are kept."""
        T = random_pose(torch.float32)
        assert transform_points(T, torch.randn(4, 6, 3)).shape == (4, 6, 3)

    def test_distances(self):
        """Translation distance and rotation angle between poses."""
        T_a = torch.eye(4)
        T_b = make_pose(
            rotation_from_axis_angle((0.0, 1.0, 0.0), 0.25),
            torch.tensor([0.0, 3.0, 4.0])
        )
        assert abs(translation_distance(T_a, T_b) - 5.0) < 1e-5
        assert abs(rotation_angle(T_a, T_b) - 0.25) < 1e-5

    def test_translation_quaternion(self):
        """Split a pose into translation and quaternion."""
        T = make_pose(translation=torch.tensor([1.0, 2.0, 3.0]))
        t, q = pose_to_translation_quaternion(T)
        assert torch.allclose(t, torch.tensor([1.0, 2.0, 3.0]))
        assert torch.allclose(q, torch.tensor([1.0, 0.0, 0.0, 0.0]))

    def test_is_valid_pose(self):
        """Non-rigid or non-finite matrices are rejected."""
        assert is_valid_pose(torch.eye(4))
        assert not is_valid_pose(torch.eye(4) * 2.0)
        assert not is_valid_pose(torch.full((4, 4), float('nan')))
        assert not is_valid_pose(torch.eye(3))


# =============================================================================
# Lie Group Tests
# =============================================================================

class TestLieGroup:
    """Tests for exp/log maps."""

    def test_hat_vee(self):
        """vee inverts hat; hat(w) @ v == w x v."""
        w = torch.randn(3)
        v = torch.randn(3)
        assert torch.allclose(vee(hat(w)), w)
        assert torch.allclose(hat(w) @ v, torch.cross(w, v, dim=-1), atol=1e-6)

    def test_exp_zero_is_identity(self):
        """exp(0) is the identity pose."""
        assert torch.allclose(se3_exp(torch.zeros(6)), torch.eye(4))

    def test_exp_pure_translation(self):
        """A twist without rotation translates."""
        T = se3_exp(torch.tensor([0.1, -0.2, 0.3, 0.0, 0.0, 0.0]))
        assert torch.allclose(T[:3, 3], torch.tensor([0.1, -0.2, 0.3]), atol=1e-6)
        assert torch.allclose(T[:3, :3], torch.eye(3), atol=1e-6)

    def test_exp_rotation_matches_axis_angle(self):
        """The rotational part is a rotation vector."""
        T = se3_exp(torch.tensor([0.0, 0.0, 0.0, 0.0, 0.7, 0.0], dtype=torch.float64))
        R = rotation_from_axis_angle((0.0, 1.0, 0.0), 0.7, dtype=torch.float64)
        assert torch.allclose(T[:3, :3], R, atol=1e-10)

    @pytest.mark.parametrize("scale", [1e-8, 1e-3, 0.5, 2.0])
    def test_log_inverts_exp(self, scale):
        """log(exp(xi)) == xi for rotations below pi."""
        torch.manual_seed(0)
        xi = torch.randn(6, dtype=torch.float64)
        xi[3:] = xi[3:] / xi[3:].norm() * scale
        assert torch.allclose(se3_log(se3_exp(xi)), xi, atol=1e-7)

    def test_so3_log(self):
        """so3_log returns axis * angle."""
        R = rotation_from_axis_angle((1.0, 0.0, 0.0), 0.4, dtype=torch.float64)
        assert torch.allclose(so3_log(R), torch.tensor([0.4, 0.0, 0.0], dtype=torch.float64), atol=1e-10)

    def test_interpolate_endpoints(self):
        """Interpolation hits both endpoints and stays rigid in between."""
        T_a, T_b = random_pose(), random_pose()
        assert torch.allclose(interpolate_pose(T_a, T_b, 0.0), T_a, atol=1e-8)
        assert torch.allclose(interpolate_pose(T_a, T_b, 1.0), T_b, atol=1e-6)
        assert is_valid_pose(interpolate_pose(T_a, T_b, 0.5))
