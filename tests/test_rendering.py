"""
Tests for rendering components.
"""

import pytest
import torch

from submap_fusion.config import CameraIntrinsics
from submap_fusion.rendering.rays import (
    pixel_grid,
    generate_camera_rays,
    rays_aabb_intersection,
)
from submap_fusion.rendering.shading import (
    phong_shading,
    shade_surface,
)
from submap_fusion.types import SurfaceField
from submap_fusion.utils.transforms import make_pose


class TestRayGeneration:
    """Test ray generation utilities."""

    def test_pixel_grid(self):
        v, u = pixel_grid(3, 4)
        assert v.shape == (3, 4)
        assert u[0, 3].item() == 3.0 and v[2, 0].item() == 2.0

    def test_generate_rays_shape(self, intrinsics):
        """Test ray generation output shapes."""
        origins, directions, z_scale = generate_camera_rays(intrinsics, torch.eye(4))

        assert origins.shape == (48, 64, 3)
        assert directions.shape == (48, 64, 3)
        assert z_scale.shape == (48, 64)

    def test_generate_rays_normalized(self, intrinsics):
        """Test that ray directions are normalized."""
        _, directions, _ = generate_camera_rays(intrinsics, torch.eye(4))
        norms = directions.norm(dim=-1)
        assert torch.allclose(norms, torch.ones_like(norms), atol=1e-5)

    def test_principal_point_looks_forward(self):
        """A pixel at the principal point looks down +z."""
        camera = CameraIntrinsics(fx=50.0, fy=50.0, cx=2.0, cy=1.0, width=5, height=3)
        _, directions, z_scale = generate_camera_rays(camera, torch.eye(4))
        assert torch.allclose(directions[1, 2], torch.tensor([0.0, 0.0, 1.0]), atol=1e-6)
        assert z_scale[1, 2].item() == pytest.approx(1.0)

    def test_image_axes(self, intrinsics):
        """x grows to the right, y grows downward."""
        _, directions, _ = generate_camera_rays(intrinsics, torch.eye(4))
        assert directions[0, -1, 0] > 0 and directions[0, 0, 0] < 0
        assert directions[-1, 0, 1] > 0 and directions[0, 0, 1] < 0

    def test_z_scale_is_depth_per_length(self, intrinsics):
        """Walking a unit ray by depth / z_scale lands at that depth."""
        _, directions, z_scale = generate_camera_rays(intrinsics, torch.eye(4))
        points = directions * (2.0 / z_scale).unsqueeze(-1)
        assert torch.allclose(points[..., 2], torch.full((48, 64), 2.0), atol=1e-5)

    def test_pose_moves_rays(self, intrinsics):
        pose = make_pose(translation=torch.tensor([1.0, 2.0, 3.0]))
        origins, directions, _ = generate_camera_rays(intrinsics, pose)
        _, reference, _ = generate_camera_rays(intrinsics, torch.eye(4))

        assert torch.allclose(origins, torch.tensor([1.0, 2.0, 3.0]).expand(48, 64, 3))
        assert torch.allclose(directions, reference)

    def test_output_size(self, intrinsics):
        half = intrinsics.scaled(0.5)
        origins, _, _ = generate_camera_rays(half, torch.eye(4), output_size=half.size)
        assert origins.shape == (24, 32, 3)


class TestRayIntersection:
    """Test ray intersection utilities."""

    def test_aabb_intersection_hit(self):
        """Test AABB intersection with hitting rays."""
        origins = torch.tensor([[0.0, 0.0, 2.0]])
        directions = torch.tensor([[0.0, 0.0, -1.0]])

        aabb_min = torch.tensor([-1.0, -1.0, -1.0])
        aabb_max = torch.tensor([1.0, 1.0, 1.0])

        t_near, t_far, hit = rays_aabb_intersection(origins, directions, aabb_min, aabb_max)

        assert hit[0].item()
        assert t_near[0].item() == pytest.approx(1.0)
        assert t_far[0].item() == pytest.approx(3.0)

    def test_aabb_intersection_miss(self):
        """Test AABB intersection with missing rays."""
        origins = torch.tensor([[0.0, 0.0, 2.0]])
        directions = torch.tensor([[0.0, 0.0, 1.0]])  # Pointing away

        aabb_min = torch.tensor([-1.0, -1.0, -1.0])
        aabb_max = torch.tensor([1.0, 1.0, 1.0])

        _, _, hit = rays_aabb_intersection(origins, directions, aabb_min, aabb_max)

        assert not hit[0].item()

    def test_aabb_axis_parallel_outside_slab(self):
        """A ray parallel to a slab and outside it misses."""
        origins = torch.tensor([[0.0, 2.0, -3.0]])
        directions = torch.tensor([[0.0, 0.0, 1.0]])

        _, _, hit = rays_aabb_intersection(
            origins, directions, torch.tensor([-1.0, -1.0, -1.0]), torch.tensor([1.0, 1.0, 1.0])
        )
        assert not hit[0].item()

    def test_aabb_origin_inside(self):
        """Rays starting inside the box begin at t = 0."""
        origins = torch.tensor([[0.0, 0.0, 0.0]])
        directions = torch.tensor([[1.0, 0.0, 0.0]])

        t_near, t_far, hit = rays_aabb_intersection(
            origins, directions, torch.tensor([-1.0, -1.0, -1.0]), torch.tensor([1.0, 1.0, 1.0])
        )
        assert hit[0].item()
        assert t_near[0].item() == 0.0
        assert t_far[0].item() == pytest.approx(1.0)


class TestPhongShading:
    """Test Phong shading."""

    def test_phong_facing_light(self):
        """Test Phong shading with normal facing light."""
        normals = torch.tensor([[[0.0, 0.0, 1.0]]])
        albedo = torch.tensor([[[1.0, 1.0, 1.0]]])
        light_dir = torch.tensor([0.0, 0.0, 1.0])
        view_dir = torch.tensor([0.0, 0.0, 1.0])

        result = phong_shading(
            normals, albedo, light_dir, view_dir,
            ambient=0.1, diffuse=0.7, specular=0.2, shininess=32.0
        )

        # Ambient + diffuse + specular
        assert result[0, 0, 0].item() > 0.9

    def test_phong_facing_away(self):
        """Test Phong shading with normal facing away from light."""
        normals = torch.tensor([[[0.0, 0.0, -1.0]]])
        albedo = torch.tensor([[[1.0, 1.0, 1.0]]])
        light_dir = torch.tensor([0.0, 0.0, 1.0])
        view_dir = torch.tensor([0.0, 0.0, 1.0])

        result = phong_shading(
            normals, albedo, light_dir, view_dir,
            ambient=0.1, diffuse=0.7, specular=0.2
        )

        # Only ambient
        assert torch.isclose(result[0, 0, 0], torch.tensor(0.1), atol=1e-5)

    def test_phong_batched(self):
        """Test Phong shading with batched input."""
        normals = torch.randn(32, 32, 3)
        normals = normals / normals.norm(dim=-1, keepdim=True)
        albedo = torch.rand(32, 32, 3)
        light_dir = torch.tensor([1.0, 1.0, 1.0])
        view_dir = torch.tensor([0.0, 0.0, 1.0])

        result = phong_shading(normals, albedo, light_dir, view_dir)

        assert result.shape == (32, 32, 3)
        assert result.min() >= 0
        assert result.max() <= 1


class TestShadeSurface:
    """Tests for shading raycast surfaces into images."""

    def make_surface(self):
        points = torch.zeros(2, 2, 3)
        points[..., 2] = 1.0
        normals = torch.zeros(2, 2, 3)
        normals[..., 2] = -1.0
        points[1, 1] = float('nan')
        normals[1, 1] = float('nan')
        return SurfaceField(points=points, normals=normals)

    def test_image_format(self):
        image = shade_surface(self.make_surface(), torch.zeros(3), torch.zeros(3))
        assert image.shape == (2, 2, 3)
        assert image.dtype == torch.uint8

    def test_missed_pixels_use_background(self):
        image = shade_surface(self.make_surface(), torch.zeros(3), torch.zeros(3), background=(10, 20, 30))
        assert image[1, 1].tolist() == [10, 20, 30]
        assert image[0, 0].tolist() != [10, 20, 30]

    def test_lit_surface_is_bright(self):
        """A surface facing a light at the camera is brighter than one lit from behind."""
        surface = self.make_surface()
        front = shade_surface(surface, torch.zeros(3), torch.zeros(3))
        back = shade_surface(surface, torch.zeros(3), torch.tensor([0.0, 0.0, 5.0]))
        assert front[0, 0, 0] > back[0, 0, 0]
