"""
Shading for raycast surfaces.

Provides Blinn-Phong shading of surface fields and conversion to 8-bit
images for preview rendering.
"""

from typing import Optional, Tuple
import torch
import torch.nn.functional as F

from ..types import SurfaceField


def phong_shading(
    normals: torch.Tensor,
    albedo: torch.Tensor,
    light_dir: torch.Tensor,
    view_dir: torch.Tensor,
    ambient: float = 0.1,
    diffuse: float = 0.7,
    specular: float = 0.2,
    shininess: float = 32.0
) -> torch.Tensor:
    """
    Classic Phong shading model (Blinn-Phong specular term).

    Args:
        normals: Surface normals (..., 3)
        albedo: Surface color (..., 3)
        light_dir: Light direction (3,) or (..., 3), pointing toward light
        view_dir: View direction (3,) or (..., 3), pointing toward camera
        ambient: Ambient light intensity
        diffuse: Diffuse reflection coefficient
        specular: Specular reflection coefficient
        shininess: Specular shininess exponent

    Returns:
        Shaded colors (..., 3) in [0, 1]
    """
    normals = F.normalize(normals, dim=-1)
    light_dir = F.normalize(light_dir, dim=-1)
    view_dir = F.normalize(view_dir, dim=-1)

    if light_dir.dim() == 1:
        light_dir = light_dir.expand_as(normals)
    if view_dir.dim() == 1:
        view_dir = view_dir.expand_as(normals)

    n_dot_l = (normals * light_dir).sum(dim=-1, keepdim=True).clamp(min=0)
    halfway = F.normalize(light_dir + view_dir, dim=-1)
    n_dot_h = (normals * halfway).sum(dim=-1, keepdim=True).clamp(min=0)

    color = ambient * albedo + diffuse * n_dot_l * albedo + specular * (n_dot_h ** shininess)
    return color.clamp(0, 1)


def shade_surface(
    surface: SurfaceField,
    camera_position: torch.Tensor,
    light_position: torch.Tensor,
    albedo: Tuple[float, float, float] = (0.8, 0.8, 0.8),
    background: Optional[Tuple[int, int, int]] = None
) -> torch.Tensor:
    """
    Render a raycast surface field to an 8-bit image.

    Args:
        surface: Raycast points and normals (H, W, 3), NaN where missed
        camera_position: Camera center (3,) in the surface frame
        light_position: Point light position (3,) in the surface frame
        albedo: Surface color in [0, 1]
        background: Color of pixels without a surface (default black)

    Returns:
        (H, W, 3) uint8 image
    """
    mask = surface.valid_mask()
    points = torch.nan_to_num(surface.points)
    normals = torch.nan_to_num(surface.normals)

    dtype = points.dtype
    light_dir = light_position.to(dtype) - points
    view_dir = camera_position.to(dtype) - points
    albedo_t = torch.tensor(albedo, dtype=dtype, device=points.device).expand_as(points)

    color = phong_shading(normals, albedo_t, light_dir, view_dir)

    image = (color * 255.0).round().to(torch.uint8)
    fill = torch.tensor(background or (0, 0, 0), dtype=torch.uint8, device=image.device)
    image[~mask] = fill
    return image
