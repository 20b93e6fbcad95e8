"""
Rendering module for submap_fusion.

Includes camera ray generation, ray/box intersection and shading.
"""

from .rays import (
    pixel_grid,
    generate_camera_rays,
    rays_aabb_intersection,
)
from .shading import (
    phong_shading,
    shade_surface,
)

__all__ = [
    # Ray generation
    "pixel_grid",
    "generate_camera_rays",
    "rays_aabb_intersection",
    # Shading
    "phong_shading",
    "shade_surface",
]
