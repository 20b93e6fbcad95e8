"""
Voxel volumes for submap_fusion.

Includes the dense and spatially hashed TSDF variants and the lazy
surface point sequence returned by fetch_points_normals().
"""

from .base import VoxelVolume, SurfacePointSequence, projective_tsdf_update
from .tsdf import TSDFVolume
from .hash_tsdf import HashTSDFVolume, encode_unit_keys
from .factory import make_volume

__all__ = [
    "VoxelVolume",
    "SurfacePointSequence",
    "projective_tsdf_update",
    "TSDFVolume",
    "HashTSDFVolume",
    "encode_unit_keys",
    "make_volume",
]
