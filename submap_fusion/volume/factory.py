"""
Volume construction from parameters.
"""

import torch

from .base import VoxelVolume
from .tsdf import TSDFVolume
from .hash_tsdf import HashTSDFVolume
from ..config import VolumeKind, VolumeParams


_VOLUME_TYPES = {
    VolumeKind.TSDF: TSDFVolume,
    VolumeKind.HASH_TSDF: HashTSDFVolume,
}


def make_volume(params: VolumeParams, device: torch.device = torch.device('cpu')) -> VoxelVolume:
    """
    Create an empty volume of the kind selected in params.

    Example:
        >>> volume = make_volume(VolumeParams.coarse_params(VolumeKind.HASH_TSDF))
        >>> isinstance(volume, HashTSDFVolume)
        True
    """
    try:
        volume_type = _VOLUME_TYPES[params.kind]
    except KeyError:
        raise ValueError(f"Unknown volume kind: {params.kind}") from None
    return volume_type(params, device)
