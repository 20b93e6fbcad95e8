"""
Pytest configuration and fixtures for submap_fusion tests.
"""

import pytest
import torch

from submap_fusion.config import FusionParams, VolumeKind
from submap_fusion.data import box_room


@pytest.fixture
def device():
    """Get available device."""
    if torch.cuda.is_available():
        return torch.device('cuda')
    return torch.device('cpu')


@pytest.fixture
def params():
    """Small dense-volume configuration."""
    return FusionParams.for_testing(VolumeKind.TSDF)


@pytest.fixture
def hash_params():
    """Small hashed-volume configuration."""
    return FusionParams.for_testing(VolumeKind.HASH_TSDF)


@pytest.fixture
def intrinsics(params):
    """64x48 test camera."""
    return params.camera


@pytest.fixture
def room():
    """
    Room whose walls, floor and ceiling stay in view while the camera
    turns right by up to ~60 degrees, so every pose is constrained.
    """
    return box_room(
        x_range=(-1.0, 1.0),
        y_range=(-0.5, 0.5),
        z_range=(-1.0, 1.8)
    )


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "gpu: marks tests that require GPU"
    )


def pytest_collection_modifyitems(config, items):
    """Skip GPU tests if no GPU available."""
    if not torch.cuda.is_available():
        skip_gpu = pytest.mark.skip(reason="No GPU available")
        for item in items:
            if "gpu" in item.keywords:
                item.add_marker(skip_gpu)
