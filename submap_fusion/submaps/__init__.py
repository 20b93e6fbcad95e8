"""
Submaps for submap_fusion.

Includes the Submap container and the SubmapManager lifecycle policy.
"""

from .submap import Submap, SubmapState
from .manager import SubmapManager

__all__ = [
    "Submap",
    "SubmapState",
    "SubmapManager",
]
