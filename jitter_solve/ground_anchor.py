"""
Ground anchoring of triangulated points.

An anchor maps a triangulated point to a target position implied by a
reference elevation surface, for points whose rays meet valid surface data.
Residuals pulling points toward their targets are not part of the solve
yet; only the interface is defined here.
"""

import numpy as np
from abc import ABC, abstractmethod
from typing import Optional
import logging

from .config import ReferenceDemOptions

logger = logging.getLogger(__name__)


class GroundAnchor(ABC):
    """Source of surface-implied target positions for triangulated points."""

    @abstractmethod
    def anchor(self, point: np.ndarray) -> Optional[np.ndarray]:
        """
        Target position for a point.

        Args:
            point: Triangulated point in the world frame

        Returns:
            Target xyz, or None where the surface has no valid data
        """


class NullGroundAnchor(GroundAnchor):
    """Anchor with no surface: no point is ever anchored."""

    def anchor(self, point: np.ndarray) -> Optional[np.ndarray]:
        return None


def make_ground_anchor(options: ReferenceDemOptions) -> GroundAnchor:
    """Create the anchor for the given reference surface settings."""
    if options.path:
        logger.warning(
            f"Reference DEM {options.path} was given, but ground anchoring is not "
            f"applied; triangulated points are constrained by pixel residuals only"
        )
    return NullGroundAnchor()
