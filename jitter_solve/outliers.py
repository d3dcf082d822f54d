"""
Outlier gating of triangulated points.

Before the problem is assembled, each observation's initial point is
projected through the unadjusted camera. A point is an outlier, with all of
its observations, if any of its projections fails, is non-finite, or lands
further than a threshold from the observed pixel. Jitter corrections are
expected to be small and the cameras already bundle-adjusted, so the
threshold should be small too.

Gating runs once on the initial triangulation; it is not repeated during
the solve.
"""

import numpy as np
from typing import Iterable, List, Optional, Sequence, Set
import logging

from .camera import LinescanCamera, ProjectionError
from .exceptions import ConfigurationError
from .network import ControlNetwork
from .residual import RESIDUAL_PRECISION

logger = logging.getLogger(__name__)


def reprojection_error(
    camera: LinescanCamera,
    point: np.ndarray,
    pixel: Sequence[float],
    desired_precision: float = RESIDUAL_PRECISION,
) -> float:
    """
    Pixel distance between the projection of a point and an observation.

    Returns:
        Euclidean error in pixels, or inf if projection fails
    """
    try:
        projected = camera.project(point, desired_precision=desired_precision)
    except ProjectionError as e:
        logger.debug(f"Projection failed for point {np.asarray(point).tolist()}: {e}")
        return float('inf')
    return float(np.linalg.norm(projected - np.asarray(pixel, dtype=np.float64)))


def flag_outliers(
    cameras: List[LinescanCamera],
    network: ControlNetwork,
    max_reprojection_error: float,
    outliers: Optional[Iterable[int]] = None,
    desired_precision: float = RESIDUAL_PRECISION,
) -> Set[int]:
    """
    Flag points whose initial reprojection error is too large.

    Args:
        cameras: Unadjusted cameras, indexed by observation camera_index
        network: Control network with the initial triangulated points
        max_reprojection_error: Threshold in pixels
        outliers: Points already known to be outliers; these are kept and
            their observations not re-examined
        desired_precision: Line-search precision for the projections

    Returns:
        Set of outlier point indices
    """
    if max_reprojection_error <= 0:
        raise ConfigurationError("Must have a positive max initial reprojection error.")

    outliers = set(outliers) if outliers is not None else set()
    num_prior = len(outliers)

    for icam, observations in enumerate(network.observations_by_camera(len(cameras))):
        for obs in observations:
            ipt = obs.point_index
            if ipt in outliers:
                continue

            error = reprojection_error(
                cameras[icam], network.points[ipt], obs.pixel, desired_precision
            )
            # This checks for NaN too
            if not error <= max_reprojection_error:
                logger.debug(
                    f"Point {network.point_ids[ipt]} is an outlier: error {error:.3f} px "
                    f"in camera {icam}"
                )
                outliers.add(ipt)

    logger.info(
        f"Flagged {len(outliers) - num_prior} new outliers "
        f"({len(outliers)}/{network.num_points} points excluded, "
        f"threshold {max_reprojection_error} px)"
    )
    return outliers
