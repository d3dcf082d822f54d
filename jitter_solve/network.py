"""
Control network: triangulated ground points and their pixel observations.

The network is built upstream (matching, triangulation, minimum-angle
filtering). Here it is only held, indexed and validated. The point array
is a free variable of the solve and is updated in place.
"""

import numpy as np
from typing import Dict, List, Sequence, Tuple
from dataclasses import dataclass, field
import logging

from .exceptions import DataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Observation:
    """A single observation of a triangulated point in an image."""
    camera_index: int
    point_index: int
    pixel: Tuple[float, float]  # (sample, line)

    def as_array(self) -> np.ndarray:
        return np.array(self.pixel, dtype=np.float64)


@dataclass
class ControlNetwork:
    """
    Triangulated points with their per-image observations.

    Attributes:
        points: (num_points, 3) array of ground positions
        observations: All observations, in any order
        point_ids: Optional external identifiers, one per point
    """
    points: np.ndarray
    observations: List[Observation] = field(default_factory=list)
    point_ids: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.points = np.array(self.points, dtype=np.float64).reshape(-1, 3)
        if not self.point_ids:
            self.point_ids = [str(i) for i in range(len(self.points))]
        if len(self.point_ids) != len(self.points):
            raise DataError(
                f"Got {len(self.point_ids)} point ids for {len(self.points)} points."
            )

    @property
    def num_points(self) -> int:
        return len(self.points)

    def add_observation(
        self,
        camera_index: int,
        point_index: int,
        pixel: Sequence[float],
    ) -> None:
        self.observations.append(
            Observation(int(camera_index), int(point_index), (float(pixel[0]), float(pixel[1])))
        )

    def validate(self, num_cameras: int) -> None:
        """
        Check that the network is usable with the given number of cameras.

        Raises:
            DataError: If there are no points, fewer than two cameras, or an
                observation refers to a missing camera or point
        """
        if num_cameras < 2:
            raise DataError("Expecting at least two input cameras.")
        if self.num_points == 0:
            raise DataError("No triangulated ground points were found.")

        for obs in self.observations:
            if not 0 <= obs.camera_index < num_cameras:
                raise DataError(
                    f"Observation of point {obs.point_index} refers to camera "
                    f"{obs.camera_index}, but there are {num_cameras} cameras."
                )
            if not 0 <= obs.point_index < self.num_points:
                raise DataError(
                    f"Observation refers to point {obs.point_index}, "
                    f"but there are {self.num_points} points."
                )

    def observations_by_camera(self, num_cameras: int) -> List[List[Observation]]:
        """Observations grouped by camera index, preserving input order."""
        grouped: List[List[Observation]] = [[] for _ in range(num_cameras)]
        for obs in self.observations:
            grouped[obs.camera_index].append(obs)
        return grouped

    def get_statistics(self) -> Dict[str, int]:
        """Get summary statistics of the network."""
        return {
            'num_points': self.num_points,
            'num_observations': len(self.observations),
            'num_cameras_observed': len({obs.camera_index for obs in self.observations}),
        }
