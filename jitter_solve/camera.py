"""
Linescan (pushbroom) camera model.

Each image line is acquired at its own time, so each line has its own pose.
The pose at a time is interpolated from two independently sampled sequences:
orientation quaternions and camera-centre positions.

Coordinate System:
    - World frame: any Cartesian frame (ECEF in practice)
    - Camera frame: X across-track (increasing sample), Y along-track,
      Z along the boresight
    - Quaternions rotate camera-frame vectors into the world frame
    - Pixels are (sample, line), line increasing with time

Projection Model:
    1. Find the line whose pose sees the point on the sensor plane, i.e.
       where the along-track component Y_cam / Z_cam vanishes (Newton
       iterations on the line, numerical derivative)
    2. sample = f * X_cam / Z_cam + detector_center
"""

import copy
import numpy as np
from typing import Any, Dict, Optional, Sequence, Tuple
from scipy.spatial.transform import Rotation
import logging

from .exceptions import ConfigurationError, JitterSolveError
from .sampling import DEFAULT_INTERP_SAMPLES, PoseSampleSequence

logger = logging.getLogger(__name__)

NUM_QUAT_PARAMS = 4
NUM_XYZ_PARAMS = 3


class ProjectionError(JitterSolveError):
    """Ground-to-image projection failed to converge or is undefined."""


class LinescanCamera:
    """
    Linescan camera with time-sampled orientation and position.

    Attributes:
        quaternions: Orientation samples (x, y, z, w), camera-to-world
        positions: Camera centre samples
        first_line_time: Acquisition time of line 0
        dt_line: Time between consecutive lines
        focal_length: Focal length in pixels
        detector_center: Sample coordinate of the optical axis
        num_lines: Number of image lines
        num_samples: Number of image samples (detector width)
        num_interp_samples: Samples consulted by each pose interpolation
        single_threaded: True if this camera must not be evaluated concurrently
    """

    def __init__(
        self,
        quaternions: PoseSampleSequence,
        positions: PoseSampleSequence,
        first_line_time: float,
        dt_line: float,
        focal_length: float,
        detector_center: float,
        num_lines: int,
        num_samples: int,
        num_interp_samples: int = DEFAULT_INTERP_SAMPLES,
        single_threaded: bool = False,
        name: str = "",
    ):
        if quaternions.dim != NUM_QUAT_PARAMS:
            raise ConfigurationError(
                f"Expecting {NUM_QUAT_PARAMS} values per quaternion, got {quaternions.dim}."
            )
        if positions.dim != NUM_XYZ_PARAMS:
            raise ConfigurationError(
                f"Expecting {NUM_XYZ_PARAMS} values per position, got {positions.dim}."
            )
        if dt_line <= 0:
            raise ConfigurationError(f"Expecting a positive line period, got {dt_line}.")
        if focal_length <= 0:
            raise ConfigurationError(f"Expecting a positive focal length, got {focal_length}.")
        if num_interp_samples < 2:
            raise ConfigurationError("Pose interpolation needs at least 2 samples.")

        self.quaternions = quaternions
        self.positions = positions
        self.first_line_time = float(first_line_time)
        self.dt_line = float(dt_line)
        self.focal_length = float(focal_length)
        self.detector_center = float(detector_center)
        self.num_lines = int(num_lines)
        self.num_samples = int(num_samples)
        self.num_interp_samples = int(num_interp_samples)
        self.single_threaded = bool(single_threaded)
        self.name = name

        logger.debug(
            f"Linescan camera '{name}': {quaternions.count} quaternions, "
            f"{positions.count} positions, {num_lines} lines"
        )

    def time(self, pixel: Sequence[float]) -> float:
        """Acquisition time of the line containing the given (sample, line) pixel."""
        return self.first_line_time + pixel[1] * self.dt_line

    def line_at(self, time: float) -> float:
        """Fractional line acquired at the given time."""
        return (time - self.first_line_time) / self.dt_line

    def pose_at(self, time: float) -> Tuple[np.ndarray, np.ndarray]:
        """
        Interpolate the camera pose at a given time.

        Returns:
            Tuple of (R_cam2world 3x3 matrix, camera centre)
        """
        quat = self.quaternions.interpolate(time, self.num_interp_samples)
        norm = np.linalg.norm(quat)
        if not np.isfinite(norm) or norm == 0:
            raise ProjectionError(f"Degenerate interpolated quaternion at time {time}")
        rotation = Rotation.from_quat(quat / norm).as_matrix()
        center = self.positions.interpolate(time, self.num_interp_samples)
        return rotation, center

    def _point_in_camera(self, point: np.ndarray, line: float) -> np.ndarray:
        rotation, center = self.pose_at(self.first_line_time + line * self.dt_line)
        return rotation.T @ (point - center)

    def project(
        self,
        point: Sequence[float],
        desired_precision: float = 1e-8,
        max_iterations: int = 50,
        initial_line: Optional[float] = None,
    ) -> np.ndarray:
        """
        Project a 3D point to image coordinates.

        Args:
            point: 3D point in the world frame
            desired_precision: Convergence threshold on the line update,
                relative to max(1, |line|)
            max_iterations: Maximum number of Newton iterations
            initial_line: Starting line, the image centre by default

        Returns:
            (sample, line) pixel as a 2-element array

        Raises:
            ProjectionError: If the point is behind the sensor or the line
                search does not converge
        """
        point = np.asarray(point, dtype=np.float64)
        if not np.all(np.isfinite(point)):
            raise ProjectionError(f"Non-finite point {point}")

        line = 0.5 * self.num_lines if initial_line is None else float(initial_line)
        step = 1e-3  # lines, for the numerical derivative
        max_line = 10.0 * max(self.num_lines, 1)

        converged = False
        for _ in range(max_iterations):
            d_cam = self._point_in_camera(point, line)
            if d_cam[2] <= 0:
                raise ProjectionError(f"Point behind camera at line {line}: Z={d_cam[2]}")
            residual = d_cam[1] / d_cam[2]

            d_cam_p = self._point_in_camera(point, line + step)
            if d_cam_p[2] <= 0:
                raise ProjectionError(f"Point behind camera at line {line + step}")
            derivative = (d_cam_p[1] / d_cam_p[2] - residual) / step
            if derivative == 0 or not np.isfinite(derivative):
                raise ProjectionError(f"Flat along-track geometry at line {line}")

            delta = residual / derivative
            line -= delta
            if not np.isfinite(line) or abs(line) > max_line:
                raise ProjectionError(f"Line search diverged for point {point}")
            if abs(delta) <= desired_precision * max(1.0, abs(line)):
                converged = True
                break

        if not converged:
            raise ProjectionError(
                f"Line search did not converge in {max_iterations} iterations for point {point}"
            )

        d_cam = self._point_in_camera(point, line)
        if d_cam[2] <= 0:
            raise ProjectionError(f"Point behind camera at line {line}: Z={d_cam[2]}")
        sample = self.focal_length * d_cam[0] / d_cam[2] + self.detector_center
        return np.array([sample, line])

    def with_samples(
        self,
        beg_quat: int = 0,
        quaternions: Optional[np.ndarray] = None,
        beg_pos: int = 0,
        positions: Optional[np.ndarray] = None,
    ) -> "LinescanCamera":
        """
        Copy of this camera with contiguous sample sub-ranges replaced.

        The copy owns its sample arrays, so the original is never modified.

        Args:
            beg_quat: First orientation index to overwrite
            quaternions: (k, 4) replacement orientation samples
            beg_pos: First position index to overwrite
            positions: (k, 3) replacement position samples
        """
        cam = copy.copy(self)
        cam.quaternions = self.quaternions.copy()
        cam.positions = self.positions.copy()
        if quaternions is not None and len(quaternions):
            cam.quaternions.values[beg_quat:beg_quat + len(quaternions)] = quaternions
        if positions is not None and len(positions):
            cam.positions.values[beg_pos:beg_pos + len(positions)] = positions
        return cam

    def to_dict(self) -> Dict[str, Any]:
        """Serializable camera state."""
        return {
            'name': self.name,
            'first_line_time': self.first_line_time,
            'dt_line': self.dt_line,
            'focal_length': self.focal_length,
            'detector_center': self.detector_center,
            'num_lines': self.num_lines,
            'num_samples': self.num_samples,
            'num_interp_samples': self.num_interp_samples,
            'single_threaded': self.single_threaded,
            'quaternions': {
                't0': self.quaternions.t0,
                'dt': self.quaternions.dt,
                'values': self.quaternions.values.tolist(),
            },
            'positions': {
                't0': self.positions.t0,
                'dt': self.positions.dt,
                'values': self.positions.values.tolist(),
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LinescanCamera":
        """Build a camera from the output of to_dict()."""
        quat_data = data['quaternions']
        pos_data = data['positions']
        return cls(
            quaternions=PoseSampleSequence(quat_data['values'], quat_data['t0'], quat_data['dt']),
            positions=PoseSampleSequence(pos_data['values'], pos_data['t0'], pos_data['dt']),
            first_line_time=data['first_line_time'],
            dt_line=data['dt_line'],
            focal_length=data['focal_length'],
            detector_center=data.get('detector_center', 0.0),
            num_lines=data['num_lines'],
            num_samples=data.get('num_samples', 0),
            num_interp_samples=data.get('num_interp_samples', DEFAULT_INTERP_SAMPLES),
            single_threaded=data.get('single_threaded', False),
            name=data.get('name', ''),
        )
