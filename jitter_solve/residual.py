"""
Windowed reprojection residual.

The residual of one observation depends on a variable number of parameter
blocks: one quaternion block (4 values) per orientation sample in the
observation's window, one position block (3 values) per position sample in
the window, and finally the triangulated point (3 values). Blocks are
concatenated in that order into a single flat vector.

Evaluation works on a private copy of the camera with the window samples
substituted, so concurrent evaluations never share mutable state.
"""

import numpy as np
from typing import List, Optional, Tuple
import logging

from .camera import NUM_QUAT_PARAMS, NUM_XYZ_PARAMS, LinescanCamera, ProjectionError
from .window import SampleWindow

logger = logging.getLogger(__name__)

PIXEL_SIZE = 2

# Residual reported when projection fails. Don't make this too big.
BIG_PIXEL_VALUE = 1000.0

# Precision of the line search inside each residual evaluation
RESIDUAL_PRECISION = 1e-12

_EPS = np.finfo(np.float64).eps


class WindowedReprojectionResidual:
    """
    Pixel reprojection error of one observation over its sample window.

    The residual is ``project(point) - observation`` evaluated on a copy of
    the camera whose window samples are taken from the parameters.
    Projection failures are not raised; the residual becomes
    ``(BIG_PIXEL_VALUE, BIG_PIXEL_VALUE)``.
    """

    def __init__(
        self,
        camera: LinescanCamera,
        observation: np.ndarray,
        window: SampleWindow,
        desired_precision: float = RESIDUAL_PRECISION,
    ):
        self.camera = camera
        self.observation = np.asarray(observation, dtype=np.float64)
        self.window = window
        self.desired_precision = desired_precision

        self._num_quat_values = window.num_quat * NUM_QUAT_PARAMS
        self._num_pos_values = window.num_pos * NUM_XYZ_PARAMS

    @property
    def block_sizes(self) -> List[int]:
        """Sizes of the parameter blocks, in evaluation order."""
        return (
            [NUM_QUAT_PARAMS] * self.window.num_quat
            + [NUM_XYZ_PARAMS] * self.window.num_pos
            + [NUM_XYZ_PARAMS]
        )

    @property
    def num_params(self) -> int:
        return self._num_quat_values + self._num_pos_values + NUM_XYZ_PARAMS

    def initial_parameters(self, point: np.ndarray) -> np.ndarray:
        """Flat parameter vector from the camera's current samples and a point."""
        w = self.window
        return np.concatenate([
            self.camera.quaternions.values[w.beg_quat:w.end_quat].ravel(),
            self.camera.positions.values[w.beg_pos:w.end_pos].ravel(),
            np.asarray(point, dtype=np.float64),
        ])

    def split(self, params: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Split a flat parameter vector into (quaternions, positions, point)."""
        nq = self._num_quat_values
        npos = self._num_pos_values
        quats = params[:nq].reshape(-1, NUM_QUAT_PARAMS)
        positions = params[nq:nq + npos].reshape(-1, NUM_XYZ_PARAMS)
        point = params[nq + npos:nq + npos + NUM_XYZ_PARAMS]
        return quats, positions, point

    def evaluate(self, params: np.ndarray) -> Tuple[np.ndarray, bool]:
        """
        Evaluate the residual.

        Args:
            params: Flat parameter vector of length num_params

        Returns:
            Tuple of (2-element residual, failed) where failed is True if
            the sentinel value was substituted
        """
        quats, positions, point = self.split(np.asarray(params, dtype=np.float64))
        try:
            cam = self.camera.with_samples(
                self.window.beg_quat, quats, self.window.beg_pos, positions
            )
            pix = cam.project(point, desired_precision=self.desired_precision)
            residual = pix - self.observation
            if not np.all(np.isfinite(residual)):
                raise ProjectionError(f"Non-finite projection {pix}")
        except (ProjectionError, ArithmeticError, ValueError, np.linalg.LinAlgError) as e:
            logger.debug(f"Penalizing observation {self.observation.tolist()}: {e}")
            return np.full(PIXEL_SIZE, BIG_PIXEL_VALUE), True

        return residual, False

    def __call__(self, params: np.ndarray) -> np.ndarray:
        return self.evaluate(params)[0]

    def jacobian(
        self,
        params: np.ndarray,
        residual: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Forward-difference Jacobian of the residual.

        Args:
            params: Flat parameter vector
            residual: Residual at params, if already known

        Returns:
            (2, num_params) Jacobian
        """
        params = np.asarray(params, dtype=np.float64)
        if residual is None:
            residual = self(params)

        jac = np.empty((PIXEL_SIZE, len(params)))
        perturbed = params.copy()
        for j in range(len(params)):
            step = np.sqrt(_EPS) * max(1.0, abs(params[j]))
            perturbed[j] = params[j] + step
            # Use the representable step
            step = perturbed[j] - params[j]
            jac[:, j] = (self(perturbed) - residual) / step
            perturbed[j] = params[j]
        return jac
