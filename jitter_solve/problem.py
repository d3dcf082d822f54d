"""
Assembly of the jitter least-squares problem.

Every retained observation contributes one 2-component residual block.
The variables are the pose samples and triangulated points referenced by
at least one block. They live in a single flat parameter vector owned by a
ParameterArena; each residual holds stable (kind, camera, index) references
into it rather than pointers into the camera arrays. A pose sample shared
by several windows maps to one slot of the vector, so all of those
residuals see, and move, the same value.

Camera sample arrays and the network point array are read-only while the
problem is evaluated. The solution is copied back into them with
write_back() once the solve is over.
"""

import numpy as np
from enum import Enum
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple
from dataclasses import dataclass
from concurrent.futures import Executor
from scipy.sparse import csr_matrix
import logging

from .camera import NUM_QUAT_PARAMS, NUM_XYZ_PARAMS, LinescanCamera
from .exceptions import ConfigurationError, DataError
from .network import ControlNetwork, Observation
from .residual import (
    PIXEL_SIZE,
    RESIDUAL_PRECISION,
    WindowedReprojectionResidual,
)
from .window import SampleWindow, resolve_window

logger = logging.getLogger(__name__)


class ParamKind(Enum):
    QUATERNION = 'quaternion'
    POSITION = 'position'
    POINT = 'point'


PARAM_SIZES = {
    ParamKind.QUATERNION: NUM_QUAT_PARAMS,
    ParamKind.POSITION: NUM_XYZ_PARAMS,
    ParamKind.POINT: NUM_XYZ_PARAMS,
}


class ParamRef(NamedTuple):
    """Reference to one parameter block. camera is -1 for points."""
    kind: ParamKind
    camera: int
    index: int


class ParameterArena:
    """
    Flat storage layout for all parameter blocks of the problem.

    Blocks are appended on first reference and keep their offset for the
    lifetime of the arena.
    """

    def __init__(self):
        self._offsets: Dict[ParamRef, int] = {}
        self.refs: List[ParamRef] = []
        self.size = 0

    def add(self, ref: ParamRef) -> int:
        """Register a block if new and return its offset."""
        offset = self._offsets.get(ref)
        if offset is None:
            offset = self.size
            self._offsets[ref] = offset
            self.refs.append(ref)
            self.size += PARAM_SIZES[ref.kind]
        return offset

    def offset(self, ref: ParamRef) -> int:
        return self._offsets[ref]

    def __contains__(self, ref: ParamRef) -> bool:
        return ref in self._offsets

    def __len__(self) -> int:
        return len(self.refs)

    def columns(self, refs: Iterable[ParamRef]) -> np.ndarray:
        """Flat indices of the given blocks, concatenated in order."""
        cols = [
            np.arange(self._offsets[ref], self._offsets[ref] + PARAM_SIZES[ref.kind])
            for ref in refs
        ]
        return np.concatenate(cols) if cols else np.zeros(0, dtype=int)

    def _source(
        self,
        ref: ParamRef,
        cameras: List[LinescanCamera],
        network: ControlNetwork,
    ) -> np.ndarray:
        if ref.kind is ParamKind.QUATERNION:
            return cameras[ref.camera].quaternions.values[ref.index]
        if ref.kind is ParamKind.POSITION:
            return cameras[ref.camera].positions.values[ref.index]
        return network.points[ref.index]

    def gather(self, cameras: List[LinescanCamera], network: ControlNetwork) -> np.ndarray:
        """Current values of all blocks as one flat vector."""
        x = np.empty(self.size)
        for ref in self.refs:
            offset = self._offsets[ref]
            x[offset:offset + PARAM_SIZES[ref.kind]] = self._source(ref, cameras, network)
        return x

    def scatter(
        self,
        x: np.ndarray,
        cameras: List[LinescanCamera],
        network: ControlNetwork,
        normalize_quaternions: bool = True,
    ) -> None:
        """Copy a flat vector back into the camera sample arrays and points."""
        for ref in self.refs:
            offset = self._offsets[ref]
            values = x[offset:offset + PARAM_SIZES[ref.kind]]
            if ref.kind is ParamKind.QUATERNION and normalize_quaternions:
                norm = np.linalg.norm(values)
                if norm > 0:
                    values = values / norm
            self._source(ref, cameras, network)[:] = values


@dataclass
class ResidualDescriptor:
    """One residual block and the parameter blocks it reads, in order."""
    observation: Observation
    window: SampleWindow
    refs: List[ParamRef]
    columns: np.ndarray
    cost_function: WindowedReprojectionResidual


@dataclass
class ResidualEvaluation:
    """Unweighted residuals of the whole problem."""
    residuals: np.ndarray  # (num_blocks * 2,)
    failed: np.ndarray  # (num_blocks,) bool, sentinel substituted

    @property
    def num_failed(self) -> int:
        return int(np.sum(self.failed))


def cauchy_cost(residuals: np.ndarray, scale: float) -> float:
    """
    Robust cost 0.5 * sum(scale^2 * log(1 + (f / scale)^2)).

    Matches scipy.optimize.least_squares with loss='cauchy', f_scale=scale.
    """
    z = (residuals / scale) ** 2
    return float(0.5 * scale ** 2 * np.sum(np.log1p(z)))


class JitterProblem:
    """
    Robust least-squares problem over windowed pose samples and points.

    Example usage:
        problem = JitterProblem(cameras, network, robust_threshold=0.5,
                                outliers=outliers, line_extra=10.0)
        x0 = problem.initial_parameters()
        f0 = problem.residuals(x0)
        J0 = problem.jacobian(x0)
    """

    def __init__(
        self,
        cameras: List[LinescanCamera],
        network: ControlNetwork,
        robust_threshold: float,
        line_extra: float,
        outliers: Optional[Set[int]] = None,
        desired_precision: float = RESIDUAL_PRECISION,
    ):
        """
        Assemble the problem.

        Args:
            cameras: Cameras, indexed by observation camera_index
            network: Control network; its points are variables
            robust_threshold: Scale of the Cauchy loss, in pixels
            line_extra: Along-track margin for window resolution, in lines
            outliers: Indices of points to exclude
            desired_precision: Line-search precision inside residuals

        Raises:
            DataError: On a degenerate network or a collapsed window
        """
        if robust_threshold <= 0:
            raise ConfigurationError(f"Expecting a positive robust threshold, got {robust_threshold}.")

        self.cameras = cameras
        self.network = network
        self.robust_threshold = float(robust_threshold)
        self.line_extra = float(line_extra)
        self.outliers = set(outliers) if outliers is not None else set()
        self.desired_precision = desired_precision

        self.arena = ParameterArena()
        self.descriptors: List[ResidualDescriptor] = []

        self._build()

    def _build(self) -> None:
        num_cameras = len(self.cameras)
        self.network.validate(num_cameras)

        for icam, observations in enumerate(self.network.observations_by_camera(num_cameras)):
            camera = self.cameras[icam]

            for obs in observations:
                ipt = obs.point_index
                if ipt in self.outliers:
                    continue

                window = resolve_window(camera, obs.pixel, self.line_extra)

                refs = [ParamRef(ParamKind.QUATERNION, icam, k)
                        for k in range(window.beg_quat, window.end_quat)]
                refs += [ParamRef(ParamKind.POSITION, icam, k)
                         for k in range(window.beg_pos, window.end_pos)]
                refs.append(ParamRef(ParamKind.POINT, -1, ipt))

                for ref in refs:
                    self.arena.add(ref)

                cost_function = WindowedReprojectionResidual(
                    camera, obs.as_array(), window, self.desired_precision
                )
                self.descriptors.append(ResidualDescriptor(
                    observation=obs,
                    window=window,
                    refs=refs,
                    columns=self.arena.columns(refs),
                    cost_function=cost_function,
                ))

                logger.debug(
                    f"Camera {icam} point {ipt}: quaternions [{window.beg_quat}, "
                    f"{window.end_quat}), positions [{window.beg_pos}, {window.end_pos})"
                )

        if not self.descriptors:
            raise DataError("No observations remain after outlier filtering.")

        cameras_used = {d.observation.camera_index for d in self.descriptors}
        if len(cameras_used) < 2:
            raise DataError(
                f"Expecting observations in at least two cameras, found {len(cameras_used)}."
            )

        logger.info(
            f"Assembled {self.num_residual_blocks} residual blocks over "
            f"{len(self.arena)} parameter blocks ({self.num_parameters} parameters, "
            f"{len(cameras_used)} cameras)"
        )

    @property
    def num_residual_blocks(self) -> int:
        return len(self.descriptors)

    @property
    def num_residuals(self) -> int:
        return PIXEL_SIZE * len(self.descriptors)

    @property
    def num_parameters(self) -> int:
        return self.arena.size

    @property
    def camera_indices(self) -> np.ndarray:
        """Camera index of each residual block."""
        return np.array([d.observation.camera_index for d in self.descriptors], dtype=int)

    def initial_parameters(self) -> np.ndarray:
        """Current camera samples and points as a flat vector."""
        return self.arena.gather(self.cameras, self.network)

    def _map(self, fn: Callable, items: List, executor: Optional[Executor]) -> List:
        if executor is None:
            return [fn(item) for item in items]
        return list(executor.map(fn, items))

    def evaluate(
        self,
        x: np.ndarray,
        executor: Optional[Executor] = None,
    ) -> ResidualEvaluation:
        """
        Evaluate all residual blocks without the robust loss.

        Args:
            x: Flat parameter vector
            executor: Optional pool to evaluate blocks concurrently
        """
        results = self._map(
            lambda d: d.cost_function.evaluate(x[d.columns]), self.descriptors, executor
        )
        residuals = np.concatenate([r for r, _ in results])
        failed = np.array([f for _, f in results], dtype=bool)
        return ResidualEvaluation(residuals, failed)

    def residuals(self, x: np.ndarray, executor: Optional[Executor] = None) -> np.ndarray:
        return self.evaluate(x, executor).residuals

    def jacobian(
        self,
        x: np.ndarray,
        executor: Optional[Executor] = None,
        residuals: Optional[np.ndarray] = None,
    ) -> csr_matrix:
        """
        Sparse Jacobian of the residuals, by per-block numerical differentiation.

        Each block is differentiated only with respect to its own parameters,
        which is what keeps the cost proportional to the window sizes.

        Args:
            x: Flat parameter vector
            executor: Optional pool to differentiate blocks concurrently
            residuals: Residuals at x, if already known

        Returns:
            (num_residuals, num_parameters) CSR matrix
        """
        def block_jacobian(item: Tuple[int, ResidualDescriptor]) -> np.ndarray:
            i, d = item
            f0 = None if residuals is None else residuals[PIXEL_SIZE * i:PIXEL_SIZE * (i + 1)]
            return d.cost_function.jacobian(x[d.columns], f0)

        blocks = self._map(block_jacobian, list(enumerate(self.descriptors)), executor)

        rows, cols, data = [], [], []
        for i, (d, block) in enumerate(zip(self.descriptors, blocks)):
            n = len(d.columns)
            rows.append(np.repeat(np.arange(PIXEL_SIZE * i, PIXEL_SIZE * (i + 1)), n))
            cols.append(np.tile(d.columns, PIXEL_SIZE))
            data.append(block.ravel())

        return csr_matrix(
            (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
            shape=(self.num_residuals, self.num_parameters),
        )

    def robust_cost(self, residuals: np.ndarray) -> float:
        return cauchy_cost(residuals, self.robust_threshold)

    def write_back(self, x: np.ndarray) -> None:
        """Store a solution in the cameras and the network, in place."""
        self.arena.scatter(x, self.cameras, self.network)
        logger.debug(f"Wrote {len(self.arena)} parameter blocks back to cameras and points")

    def is_variable(self, kind: ParamKind, camera: int, index: int) -> bool:
        """True if the given sample or point is optimized."""
        return ParamRef(kind, camera, index) in self.arena

    def sentinel_blocks(self, evaluation: ResidualEvaluation) -> List[Observation]:
        """Observations whose residual was replaced by the sentinel value."""
        return [d.observation for d, f in zip(self.descriptors, evaluation.failed) if f]
