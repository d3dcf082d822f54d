"""
Jitter solver driver.

This is the main module that orchestrates the solve:
    1. Validate the control network against the cameras
    2. Flag outlier points using the initial cameras
    3. Assemble the windowed least-squares problem
    4. Run the robust trust-region solve (scipy.optimize.least_squares)
    5. Write the refined pose samples and points back in place
    6. Report costs, residual statistics and the termination reason

A solve that stops on the iteration cap, or after too many non-productive
steps in a row, is not an error: the best parameters found are kept and
the run is reported as not converged.
"""

import os
import numpy as np
from enum import Enum
from typing import Dict, List, Optional, Set
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor
from scipy.optimize import least_squares
import logging

from .camera import LinescanCamera
from .config import OutlierOptions, ReferenceDemOptions, SolverOptions
from .ground_anchor import make_ground_anchor
from .network import ControlNetwork
from .outliers import flag_outliers
from .problem import PIXEL_SIZE, JitterProblem, ResidualEvaluation

logger = logging.getLogger(__name__)


class TerminationType(Enum):
    CONVERGENCE = 'CONVERGENCE'
    NO_CONVERGENCE = 'NO_CONVERGENCE'
    FAILURE = 'FAILURE'


@dataclass
class ResidualStatistics:
    """Unweighted pixel residual statistics over all residual blocks."""
    num_residual_blocks: int = 0
    num_failed: int = 0  # Blocks penalized with the sentinel value
    mean_error: float = 0.0
    median_error: float = 0.0
    max_error: float = 0.0
    rmse: float = 0.0

    # Per-camera statistics
    camera_errors: Dict[int, Dict] = field(default_factory=dict)


@dataclass
class SolveSummary:
    """Outcome of a jitter solve."""
    initial_cost: float = 0.0
    final_cost: float = 0.0
    num_iterations: int = 0  # Jacobian evaluations
    num_evaluations: int = 0  # Residual evaluations
    termination: TerminationType = TerminationType.FAILURE
    message: str = ''
    num_threads: int = 1
    num_outliers: int = 0
    num_residual_blocks: int = 0
    num_parameters: int = 0
    initial_residuals: ResidualStatistics = field(default_factory=ResidualStatistics)
    final_residuals: ResidualStatistics = field(default_factory=ResidualStatistics)

    @property
    def converged(self) -> bool:
        return self.termination is TerminationType.CONVERGENCE


def compute_residual_statistics(
    problem: JitterProblem,
    evaluation: ResidualEvaluation,
) -> ResidualStatistics:
    """Pixel error statistics, excluding blocks replaced by the sentinel."""
    stats = ResidualStatistics(
        num_residual_blocks=problem.num_residual_blocks,
        num_failed=evaluation.num_failed,
    )

    errors = np.linalg.norm(evaluation.residuals.reshape(-1, PIXEL_SIZE), axis=1)
    valid = ~evaluation.failed
    if not np.any(valid):
        return stats

    valid_errors = errors[valid]
    stats.mean_error = float(np.mean(valid_errors))
    stats.median_error = float(np.median(valid_errors))
    stats.max_error = float(np.max(valid_errors))
    stats.rmse = float(np.sqrt(np.mean(valid_errors ** 2)))

    camera_indices = problem.camera_indices
    for icam in np.unique(camera_indices[valid]):
        cam_errors = errors[valid & (camera_indices == icam)]
        stats.camera_errors[int(icam)] = {
            'count': len(cam_errors),
            'mean_error': float(np.mean(cam_errors)),
            'median_error': float(np.median(cam_errors)),
            'max_error': float(np.max(cam_errors)),
        }
    return stats


def resolve_num_threads(options: SolverOptions, cameras: List[LinescanCamera]) -> int:
    """
    Worker count for residual evaluation.

    Cameras that cannot be used concurrently force a single thread.
    """
    if options.single_threaded_cameras or any(cam.single_threaded for cam in cameras):
        return 1

    available = os.cpu_count() or 1
    requested = options.num_threads if options.num_threads is not None else available
    return max(1, min(requested, available))


class _InvalidStepLimit(Exception):
    """Raised from inside the solve to stop after too many unproductive steps."""


class JitterSolver:
    """
    Runs the robust least-squares solve of an assembled JitterProblem.

    Example usage:
        problem = JitterProblem(cameras, network, robust_threshold=0.5, line_extra=10.0)
        summary = JitterSolver(problem, SolverOptions()).solve()
        if not summary.converged:
            ...
    """

    def __init__(self, problem: JitterProblem, options: SolverOptions):
        self.problem = problem
        self.options = options

    def solve(self) -> SolveSummary:
        """
        Solve the problem and write the solution back into the cameras and points.

        Returns:
            SolveSummary with costs, statistics and termination state
        """
        problem = self.problem
        opts = self.options

        num_threads = resolve_num_threads(opts, problem.cameras)
        max_invalid = opts.max_consecutive_invalid_steps
        logger.info(
            f"Solving with {num_threads} thread(s), at most {opts.num_iterations} "
            f"iterations and {max_invalid} consecutive invalid steps"
        )

        summary = SolveSummary(
            num_threads=num_threads,
            num_outliers=len(problem.outliers),
            num_residual_blocks=problem.num_residual_blocks,
            num_parameters=problem.num_parameters,
        )

        x0 = problem.initial_parameters()
        executor = ThreadPoolExecutor(max_workers=num_threads) if num_threads > 1 else None

        # Best point seen so far, and the last evaluated one for reuse by jac
        state = {
            'best_x': x0.copy(), 'best_cost': np.inf, 'invalid': 0,
            'last_x': None, 'last_f': None, 'nfev': 0, 'njev': 0,
        }

        def fun(x: np.ndarray) -> np.ndarray:
            state['nfev'] += 1
            f = problem.residuals(x, executor)
            cost = problem.robust_cost(f)
            state['last_x'], state['last_f'] = x.copy(), f.copy()

            if cost < state['best_cost']:
                state['best_x'], state['best_cost'] = x.copy(), cost
                state['invalid'] = 0
            else:
                state['invalid'] += 1
                if state['invalid'] > max_invalid:
                    raise _InvalidStepLimit()
            return f

        def jac(x: np.ndarray):
            state['njev'] += 1
            f = state['last_f'] if np.array_equal(x, state['last_x']) else None
            return problem.jacobian(x, executor, residuals=f)

        try:
            initial = problem.evaluate(x0, executor)
            summary.initial_cost = problem.robust_cost(initial.residuals)
            summary.initial_residuals = compute_residual_statistics(problem, initial)
            self._log_residuals("Initial", summary.initial_residuals)

            logger.info("Starting the least-squares solver.")
            try:
                result = least_squares(
                    fun,
                    x0,
                    jac=jac,
                    method='trf',
                    tr_solver='lsmr',
                    loss='cauchy',
                    f_scale=problem.robust_threshold,
                    x_scale=1.0,
                    ftol=opts.function_tolerance,
                    xtol=opts.parameter_tolerance,
                    gtol=opts.gradient_tolerance,
                    max_nfev=opts.num_iterations,
                )
            except _InvalidStepLimit:
                x_final = state['best_x']
                summary.num_iterations = state['njev']
                summary.num_evaluations = state['nfev']
                summary.termination = TerminationType.NO_CONVERGENCE
                summary.message = (
                    f"Stopped after {max_invalid} consecutive steps without improvement."
                )
            else:
                x_final = result.x
                summary.num_iterations = int(result.njev)
                summary.num_evaluations = int(result.nfev)
                summary.message = result.message
                if result.status > 0:
                    summary.termination = TerminationType.CONVERGENCE
                elif result.status == 0:
                    summary.termination = TerminationType.NO_CONVERGENCE
                else:
                    summary.termination = TerminationType.FAILURE

            final = problem.evaluate(x_final, executor)
        finally:
            if executor is not None:
                executor.shutdown()

        summary.final_cost = problem.robust_cost(final.residuals)
        summary.final_residuals = compute_residual_statistics(problem, final)
        problem.write_back(x_final)

        self._log_summary(summary)
        for obs in problem.sentinel_blocks(final):
            logger.debug(
                f"Projection failed at the solution for point {obs.point_index} "
                f"in camera {obs.camera_index}"
            )
        return summary

    @staticmethod
    def _log_residuals(tag: str, stats: ResidualStatistics) -> None:
        logger.info(
            f"{tag} residuals: {stats.num_residual_blocks} blocks, "
            f"mean {stats.mean_error:.6f} px, median {stats.median_error:.6f} px, "
            f"max {stats.max_error:.6f} px, RMSE {stats.rmse:.6f} px"
        )
        if stats.num_failed:
            logger.info(f"{tag} residuals: {stats.num_failed} blocks with failed projection")
        for icam, cam_stats in sorted(stats.camera_errors.items()):
            logger.debug(
                f"  camera {icam}: {cam_stats['count']} obs, "
                f"mean {cam_stats['mean_error']:.6f} px, max {cam_stats['max_error']:.6f} px"
            )

    def _log_summary(self, summary: SolveSummary) -> None:
        logger.info(f"Termination: {summary.termination.value} ({summary.message})")
        logger.info(
            f"Cost: initial {summary.initial_cost:.6e}, final {summary.final_cost:.6e}, "
            f"{summary.num_iterations} iterations, {summary.num_evaluations} evaluations"
        )
        self._log_residuals("Final", summary.final_residuals)
        if summary.termination is TerminationType.NO_CONVERGENCE:
            logger.warning("Found a valid solution, but did not reach the actual minimum.")
        elif summary.termination is TerminationType.FAILURE:
            logger.error("The solver failed; the initial parameters were kept.")


def run_jitter_solve(
    cameras: List[LinescanCamera],
    network: ControlNetwork,
    solver_options: Optional[SolverOptions] = None,
    outlier_options: Optional[OutlierOptions] = None,
    reference_dem: Optional[ReferenceDemOptions] = None,
    outliers: Optional[Set[int]] = None,
) -> SolveSummary:
    """
    Gate outliers, assemble the problem and solve it.

    Cameras and network points are updated in place.

    Args:
        cameras: Linescan cameras, one per image
        network: Control network with triangulated points
        solver_options: Solver settings (defaults if None)
        outlier_options: Outlier settings (defaults if None)
        reference_dem: Ground anchoring settings
        outliers: Points known to be outliers before gating

    Returns:
        SolveSummary of the run
    """
    solver_options = solver_options or SolverOptions()
    outlier_options = outlier_options or OutlierOptions()

    network.validate(len(cameras))
    stats = network.get_statistics()
    logger.info(
        f"Jitter solve over {len(cameras)} cameras, {stats['num_points']} points, "
        f"{stats['num_observations']} observations"
    )

    outliers = flag_outliers(
        cameras,
        network,
        outlier_options.max_initial_reprojection_error,
        outliers=outliers,
        desired_precision=solver_options.desired_precision,
    )

    anchor = make_ground_anchor(reference_dem or ReferenceDemOptions())
    num_anchored = sum(
        anchor.anchor(network.points[ipt]) is not None
        for ipt in range(network.num_points) if ipt not in outliers
    )
    logger.debug(f"{num_anchored} points have a ground anchor target")

    problem = JitterProblem(
        cameras,
        network,
        robust_threshold=solver_options.robust_threshold,
        line_extra=outlier_options.effective_line_extra,
        outliers=outliers,
        desired_precision=solver_options.desired_precision,
    )
    return JitterSolver(problem, solver_options).solve()
